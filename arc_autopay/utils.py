"""Bunch of helpers: logging setup, USDC amounts and EVM addresses."""

import datetime
import logging
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from eth_typing import HexAddress
from eth_utils import is_address, to_checksum_address

from arc_autopay.cctp.constants import BPS_DENOMINATOR, BRIDGE_FEE_BPS, USDC_DECIMALS
from arc_autopay.errors import ValidationError

logger = logging.getLogger(__name__)

#: One whole USDC in raw units
USDC_UNIT = 10**USDC_DECIMALS


def parse_token_amount(amount: str | Decimal | int, decimals: int = USDC_DECIMALS) -> int:
    """Convert a human-readable token amount to raw subunits.

    Example:

    .. code-block:: python

        assert parse_token_amount("10.00") == 10_000_000
        assert parse_token_amount("0.000001") == 1

    :param amount:
        Decimal string such as ``"10.50"``. Floats are not accepted.

    :param decimals:
        Token decimals. USDC uses 6.

    :return:
        Raw amount as an integer

    :raise ValidationError:
        If the amount is not a number, has more than ``decimals`` fractional digits,
        or is not positive.
    """
    if isinstance(amount, float):
        raise ValidationError(f"Pass token amounts as decimal strings, not floats: {amount!r}")

    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Not a decimal amount: {amount!r}") from e

    if not value.is_finite():
        raise ValidationError(f"Not a finite amount: {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Amount {amount!r} has more than {decimals} fractional digits")

    raw = int(scaled)
    if raw <= 0:
        raise ValidationError(f"Amount must be positive, got {amount!r}")
    return raw


def format_token_amount(raw: int, decimals: int = USDC_DECIMALS) -> str:
    """Format raw subunits as a fixed-point string with all fractional digits.

    ``format_token_amount(9_995_000) == "9.995000"``
    """
    assert type(raw) == int, f"Got {type(raw)}: {raw}"
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(raw), 10**decimals)
    return f"{sign}{whole}.{frac:0{decimals}d}"


def calculate_bridge_fee(raw_amount: int, fee_bps: int = BRIDGE_FEE_BPS) -> tuple[int, int]:
    """Split a requested cross-chain amount into relayer fee and bridged amount.

    The bridged amount is truncated, so any rounding dust goes to the fee.

    :return:
        Tuple ``(fee, bridged)`` in raw units, ``fee + bridged == raw_amount``
    """
    bridged = raw_amount * (BPS_DENOMINATOR - fee_bps) // BPS_DENOMINATOR
    return raw_amount - bridged, bridged


def validate_address(address: str, name: str = "address") -> HexAddress:
    """Check an EVM address and return it checksummed.

    Mixed-case input must carry a valid EIP-55 checksum.

    :raise ValidationError:
        If the string is not a 20-byte hex address.
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValidationError(f"Invalid {name}: {address!r}")
    return HexAddress(to_checksum_address(address))


def address_to_bytes32(address: str) -> bytes:
    """Left-pad a 20-byte address to the 32-byte form CCTP uses for ``mintRecipient``."""
    checksummed = validate_address(address)
    return b"\x00" * 12 + bytes.fromhex(checksummed[2:])


def normalise_tx_hash(tx_hash: str | bytes) -> str:
    """Return a ``0x``-prefixed lowercase transaction hash."""
    if isinstance(tx_hash, (bytes, bytearray)):
        return "0x" + bytes(tx_hash).hex()
    tx_hash = tx_hash.lower()
    if not tx_hash.startswith("0x"):
        tx_hash = f"0x{tx_hash}"
    return tx_hash


def utc_now() -> datetime.datetime:
    """Timezone-aware current UTC time."""
    return datetime.datetime.now(datetime.timezone.utc)


def setup_console_logging(
    default_log_level="warning",
    log_file: Path | None = None,
    std_out_log_level: Optional[int] = None,
    clear_log_file=True,
) -> logging.Logger:
    """Set up coloured log output.

    - Log level comes from ``LOG_LEVEL`` environment variable
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    fmt = "%(asctime)s %(name)-44s [%(threadName)s] %(message)s"
    date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=std_out_log_level, format=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"

        log_file.parent.mkdir(parents=True, exist_ok=True)

        # When using a file, the file is always logged with INFO level and
        # env var controls only terminal output
        min_level = min(logging.INFO, numeric_level)
        mode = "w" if clear_log_file else "a"

        file_handler = logging.FileHandler(log_file, mode=mode, encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
