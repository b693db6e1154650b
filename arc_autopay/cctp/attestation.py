"""Circle CCTP V2 attestation service client.

Poll Circle's Iris API for burn attestations needed to complete
cross-chain USDC transfers.

After calling ``depositForBurn()`` on the source chain, you must wait for
Circle's attestation service to sign the burn event. This module polls for and
retrieves the attestation.

Polling is keyed only by ``(transaction_hash, source_domain)`` and never
touches the source chain. A timed-out poll can be resumed at any later time,
including after a process restart, by polling again with the same hash.

Example::

    from arc_autopay.cctp.attestation import AttestationPoller
    from arc_autopay.session import create_iris_session

    poller = AttestationPoller(create_iris_session())
    attestation = poller.poll(transaction_hash="0x...", source_domain=26)

    # Use attestation.message and attestation.attestation
    # with receive_usdc_cctp() on the destination chain
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

import requests

from arc_autopay.cctp.constants import ATTESTATION_STATUS_COMPLETE
from arc_autopay.errors import AttestationTimeoutError
from arc_autopay.retry import DEFAULT_ATTESTATION_POLICY, PollAttempt, PollTimeout, RetryPolicy, poll_until
from arc_autopay.session import IrisSession
from arc_autopay.utils import normalise_tx_hash

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating resource not found
HTTP_NOT_FOUND = 404


@dataclass(slots=True)
class CCTPAttestation:
    """Attestation data for a CCTP burn event.

    Contains the signed message and attestation needed to call
    ``receiveMessage()`` on the destination chain's MessageTransmitterV2.
    """

    #: The CCTP message bytes to relay to the destination chain
    message: bytes

    #: The signed attestation bytes from Circle's Iris service
    attestation: bytes

    #: Status from Iris API (e.g. "complete")
    status: str

    def to_hex_dict(self) -> dict[str, str]:
        """Serialise as the ``{"message", "attestation"}`` JSON shape Iris uses."""
        return {
            "message": "0x" + self.message.hex(),
            "attestation": "0x" + self.attestation.hex(),
        }


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def build_messages_url(api_url: str, source_domain: int, transaction_hash: str) -> str:
    """Iris V2 messages lookup URL for a burn transaction."""
    return f"{api_url}/v2/messages/{source_domain}?transactionHash={transaction_hash}"


def parse_complete_attestation(data: dict) -> CCTPAttestation | None:
    """Pick the first mint-ready message from an Iris ``/v2/messages`` response.

    :return:
        Attestation, or ``None`` if no message has reached ``complete`` yet
    """
    for msg in data.get("messages") or []:
        if msg.get("status") != ATTESTATION_STATUS_COMPLETE:
            continue

        attestation_hex = msg.get("attestation")
        message_hex = msg.get("message")
        if not attestation_hex or attestation_hex == "PENDING" or not message_hex:
            continue

        return CCTPAttestation(
            message=_hex_to_bytes(message_hex),
            attestation=_hex_to_bytes(attestation_hex),
            status=msg["status"],
        )
    return None


def fetch_attestation_once(
    session: IrisSession,
    source_domain: int,
    transaction_hash: str,
) -> CCTPAttestation | None:
    """One request to the Iris API.

    Every failure mode short of a signed attestation returns ``None``:

    - HTTP 404: transaction not yet indexed by Circle, silently retried
    - other non-2xx responses, transport errors and garbage bodies: logged and retried
    - messages present but none ``complete`` yet

    :return:
        Attestation if ready, otherwise ``None``
    """
    transaction_hash = normalise_tx_hash(transaction_hash)
    url = build_messages_url(session.api_url, source_domain, transaction_hash)

    try:
        response = session.get(url, timeout=session.request_timeout)
    except requests.RequestException as e:
        logger.warning("Iris API request failed for tx %s: %s", transaction_hash, e)
        return None

    if response.status_code == HTTP_NOT_FOUND:
        logger.debug("Attestation not yet indexed (404) for tx %s", transaction_hash)
        return None

    if not response.ok:
        logger.warning("Iris API returned HTTP %d for tx %s, retrying", response.status_code, transaction_hash)
        return None

    try:
        data = response.json()
    except ValueError:
        logger.warning("Iris API returned a non-JSON body for tx %s", transaction_hash)
        return None

    attestation = parse_complete_attestation(data)
    if attestation is None:
        statuses = [m.get("status") for m in data.get("messages") or []]
        logger.debug("Attestation for tx %s not complete yet, statuses: %s", transaction_hash, statuses)
    return attestation


def fetch_attestation(
    session: IrisSession,
    source_domain: int,
    transaction_hash: str,
    policy: RetryPolicy = DEFAULT_ATTESTATION_POLICY,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int], None] | None = None,
) -> CCTPAttestation:
    """Poll the Iris API until attestation is ready or the attempt budget is used up.

    :param session:
        Iris session from :py:func:`~arc_autopay.session.create_iris_session`.

    :param source_domain:
        CCTP domain ID of the source chain (e.g. 26 for Arc Testnet).

    :param transaction_hash:
        Transaction hash of the ``depositForBurn()`` call on the source chain.

    :param policy:
        Poll interval and attempt budget. Default 5 s × 60 attempts.

    :param sleep:
        Injectable sleep for tests.

    :param on_attempt:
        Optional callback receiving the 1-based attempt number.

    :return:
        :class:`CCTPAttestation` with message and attestation bytes.

    :raises AttestationTimeoutError:
        If attestation is not ready after ``policy.max_attempts`` attempts.
        Safe to retry with the same transaction hash.
    """
    # Iris API requires 0x-prefixed transaction hash
    transaction_hash = normalise_tx_hash(transaction_hash)

    logger.info(
        "Waiting for CCTP attestation on domain %d: tx=%s\n  Iris API: %s",
        source_domain,
        transaction_hash,
        build_messages_url(session.api_url, source_domain, transaction_hash),
    )

    started = time.monotonic()

    def _hook(progress: PollAttempt):
        if on_attempt is not None:
            on_attempt(progress.attempt)

    try:
        attestation = poll_until(
            fetch=lambda attempt: fetch_attestation_once(session, source_domain, transaction_hash),
            is_done=lambda a: a.status == ATTESTATION_STATUS_COMPLETE,
            policy=policy,
            sleep=sleep,
            describe=f"CCTP attestation for {transaction_hash}",
            on_attempt=_hook,
        )
    except PollTimeout as e:
        raise AttestationTimeoutError(
            f"Attestation timeout: not ready after {e.attempts} attempts for tx {transaction_hash} on domain {source_domain}",
            transaction_hash=transaction_hash,
            attempts=e.attempts,
        ) from e

    logger.info(
        "Attestation complete for tx %s on domain %d (%.1fs)",
        transaction_hash,
        source_domain,
        time.monotonic() - started,
    )
    return attestation


class AttestationPoller:
    """Resolve burn transactions to mint-ready attestations.

    Holds the session, retry policy and sleep function so the orchestrator
    only passes the burn hash and source domain.
    """

    def __init__(
        self,
        session: IrisSession,
        policy: RetryPolicy = DEFAULT_ATTESTATION_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.policy = policy
        self.sleep = sleep

    def __repr__(self) -> str:
        return f"<AttestationPoller {self.session.api_url} every {self.policy.interval}s x {self.policy.max_attempts}>"

    def poll(self, transaction_hash: str, source_domain: int) -> CCTPAttestation:
        """Block until the burn is attested.

        :raise AttestationTimeoutError:
            Budget exhausted. Call again with the same hash to resume.
        """
        return fetch_attestation(
            self.session,
            source_domain=source_domain,
            transaction_hash=transaction_hash,
            policy=self.policy,
            sleep=self.sleep,
        )
