"""Error kinds raised by the transfer core.

Every failure coming out of a chain client or the attestation HTTP API is
converted into one of these classes at the collaborator boundary
(:py:mod:`arc_autopay.gateway`, :py:mod:`arc_autopay.cctp.attestation`).
Orchestration code only ever sees this closed set.

- :py:class:`ConfigurationError` and :py:class:`ValidationError` are raised
  before any side effect and are never recorded on an execution.
- Subclasses of :py:class:`TransferError` abort the current transfer leg and
  are written into ``TransferExecution.error_message``.
"""


class AutopayError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(AutopayError):
    """Chain configuration or relayer credentials are missing or malformed."""


class ValidationError(AutopayError):
    """Transfer request rejected: bad address, bad amount or unsupported chain."""


class TransferError(AutopayError):
    """A transfer leg failed after the execution record was created."""


class ChainCallError(TransferError):
    """RPC failure, reverted transaction or confirmation timeout."""

    def __init__(self, message: str, tx_hash: str | None = None, reverted: bool = False):
        super().__init__(message)
        #: Transaction hash, if the failing call got as far as broadcasting
        self.tx_hash = tx_hash
        #: The transaction was mined and failed. Otherwise it may still confirm.
        self.reverted = reverted


class AttestationTimeoutError(TransferError, TimeoutError):
    """Attestation was not ready within the polling budget.

    The burn is already final on the source chain. Re-poll with the same
    transaction hash to resume; never re-submit the burn.
    """

    def __init__(self, message: str, transaction_hash: str, attempts: int):
        super().__init__(message)
        self.transaction_hash = transaction_hash
        self.attempts = attempts


class InsufficientFundsError(TransferError):
    """Custody wallet or hot wallet holds less than the requested amount."""

    def __init__(self, message: str, available: int, required: int):
        super().__init__(message)
        self.available = available
        self.required = required


class ExecutionAlreadyFinalised(AutopayError):
    """A terminal update was attempted on an execution that already has one."""
