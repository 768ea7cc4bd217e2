"""Exception taxonomy for the swap engine.

Validation errors are raised before anything touches a ledger and are never
retried. Transient errors are retried with bounded backoff. Lock errors are
the outcomes a ledger reports for create/claim/refund. Integrity errors mean
an observed event disagrees with what the ledger now says.
"""

from typing import Optional


class SwapEngineError(Exception):
    """Base class for every error raised by swapengine."""


class ConfigError(SwapEngineError):
    pass


class EntropyError(SwapEngineError):
    """The random source is unavailable or produced degenerate output."""


# --- validation -------------------------------------------------------------

class InvalidParameters(SwapEngineError):
    pass


class MalformedCommitment(InvalidParameters):
    pass


class InvalidSecret(InvalidParameters):
    pass


# --- lock outcomes ----------------------------------------------------------

class LockError(SwapEngineError):
    def __init__(self, message: str, lock_id: Optional[str] = None):
        super().__init__(message)
        self.lock_id = lock_id


class LockNotFound(LockError):
    pass


class CommitmentMismatch(LockError):
    pass


class Expired(LockError):
    pass


class NotExpired(LockError):
    pass


class AlreadyResolved(LockError):
    pass


class LedgerRejected(LockError):
    """The ledger refused a transaction for a reason not classified above."""


# --- transient infrastructure ------------------------------------------------

class TransientError(SwapEngineError):
    transient = True


class LedgerUnavailable(TransientError):
    pass


class ConversionError(TransientError):
    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class BridgeError(TransientError):
    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class RetryBudgetExhausted(SwapEngineError):
    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


# --- protocol integrity and persistence -------------------------------------

class ProtocolIntegrityError(SwapEngineError):
    pass


class TransitionError(ProtocolIntegrityError):
    """Raised when a swap status transition is not allowed."""


class StaleWriteError(SwapEngineError):
    pass


class ArchivedRecordError(SwapEngineError):
    pass
