"""Error taxonomy for the presigned upload flow.

Item-local errors (validation, session creation, transfer, confirm) are
recorded on the owning UploadItem and never abort a batch. CompensationError
is the only batch-level failure: it leaves a business record with a partial
set of attachments and needs an operator.
"""
from typing import Optional


class UploadError(Exception):
    """Base class for every upload-flow error."""

    kind = "upload"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UploadError):
    """Client-side policy violation. Never reaches the network."""

    kind = "validation"

    def __init__(self, message: str, rejection: Optional[str] = None):
        super().__init__(message)
        self.rejection = rejection


class SessionCreateError(UploadError):
    """The backend refused to mint a presigned session."""

    kind = "session_create"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransferError(UploadError):
    """Network failure or non-2xx status during the object PUT."""

    kind = "transfer"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransferAbortedError(TransferError):
    """The PUT (or the step in flight) was cancelled by the user."""

    kind = "aborted"


class ConfirmError(UploadError):
    kind = "confirm"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ReconcilableConfirmError(ConfirmError):
    """Ambiguous confirm response; an earlier attempt may have succeeded."""

    kind = "confirm_reconcilable"


class FatalConfirmError(ConfirmError):
    kind = "confirm_fatal"


class CompensationError(UploadError):
    """Cancelling the parent business record failed."""

    kind = "compensation"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiError(UploadError):
    """Any other non-2xx or transport failure talking to the backend."""

    kind = "api"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BatchInProgressError(UploadError):
    """A batch for the same business record is already running."""

    kind = "busy"


class InvalidTransitionError(UploadError):
    """An UploadItem was asked to leave a terminal state."""

    kind = "invalid_transition"


class InterruptedUploadError(UploadError):
    """Item was left mid-pipeline by an earlier run."""

    kind = "interrupted"
