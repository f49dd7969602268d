"""Exception hierarchy raised by the bulk dispatch engine.

Only request-shaped failures are raised to callers. Failures local to a
single recipient are absorbed by the dispatch runner and recorded in the
job's ``details``; an unknown job identifier is reported as ``None`` by the
query surface rather than as an exception.
"""


class BulkDispatchError(RuntimeError):
    """Base class for errors surfaced synchronously to a submitter."""

    code = "bulk_dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BulkValidationError(BulkDispatchError):
    """Raised when a bulk submission is malformed; no job is created."""

    code = "validation_error"


class AdmissionLimitError(BulkDispatchError):
    """Raised when a session already has the maximum number of running jobs."""

    code = "admission_limit"

    def __init__(self, session_id: str, limit: int):
        super().__init__(
            f"Session {session_id} already has {limit} bulk job(s) in progress"
        )
        self.session_id = session_id
        self.limit = limit


class SessionNotFoundError(BulkDispatchError):
    """Raised when the target session is not registered."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__("Session not found")
        self.session_id = session_id


class SessionNotConnectedError(BulkDispatchError):
    """Raised when the target session exists but is not connected."""

    code = "session_not_connected"

    def __init__(self, session_id: str, connection_status: str | None = None):
        super().__init__("Session not connected. Please scan QR code first.")
        self.session_id = session_id
        self.connection_status = connection_status
