"""Error taxonomy of the sync engine.

Every error carries the HTTP status the API layer answers with, so routers can
let them propagate to the handler registered in ``app.main``.
"""


class SyncError(Exception):
    status_code = 500
    error_code = "SYNC_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ─── Remote API ────────────────────────────────

class RemoteError(SyncError):
    """Base for failures talking to the remote ledger."""
    status_code = 502
    error_code = "REMOTE_ERROR"


class RemoteUnavailable(RemoteError):
    """Retries exhausted (rate limit, 5xx, transport) or daily budget spent."""
    status_code = 503
    error_code = "REMOTE_UNAVAILABLE"

    def __init__(self, message: str, last_error: Exception | None = None, status: int | None = None):
        super().__init__(message)
        self.last_error = last_error
        self.status = status


class RemoteRequestError(RemoteError):
    """The remote API refused the request; retrying would not help."""
    error_code = "REMOTE_REQUEST_REJECTED"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


# ─── Webhooks ──────────────────────────────────

class Unauthorized(SyncError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class MalformedPayload(SyncError):
    status_code = 400
    error_code = "MALFORMED_PAYLOAD"


# ─── Store / jobs ──────────────────────────────

class ConflictingWrite(SyncError):
    # Resolved by the atomic upsert; kept so callers can name the condition.
    status_code = 409
    error_code = "CONFLICTING_WRITE"


class ScopeTooLarge(SyncError):
    status_code = 422
    error_code = "SCOPE_TOO_LARGE"


class SyncAlreadyRunning(SyncError):
    status_code = 409
    error_code = "SYNC_ALREADY_RUNNING"


class SyncJobNotFound(SyncError):
    status_code = 404
    error_code = "SYNC_JOB_NOT_FOUND"


class SyncCancelled(SyncError):
    """Raised inside the orchestrator when a cancellation request is observed."""
    status_code = 409
    error_code = "SYNC_CANCELLED"
