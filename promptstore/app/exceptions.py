"""Custom exceptions for the promptstore application."""


class PromptStoreException(Exception):
    """Base class for application exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and machine-readable code for consistent
    HTTP response handling.
    """
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal error"):
        self.message = message
        super().__init__(message)

    def details(self) -> dict | None:
        """Extra diagnostic fields, only returned in debug mode."""
        return None


class UnauthorizedError(PromptStoreException):
    """Raised when no owner identity can be resolved for the call.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, detail: str = "Authentication required"):
        self.detail = detail
        super().__init__(detail)


class DemoModeBlockedError(PromptStoreException):
    """Raised when a demo deployment calls a production-only endpoint.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    code = "DEMO_MODE_BLOCKED"

    def __init__(self, detail: str = "Demo mode cannot access production APIs"):
        self.detail = detail
        super().__init__(detail)


class BatchTooLargeError(PromptStoreException):
    """Raised when a bulk request names more distinct ids than allowed.

    Nothing is deleted when this is raised.
    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, count: int, max_batch: int):
        self.count = count
        self.max_batch = max_batch
        super().__init__("Too many IDs")

    def details(self) -> dict:
        return {"max": self.max_batch, "received": self.count}


class RateLimitedError(PromptStoreException):
    """Raised when the rate governor denies an admission.

    Carries the instant (epoch milliseconds) at which the window resets.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, reset_at: int, limit: int | None = None):
        self.reset_at = reset_at
        self.limit = limit
        super().__init__("Too many requests")

    def retry_after_seconds(self, now_ms: int) -> int:
        """Whole seconds until the window resets, never less than 1."""
        remaining_ms = max(0, self.reset_at - now_ms)
        return max(1, -(-remaining_ms // 1000))


class StoreUnavailableError(PromptStoreException):
    """Raised when the metadata store cannot run a query or transaction.

    No metadata was changed when this is raised.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, detail: str = "Service temporarily unavailable"):
        self.detail = detail
        super().__init__(detail)


class BlobDeletionError(PromptStoreException):
    """Raised by a blob store when deleting an object fails.

    Never reaches the caller: the deletion engine records it per id.
    """
    code = "BLOB_DELETE_FAILED"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to delete blob {key}: {reason}")
