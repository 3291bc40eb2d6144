class BookGenError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(BookGenError):
    """Malformed request; reported to the caller, never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(BookGenError):
    status_code = 404
    code = "NOT_FOUND"


class TransitionError(BookGenError):
    """Illegal generation state machine transition."""

    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, entry_id: int, current: str, target: str):
        super().__init__(f"Cannot move generation entry {entry_id} from {current} to {target}")
        self.entry_id = entry_id
        self.current = current
        self.target = target


class ProviderError(BookGenError):
    """External AI call failed or timed out."""

    status_code = 502
    code = "PROVIDER_ERROR"

    def __init__(self, message: str, status: int = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class StorageError(BookGenError):
    """Signed URL issuance or object I/O failed; the monitor retries these."""

    status_code = 503
    code = "STORAGE_ERROR"


class ArtifactMissingError(BookGenError):
    """The stored object behind an artifact no longer exists."""

    status_code = 410
    code = "ARTIFACT_MISSING"

    def __init__(self, key: str):
        super().__init__(f"Stored object not found: {key}")
        self.key = key
