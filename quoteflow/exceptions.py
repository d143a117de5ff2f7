"""Error taxonomy for the quotation workflow.

ValidationError    guard or vocabulary failure, nothing was touched
SyncError          persistence/network failure reported by a collaborator
  RetryableSyncError   transient, retried by the optimistic coordinator
  ConflictError        version mismatch / concurrent write, never retried
  UnknownStatusError   stored status token the normalizer cannot map
FatalInconsistency rollback of an optimistic update itself failed
"""

NON_RETRYABLE_CODES = frozenset({
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
    "INVALID_ARGUMENT",
    "NOT_FOUND",
    "ALREADY_EXISTS",
    "FAILED_PRECONDITION",
})

CONFLICT_INDICATORS = (
    "version mismatch",
    "already exists",
    "concurrent modification",
    "out of date",
    "ALREADY_EXISTS",
    "FAILED_PRECONDITION",
)


def normalize_error_code(code) -> str:
    """'permission-denied' / 'Permission Denied' -> 'PERMISSION_DENIED'."""
    if not code:
        return ""
    return str(code).strip().upper().replace("-", "_").replace(" ", "_")


class QuoteflowError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv["error"] = self.message
        rv["status_code"] = self.status_code
        return rv


class ValidationError(QuoteflowError):
    """A guard rejected the event, or the event is not valid in this state."""

    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class NotFoundError(QuoteflowError):
    def __init__(self, message="Quotation not found", payload=None):
        super().__init__(message, 404, payload)


class SyncError(QuoteflowError):
    """Failure raised by the persistence / remote side of an operation."""

    def __init__(self, code="UNKNOWN", message="Sync failed", status_code=502, payload=None):
        super().__init__(message, status_code, payload)
        self.code = normalize_error_code(code) or "UNKNOWN"

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES and not is_conflict_error(self)

    def to_payload(self) -> dict:
        """The {code, message, retryable} shape stored on the quotation."""
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class RetryableSyncError(SyncError):
    def __init__(self, message="Temporary sync failure", code="UNAVAILABLE"):
        super().__init__(code, message, 503)


class ConflictError(SyncError):
    def __init__(self, message="version mismatch", code="FAILED_PRECONDITION"):
        super().__init__(code, message, 409)


class UnknownStatusError(SyncError):
    """A stored record carries a status token no normalizer rule recognizes."""

    def __init__(self, quotation_id, status):
        super().__init__(
            "INVALID_ARGUMENT",
            f"Quotation {quotation_id} has unrecognized status {status!r}",
            422,
            {"quotation_id": quotation_id, "status": status},
        )
        self.quotation_id = quotation_id
        self.status = status


class OperationInFlightError(QuoteflowError):
    """A second optimistic operation was started for a busy entity."""

    def __init__(self, entity_id, operation_id=None):
        super().__init__(
            f"Another operation is already in flight for {entity_id}",
            409,
            {"entity_id": entity_id, "operation_id": operation_id},
        )
        self.entity_id = entity_id


class FatalInconsistency(QuoteflowError):
    """Rolling back an optimistic update failed; the visible model is untrusted."""

    def __init__(self, operation_id, cause=None):
        super().__init__(f"Rollback failed for operation {operation_id}", 500,
                         {"operation_id": operation_id})
        self.operation_id = operation_id
        self.cause = cause


class MailboxError(QuoteflowError):
    """The mailbox API answered with a non-retryable error."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"Mailbox request failed: {status} {detail[:200]}", 502,
                         {"mailbox_status": status})
        self.status = status
        self.detail = detail


def error_code_of(error: BaseException) -> str:
    return normalize_error_code(getattr(error, "code", ""))


def is_conflict_error(error: BaseException) -> bool:
    """Substring/code match against the conflict indicators."""
    message = str(getattr(error, "message", None) or error or "").lower()
    code = error_code_of(error)
    return any(
        indicator.lower() in message or (code and indicator in code)
        for indicator in CONFLICT_INDICATORS
    )


def is_non_retryable_error(error: BaseException) -> bool:
    return error_code_of(error) in NON_RETRYABLE_CODES or is_conflict_error(error)
