"""Domain errors raised by the print job core.

Each error carries the HTTP status and the machine-readable code that the
HTTP layer reports, so routers never translate errors by hand.
"""


class PrintLinkError(Exception):
    """Base exception for the print link core."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(PrintLinkError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Missing required fields"


class FileTooLarge(PrintLinkError):
    status_code = 413
    code = "FILE_TOO_LARGE"
    message = "File size exceeds limit"


class JobNotFound(PrintLinkError):
    status_code = 404
    code = "JOB_NOT_FOUND"
    message = "Job not found"


class InvalidToken(PrintLinkError):
    status_code = 403
    code = "INVALID_TOKEN"
    message = "Invalid token"


class LinkExpired(PrintLinkError):
    status_code = 410
    code = "LINK_EXPIRED"
    message = "Print link has expired"


class IllegalTransition(PrintLinkError):
    status_code = 400
    code = "ILLEGAL_TRANSITION"
    message = "Job must be released before marking as completed"


class AlreadyReleased(PrintLinkError):
    status_code = 409
    code = "ALREADY_RELEASED"
    message = "Print job has already been released"


class Conflict(PrintLinkError):
    status_code = 409
    code = "CONFLICT"
    message = "Job already exists"


class Tampered(PrintLinkError):
    """Raised when the envelope's authentication tag does not verify."""

    status_code = 500
    code = "TAMPERED"
    message = "Document could not be decrypted"


class StorageError(PrintLinkError):
    status_code = 500
    code = "STORAGE_ERROR"
    message = "Document storage failure"


class BlobNotFound(StorageError):
    message = "Blob not found"


class EmptyBlob(StorageError):
    message = "Blob is empty"


class InvalidPrintToken(InvalidToken):
    """Print token missing from the store, expired, already used or wrong."""

    code = "INVALID_PRINT_TOKEN"
    message = "Invalid print token"


class RateLimited(PrintLinkError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests, please try again later"


class LengthRequired(PrintLinkError):
    status_code = 411
    code = "LENGTH_REQUIRED"
    message = "Content-Length header is required for uploads"
