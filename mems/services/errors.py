"""
Service-level exceptions for Mems.

Every error carries the HTTP status and machine-readable code used by the
API exception handler.
"""


class MemsError(Exception):
    """Base class for domain errors surfaced to API clients."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class NotFoundError(MemsError):
    """Resource not found."""

    status_code = 404
    code = "not_found"


class NotParticipantError(MemsError):
    """User is not a participant of this mem."""

    status_code = 403
    code = "not_participant"


class PermissionDeniedError(MemsError):
    """User is not allowed to perform this action."""

    status_code = 403
    code = "permission_denied"


class InvalidJoinCodeError(MemsError):
    """Invalid join code."""

    status_code = 404
    code = "invalid_join_code"


class UploadRejectedError(MemsError):
    """Upload was rejected."""

    status_code = 422
    code = "upload_rejected"

    def __init__(self, message: str = None, reason: str = "invalid", status_code: int = None):
        super().__init__(message)
        self.reason = reason
        if status_code is not None:
            self.status_code = status_code


class MemEndedError(UploadRejectedError):
    """This mem has ended and no longer accepts uploads."""

    status_code = 409
    code = "mem_ended"

    def __init__(self, message: str = None):
        super().__init__(message, reason="mem_ended")


class QuotaExceededError(MemsError):
    """Media limit reached for this mem."""

    status_code = 409
    code = "quota_exceeded"


class UnsupportedMediaTypeError(MemsError):
    """Unsupported media type."""

    status_code = 415
    code = "unsupported_media_type"


class StorageError(MemsError):
    """Blob storage operation failed."""

    status_code = 502
    code = "storage_error"


class JoinCodeUnavailableError(MemsError):
    """Could not allocate a unique join code."""

    status_code = 503
    code = "join_code_unavailable"
