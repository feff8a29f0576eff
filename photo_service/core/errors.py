"""Failure taxonomy shared by the pipeline stages and the HTTP layer.

Every failure a caller can see is a ``PhotoPipelineError``. The class decides
the HTTP status, whether a retry with the same bytes can help, and the message
shown to the user. Infrastructure failures get a generic message; the real
cause only goes to the logs.
"""
from typing import Optional

GENERIC_INFRA_MESSAGE = "Upload failed due to a temporary service problem. Please try again."


class PhotoPipelineError(Exception):
    kind = "PhotoPipelineError"
    status_code = 500
    retryable = False
    user_correctable = False

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self._user_message = user_message

    @property
    def user_message(self) -> str:
        return self._user_message or self.message


# Validation (user-correctable)

class ValidationError(PhotoPipelineError):
    kind = "ValidationError"
    status_code = 400
    user_correctable = True


class SizeError(ValidationError):
    kind = "SizeError"
    status_code = 413


class UnsupportedTypeError(ValidationError):
    kind = "UnsupportedTypeError"
    status_code = 415


class ExtensionMismatchError(ValidationError):
    kind = "ExtensionMismatchError"


class SignatureMismatchError(ValidationError):
    kind = "SignatureMismatchError"


class DimensionError(ValidationError):
    kind = "DimensionError"


VALIDATION_ERRORS = {
    cls.kind: cls
    for cls in (SizeError, UnsupportedTypeError, ExtensionMismatchError, SignatureMismatchError, DimensionError)
}


class TransformError(PhotoPipelineError):
    kind = "TransformError"
    status_code = 422
    user_correctable = True


class QuotaExceededError(PhotoPipelineError):
    kind = "QuotaExceeded"
    status_code = 413
    user_correctable = True


# Moderation

class ModerationServiceError(Exception):
    """Raised by the moderator when the classification service cannot answer."""


class ModerationInputRejected(ModerationServiceError):
    """The service refused the image itself (size or dimensions outside what it accepts).

    Sending the same bytes again gets the same answer.
    """

class ModerationRejected(PhotoPipelineError):
    kind = "ModerationRejected"
    status_code = 422

    def __init__(self, message: str = "", *, category: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.category = category


class ModerationUnavailable(PhotoPipelineError):
    kind = "ModerationUnavailable"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "", *, retryable: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable
        if not retryable:
            self.status_code = 422

    @property
    def user_message(self) -> str:
        return self._user_message or "Content moderation is temporarily unavailable. Please try again later."


# Infrastructure

class StorageError(PhotoPipelineError):
    kind = "StorageError"
    status_code = 503
    retryable = True

    @property
    def user_message(self) -> str:
        return GENERIC_INFRA_MESSAGE


class PersistenceError(PhotoPipelineError):
    """The blob was written but its record was not.

    ``orphan_key`` names the stored object so a retry does not blindly upload
    a second copy.
    """
    kind = "PersistenceError"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "", *, orphan_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.orphan_key = orphan_key

    @property
    def user_message(self) -> str:
        return GENERIC_INFRA_MESSAGE


class PipelineCancelled(PhotoPipelineError):
    kind = "Cancelled"
    status_code = 499
    retryable = True
