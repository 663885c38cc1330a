"""Error kinds surfaced by the image pipeline.

Every failure that reaches the HTTP layer is one of these. The ``kind`` string is stable and is
returned to clients next to the message.
"""

from __future__ import annotations


class ImageStudioError(RuntimeError):
    kind = "error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ImageStudioError):
    kind = "validation"
    default_message = "The request is invalid."


class ConfigurationError(ImageStudioError):
    kind = "configuration"
    default_message = "The service is not configured. Contact the operator."


class GenerationError(ImageStudioError):
    kind = "generation"
    default_message = "Image generation failed. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        reason: str = "error",
        model: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        self.reason = reason
        self.model = model
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class QuotaExceeded(ImageStudioError):
    kind = "quota_exceeded"

    def __init__(self, identity_kind: str, used: int, limit: int):
        self.identity_kind = identity_kind
        self.used = used
        self.limit = limit
        if identity_kind == "anonymous":
            message = "You've reached the free generation limit. Sign in to continue."
        else:
            message = "You have reached your daily generation limit. Try again tomorrow."
        super().__init__(message)


class QuotaUnavailable(ImageStudioError):
    kind = "quota_unavailable"
    default_message = "Usage could not be checked right now. Please try again shortly."


class NotAuthenticated(ImageStudioError):
    kind = "not_authenticated"
    default_message = "No active session. Please sign in again."


class PersistenceError(ImageStudioError):
    kind = "persistence"
    default_message = "The image could not be saved."


class PersistencePartialFailure(PersistenceError):
    kind = "persistence_partial_failure"
    default_message = "The image was uploaded but could not be added to your gallery."

    def __init__(self, message: str | None = None, *, storage_key: str):
        self.storage_key = storage_key
        super().__init__(message)


class ArtifactNotFound(ImageStudioError):
    kind = "not_found"
    default_message = "Image not found."


class DecodeError(ImageStudioError):
    kind = "decode"
    default_message = "The image data could not be decoded."


class MalformedInput(DecodeError):
    default_message = "The data URI is malformed."
