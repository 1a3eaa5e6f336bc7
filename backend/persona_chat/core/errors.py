from __future__ import annotations


class ChatError(RuntimeError):
    """Base error for failures surfaced to chat callers."""

    default_code = "CHAT_ERROR"

    def __init__(
        self,
        code: str | None,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


class ValidationError(ChatError):
    """Raised when the caller submits an unusable message."""

    default_code = "VALIDATION_ERROR"


class ConfigurationError(ChatError):
    """Raised when upstream credentials or endpoints are not configured."""

    default_code = "CONFIGURATION_ERROR"


class UpstreamTimeout(ChatError):
    """Raised when a blocking upstream call exceeds its time bound."""

    default_code = "PROVIDER_TIMEOUT"


class UpstreamError(ChatError):
    """Raised when the upstream provider rejects or fails a request."""

    default_code = "PROVIDER_UPSTREAM"


class StreamDecodeError(ChatError):
    """Raised for a single undecodable stream frame."""

    default_code = "STREAM_DECODE_ERROR"


class StreamTransportError(ChatError):
    """Raised when the upstream stream breaks or stalls mid-flight."""

    default_code = "STREAM_TRANSPORT_ERROR"
