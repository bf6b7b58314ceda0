"""
Error taxonomy for the voice agent.

Each external subsystem fails with its own exception type. Failures are
classified into stable category strings so that error events and logs can be
filtered without parsing messages.
"""
from enum import Enum
from typing import Optional


class VoiceAgentError(Exception):
    """Base class for all voice agent failures."""


class CaptureError(VoiceAgentError):
    """Capture provider failure (platform reported or failed start)."""

    def __init__(self, message: str, *, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


class TransportError(VoiceAgentError):
    """Network failure or non-2xx response from the reasoning endpoint."""

    def __init__(self, status: Optional[int], detail: str):
        self.status = status
        self.detail = detail
        if status is None:
            message = f"LLM API error: {detail}"
        else:
            message = f"LLM API error: {status} - {detail}"
        super().__init__(message)


class EmptyResponseError(VoiceAgentError):
    """The reasoning endpoint returned no usable completion."""

    def __init__(self, message: str = "No response generated from LLM"):
        super().__init__(message)


class SynthesisError(VoiceAgentError):
    """Synthesis provider failed to play back a reply."""


class TurnStage(str, Enum):
    """Stage of a conversation turn in which a failure happened."""
    CAPTURE = "capture"
    REASONING = "reasoning"
    SYNTHESIS = "synthesis"


class ErrorCategory:
    """Stable error categories."""

    CAPTURE_FAILED = "capture.failed"

    AUTH_FAILED = "reasoning.auth_failed"
    RATE_LIMITED = "reasoning.rate_limited"
    PROVIDER_ERROR = "reasoning.provider_error"
    NETWORK_ERROR = "reasoning.network_error"
    EMPTY_RESPONSE = "reasoning.empty_response"

    SYNTHESIS_FAILED = "synthesis.failed"

    UNKNOWN_ERROR = "unknown_error"


def classify_error(error: BaseException) -> str:
    """
    Map an exception to a stable category string.

    Always returns a category; never raises.
    """
    if isinstance(error, CaptureError):
        return ErrorCategory.CAPTURE_FAILED

    if isinstance(error, SynthesisError):
        return ErrorCategory.SYNTHESIS_FAILED

    if isinstance(error, EmptyResponseError):
        return ErrorCategory.EMPTY_RESPONSE

    if isinstance(error, TransportError):
        if error.status is None:
            return ErrorCategory.NETWORK_ERROR
        if error.status in (401, 403):
            return ErrorCategory.AUTH_FAILED
        if error.status == 429:
            return ErrorCategory.RATE_LIMITED
        return ErrorCategory.PROVIDER_ERROR

    # Responders may raise plain exceptions from their own dependencies
    error_str = str(error).lower()
    if "timeout" in error_str or "connection" in error_str:
        return ErrorCategory.NETWORK_ERROR

    return ErrorCategory.UNKNOWN_ERROR


def describe_error(error: BaseException) -> str:
    """
    Short, log-safe description of an error.

    Details that look like they carry credentials are redacted.
    """
    detail = str(error) or type(error).__name__
    lowered = detail.lower()
    if "secret" in lowered or "password" in lowered or "api key" in lowered or "bearer" in lowered:
        return "[redacted: potential secret]"
    return detail
