"""Error taxonomy shared by the remote client, poller and stores.

Every failure that reaches a caller is a :class:`StudioError` tagged with an
:class:`ErrorKind`. Remote exceptions raised by google-genai, requests or httpx
are mapped onto the taxonomy by :func:`classify_error`; :func:`describe_error`
turns a classified error into the single readable message shown for an action.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

import httpx
import requests
from google.genai import errors as genai_errors


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    SAFETY_REFUSAL = "safety_refusal"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORAGE_CAPACITY = "storage_capacity"
    STORAGE_OTHER = "storage_other"
    CANCELLED = "cancelled"
    MALFORMED_OUTPUT = "malformed_output"
    UNKNOWN = "unknown"


REAUTH_ELIGIBLE = frozenset({ErrorKind.PERMISSION_DENIED, ErrorKind.NOT_FOUND})


class StudioError(RuntimeError):
    """Base error carrying its classification."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def reauth_eligible(self) -> bool:
        return self.kind in REAUTH_ELIGIBLE


class PermissionDenied(StudioError):
    kind = ErrorKind.PERMISSION_DENIED


class NotFound(StudioError):
    kind = ErrorKind.NOT_FOUND


class NetworkError(StudioError):
    kind = ErrorKind.NETWORK


class ModelRefusal(StudioError):
    """The model declined; ``refusal_text`` is kept verbatim."""

    kind = ErrorKind.SAFETY_REFUSAL

    def __init__(self, refusal_text: str) -> None:
        super().__init__(f"Model refusal: {refusal_text}")
        self.refusal_text = refusal_text


class QuotaExceeded(StudioError):
    kind = ErrorKind.QUOTA_EXCEEDED


class StorageCapacityExceeded(StudioError):
    kind = ErrorKind.STORAGE_CAPACITY


class StorageError(StudioError):
    kind = ErrorKind.STORAGE_OTHER


class JobCancelled(StudioError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Video generation cancelled by user.") -> None:
        super().__init__(message)


class MalformedModelOutput(StudioError):
    kind = ErrorKind.MALFORMED_OUTPUT


_PERMISSION_MARKERS = ("does not have permission", "permission_denied", "permission denied")
_NOT_FOUND_MARKERS = ("requested entity was not found", "not_found")
_NETWORK_MARKERS = ("xhr error", "network error", "failed to fetch", "connection reset", "timed out")
_SAFETY_MARKERS = ("safety policies", "blocked", "safety")


def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, genai_errors.APIError):
        return exc.code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def _message_of(exc: BaseException) -> str:
    if isinstance(exc, genai_errors.APIError):
        parts = [str(exc.status or ""), str(exc.message or ""), str(exc)]
        return " ".join(part for part in parts if part)
    return str(exc) or exc.__class__.__name__


def classify_error(exc: BaseException) -> StudioError:
    """Map any exception onto the studio error taxonomy.

    Already-classified errors are returned unchanged so that a failure which
    crosses several layers keeps its original kind.
    """
    if isinstance(exc, StudioError):
        return exc

    message = _message_of(exc)
    lowered = message.lower()
    code = _status_code(exc)

    if code == 403 or any(marker in lowered for marker in _PERMISSION_MARKERS):
        error: StudioError = PermissionDenied(message)
    elif code == 404 or any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        error = NotFound(message)
    elif isinstance(
        exc,
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            httpx.TransportError,
            ConnectionError,
            TimeoutError,
        ),
    ) or any(marker in lowered for marker in _NETWORK_MARKERS):
        error = NetworkError(message)
    elif any(marker in lowered for marker in _SAFETY_MARKERS):
        error = StudioError(message, kind=ErrorKind.SAFETY_REFUSAL)
    else:
        error = StudioError(message)
    error.__cause__ = exc
    return error


def describe_error(error: BaseException) -> str:
    """Return the readable message attached to a failed action."""
    classified = classify_error(error)
    message = classified.message
    lowered = message.lower()

    if isinstance(classified, ModelRefusal):
        return message
    if classified.kind is ErrorKind.NOT_FOUND:
        return (
            "The requested AI model is not available with your current API key. "
            "Please ensure your key has access to the Gemini 3 preview models."
        )
    if classified.kind is ErrorKind.PERMISSION_DENIED:
        return (
            "Permission denied. Your API key does not have access to this model. "
            "Please select a different key or check your Google Cloud project permissions."
        )
    if classified.kind is ErrorKind.NETWORK:
        return (
            "A network connection error occurred. Please check your internet connection "
            "and try again. The API service may be temporarily unavailable."
        )
    if classified.kind is ErrorKind.SAFETY_REFUSAL:
        return "Your request was blocked due to safety policies. Please adjust your prompt and try again."
    if classified.kind in (
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.CANCELLED,
        ErrorKind.MALFORMED_OUTPUT,
        ErrorKind.STORAGE_OTHER,
        ErrorKind.STORAGE_CAPACITY,
    ):
        return message
    if "api key not valid" in lowered:
        return "The provided API key is invalid. Please ensure it is configured correctly."
    if "quota" in lowered:
        return "API quota exceeded. Please check your usage and limits."
    if "resource has been exhausted" in lowered or "resource_exhausted" in lowered or "rate limit" in lowered:
        return "The server is busy or you have hit a rate limit. Please try again in a moment."
    if classified.__cause__ is None:
        # raised locally with a message already meant for the user
        return message
    return f"An unexpected API error occurred: {message}"
