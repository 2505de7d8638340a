"""Error taxonomy shared by the admission, queueing and streaming layers.

Every failure that can reach a client is a :class:`FetchError`. The HTTP
layer renders it with :meth:`FetchError.to_payload` as long as no media
bytes have been sent; afterwards the connection is just dropped.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    RATE_LIMITED = "RateLimited"
    OVERLOADED = "Overloaded"
    QUEUE_FULL = "QueueFull"
    TIMEOUT = "Timeout"
    VIDEO_UNAVAILABLE = "VideoUnavailable"
    PRIVATE_VIDEO = "PrivateVideo"
    AUTHENTICATION_REQUIRED = "AuthenticationRequired"
    TRANSIENT_FAILURE = "TransientFailure"
    GENERIC_FAILURE = "GenericFailure"
    PARSE_ERROR = "ParseError"
    CANCELLED = "Cancelled"


class FetchError(Exception):
    kind = ErrorKind.GENERIC_FAILURE
    status_code = 500
    retryable = False
    default_message = "Download failed"
    hint: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        hint: Optional[str] = None,
        retry_after: Optional[float] = None,
        **extra: Any,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if hint is not None:
            self.hint = hint
        self.retry_after = retry_after
        self.extra: Dict[str, Any] = extra

    def headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(max(int(round(self.retry_after)), 1))}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.kind.value,
            "message": self.message,
        }
        if self.hint:
            payload["hint"] = self.hint
        if self.retry_after is not None:
            payload["retry_after"] = round(self.retry_after, 1)
        payload.update(self.extra)
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class InvalidInput(FetchError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 400
    default_message = "Invalid YouTube URL or video id"


class RateLimited(FetchError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    default_message = "Too many requests, slow down"


class Overloaded(FetchError):
    kind = ErrorKind.OVERLOADED
    status_code = 503
    default_message = "Server is under memory pressure, try again shortly"


class QueueFull(FetchError):
    kind = ErrorKind.QUEUE_FULL
    status_code = 503
    default_message = "Too many queued requests, please wait"


class RequestTimeout(FetchError):
    kind = ErrorKind.TIMEOUT
    status_code = 408
    default_message = "Request timed out"


class VideoUnavailable(FetchError):
    kind = ErrorKind.VIDEO_UNAVAILABLE
    status_code = 404
    default_message = "Video is unavailable"


class PrivateVideo(FetchError):
    kind = ErrorKind.PRIVATE_VIDEO
    status_code = 403
    default_message = "Video is private"


class AuthenticationRequired(FetchError):
    kind = ErrorKind.AUTHENTICATION_REQUIRED
    status_code = 500
    default_message = "YouTube requires sign-in for this video"
    hint = "Provide a cookies.txt exported from a logged-in browser session (COOKIES_FILE)."


class TransientFailure(FetchError):
    kind = ErrorKind.TRANSIENT_FAILURE
    status_code = 500
    retryable = True
    default_message = "Temporary failure talking to YouTube"


class GenericFailure(FetchError):
    kind = ErrorKind.GENERIC_FAILURE


class ParseError(FetchError):
    kind = ErrorKind.PARSE_ERROR
    default_message = "yt-dlp output format unreadable (try updating)"


class Cancelled(FetchError):
    """The client went away; never rendered, only recorded."""

    kind = ErrorKind.CANCELLED
    status_code = 499
    default_message = "Client disconnected"
