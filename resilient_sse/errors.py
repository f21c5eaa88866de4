"""Exceptions raised by resilient-sse."""

from typing import Optional


class SSEError(Exception):
    """Base class for all resilient-sse errors."""


class MalformedStreamError(SSEError):
    """Too many unrecognized lines on one stream instance.

    Raised by the frame parser. The listener treats it as a reason to drop
    the stream and reconnect, it never reaches the caller.
    """

    def __init__(self, bad_lines: int) -> None:
        super().__init__(f"stream aborted after {bad_lines} malformed lines")
        self.bad_lines = bad_lines


class SessionError(SSEError):
    """A listening session terminated permanently."""


class OpenError(SessionError):
    """The stream could not be opened and the failure is not retriable."""


class BadStatusError(OpenError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"SSE HTTP {status_code}")
        self.status_code = status_code


class ContentTypeError(OpenError):
    def __init__(self, content_type: str) -> None:
        super().__init__(
            f"Expected content type 'text/event-stream', got '{content_type}'"
        )
        self.content_type = content_type


class RetriesExhaustedError(SessionError):
    def __init__(self, retries: int, status_code: Optional[int] = None) -> None:
        msg = f"max retries exceeded after {retries} attempts"
        if status_code is not None:
            msg += f" (last status {status_code})"
        super().__init__(msg)
        self.retries = retries
        self.status_code = status_code
