"""
resilient-sse: a reconnecting Server-Sent Events client.

Opens a text/event-stream response, parses it into events and keeps the
stream alive across transient failures, carrying the last event id and the
server's retry hint from one connection to the next.

Example:
    >>> from resilient_sse import listen_url, ListenerConfig
    >>> with listen_url("https://example.com/events", ListenerConfig(max_retries=3)) as stream:
    ...     for event in stream:
    ...         print(event.name, event.data)
"""

from .client import (
    HTTPOpener,
    AsyncHTTPOpener,
    listen_url,
    listen_request,
    alisten_url,
    alisten_request,
)
from .errors import (
    SSEError,
    MalformedStreamError,
    SessionError,
    OpenError,
    BadStatusError,
    ContentTypeError,
    RetriesExhaustedError,
)
from .listener import (
    EventStream,
    AsyncEventStream,
    Reconnector,
    check_response,
    listen,
    alisten,
)
from .parser import FrameParser, parse_lines
from .types import (
    EVENT_STREAM_MEDIA_TYPE,
    Event,
    StreamContext,
    ListenerConfig,
    ListenerState,
    ErrorPayload,
    DisconnectedPayload,
    ReconnectingPayload,
)

__version__ = "0.1.0"
__all__ = [
    # Sessions
    "listen",
    "alisten",
    "listen_url",
    "listen_request",
    "alisten_url",
    "alisten_request",
    "EventStream",
    "AsyncEventStream",
    "Reconnector",
    "check_response",
    # HTTP
    "HTTPOpener",
    "AsyncHTTPOpener",
    # Parsing
    "FrameParser",
    "parse_lines",
    # Types
    "EVENT_STREAM_MEDIA_TYPE",
    "Event",
    "StreamContext",
    "ListenerConfig",
    "ListenerState",
    # Lifecycle payloads
    "ErrorPayload",
    "DisconnectedPayload",
    "ReconnectingPayload",
    # Errors
    "SSEError",
    "MalformedStreamError",
    "SessionError",
    "OpenError",
    "BadStatusError",
    "ContentTypeError",
    "RetriesExhaustedError",
]
