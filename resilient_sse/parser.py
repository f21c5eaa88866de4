"""
Frame parser for the text/event-stream wire format.

Turns a sequence of text lines from one stream instance into ``Event``
objects. The parser knows nothing about the network or timing: it is fed
lines and hands back completed events as blank-line delimiters arrive.

Example::

    parser = FrameParser()
    for event in parser.parse(response.iter_lines()):
        print(event)
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Optional

from .errors import MalformedStreamError
from .types import Event, StreamContext

logger = logging.getLogger(__name__)

COMMENT_PREFIX = ":"
ID_PREFIX = "id: "
EVENT_PREFIX = "event: "
RETRY_PREFIX = "retry: "
DATA_PREFIX = "data: "
DATA_SEPARATOR = "\r"


class _Record:
    """The in-flight record between two blank lines."""

    __slots__ = ("event_type", "data", "last_event_id", "populated")

    def __init__(self, context: StreamContext) -> None:
        self.event_type = ""
        self.data = ""
        self.last_event_id = context.last_event_id
        self.populated = False

    def to_event(self) -> Event:
        return Event(
            event_type=self.event_type,
            data=self.data,
            last_event_id=self.last_event_id,
        )


class FrameParser:
    """Single-pass, line-buffered event-stream parser.

    One parser instance serves one stream instance. ``context`` carries the
    sticky last event id (and any server retry hint) in from a previous
    stream and out to the next one.

    Args:
        context: Continuation state to seed the first record with.
        max_bad_lines: Number of unrecognized lines tolerated before the
            stream is declared malformed.
        on_retry: Called with the new value (milliseconds) whenever a valid
            retry field is seen.
    """

    def __init__(
        self,
        context: Optional[StreamContext] = None,
        max_bad_lines: int = 100,
        on_retry: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._context = context or StreamContext()
        self._max_bad_lines = max_bad_lines
        self._on_retry = on_retry
        self._bad_lines = 0
        self._record = _Record(self._context)

    @property
    def context(self) -> StreamContext:
        return self._context

    @property
    def bad_lines(self) -> int:
        return self._bad_lines

    @property
    def retry(self) -> Optional[int]:
        """Last server-specified reconnection time in milliseconds."""
        return self._context.retry

    def feed(self, line: str) -> Optional[Event]:
        """Consume one line, returning an ``Event`` when a record completes.

        Raises:
            MalformedStreamError: the malformed-line ceiling was exceeded. The
                in-flight record is discarded.
        """
        record = self._record

        if line.startswith(COMMENT_PREFIX):
            return None

        if line.startswith(ID_PREFIX):
            value = line[len(ID_PREFIX):]
            record.last_event_id = value
            self._context = self._context.with_id(value)
            return None

        if line.startswith(EVENT_PREFIX):
            record.event_type = line[len(EVENT_PREFIX):]
            record.populated = True
            return None

        if line.startswith(RETRY_PREFIX):
            value = line[len(RETRY_PREFIX):]
            # ASCII digits only: int() would also take signs, spaces,
            # underscores and non-ASCII digits.
            if not (value.isascii() and value.isdigit()):
                logger.debug("Ignoring non-integer retry field: %r", value)
                return None
            retry = int(value)
            self._context = self._context.with_retry(retry)
            if self._on_retry is not None:
                self._on_retry(retry)
            return None

        if line.startswith(DATA_PREFIX):
            value = line[len(DATA_PREFIX):]
            if record.data == "":
                record.data = value
            else:
                record.data += DATA_SEPARATOR + value
            record.populated = True
            return None

        if line == "":
            if not record.populated:
                return None
            event = record.to_event()
            self._record = _Record(self._context)
            return event

        self._bad_lines += 1
        logger.debug("Unrecognized line %d: %r", self._bad_lines, line)
        if self._bad_lines > self._max_bad_lines:
            self._record = _Record(self._context)
            raise MalformedStreamError(self._bad_lines)
        return None

    def parse(self, lines: Iterable[str]) -> Iterator[Event]:
        """Lazily yield events parsed from ``lines``."""
        for line in lines:
            event = self.feed(line)
            if event is not None:
                yield event

    async def aparse(self, lines: AsyncIterable[str]) -> AsyncIterator[Event]:
        """Async twin of :meth:`parse`."""
        async for line in lines:
            event = self.feed(line)
            if event is not None:
                yield event


def parse_lines(
    lines: Iterable[str],
    context: Optional[StreamContext] = None,
    max_bad_lines: int = 100,
) -> Iterator[Event]:
    """Convenience wrapper: parse ``lines`` with a fresh :class:`FrameParser`."""
    return FrameParser(context, max_bad_lines).parse(lines)
