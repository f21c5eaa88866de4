"""Shared fakes and fixtures for resilient-sse tests."""

import threading
from typing import Iterator, List, Optional, Sequence, Union

import pytest

from resilient_sse import ListenerConfig, SessionError, StreamContext

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SSE_HEADERS = {"Content-Type": "text/event-stream"}

# Three records: plain, with a comment inside, and with two data lines.
SCENARIO_BODY = (
    "event: add\ndata: 73857293\n\n"
    "event: remove\n: skip comment\ndata: 2153\n\n"
    "event: doubleLine\ndata: line1\ndata: line2\n\n"
)
SCENARIO_LINES = SCENARIO_BODY.split("\n")


# ---------------------------------------------------------------------------
# Fake streams
# ---------------------------------------------------------------------------

class FakeSource:
    """In-memory stand-in for a streamed httpx.Response."""

    def __init__(
        self,
        lines: Sequence[str] = (),
        status_code: int = 200,
        content_type: str = "text/event-stream",
        read_error: Optional[Exception] = None,
    ):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self._lines = list(lines)
        self._read_error = read_error
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def iter_lines(self) -> Iterator[str]:
        yield from self._lines
        if self._read_error is not None:
            raise self._read_error

    def close(self) -> None:
        self.close_count += 1

    async def aiter_lines(self):
        for line in self.iter_lines():
            yield line

    async def aclose(self) -> None:
        self.close()


class BlockingSource(FakeSource):
    """Yields its lines, then blocks like an idle server until closed."""

    def __init__(self, lines: Sequence[str] = ()):
        super().__init__(lines)
        self._closed_event = threading.Event()

    def iter_lines(self) -> Iterator[str]:
        yield from self._lines
        self._closed_event.wait(5.0)

    def close(self) -> None:
        super().close()
        self._closed_event.set()


class FakeOpener:
    """Hands out queued responses; raises once they run out.

    Items may be FakeSource instances or exceptions to raise.
    """

    def __init__(self, responses: List[Union[FakeSource, Exception]]):
        self._responses = list(responses)
        self.contexts: List[StreamContext] = []
        self.opened: List[FakeSource] = []
        self.closed = False

    @property
    def calls(self) -> int:
        return len(self.contexts)

    def __call__(self, context: StreamContext) -> FakeSource:
        self.contexts.append(context)
        if not self._responses:
            raise ConnectionRefusedError("no more responses")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        self.opened.append(item)
        return item

    def close(self) -> None:
        self.closed = True


class AsyncFakeOpener(FakeOpener):
    async def __call__(self, context: StreamContext) -> FakeSource:
        return FakeOpener.__call__(self, context)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def drain(stream):
    """Consume a sync stream, returning (events, terminal error or None)."""
    events = []
    try:
        for event in stream:
            events.append(event)
    except SessionError as exc:
        return events, exc
    return events, None


async def adrain(stream):
    events = []
    try:
        async for event in stream:
            events.append(event)
    except SessionError as exc:
        return events, exc
    return events, None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config():
    """Millisecond-scale backoff so reconnect tests run quickly."""
    return ListenerConfig(min_interval=0.001, max_interval=0.004, max_retries=3)
