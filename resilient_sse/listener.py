"""
Resilient listener: drives the frame parser over a stream and reopens the
stream when it ends or fails.

Example (sync)::

    stream = listen(opener, ListenerConfig(max_retries=3))
    stream.on("reconnecting", lambda p: print(f"retry in {p.delay:.1f}s"))
    for event in stream:
        print(event)

Example (async)::

    async with alisten(opener) as stream:
        async for event in stream:
            print(event)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)

from .errors import (
    BadStatusError,
    ContentTypeError,
    MalformedStreamError,
    OpenError,
    RetriesExhaustedError,
    SessionError,
)
from .parser import FrameParser
from .types import (
    EVENT_STREAM_MEDIA_TYPE,
    DisconnectedPayload,
    ErrorPayload,
    Event,
    ListenerConfig,
    ListenerState,
    ReconnectingPayload,
    StreamContext,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Collaborator Interfaces
# ============================================================================

class EventSource(Protocol):
    """An open response stream (``httpx.Response`` opened with ``stream=True``)."""
    status_code: int
    headers: Mapping[str, str]

    def iter_lines(self) -> Iterator[str]: ...

    def close(self) -> None: ...


class AsyncEventSource(Protocol):
    status_code: int
    headers: Mapping[str, str]

    def aiter_lines(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


Opener = Callable[[StreamContext], EventSource]
AsyncOpener = Callable[[StreamContext], Awaitable[AsyncEventSource]]


# ============================================================================
# Event Emitter
# ============================================================================

class EventEmitter:
    """Thread-safe emitter for session lifecycle notifications.

    Each registration is kept as its own entry, so the same callback may be
    registered several times (with ``on`` or ``once``) and fires once per
    registration.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Tuple[Callable, bool]]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, callback: Optional[Callable] = None) -> Any:
        """Register a listener. Can be used as decorator."""
        if callback is None:
            def decorator(fn: Callable) -> Callable:
                self._add_listener(event, fn, once=False)
                return fn
            return decorator
        self._add_listener(event, callback, once=False)
        return self

    def once(self, event: str, callback: Callable) -> Any:
        """Register a listener that fires at most one time."""
        self._add_listener(event, callback, once=True)
        return self

    def off(self, event: str, callback: Callable) -> Any:
        """Remove the oldest registration of ``callback`` for ``event``."""
        with self._lock:
            entries = self._listeners.get(event, [])
            for entry in entries:
                if entry[0] == callback:
                    entries.remove(entry)
                    break
        return self

    def _add_listener(self, event: str, callback: Callable, once: bool) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append((callback, once))

    def _claim(self, event: str) -> List[Callable]:
        """Snapshot the callbacks to run, consuming one-shot registrations."""
        with self._lock:
            entries = self._listeners.get(event, [])
            self._listeners[event] = [entry for entry in entries if not entry[1]]
            return [cb for cb, _ in entries]

    def _emit(self, event: str, payload: Any = None) -> None:
        for cb in self._claim(event):
            try:
                cb(payload)
            except Exception:
                logger.exception("Listener for %r raised", event)

    async def _emit_async(self, event: str, payload: Any = None) -> None:
        for cb in self._claim(event):
            try:
                result = cb(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for %r raised", event)


# ============================================================================
# Reconnector
# ============================================================================

class Reconnector:
    """Exponential backoff bounded to ``[min_interval, max_interval]``."""

    def __init__(self, config: ListenerConfig) -> None:
        self._min_interval = config.min_interval
        self._max_interval = config.max_interval
        self._max_retries = config.max_retries
        self._base = config.min_interval
        self._interval = config.min_interval
        self._retries = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def exhausted(self) -> bool:
        return self._retries > self._max_retries

    def mark_connected(self) -> None:
        self._interval = self._base
        self._retries = 0

    def record_failure(self) -> int:
        self._retries += 1
        return self._retries

    def next_delay(self) -> float:
        """Return the delay to wait now and double the interval for next time."""
        delay = self._interval
        self._interval = min(self._interval * 2, self._max_interval)
        return delay

    def apply_retry(self, retry_ms: int) -> None:
        """Adopt a server-specified reconnection time, clamped to the bounds.

        The value also becomes the interval restored by :meth:`mark_connected`.
        """
        seconds = retry_ms / 1000.0
        self._base = min(max(seconds, self._min_interval), self._max_interval)
        self._interval = self._base


# ============================================================================
# Response Validation
# ============================================================================

def _content_type(headers: Mapping[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == "content-type":
            return value
    return ""


def check_response(source: Any, config: ListenerConfig) -> Optional[int]:
    """Decide what to do with a freshly opened stream.

    Returns ``None`` when the stream can be consumed and the status code when
    the open should be retried.

    Raises:
        BadStatusError: non-success status that is not retriable.
        ContentTypeError: success status with a non event-stream media type.
    """
    status = source.status_code
    if status in config.retry_statuses:
        return status
    if not 200 <= status < 300:
        raise BadStatusError(status)
    content_type = _content_type(source.headers)
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type != EVENT_STREAM_MEDIA_TYPE:
        raise ContentTypeError(content_type)
    return None


# ============================================================================
# Shared Session Logic
# ============================================================================

_CLOSED = object()


class _EventStreamBase(EventEmitter):

    def __init__(
        self,
        opener: Callable[[StreamContext], Any],
        config: Optional[ListenerConfig] = None,
        context: Optional[StreamContext] = None,
        close_opener: bool = False,
    ) -> None:
        super().__init__()
        self._opener = opener
        self._config = config or ListenerConfig()
        self._context = context or StreamContext()
        self._close_opener = close_opener
        self._reconnector = Reconnector(self._config)
        if self._context.retry is not None:
            self._reconnector.apply_retry(self._context.retry)
        self._state: ListenerState = "idle"
        self._error: Optional[SessionError] = None
        self._drained = False

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def error(self) -> Optional[SessionError]:
        """Terminal error of the session, ``None`` while running or after a clean close."""
        return self._error

    @property
    def context(self) -> StreamContext:
        return self._context

    @property
    def last_event_id(self) -> str:
        return self._context.last_event_id

    @property
    def reconnector(self) -> Reconnector:
        return self._reconnector

    @property
    def config(self) -> ListenerConfig:
        return self._config

    def _new_parser(self) -> FrameParser:
        return FrameParser(
            self._context,
            self._config.max_bad_lines,
            on_retry=self._reconnector.apply_retry,
        )

    def _feed(self, parser: FrameParser, line: str) -> Optional[Event]:
        event = parser.feed(line)
        self._context = parser.context
        return event

    def _opened(self, source: Any) -> Optional[int]:
        status = check_response(source, self._config)
        if status is None:
            self._reconnector.mark_connected()
            self._state = "streaming"
            logger.info("Event stream open (last event id %r)", self._context.last_event_id)
        return status

    def _retry_delay(self, status: int) -> float:
        """Account for a retriable open failure and return the backoff delay."""
        retries = self._reconnector.record_failure()
        if self._reconnector.exhausted:
            raise RetriesExhaustedError(retries, status)
        delay = self._reconnector.next_delay()
        self._state = "reconnecting"
        logger.warning(
            "SSE HTTP %d, retry %d/%d in %.2fs",
            status, retries, self._config.max_retries, delay,
        )
        return delay

    def _stream_ended(self, reason: str) -> float:
        self._state = "reconnecting"
        delay = self._reconnector.interval
        logger.info("Event stream ended (%s), reopening in %.2fs", reason, delay)
        return delay

    def _fail(self, error: SessionError) -> None:
        self._error = error
        logger.error("Event stream session terminated: %s", error)

    def _next_item(self, item: Any) -> Event:
        if item is _CLOSED:
            self._drained = True
            if self._error is not None:
                raise self._error
            raise _Drained
        return item


class _Drained(Exception):
    pass


# ============================================================================
# Sync Event Stream (background thread)
# ============================================================================

class EventStream(_EventStreamBase):
    """Channel of events fed by a background thread.

    Iterating yields events in wire order until the session ends. If the
    session ended because of a failure, iteration raises the terminal
    :class:`SessionError` once every delivered event has been consumed.

    Args:
        opener: Callable returning a freshly opened stream for a context.
        config: Session tunables.
        context: Initial continuation state (e.g. a saved last event id).
        close_opener: Call ``opener.close()`` when the session ends.
    """

    def __init__(
        self,
        opener: Opener,
        config: Optional[ListenerConfig] = None,
        context: Optional[StreamContext] = None,
        close_opener: bool = False,
    ) -> None:
        super().__init__(opener, config, context, close_opener)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._active: Optional[EventSource] = None
        self._finished = False
        self._finish_lock = threading.Lock()

    def start(self) -> "EventStream":
        if self._thread is not None:
            return self
        self._state = "opening"
        self._thread = threading.Thread(target=self._run, name="resilient-sse", daemon=True)
        self._thread.start()
        return self

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the session. Iteration ends after the queued events without error."""
        self._stop.set()
        active = self._active
        if active is not None:
            try:
                active.close()
            except Exception:
                logger.debug("Error closing active stream", exc_info=True)
        if self._thread is None:
            self._finish()
        elif self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def __enter__(self) -> "EventStream":
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[Event]:
        return self

    def __next__(self) -> Event:
        if self._drained:
            raise StopIteration
        if self._thread is None and not self._finished:
            self.start()
        try:
            return self._next_item(self._queue.get())
        except _Drained:
            raise StopIteration from None

    # --- Internal ---

    def _run(self) -> None:
        try:
            self._session()
        except SessionError as e:
            self._fail(e)
            self._emit("error", ErrorPayload(message=str(e)))
        except Exception as e:
            logger.exception("Unexpected error in event stream session")
            error = SessionError(str(e))
            error.__cause__ = e
            self._fail(error)
            self._emit("error", ErrorPayload(message=str(e)))
        finally:
            if self._close_opener and hasattr(self._opener, "close"):
                self._opener.close()
            self._finish()

    def _finish(self) -> None:
        with self._finish_lock:
            if self._finished:
                return
            self._finished = True
        self._state = "terminated"
        self._queue.put(_CLOSED)

    def _session(self) -> None:
        while not self._stop.is_set():
            source = self._open()
            if source is None:
                return
            try:
                reason = self._consume(source)
            finally:
                self._active = None
                source.close()
            if reason is None:
                return
            self._emit("disconnected", DisconnectedPayload(reason=reason))
            delay = self._stream_ended(reason)
            self._emit("reconnecting", ReconnectingPayload(attempt=0, delay=delay))
            if self._stop.wait(delay):
                return

    def _open(self) -> Optional[EventSource]:
        while True:
            self._state = "opening"
            try:
                source = self._opener(self._context)
            except Exception as e:
                if self._stop.is_set():
                    return None
                raise OpenError(f"failed to open stream: {e}") from e
            if self._stop.is_set():
                source.close()
                return None
            self._active = source
            try:
                status = self._opened(source)
            except SessionError:
                self._active = None
                source.close()
                raise
            if status is None:
                self._emit("connected", None)
                return source
            self._active = None
            source.close()
            delay = self._retry_delay(status)
            self._emit(
                "reconnecting",
                ReconnectingPayload(attempt=self._reconnector.retries, delay=delay),
            )
            if self._stop.wait(delay):
                return None

    def _consume(self, source: EventSource) -> Optional[str]:
        """Pump events from ``source``; return why it ended, ``None`` when stopped."""
        parser = self._new_parser()
        try:
            for line in source.iter_lines():
                if self._stop.is_set():
                    return None
                event = self._feed(parser, line)
                if event is not None:
                    self._queue.put(event)
        except MalformedStreamError as e:
            logger.warning("Dropping malformed event stream: %s", e)
            return str(e)
        except Exception as e:
            if self._stop.is_set():
                return None
            logger.warning("Event stream read failed: %s", e)
            return f"read error: {e}"
        if self._stop.is_set():
            return None
        return "stream ended"


# ============================================================================
# Async Event Stream (asyncio task)
# ============================================================================

class AsyncEventStream(_EventStreamBase):
    """Async channel of events fed by a background task.

    ``start()`` must be called from a running event loop.
    """

    def __init__(
        self,
        opener: AsyncOpener,
        config: Optional[ListenerConfig] = None,
        context: Optional[StreamContext] = None,
        close_opener: bool = False,
    ) -> None:
        super().__init__(opener, config, context, close_opener)
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._finished = False

    def start(self) -> "AsyncEventStream":
        if self._task is None:
            self._state = "opening"
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def aclose(self) -> None:
        """Stop the session. Iteration ends after the queued events without error."""
        self._stop.set()
        if self._task is None:
            self._finish()
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "AsyncEventStream":
        return self.start()

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        if self._drained:
            raise StopAsyncIteration
        if self._task is None and not self._finished:
            self.start()
        try:
            return self._next_item(await self._queue.get())
        except _Drained:
            raise StopAsyncIteration from None

    # --- Internal ---

    async def _run(self) -> None:
        try:
            await self._session()
        except SessionError as e:
            self._fail(e)
            await self._emit_async("error", ErrorPayload(message=str(e)))
        except asyncio.CancelledError:
            if not self._stop.is_set():
                raise
        except Exception as e:
            logger.exception("Unexpected error in event stream session")
            error = SessionError(str(e))
            error.__cause__ = e
            self._fail(error)
            await self._emit_async("error", ErrorPayload(message=str(e)))
        finally:
            if self._close_opener and hasattr(self._opener, "aclose"):
                await self._opener.aclose()
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._state = "terminated"
        self._queue.put_nowait(_CLOSED)

    async def _sleep(self, delay: float) -> bool:
        """Wait ``delay`` seconds; return True if the session was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _session(self) -> None:
        while not self._stop.is_set():
            source = await self._open()
            if source is None:
                return
            try:
                reason = await self._consume(source)
            finally:
                await source.aclose()
            if reason is None:
                return
            await self._emit_async("disconnected", DisconnectedPayload(reason=reason))
            delay = self._stream_ended(reason)
            await self._emit_async("reconnecting", ReconnectingPayload(attempt=0, delay=delay))
            if await self._sleep(delay):
                return

    async def _open(self) -> Optional[AsyncEventSource]:
        while True:
            self._state = "opening"
            try:
                source = await self._opener(self._context)
            except Exception as e:
                raise OpenError(f"failed to open stream: {e}") from e
            try:
                status = self._opened(source)
            except SessionError:
                await source.aclose()
                raise
            if status is None:
                await self._emit_async("connected", None)
                return source
            await source.aclose()
            delay = self._retry_delay(status)
            await self._emit_async(
                "reconnecting",
                ReconnectingPayload(attempt=self._reconnector.retries, delay=delay),
            )
            if await self._sleep(delay):
                return None

    async def _consume(self, source: AsyncEventSource) -> Optional[str]:
        parser = self._new_parser()
        try:
            async for line in source.aiter_lines():
                event = self._feed(parser, line)
                if event is not None:
                    self._queue.put_nowait(event)
        except MalformedStreamError as e:
            logger.warning("Dropping malformed event stream: %s", e)
            return str(e)
        except Exception as e:
            logger.warning("Event stream read failed: %s", e)
            return f"read error: {e}"
        if self._stop.is_set():
            return None
        return "stream ended"


# ============================================================================
# Entry Points
# ============================================================================

def listen(
    opener: Opener,
    config: Optional[ListenerConfig] = None,
    last_event_id: str = "",
    close_opener: bool = False,
) -> EventStream:
    """Start a listening session and return its (already running) event channel."""
    context = StreamContext(last_event_id=last_event_id)
    return EventStream(opener, config, context, close_opener).start()


def alisten(
    opener: AsyncOpener,
    config: Optional[ListenerConfig] = None,
    last_event_id: str = "",
    close_opener: bool = False,
) -> AsyncEventStream:
    """Async twin of :func:`listen`; call from within a running event loop."""
    context = StreamContext(last_event_id=last_event_id)
    return AsyncEventStream(opener, config, context, close_opener).start()
