"""httpx-based openers: the HTTP side of a listening session."""

import logging
from typing import Any, Mapping, Optional, Union

import httpx

from .listener import AsyncEventStream, EventStream, alisten, listen
from .types import EVENT_STREAM_MEDIA_TYPE, ListenerConfig, StreamContext

logger = logging.getLogger(__name__)

# Recomputed by httpx for every request it builds.
_REQUEST_MANAGED_HEADERS = ("host", "content-length", "transfer-encoding")

HeaderTypes = Union[Mapping[str, str], httpx.Headers]


def _stream_headers(extra: httpx.Headers, context: StreamContext) -> httpx.Headers:
    headers = httpx.Headers({
        "Accept": EVENT_STREAM_MEDIA_TYPE,
        "Cache-Control": "no-cache",
    })
    headers.update(extra)
    if context.last_event_id:
        headers["Last-Event-ID"] = context.last_event_id
    return headers


def _copy_request_headers(request: httpx.Request) -> httpx.Headers:
    headers = httpx.Headers(request.headers)
    for name in _REQUEST_MANAGED_HEADERS:
        if name in headers:
            del headers[name]
    return headers


class HTTPOpener:
    """
    Opens an event stream over HTTP.

    Each call sends a fresh request and returns the response with its body
    unread (``stream=True``). When the context carries a last event id it is
    sent as ``Last-Event-ID`` so the server can resume.

    Example:
        >>> opener = HTTPOpener("https://example.com/events")
        >>> for event in listen(opener):
        ...     print(event)

    Args:
        url: Event stream URL
        method: HTTP method (default: GET)
        headers: Extra request headers
        content: Request body, for non-GET streams
        client: httpx.Client to send with (default: a private client)
        timeout: Timeout for the private client (default: None, no read timeout)
    """

    def __init__(
        self,
        url: Union[str, httpx.URL],
        *,
        method: str = "GET",
        headers: Optional[HeaderTypes] = None,
        content: Optional[bytes] = None,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ):
        self.url = httpx.URL(url)
        self.method = method
        self._headers = httpx.Headers(headers or {})
        self._content = content or None
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_request(
        cls, request: httpx.Request, client: Optional[httpx.Client] = None
    ) -> "HTTPOpener":
        """Build an opener that replays a prepared request on every (re)open."""
        return cls(
            request.url,
            method=request.method,
            headers=_copy_request_headers(request),
            content=request.read(),
            client=client,
        )

    def __call__(self, context: StreamContext) -> httpx.Response:
        request = self._client.build_request(
            self.method,
            self.url,
            headers=_stream_headers(self._headers, context),
            content=self._content,
        )
        logger.debug("SSE connect: %s %s", self.method, self.url)
        return self._client.send(request, stream=True)

    def __enter__(self) -> "HTTPOpener":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this opener created it."""
        if self._owns_client:
            self._client.close()


class AsyncHTTPOpener:
    """Async version of :class:`HTTPOpener`, backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        url: Union[str, httpx.URL],
        *,
        method: str = "GET",
        headers: Optional[HeaderTypes] = None,
        content: Optional[bytes] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.url = httpx.URL(url)
        self.method = method
        self._headers = httpx.Headers(headers or {})
        self._content = content or None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending_body: Optional[httpx.Request] = None

    @classmethod
    def from_request(
        cls, request: httpx.Request, client: Optional[httpx.AsyncClient] = None
    ) -> "AsyncHTTPOpener":
        """Reuse a prepared request. Its body is read on the first open, so
        async streaming bodies are supported.
        """
        opener = cls(
            request.url,
            method=request.method,
            headers=_copy_request_headers(request),
            client=client,
        )
        opener._pending_body = request
        return opener

    async def __call__(self, context: StreamContext) -> httpx.Response:
        if self._pending_body is not None:
            self._content = (await self._pending_body.aread()) or None
            self._pending_body = None
        request = self._client.build_request(
            self.method,
            self.url,
            headers=_stream_headers(self._headers, context),
            content=self._content,
        )
        logger.debug("SSE connect: %s %s", self.method, self.url)
        return await self._client.send(request, stream=True)

    async def __aenter__(self) -> "AsyncHTTPOpener":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ============================================================================
# Convenience Entry Points
# ============================================================================

def listen_url(
    url: Union[str, httpx.URL],
    config: Optional[ListenerConfig] = None,
    *,
    last_event_id: str = "",
    headers: Optional[HeaderTypes] = None,
    client: Optional[httpx.Client] = None,
    timeout: Optional[float] = None,
) -> EventStream:
    """GET ``url`` and listen for events on it.

    Example:
        >>> with listen_url("https://example.com/events") as stream:
        ...     for event in stream:
        ...         print(event.name, event.data)
    """
    opener = HTTPOpener(url, headers=headers, client=client, timeout=timeout)
    return listen(opener, config, last_event_id, close_opener=True)


def listen_request(
    request: httpx.Request,
    config: Optional[ListenerConfig] = None,
    *,
    last_event_id: str = "",
    client: Optional[httpx.Client] = None,
) -> EventStream:
    """Send a prepared request and listen for events on its response."""
    opener = HTTPOpener.from_request(request, client=client)
    return listen(opener, config, last_event_id, close_opener=True)


def alisten_url(
    url: Union[str, httpx.URL],
    config: Optional[ListenerConfig] = None,
    *,
    last_event_id: str = "",
    headers: Optional[HeaderTypes] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
) -> AsyncEventStream:
    """Async version of :func:`listen_url`; call from a running event loop."""
    opener = AsyncHTTPOpener(url, headers=headers, client=client, timeout=timeout)
    return alisten(opener, config, last_event_id, close_opener=True)


def alisten_request(
    request: httpx.Request,
    config: Optional[ListenerConfig] = None,
    *,
    last_event_id: str = "",
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncEventStream:
    opener = AsyncHTTPOpener.from_request(request, client=client)
    return alisten(opener, config, last_event_id, close_opener=True)
