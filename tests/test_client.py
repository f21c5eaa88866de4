"""
HTTP opener tests, served by httpx.MockTransport
"""

import httpx
import pytest

from resilient_sse import (
    AsyncHTTPOpener,
    BadStatusError,
    ContentTypeError,
    HTTPOpener,
    ListenerConfig,
    RetriesExhaustedError,
    StreamContext,
    alisten_url,
    listen_request,
    listen_url,
)

from .conftest import SCENARIO_BODY, SSE_HEADERS, adrain, drain

URL = "http://sse.test/events"
CONFIG = ListenerConfig(min_interval=0.001, max_interval=0.004, max_retries=3)


class Server:
    """Scripted MockTransport handler: one response per request, 404 afterwards."""

    def __init__(self, *responses: httpx.Response):
        self._responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responses:
            return self._responses.pop(0)
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def sse(body: str) -> httpx.Response:
    return httpx.Response(200, headers=SSE_HEADERS, content=body.encode("utf-8"))


# ============================================================================
# HTTPOpener
# ============================================================================


class TestHTTPOpener:
    def test_sends_stream_headers(self):
        server = Server(sse("data: x\n\n"))
        with server.client() as client:
            opener = HTTPOpener(URL, headers={"Authorization": "Bearer t"}, client=client)
            response = opener(StreamContext())
            response.close()
        request = server.requests[0]
        assert request.method == "GET"
        assert request.headers["Accept"] == "text/event-stream"
        assert request.headers["Cache-Control"] == "no-cache"
        assert request.headers["Authorization"] == "Bearer t"
        assert "Last-Event-ID" not in request.headers

    def test_sends_last_event_id(self):
        server = Server(sse("data: x\n\n"))
        with server.client() as client:
            opener = HTTPOpener(URL, client=client)
            opener(StreamContext(last_event_id="42")).close()
        assert server.requests[0].headers["Last-Event-ID"] == "42"

    def test_from_request_replays_method_and_body(self):
        server = Server(sse("data: x\n\n"), sse("data: y\n\n"))
        request = httpx.Request("POST", URL, json={"topic": "news"}, headers={"X-Key": "k"})
        with server.client() as client:
            opener = HTTPOpener.from_request(request, client=client)
            opener(StreamContext()).close()
            opener(StreamContext(last_event_id="1")).close()
        for sent in server.requests:
            assert sent.method == "POST"
            assert sent.read() == request.read()
            assert sent.headers["X-Key"] == "k"
        assert server.requests[1].headers["Last-Event-ID"] == "1"

    def test_close_leaves_shared_client_open(self):
        server = Server()
        client = server.client()
        HTTPOpener(URL, client=client).close()
        assert not client.is_closed
        client.close()

    def test_owned_client_is_closed(self):
        opener = HTTPOpener(URL)
        opener.close()
        assert opener._client.is_closed


# ============================================================================
# listen_url / listen_request
# ============================================================================


class TestListenURL:
    def test_end_to_end_scenario(self):
        server = Server(sse(SCENARIO_BODY))
        with server.client() as client:
            events, error = drain(listen_url(URL, CONFIG, client=client))
        assert [(e.event_type, e.data) for e in events] == [
            ("add", "73857293"),
            ("remove", "2153"),
            ("doubleLine", "line1\rline2"),
        ]
        # After the stream ends the server answers 404, which ends the session.
        assert isinstance(error, BadStatusError)
        assert error.status_code == 404

    def test_resumes_with_last_event_id(self):
        server = Server(sse("id: 100\ndata: first\n\n"), sse("data: second\n\n"))
        with server.client() as client:
            events, _ = drain(listen_url(URL, CONFIG, client=client))
        assert [e.data for e in events] == ["first", "second"]
        assert "Last-Event-ID" not in server.requests[0].headers
        assert server.requests[1].headers["Last-Event-ID"] == "100"
        assert server.requests[2].headers["Last-Event-ID"] == "100"

    def test_initial_last_event_id(self):
        server = Server()
        with server.client() as client:
            drain(listen_url(URL, CONFIG, client=client, last_event_id="7"))
        assert server.requests[0].headers["Last-Event-ID"] == "7"

    def test_content_type_mismatch(self):
        server = Server(httpx.Response(200, headers={"Content-Type": "text/html"}, text="<html>"))
        with server.client() as client:
            events, error = drain(listen_url(URL, CONFIG, client=client))
        assert events == []
        assert isinstance(error, ContentTypeError)
        assert len(server.requests) == 1

    def test_server_errors_exhaust_budget(self):
        server = Server(*[httpx.Response(500) for _ in range(5)])
        with server.client() as client:
            _, error = drain(listen_url(URL, CONFIG, client=client))
        assert isinstance(error, RetriesExhaustedError)
        assert len(server.requests) == 4

    def test_recovers_after_gateway_errors(self):
        server = Server(httpx.Response(502), httpx.Response(504), sse("data: ok\n\n"))
        with server.client() as client:
            events, error = drain(listen_url(URL, CONFIG, client=client))
        assert [e.data for e in events] == ["ok"]
        assert isinstance(error, BadStatusError)

    def test_crlf_line_endings(self):
        server = Server(sse("event: a\r\ndata: 1\r\n\r\n"))
        with server.client() as client:
            events, _ = drain(listen_url(URL, CONFIG, client=client))
        assert [(e.event_type, e.data) for e in events] == [("a", "1")]

    def test_listen_request(self):
        server = Server(sse("data: from post\n\n"))
        request = httpx.Request("POST", URL, content=b"subscribe")
        with server.client() as client:
            events, _ = drain(listen_request(request, CONFIG, client=client))
        assert [e.data for e in events] == ["from post"]
        assert server.requests[0].method == "POST"


# ============================================================================
# Async
# ============================================================================


class TestAsyncListenURL:
    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self):
        server = Server(sse(SCENARIO_BODY))
        async with server.async_client() as client:
            events, error = await adrain(alisten_url(URL, CONFIG, client=client))
        assert [e.data for e in events] == ["73857293", "2153", "line1\rline2"]
        assert isinstance(error, BadStatusError)

    @pytest.mark.asyncio
    async def test_async_opener_sends_last_event_id(self):
        server = Server(sse("data: x\n\n"))
        async with server.async_client() as client:
            opener = AsyncHTTPOpener(URL, client=client)
            response = await opener(StreamContext(last_event_id="abc"))
            await response.aclose()
        assert server.requests[0].headers["Last-Event-ID"] == "abc"

    @pytest.mark.asyncio
    async def test_async_from_request_reads_streaming_body_once(self):
        async def body():
            yield b"sub"
            yield b"scribe"

        server = Server(sse("data: x\n\n"), sse("data: y\n\n"))
        request = httpx.Request("POST", URL, content=body())
        async with server.async_client() as client:
            opener = AsyncHTTPOpener.from_request(request, client=client)
            for _ in range(2):
                response = await opener(StreamContext())
                await response.aclose()
        assert [r.method for r in server.requests] == ["POST", "POST"]
        assert [r.content for r in server.requests] == [b"subscribe", b"subscribe"]
        assert "Transfer-Encoding" not in server.requests[0].headers
