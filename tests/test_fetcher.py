from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import make_transport
from sitecrawl.config import CrawlConfig
from sitecrawl.errors import FetchError, HTTPStatusFailure, TooManyRedirectsError
from sitecrawl.fetcher import Fetcher, decode_body, declared_charset, is_textual


@pytest.mark.asyncio
async def test_fetch_html_page():
    routes = {"/": "<html><title>Hi</title></html>"}
    async with Fetcher(transport=make_transport(routes)) as fetcher:
        result = await fetcher.fetch("https://example.com/")

    assert result.status_code == 200
    assert result.is_html
    assert "Hi" in result.text
    assert result.final_url == "https://example.com/"
    assert not result.was_redirected


@pytest.mark.asyncio
async def test_redirects_are_followed_and_recorded():
    routes = {
        "/old": (301, {"Location": "/mid"}, ""),
        "/mid": (302, {"Location": "https://example.com/new"}, ""),
        "/new": "<p>moved</p>",
    }
    async with Fetcher(transport=make_transport(routes)) as fetcher:
        result = await fetcher.fetch("https://example.com/old")

    assert result.final_url == "https://example.com/new"
    assert result.redirect_chain == ("https://example.com/old", "https://example.com/mid")
    assert result.url == "https://example.com/old"


@pytest.mark.asyncio
async def test_redirect_loop_raises():
    routes = {"/a": (302, {"Location": "/b"}, ""), "/b": (302, {"Location": "/a"}, "")}
    async with Fetcher(transport=make_transport(routes), max_redirects=5) as fetcher:
        with pytest.raises(TooManyRedirectsError):
            await fetcher.fetch("https://example.com/a")


@pytest.mark.asyncio
async def test_not_found_is_not_retried():
    calls: list[str] = []
    async with Fetcher(transport=make_transport({}, calls), retry_count=3, retry_delay=0) as fetcher:
        with pytest.raises(HTTPStatusFailure) as excinfo:
            await fetcher.fetch("https://example.com/missing")

    assert excinfo.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_error_is_retried_then_succeeds():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, headers={"Content-Type": "text/html"}, text="<p>ok</p>")

    async with Fetcher(transport=httpx.MockTransport(handler), retry_count=3, retry_delay=0) as fetcher:
        result = await fetcher.fetch("https://example.com/")

    assert result.status_code == 200
    assert len(attempts) == 3



def failing_then_ok(failure, failures=2):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) <= failures:
            return failure(request)
        return httpx.Response(200, headers={"Content-Type": "text/html"}, text="<p>ok</p>")

    return httpx.MockTransport(handler), calls


@pytest.mark.asyncio
async def test_rate_limited_responses_back_off_longer_than_transient_errors(monkeypatch):
    waits: list[float] = []

    async def record_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", record_sleep)

    def too_many(request):
        return httpx.Response(429, text="slow down")

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    transport, _ = failing_then_ok(too_many)
    async with Fetcher(transport=transport, retry_count=3, retry_delay=1.0, rate_limit_delay=30.0) as fetcher:
        assert (await fetcher.fetch("https://example.com/")).status_code == 200
    limited = list(waits)
    waits.clear()

    transport, _ = failing_then_ok(refused)
    async with Fetcher(transport=transport, retry_count=3, retry_delay=1.0, rate_limit_delay=30.0) as fetcher:
        assert (await fetcher.fetch("https://example.com/")).status_code == 200

    assert limited == [30.0, 30.0]
    assert waits == [1.0, 2.0]


@pytest.mark.asyncio
async def test_server_errors_stop_after_bounded_attempts():
    transport, calls = failing_then_ok(lambda request: httpx.Response(502, text="bad gateway"), failures=10)
    async with Fetcher(transport=transport, retry_count=6, retry_delay=0) as fetcher:
        with pytest.raises(HTTPStatusFailure):
            await fetcher.fetch("https://example.com/")

    assert len(calls) == 3


def test_rate_limit_delay_comes_from_config():
    fetcher = Fetcher.from_config(CrawlConfig(rate_limit_retry_delay_ms=12_000))
    assert fetcher.rate_limit_delay == 12.0

@pytest.mark.asyncio
async def test_network_errors_are_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with Fetcher(transport=httpx.MockTransport(handler), retry_count=2, retry_delay=0) as fetcher:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("https://example.com/")

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_from_config_sends_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, text="ok")

    cfg = CrawlConfig(user_agent="TestBot/2.0", custom_headers={"X-Token": "abc"})
    async with Fetcher.from_config(cfg, transport=httpx.MockTransport(handler)) as fetcher:
        await fetcher.fetch("https://example.com/")

    assert seen["user-agent"] == "TestBot/2.0"
    assert seen["x-token"] == "abc"


@pytest.mark.asyncio
async def test_binary_content_has_no_text():
    routes = {"/f.pdf": (200, {"Content-Type": "application/pdf"}, b"%PDF\xff\xfe")}
    async with Fetcher(transport=make_transport(routes)) as fetcher:
        result = await fetcher.fetch("https://example.com/f.pdf")

    assert result.text is None
    assert result.body == b"%PDF\xff\xfe"
    assert not result.is_html


@pytest.mark.asyncio
async def test_file_urls(tmp_path):
    (tmp_path / "index.html").write_text("<h1>local</h1>", encoding="utf-8")
    async with Fetcher() as fetcher:
        result = await fetcher.fetch(tmp_path.as_uri())
        assert result.text == "<h1>local</h1>"
        assert result.final_url.endswith("/index.html")
        assert result.content_type == "text/html"

        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch((tmp_path / "nope.html").as_uri())
        assert excinfo.value.status_code == 404


def test_decoding_fallbacks():
    assert declared_charset("text/html; charset=ISO-8859-1") == "iso-8859-1"
    assert decode_body("héllo".encode("latin-1"), "text/html; charset=iso-8859-1") == "héllo"
    assert decode_body("héllo".encode("utf-8")) == "héllo"
    assert decode_body(b"caf\xe9") == "café"
    assert decode_body(b"x", "text/html; charset=bogus") == "x"
    assert decode_body(bytes(range(256)), "text/html; charset=ascii") == bytes(range(256)).decode("latin-1")
    assert is_textual("application/json")
    assert not is_textual("image/png")


@pytest.mark.asyncio
async def test_cookies_round_trip():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Set-Cookie": "session=abc; Path=/"}, text="ok")

    async with Fetcher(transport=httpx.MockTransport(handler)) as fetcher:
        await fetcher.fetch("https://example.com/")
        exported = fetcher.export_cookies()

    assert any(c["name"] == "session" and c["value"] == "abc" for c in exported)

    async with Fetcher(transport=make_transport({})) as other:
        other.import_cookies(exported)
        assert [c["name"] for c in other.export_cookies()] == ["session"]
        other.clear_cookies()
        assert other.export_cookies() == []


@pytest.mark.asyncio
async def test_undecodable_utf8_still_yields_text():
    routes = {"/": (200, {"Content-Type": "text/html; charset=utf-8"}, b"<p>\xff\xfe caf\xe9</p>")}
    async with Fetcher(transport=make_transport(routes)) as fetcher:
        result = await fetcher.fetch("https://example.com/")

    assert result.text == "<p>\xff\xfe caf\xe9</p>"
