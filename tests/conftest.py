from __future__ import annotations

from typing import Callable, Optional, Union

import httpx
import pytest

from sitecrawl.config import CrawlConfig

Route = Union[str, bytes, tuple]


ROOT_HTML = """
<html>
  <head>
    <title>Fixture Home</title>
    <meta name="description" content="A small fixture site">
    <meta name="keywords" content="alpha, beta">
    <link rel="stylesheet" href="/static/site.css">
  </head>
  <body>
    <h1 class="article-title">X</h1>
    <nav><a href="/about">About</a></nav>
    <a href="/blog">Blog</a>
    <a href="/contact?b=2&a=1">Contact</a>
    <a href="https://external.org/page">Partner</a>
    <a href="mailto:team@example.com">Mail us</a>
    <a href="#top">Top</a>
    <a href="/files/report.pdf">Report</a>
    <img src="/img/logo.png" alt="Logo">
  </body>
</html>
"""

CHILD_HTML = """
<html><head><title>{title}</title></head>
<body><h1 class="article-title">{title}</h1><a href="/deeper/{slug}">Deeper</a><a href="/">Home</a></body></html>
"""


def html_page(title: str, slug: str) -> str:
    return CHILD_HTML.format(title=title, slug=slug)


def fixture_site() -> dict[str, Route]:
    return {
        "/": ROOT_HTML,
        "/about": html_page("About", "about"),
        "/blog": html_page("Blog", "blog"),
        "/contact?a=1&b=2": html_page("Contact", "contact"),
        "/files/report.pdf": (200, {"Content-Type": "application/pdf"}, b"%PDF-1.4 fixture"),
    }


def make_handler(routes: dict[str, Route], calls: Optional[list[str]] = None) -> Callable[[httpx.Request], httpx.Response]:
    """
    Serve ``routes`` keyed by path (plus query). A route is either an HTML
    string, raw bytes, or ``(status, headers, body)``. Unknown paths answer
    404, which also covers robots.txt unless a route provides one.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query.decode('ascii')}"
        if calls is not None:
            calls.append(f"{request.url.host}{path}")
        route = routes.get(path)
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, tuple):
            status, headers, body = route
            content = body.encode("utf-8") if isinstance(body, str) else body
            return httpx.Response(status, headers=headers, content=content)
        if isinstance(route, bytes):
            return httpx.Response(200, headers={"Content-Type": "application/octet-stream"}, content=route)
        return httpx.Response(200, headers={"Content-Type": "text/html; charset=utf-8"}, text=route)

    return handler


def make_transport(routes: dict[str, Route], calls: Optional[list[str]] = None) -> httpx.MockTransport:
    return httpx.MockTransport(make_handler(routes, calls))


@pytest.fixture
def fast_config() -> CrawlConfig:
    return CrawlConfig(
        max_depth=1,
        max_pages=50,
        request_delay_ms=0,
        retry_count=1,
        retry_delay_ms=0,
        max_concurrent_requests=2,
    )
