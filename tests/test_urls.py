from __future__ import annotations

import pytest

from sitecrawl.models import LinkType, UrlCategory
from sitecrawl.urls import (
    base_domain,
    classify,
    classify_link,
    in_scope,
    is_same_base_domain,
    is_same_domain,
    normalize,
    registrable_domain,
    resolve,
    validate,
)


def test_normalize_canonical_form():
    assert normalize("HTTP://Example.COM:80/a//b/?b=2&a=1#frag") == "http://example.com/a/b?a=1&b=2"
    assert normalize("https://user:pw@example.com:443") == "https://example.com/"
    assert normalize("https://example.com:8443/x/") == "https://example.com:8443/x"


@pytest.mark.parametrize(
    "url",
    [
        "http://example.com",
        "HTTPS://WWW.Example.com/Path/To/?z=1&a=&a=2#x",
        "http://example.com//double//slashes//",
        "http://example.com/?q=hello%20world",
        "file:///tmp/site/index.html",
    ],
)
def test_normalize_is_idempotent(url):
    once = normalize(url)
    assert once is not None
    assert normalize(once) == once


@pytest.mark.parametrize("url", ["", "   ", "mailto:a@b.com", "ftp://example.com/", "http://", "http://example.com:99999/"])
def test_normalize_rejects_malformed(url):
    assert normalize(url) is None


@pytest.mark.parametrize(
    "url,content_type,expected",
    [
        ("http://a.com/report.PDF", None, UrlCategory.PDF),
        ("http://a.com/img/logo.jpg?v=2", None, UrlCategory.IMAGE),
        ("http://a.com/site.css", None, UrlCategory.STYLESHEET),
        ("http://a.com/app.js", None, UrlCategory.SCRIPT),
        ("http://a.com/data.zip", None, UrlCategory.ARCHIVE),
        ("http://a.com/download", "application/pdf", UrlCategory.PDF),
        ("http://a.com/api/users", None, UrlCategory.API),
        ("http://a.com/about", None, UrlCategory.PAGE),
        ("http://a.com/index.html", None, UrlCategory.PAGE),
    ],
)
def test_classify_extension_then_content_type(url, content_type, expected):
    assert classify(url, content_type) is expected


@pytest.mark.parametrize(
    "ref,base,expected",
    [
        ("/x", "http://a.com/b/c", "http://a.com/x"),
        ("d", "http://a.com/b/c", "http://a.com/b/d"),
        ("../up", "http://a.com/b/c/", "http://a.com/b/up"),
        ("//cdn.net/x.js", "https://a.com/", "https://cdn.net/x.js"),
        ("https://other.org/p", "http://a.com/", "https://other.org/p"),
        ("../img/a.png", "file:///site/pages/index.html", "file:///site/img/a.png"),
        ("b.html", "/site/a.html", "file:///site/b.html"),
    ],
)
def test_resolve(ref, base, expected):
    assert resolve(ref, base) == expected


@pytest.mark.parametrize("ref", ["", "#top", "mailto:a@b.com", "tel:123", "javascript:void(0)", "data:text/plain,hi"])
def test_resolve_non_navigable(ref):
    assert resolve(ref, "http://a.com/") is None


def test_domain_comparisons():
    assert base_domain("http://www.a.example.com/x") == "example.com"
    assert is_same_base_domain("http://www.a.example.com", "https://example.com/x")
    assert not is_same_domain("http://www.example.com", "http://example.com")
    assert is_same_domain("http://Example.com/a", "https://example.com/b")


def test_public_suffix_scope():
    assert registrable_domain("http://a.example.co.uk/") == "example.co.uk"
    assert in_scope("http://x.foo.co.uk/", "http://y.bar.co.uk/")
    assert not in_scope("http://x.foo.co.uk/", "http://y.bar.co.uk/", use_public_suffix=True)
    assert in_scope("http://shop.foo.co.uk/", "http://www.foo.co.uk/", use_public_suffix=True)


def test_file_scope_only_matches_file_urls():
    assert in_scope("file:///a/b.html", "file:///a/index.html")
    assert not in_scope("http://a.com/", "file:///a/index.html")


@pytest.mark.parametrize(
    "href,expected",
    [
        ("/about", LinkType.INTERNAL),
        ("https://blog.example.com/post", LinkType.INTERNAL),
        ("https://elsewhere.net/", LinkType.EXTERNAL),
        ("mailto:me@example.com", LinkType.MAILTO),
        ("tel:+15551234", LinkType.TEL),
        ("javascript:void(0)", LinkType.JAVASCRIPT),
        ("#section", LinkType.ANCHOR),
        ("/files/a.pdf", LinkType.DOWNLOAD),
        ("data:text/plain,x", LinkType.OTHER),
    ],
)
def test_classify_link(href, expected):
    assert classify_link(href, "https://www.example.com/page", "https://www.example.com/") is expected


def test_validate():
    assert not validate("").is_valid
    assert validate("ftp://example.com").reason == "Only HTTP and HTTPS URLs are supported"
    assert not validate("example.com").is_valid
    local = validate("http://localhost:8000/")
    assert local.is_valid and local.warning
    assert validate("https://example.com/").warning is None
