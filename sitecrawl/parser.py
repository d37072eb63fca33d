"""
Structural HTML extraction over BeautifulSoup (lxml parser).

Selectors are limited to a small subset:

    tag            div
    #id            #main, div#main
    .class         .price, span.price, .a.b
    [attr]         a[href], [data-id]
    [attr=value]   meta[name=description], input[type="hidden"]

optionally joined into comma-separated lists (``h1, h2``). Descendant or
child combinators, pseudo-classes and anything else yield an empty result
rather than an error.
"""

from __future__ import annotations

import dataclasses
import json
import re
from functools import cached_property
from typing import Any, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from .log import get_logger


logger = get_logger("parser")

HIDDEN_TAGS = {"script", "style", "noscript", "svg", "template", "head"}
BOILERPLATE_TAGS = HIDDEN_TAGS | {"footer", "nav", "header"}

SIMPLE_SELECTOR_RE = re.compile(
    r"""^
    (?P<tag>[a-zA-Z][\w-]*|\*)?
    (?:\#(?P<id>[\w-]+)|(?P<classes>(?:\.[\w-]+)+))?
    (?:\[\s*(?P<attr>[\w:-]+)\s*(?:=\s*(?P<quote>["']?)(?P<value>[^\]"']*)(?P=quote)\s*)?\])?
    $""",
    re.X,
)


@dataclasses.dataclass(frozen=True)
class SimpleSelector:
    tag: Optional[str] = None
    id: Optional[str] = None
    classes: tuple[str, ...] = ()
    attr: Optional[str] = None
    value: Optional[str] = None

    def find_all(self, soup: BeautifulSoup) -> list[Tag]:
        attrs: dict[str, Any] = {}
        if self.id:
            attrs["id"] = self.id
        if self.attr:
            attrs[self.attr] = self.value if self.value is not None else True
        name = self.tag if self.tag and self.tag != "*" else True
        found = soup.find_all(name, attrs=attrs)
        if self.classes:
            wanted = set(self.classes)
            found = [el for el in found if wanted.issubset(el.get("class") or ())]
        return found


def parse_selector(selector: str) -> Optional[list[SimpleSelector]]:
    """Parse a selector list; ``None`` when any part is outside the supported subset."""
    parts = [p.strip() for p in (selector or "").split(",")]
    if not parts or any(not p for p in parts):
        return None
    out: list[SimpleSelector] = []
    for part in parts:
        m = SIMPLE_SELECTOR_RE.match(part)
        if not m or not any(m.group(g) for g in ("tag", "id", "classes", "attr")):
            return None
        classes = tuple(c for c in (m.group("classes") or "").split(".") if c)
        out.append(
            SimpleSelector(
                tag=m.group("tag").lower() if m.group("tag") else None,
                id=m.group("id"),
                classes=classes,
                attr=m.group("attr").lower() if m.group("attr") else None,
                value=m.group("value") if m.group("attr") and "=" in part.split("[", 1)[1] else None,
            )
        )
    return out


# --------------------------------- Elements -------------------------------- #


@dataclasses.dataclass(frozen=True)
class MetaTag:
    name: Optional[str] = None
    property: Optional[str] = None
    content: Optional[str] = None
    http_equiv: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class LinkElement:
    href: str
    text: str = ""
    title: Optional[str] = None
    rel: Optional[str] = None
    target: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ImageElement:
    src: str
    alt: Optional[str] = None
    title: Optional[str] = None
    width: Optional[str] = None
    height: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ScriptElement:
    src: Optional[str] = None
    type: Optional[str] = None
    content: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class StylesheetElement:
    href: str
    media: Optional[str] = None


def _attr(el: Tag, name: str) -> Optional[str]:
    value = el.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def element_value(el: Tag, attribute: Optional[str] = None) -> Optional[str]:
    if attribute in (None, "", "text"):
        return el.get_text(" ", strip=True)
    if attribute in ("html", "innerHTML"):
        return el.decode_contents()
    if attribute == "outerHTML":
        return str(el)
    return _attr(el, attribute)


def clean_text(text: str) -> str:
    lines = [re.sub(r"\s+", " ", ln).strip() for ln in text.splitlines()]
    return "\n".join(ln for ln in lines if ln)


# --------------------------------- Document -------------------------------- #


class HTMLDocument:
    def __init__(self, html: str, url: Optional[str] = None) -> None:
        self.html = html or ""
        self.url = url
        self.soup = BeautifulSoup(self.html, "lxml")

    @cached_property
    def title(self) -> Optional[str]:
        if self.soup.title is None:
            return None
        title = self.soup.title.get_text(" ", strip=True)
        return title or None

    @cached_property
    def meta_tags(self) -> list[MetaTag]:
        tags = []
        for el in self.soup.find_all("meta"):
            tag = MetaTag(
                name=_attr(el, "name"),
                property=_attr(el, "property"),
                content=_attr(el, "content"),
                http_equiv=_attr(el, "http-equiv"),
            )
            if tag.name or tag.property or tag.http_equiv:
                tags.append(tag)
        return tags

    def meta(self, key: str) -> Optional[str]:
        """Meta content by ``name`` first, then by ``property``."""
        key = key.lower()
        for tag in self.meta_tags:
            if tag.name and tag.name.lower() == key and tag.content is not None:
                return tag.content
        for tag in self.meta_tags:
            if tag.property and tag.property.lower() == key and tag.content is not None:
                return tag.content
        return None

    @cached_property
    def links(self) -> list[LinkElement]:
        out = []
        for a in self.soup.find_all("a", href=True):
            href = (a.get("href") or "").strip()
            if not href:
                continue
            out.append(
                LinkElement(
                    href=href,
                    text=a.get_text(" ", strip=True),
                    title=_attr(a, "title"),
                    rel=_attr(a, "rel"),
                    target=_attr(a, "target"),
                )
            )
        return out

    @cached_property
    def images(self) -> list[ImageElement]:
        out = []
        for img in self.soup.find_all("img"):
            src = (_attr(img, "src") or _attr(img, "data-src") or "").strip()
            if not src:
                continue
            out.append(
                ImageElement(
                    src=src,
                    alt=_attr(img, "alt"),
                    title=_attr(img, "title"),
                    width=_attr(img, "width"),
                    height=_attr(img, "height"),
                )
            )
        return out

    @cached_property
    def scripts(self) -> list[ScriptElement]:
        out = []
        for s in self.soup.find_all("script"):
            src = _attr(s, "src")
            out.append(ScriptElement(src=src, type=_attr(s, "type"), content=None if src else s.string))
        return out

    @cached_property
    def stylesheets(self) -> list[StylesheetElement]:
        out = []
        for link in self.soup.find_all("link", href=True):
            rel = (_attr(link, "rel") or "").lower().split()
            if "stylesheet" in rel:
                out.append(StylesheetElement(href=link["href"].strip(), media=_attr(link, "media")))
        return out

    @cached_property
    def canonical_url(self) -> Optional[str]:
        for link in self.soup.find_all("link", href=True):
            if "canonical" in (_attr(link, "rel") or "").lower().split():
                return link["href"].strip()
        return None

    @cached_property
    def json_ld(self) -> list[Any]:
        blocks = []
        for s in self.soup.find_all("script", type="application/ld+json"):
            raw = s.string or s.get_text()
            if not raw or not raw.strip():
                continue
            try:
                blocks.append(json.loads(raw))
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping malformed JSON-LD block on {self.url}: {e}")
        return blocks

    def text(self, strip_boilerplate: bool = False) -> str:
        """Visible text, one cleaned line per block."""
        soup = BeautifulSoup(self.html, "lxml")
        for name in BOILERPLATE_TAGS if strip_boilerplate else HIDDEN_TAGS:
            for el in soup.find_all(name):
                el.decompose()
        if strip_boilerplate:
            for el in soup.select('[role="navigation"]'):
                el.decompose()
        return clean_text(soup.get_text(separator="\n", strip=True))

    # ------------------------------ Selectors ------------------------------ #

    def select(self, selector: str) -> list[Tag]:
        parsed = parse_selector(selector)
        if parsed is None:
            logger.debug(f"Unsupported selector {selector!r}; returning no matches")
            return []
        if len(parsed) == 1:
            return parsed[0].find_all(self.soup)
        seen: set[int] = set()
        matched: list[Tag] = []
        for sel in parsed:
            for el in sel.find_all(self.soup):
                if id(el) not in seen:
                    seen.add(id(el))
                    matched.append(el)
        order = {id(el): i for i, el in enumerate(self.soup.find_all(True))}
        matched.sort(key=lambda el: order.get(id(el), 0))
        return matched

    def select_values(self, selector: str, attribute: Optional[str] = None) -> list[str]:
        values = []
        for el in self.select(selector):
            v = element_value(el, attribute)
            if v is not None:
                values.append(v)
        return values


def parse_html(html: str, url: Optional[str] = None) -> HTMLDocument:
    return HTMLDocument(html, url)
