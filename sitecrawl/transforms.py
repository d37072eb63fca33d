"""
Value transformation pipeline for extraction rules.

Operations run strictly left to right over the whole list of extracted
values. Most map one value to one value; ``split``, ``extract_emails`` and
``extract_urls`` may produce several values per input, ``join`` merges all
values into one. Empty strings are dropped once the pipeline finishes.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Iterable, Optional

from bs4 import BeautifulSoup

from .errors import ExtractionError
from .models import DataTransformation, TransformKind, TransformOperation


EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
URL_RE = re.compile(r"https?://[^\s<>\"']+")
NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
THOUSANDS_RE = re.compile(r"(?<=\d),(?=\d{3}\b)")


def strip_html(value: str) -> str:
    if "<" not in value:
        return value
    return BeautifulSoup(value, "lxml").get_text(" ", strip=True)


def extract_numbers(value: str) -> str:
    return " ".join(NUMBER_RE.findall(THOUSANDS_RE.sub("", value)))


def _compile(op: TransformOperation) -> re.Pattern:
    if not op.pattern:
        raise ExtractionError(f"{op.kind.value} needs a pattern")
    try:
        return re.compile(op.pattern)
    except re.error as e:
        raise ExtractionError(f"invalid pattern {op.pattern!r}: {e}") from e


def reformat_date(value: str, input_format: Optional[str], output_format: Optional[str]) -> str:
    """Reformat a date; values that don't parse are returned unchanged."""
    text = value.strip()
    try:
        parsed = datetime.strptime(text, input_format) if input_format else datetime.fromisoformat(text)
    except ValueError:
        return value
    return parsed.strftime(output_format or "%Y-%m-%d")


def _map(fn: Callable[[str], str]) -> Callable[[list[str]], list[str]]:
    return lambda values: [fn(v) for v in values]


def _flat_map(fn: Callable[[str], Iterable[str]]) -> Callable[[list[str]], list[str]]:
    return lambda values: [out for v in values for out in fn(v)]


def _step(op: TransformOperation) -> Callable[[list[str]], list[str]]:
    kind = op.kind
    if kind is TransformKind.TRIM:
        return _map(str.strip)
    if kind is TransformKind.LOWERCASE:
        return _map(str.lower)
    if kind is TransformKind.UPPERCASE:
        return _map(str.upper)
    if kind is TransformKind.STRIP_HTML:
        return _map(strip_html)
    if kind is TransformKind.EXTRACT_NUMBERS:
        return _map(extract_numbers)
    if kind is TransformKind.EXTRACT_EMAILS:
        return _flat_map(EMAIL_RE.findall)
    if kind is TransformKind.EXTRACT_URLS:
        return _flat_map(URL_RE.findall)
    if kind is TransformKind.REPLACE:
        regex = _compile(op)
        replacement = op.replacement or ""
        return _map(lambda v: regex.sub(replacement, v))
    if kind is TransformKind.REGEX_CAPTURE:
        regex = _compile(op)
        group = op.group

        def capture(v: str) -> str:
            m = regex.search(v)
            if m is None or group > regex.groups:
                return ""
            return m.group(group) or ""

        return _map(capture)
    if kind is TransformKind.PREFIX:
        prefix = op.value or ""
        return _map(lambda v: prefix + v)
    if kind is TransformKind.SUFFIX:
        suffix = op.value or ""
        return _map(lambda v: v + suffix)
    if kind is TransformKind.SPLIT:
        sep = op.separator if op.separator is not None else ","
        return _flat_map(lambda v: [p.strip() for p in v.split(sep)] if sep else [v])
    if kind is TransformKind.JOIN:
        sep = op.separator if op.separator is not None else " "
        return lambda values: [sep.join(values)] if values else []
    if kind is TransformKind.DATE_FORMAT:
        return _map(lambda v: reformat_date(v, op.input_format, op.output_format))
    raise ExtractionError(f"unsupported transform: {kind!r}")


def apply_transformation(values: Iterable[str], transformation: Optional[DataTransformation]) -> list[str]:
    result = list(values)
    if transformation is not None:
        for op in transformation.operations:
            result = _step(op)(result)
    return [v for v in result if v != ""]
