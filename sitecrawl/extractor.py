"""
Rule-driven field extraction.

Each ``ExtractionRule`` is evaluated on its own: the selector is resolved
according to the rule type, values are passed through the rule's
transformation pipeline, then the empty-result policy applies:

- empty and required      -> failed result ("Required field not found")
- empty with a default    -> the default as the only value
- otherwise               -> empty, successful result

A rule that raises during evaluation (bad regex, bad transform) fails alone
and yields its default, if any. Disabled rules are skipped without error.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Union

from .errors import ExtractionError
from .log import get_logger
from .models import DataTransformation, ExtractionResult, ExtractionRule, RuleType, TransformKind, TransformOperation
from .parser import HTMLDocument
from .transforms import apply_transformation


logger = get_logger("extractor")

XPATH_STEP_RE = re.compile(
    r"""^/{1,2}(?P<tag>[a-zA-Z][\w-]*|\*)
    (?:\[\s*@(?P<attr>[\w:-]+)\s*(?:=\s*(?P<q>['"])(?P<value>[^'"]*)(?P=q)\s*)?\])?
    (?:/@(?P<get>[\w:-]+)|/text\(\))?$""",
    re.X,
)
JSON_PATH_INDEX_RE = re.compile(r"\[(\d+)\]")


def xpath_to_selector(xpath: str) -> Optional[tuple[str, Optional[str]]]:
    """
    Convert a single-step XPath into ``(selector, attribute)``.

    ``//div[@class='price']`` -> ``("div.price", None)``,
    ``//a[@id='next']/@href`` -> ``("a#next", "href")``. Multi-step paths,
    predicates other than one attribute test, and functions other than
    ``text()`` are not supported and return ``None``.
    """
    m = XPATH_STEP_RE.match((xpath or "").strip())
    if not m:
        return None
    tag = "" if m.group("tag") == "*" else m.group("tag").lower()
    attr, value = m.group("attr"), m.group("value")
    if attr is None:
        selector = tag or "*"
    elif value is None:
        selector = f"{tag}[{attr}]"
    elif attr == "class" and re.fullmatch(r"[\w-]+", value):
        selector = f"{tag}.{value}"
    elif attr == "id" and re.fullmatch(r"[\w-]+", value):
        selector = f"{tag}#{value}"
    else:
        selector = f'{tag}[{attr}="{value}"]'
    return selector, m.group("get")


def evaluate_json_path(path: str, data: Any) -> Any:
    """Evaluate ``$.a.b.0`` / ``$.a.b[0]`` against parsed JSON; ``None`` when absent."""
    expr = (path or "").strip()
    if not expr.startswith("$"):
        return None
    expr = JSON_PATH_INDEX_RE.sub(r".\1", expr[1:])
    current = data
    for key in (k for k in expr.split(".") if k):
        if isinstance(current, dict):
            if key not in current:
                return None
            current = current[key]
        elif isinstance(current, list) and key.isdigit():
            idx = int(key)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


def _json_values(value: Any) -> list[str]:
    if value is None or isinstance(value, dict):
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and not isinstance(v, (dict, list))]
    if isinstance(value, bool):
        return ["true" if value else "false"]
    return [str(value)]


class Extractor:
    def __init__(self, document: HTMLDocument) -> None:
        self.document = document

    @classmethod
    def from_html(cls, html: str, url: Optional[str] = None) -> "Extractor":
        return cls(HTMLDocument(html, url))

    # ------------------------------ Rules ---------------------------------- #

    def extract(self, rule: ExtractionRule) -> ExtractionResult:
        if not rule.is_enabled:
            return ExtractionResult(rule.field_name)
        try:
            values = self._resolve(rule)
            values = apply_transformation(values, rule.transformation)
        except ExtractionError as e:
            logger.warning(f"Rule {rule.field_name!r} failed on {self.document.url}: {e}")
            defaults = (rule.default_value,) if rule.default_value is not None else ()
            return ExtractionResult(rule.field_name, defaults, success=False, error=str(e))

        if not values:
            if rule.is_required:
                return ExtractionResult(rule.field_name, success=False, error="Required field not found")
            if rule.default_value is not None:
                values = [rule.default_value]
        return ExtractionResult(rule.field_name, tuple(values))

    def extract_all(self, rules: list[ExtractionRule]) -> list[ExtractionResult]:
        return [self.extract(rule) for rule in rules if rule.is_enabled]

    def _resolve(self, rule: ExtractionRule) -> list[str]:
        if rule.rule_type is RuleType.CSS_SELECTOR:
            return self.document.select_values(rule.selector, rule.attribute)
        if rule.rule_type is RuleType.XPATH:
            converted = xpath_to_selector(rule.selector)
            if converted is None:
                logger.debug(f"Unsupported XPath {rule.selector!r}; returning no matches")
                return []
            selector, attribute = converted
            return self.document.select_values(selector, rule.attribute or attribute)
        if rule.rule_type is RuleType.REGEX:
            return self._regex(rule.selector)
        if rule.rule_type is RuleType.JSON_PATH:
            return self._json_path(rule.selector)
        if rule.rule_type is RuleType.META:
            content = self.document.meta(rule.selector)
            return [content] if content is not None else []
        raise ExtractionError(f"unsupported rule type: {rule.rule_type!r}")

    def _regex(self, pattern: str) -> list[str]:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ExtractionError(f"invalid pattern {pattern!r}: {e}") from e
        out: list[str] = []
        for m in regex.finditer(self.document.html):
            if regex.groups:
                out.extend(g for g in m.groups() if g is not None)
            else:
                out.append(m.group(0))
        return out

    def _json_path(self, path: str) -> list[str]:
        candidates: list[Any] = list(self.document.json_ld)
        for script in self.document.scripts:
            content = (script.content or "").strip()
            if not content.startswith(("{", "[")) or (script.type or "").lower() == "application/ld+json":
                continue
            try:
                candidates.append(json.loads(content))
            except json.JSONDecodeError:
                continue
        for data in candidates:
            values = _json_values(evaluate_json_path(path, data))
            if values:
                return values
        return []

    # ----------------------------- Common ---------------------------------- #

    def extract_common(self) -> dict[str, Union[str, list[str]]]:
        doc = self.document
        out: dict[str, Union[str, list[str]]] = {}
        if doc.title:
            out["title"] = doc.title
        description = doc.meta("description")
        if description is not None:
            out["description"] = description
        keywords = doc.meta("keywords")
        if keywords is not None:
            out["keywords"] = [k.strip() for k in keywords.split(",") if k.strip()]
        for tag in doc.meta_tags:
            if tag.property and tag.property.lower().startswith("og:") and tag.content is not None:
                out.setdefault("og_" + tag.property[3:], tag.content)
            if tag.name and tag.name.lower().startswith("twitter:") and tag.content is not None:
                out.setdefault("twitter_" + tag.name[8:], tag.content)
        if doc.canonical_url:
            out["canonical"] = doc.canonical_url
        return out


# ---------------------------------- Templates ------------------------------ #


def rule_templates() -> list[ExtractionRule]:
    """Ready-made rules for common fields."""
    strip_and_trim = DataTransformation(
        (TransformOperation(TransformKind.STRIP_HTML), TransformOperation(TransformKind.TRIM))
    )
    return [
        ExtractionRule("title", RuleType.CSS_SELECTOR, "title", is_required=True),
        ExtractionRule("description", RuleType.META, "description"),
        ExtractionRule("content", RuleType.CSS_SELECTOR, "article, main, .content, #content", transformation=strip_and_trim),
        ExtractionRule("headings", RuleType.CSS_SELECTOR, "h1, h2, h3"),
        ExtractionRule("paragraphs", RuleType.CSS_SELECTOR, "p"),
        ExtractionRule("emails", RuleType.REGEX, r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
        ExtractionRule("phones", RuleType.REGEX, r"\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}"),
        ExtractionRule("prices", RuleType.REGEX, r"\$[0-9,]+\.?[0-9]*"),
        ExtractionRule("og_image", RuleType.META, "og:image"),
        ExtractionRule("author", RuleType.META, "author"),
    ]
