from __future__ import annotations

import pytest

from sitecrawl.extractor import Extractor, evaluate_json_path, rule_templates, xpath_to_selector
from sitecrawl.models import DataTransformation, ExtractionRule, RuleType, TransformKind, TransformOperation

HTML = """
<html><head>
  <title>Article</title>
  <meta name="author" content="Dana Reyes">
  <meta name="keywords" content="news, local ,weather">
  <meta property="og:image" content="https://img.example.com/a.png">
  <meta name="twitter:site" content="@example">
  <link rel="canonical" href="https://example.com/a">
  <script type="application/ld+json">{"headline": "Storm warning", "tags": ["wx", "alert"]}</script>
  <script>{"config": {"region": "north"}}</script>
</head><body>
  <h1 class="article-title">X</h1>
  <div class="price">Price: 1,299.00 USD</div>
  <a id="next" href="/page/2">Next</a>
  <p>Contact: desk@example.com or tips@example.org</p>
</body></html>
"""


@pytest.fixture
def extractor() -> Extractor:
    return Extractor.from_html(HTML, "https://example.com/a")


def rule(field, rule_type, selector, **kw) -> ExtractionRule:
    return ExtractionRule(field, rule_type, selector, **kw)


def test_css_selector_rule(extractor):
    result = extractor.extract(rule("title", RuleType.CSS_SELECTOR, ".article-title"))
    assert result.success and result.values == ("X",) and result.value == "X"


def test_required_rule_without_match_fails_without_default(extractor):
    result = extractor.extract(rule("sku", RuleType.CSS_SELECTOR, ".sku", is_required=True))
    assert not result.success
    assert result.values == ()
    assert result.error == "Required field not found"


def test_optional_rule_without_match_uses_default(extractor):
    result = extractor.extract(rule("sku", RuleType.CSS_SELECTOR, ".sku", default_value="n/a"))
    assert result.success and result.values == ("n/a",)


def test_optional_rule_without_match_or_default_is_empty(extractor):
    result = extractor.extract(rule("sku", RuleType.CSS_SELECTOR, ".sku"))
    assert result.success and result.values == () and result.value is None


def test_disabled_rules_are_skipped(extractor):
    rules = [
        rule("a", RuleType.CSS_SELECTOR, "h1"),
        rule("b", RuleType.CSS_SELECTOR, ".missing", is_required=True, is_enabled=False),
    ]
    results = extractor.extract_all(rules)
    assert [r.field_name for r in results] == ["a"]


@pytest.mark.parametrize(
    "xpath,expected",
    [
        ("//div[@class='price']", ("div.price", None)),
        ("//a[@id='next']/@href", ("a#next", "href")),
        ("//h1/text()", ("h1", None)),
        ("//input[@type='hidden']", ('input[type="hidden"]', None)),
        ("//img[@alt]", ("img[alt]", None)),
        ("//div/p", None),
        ("//a[contains(@href,'x')]", None),
    ],
)
def test_xpath_conversion(xpath, expected):
    assert xpath_to_selector(xpath) == expected


def test_xpath_rule(extractor):
    assert extractor.extract(rule("next", RuleType.XPATH, "//a[@id='next']/@href")).values == ("/page/2",)
    assert extractor.extract(rule("deep", RuleType.XPATH, "//div/span")).values == ()


def test_regex_rule_returns_groups(extractor):
    result = extractor.extract(rule("emails", RuleType.REGEX, r"([\w.]+)@example\.(com|org)"))
    assert result.values == ("desk", "com", "tips", "org")


def test_invalid_regex_fails_only_that_field(extractor):
    result = extractor.extract(rule("bad", RuleType.REGEX, "(unclosed", default_value="fallback"))
    assert not result.success
    assert result.values == ("fallback",)
    assert "invalid pattern" in result.error


def test_json_path_rule(extractor):
    assert extractor.extract(rule("h", RuleType.JSON_PATH, "$.headline")).values == ("Storm warning",)
    assert extractor.extract(rule("t", RuleType.JSON_PATH, "$.tags[1]")).values == ("alert",)
    assert extractor.extract(rule("r", RuleType.JSON_PATH, "$.config.region")).values == ("north",)


def test_json_path_evaluation():
    data = {"a": {"b": [10, {"c": True}]}}
    assert evaluate_json_path("$.a.b[0]", data) == 10
    assert evaluate_json_path("$.a.b.1.c", data) is True
    assert evaluate_json_path("$.a.z", data) is None
    assert evaluate_json_path("a.b", data) is None


def test_meta_rule(extractor):
    assert extractor.extract(rule("author", RuleType.META, "author")).values == ("Dana Reyes",)
    assert extractor.extract(rule("img", RuleType.META, "og:image")).values == ("https://img.example.com/a.png",)


def test_transformation_pipeline_applies_in_order(extractor):
    transformation = DataTransformation(
        (
            TransformOperation(TransformKind.EXTRACT_NUMBERS),
            TransformOperation(TransformKind.PREFIX, value="$"),
        )
    )
    result = extractor.extract(rule("price", RuleType.CSS_SELECTOR, ".price", transformation=transformation))
    assert result.values == ("$1299.00",)


def test_extract_common(extractor):
    common = extractor.extract_common()
    assert common["title"] == "Article"
    assert common["keywords"] == ["news", "local", "weather"]
    assert common["og_image"] == "https://img.example.com/a.png"
    assert common["twitter_site"] == "@example"
    assert common["canonical"] == "https://example.com/a"


def test_rule_templates_are_usable(extractor):
    templates = rule_templates()
    names = [r.field_name for r in templates]
    assert "title" in names and "emails" in names
    results = {r.field_name: r for r in extractor.extract_all(templates)}
    assert results["title"].values == ("Article",)
    assert set(results["emails"].values) >= {"desk@example.com", "tips@example.org"}
