from __future__ import annotations

import asyncio
import dataclasses

import pytest

from conftest import fixture_site, html_page, make_transport
from sitecrawl.checkpoint import load_checkpoint
from sitecrawl.config import CrawlConfig
from sitecrawl.crawler import Crawler
from sitecrawl.errors import AlreadyRunningError, InvalidURLError
from sitecrawl.events import CrawlListener
from sitecrawl.models import CrawlStatus, CrawlStrategy, ExtractionRule, LinkType, RuleType, UrlCategory


class Recorder(CrawlListener):
    def __init__(self) -> None:
        self.pages = []
        self.queued = []
        self.files = []
        self.skipped = []
        self.errors = []
        self.completed = []

    def on_page_scraped(self, page):
        self.pages.append(page)

    def on_url_queued(self, queued):
        self.queued.append(queued)

    def on_file_discovered(self, event):
        self.files.append(event)

    def on_url_skipped(self, url, reason):
        self.skipped.append((url, reason))

    def on_error(self, event):
        self.errors.append(event)

    def on_complete(self, progress):
        self.completed.append(progress)


@pytest.mark.asyncio
async def test_crawl_fixture_site_scrapes_root_and_three_internal_pages(fast_config):
    calls: list[str] = []
    recorder = Recorder()
    crawler = Crawler(fast_config, transport=make_transport(fixture_site(), calls), listeners=[recorder])

    result = await crawler.crawl("http://example.com/")

    assert result.status is CrawlStatus.COMPLETED
    assert sorted(p.url for p in result.pages) == [
        "http://example.com/",
        "http://example.com/about",
        "http://example.com/blog",
        "http://example.com/contact?a=1&b=2",
    ]
    assert result.progress.pages_scraped == 4
    assert result.progress.errors == 0
    assert "https://external.org/page" in result.external_urls
    assert not any("external.org" in c for c in calls)
    assert not any(c.endswith("report.pdf") for c in calls)

    root = next(p for p in result.pages if p.depth == 0)
    external = [link for link in root.links if link.link_type is LinkType.EXTERNAL]
    assert len(external) == 1
    assert external[0].url == "https://external.org/page"
    assert external[0].was_followed is False
    assert recorder.completed and recorder.completed[0].status is CrawlStatus.COMPLETED


@pytest.mark.asyncio
async def test_crawl_classifies_links_and_reports_downloadable_files(fast_config):
    recorder = Recorder()
    crawler = Crawler(fast_config, transport=make_transport(fixture_site()), listeners=[recorder])

    result = await crawler.crawl("http://example.com/")

    root = next(p for p in result.pages if p.depth == 0)
    types = {link.link_type for link in root.links}
    assert {LinkType.INTERNAL, LinkType.EXTERNAL, LinkType.MAILTO, LinkType.ANCHOR, LinkType.DOWNLOAD} <= types
    assert root.title == "Fixture Home"
    assert root.meta_description == "A small fixture site"
    assert root.meta_keywords == ("alpha", "beta")
    assert [s.url for s in root.stylesheets] == ["http://example.com/static/site.css"]

    discovered = {(f.url, f.category) for f in recorder.files}
    assert ("http://example.com/img/logo.png", UrlCategory.IMAGE) in discovered
    assert ("http://example.com/files/report.pdf", UrlCategory.PDF) in discovered
    assert not any(f.category is UrlCategory.STYLESHEET for f in recorder.files)
    assert result.progress.files_discovered == len(recorder.files)


@pytest.mark.asyncio
async def test_css_rule_extracts_article_title(fast_config):
    rule = ExtractionRule("headline", RuleType.CSS_SELECTOR, ".article-title", is_required=True)
    cfg = dataclasses.replace(fast_config, max_depth=0, extraction_rules=(rule,))
    crawler = Crawler(cfg, transport=make_transport(fixture_site()))

    result = await crawler.crawl("http://example.com/")

    assert len(result.pages) == 1
    page = result.pages[0]
    assert page.extracted_data["headline"] == ("X",)
    assert page.failed_fields == ()


@pytest.mark.asyncio
async def test_missing_required_field_is_recorded_as_failed(fast_config):
    rule = ExtractionRule("price", RuleType.CSS_SELECTOR, ".price", is_required=True)
    cfg = dataclasses.replace(fast_config, max_depth=0, extraction_rules=(rule,))

    result = await Crawler(cfg, transport=make_transport(fixture_site())).crawl("http://example.com/")

    assert result.pages[0].failed_fields == ("price",)
    assert result.status is CrawlStatus.COMPLETED


@pytest.mark.asyncio
async def test_breadth_first_and_depth_first_ordering(fast_config):
    async def order(strategy):
        cfg = dataclasses.replace(fast_config, strategy=strategy, max_concurrent_requests=1)
        result = await Crawler(cfg, transport=make_transport(fixture_site())).crawl("http://example.com/")
        return [p.url.rsplit("/", 1)[-1] for p in result.pages]

    assert await order(CrawlStrategy.BREADTH_FIRST) == ["", "about", "blog", "contact?a=1&b=2"]
    assert await order(CrawlStrategy.DEPTH_FIRST) == ["", "contact?a=1&b=2", "blog", "about"]


@pytest.mark.asyncio
async def test_max_pages_caps_the_crawl(fast_config):
    cfg = dataclasses.replace(fast_config, max_pages=2)
    result = await Crawler(cfg, transport=make_transport(fixture_site())).crawl("http://example.com/")

    assert result.progress.pages_scraped == 2
    assert result.status is CrawlStatus.COMPLETED


@pytest.mark.asyncio
async def test_robots_disallow_skips_page(fast_config):
    site = fixture_site()
    site["/robots.txt"] = (200, {"Content-Type": "text/plain"}, "User-agent: *\nDisallow: /blog\n")
    recorder = Recorder()

    result = await Crawler(fast_config, transport=make_transport(site), listeners=[recorder]).crawl(
        "http://example.com/"
    )

    assert "http://example.com/blog" not in {p.url for p in result.pages}
    assert ("http://example.com/blog", "robots") in recorder.skipped
    assert result.progress.pages_scraped == 3


@pytest.mark.asyncio
async def test_robots_ignored_when_disabled(fast_config):
    site = fixture_site()
    site["/robots.txt"] = (200, {"Content-Type": "text/plain"}, "User-agent: *\nDisallow: /\n")
    cfg = dataclasses.replace(fast_config, respect_robots_txt=False)

    result = await Crawler(cfg, transport=make_transport(site)).crawl("http://example.com/")

    assert result.progress.pages_scraped == 4


@pytest.mark.asyncio
async def test_blacklist_filters_urls(fast_config):
    cfg = dataclasses.replace(fast_config, url_blacklist=(r"/contact",))
    result = await Crawler(cfg, transport=make_transport(fixture_site())).crawl("http://example.com/")

    assert {p.url for p in result.pages} == {
        "http://example.com/",
        "http://example.com/about",
        "http://example.com/blog",
    }


@pytest.mark.asyncio
async def test_page_errors_are_counted_without_failing_the_crawl(fast_config):
    site = fixture_site()
    site["/about"] = (500, {"Content-Type": "text/html"}, "boom")
    recorder = Recorder()

    result = await Crawler(fast_config, transport=make_transport(site), listeners=[recorder]).crawl(
        "http://example.com/"
    )

    assert result.status is CrawlStatus.COMPLETED
    assert result.progress.errors == 1
    assert result.progress.pages_scraped == 3
    assert recorder.errors[0].url == "http://example.com/about"
    assert recorder.errors[0].status_code == 500


@pytest.mark.asyncio
async def test_crawl_fails_when_no_page_succeeds(fast_config):
    result = await Crawler(fast_config, transport=make_transport({})).crawl("http://example.com/")

    assert result.status is CrawlStatus.FAILED
    assert result.progress.pages_scraped == 0
    assert result.progress.errors == 1


@pytest.mark.asyncio
async def test_invalid_start_url_is_rejected(fast_config):
    with pytest.raises(InvalidURLError):
        await Crawler(fast_config).crawl("ftp://example.com/")


@pytest.mark.asyncio
async def test_redirect_to_visited_page_is_not_scraped_twice(fast_config):
    site = fixture_site()
    site["/blog"] = (301, {"Location": "/about"}, "")

    result = await Crawler(
        dataclasses.replace(fast_config, max_concurrent_requests=1), transport=make_transport(site)
    ).crawl("http://example.com/")

    finals = [p.final_url for p in result.pages]
    assert finals.count("http://example.com/about") == 1


@pytest.mark.asyncio
async def test_redirect_target_is_removed_from_frontier(fast_config):
    site = fixture_site()
    site["/about"] = (301, {"Location": "/blog"}, "")
    crawler = Crawler(dataclasses.replace(fast_config, max_concurrent_requests=1), transport=make_transport(site))
    recorder = Recorder()
    pending_at_redirect = []

    class FrontierWatcher(CrawlListener):
        def on_page_scraped(self, page):
            if page.url == "http://example.com/about":
                pending_at_redirect.extend(q.url for q in crawler.frontier)

    crawler.add_listener(recorder)
    crawler.add_listener(FrontierWatcher())
    result = await crawler.crawl("http://example.com/")

    assert "http://example.com/contact?a=1&b=2" in pending_at_redirect
    assert "http://example.com/blog" not in pending_at_redirect
    assert [p.final_url for p in result.pages].count("http://example.com/blog") == 1
    assert result.progress.pages_scraped == 3
    assert not any(url == "http://example.com/blog" for url, _ in recorder.skipped)


@pytest.mark.asyncio
async def test_filters_match_the_normalized_link(fast_config):
    cfg = dataclasses.replace(fast_config, url_blacklist=(r"\?a=1&b=2$",))
    recorder = Recorder()
    crawler = Crawler(cfg, transport=make_transport(fixture_site()), listeners=[recorder])

    result = await crawler.crawl("http://example.com/")

    root = next(p for p in result.pages if p.depth == 0)
    contact = next(link for link in root.links if "contact" in link.url)
    assert contact.was_followed is False
    assert not any("contact" in q.url for q in recorder.queued)
    assert not any("contact" in url for url, _ in recorder.skipped)
    assert crawler.passes_filters("http://EXAMPLE.com/contact?b=2&a=1") is False
    assert result.progress.pages_scraped == 3


@pytest.mark.asyncio
async def test_stop_is_cooperative(fast_config):
    cfg = dataclasses.replace(fast_config, max_concurrent_requests=1)
    crawler = Crawler(cfg, transport=make_transport(fixture_site()))

    class StopAfterFirst(CrawlListener):
        async def on_page_scraped(self, page):
            await crawler.stop()

    crawler.add_listener(StopAfterFirst())
    result = await crawler.crawl("http://example.com/")

    assert result.progress.pages_scraped == 1
    assert result.progress.stopped_early is True
    assert result.status is CrawlStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_and_resume(fast_config):
    cfg = dataclasses.replace(fast_config, max_concurrent_requests=1)
    crawler = Crawler(cfg, transport=make_transport(fixture_site()))
    seen_status = []

    async def resume_later():
        await asyncio.sleep(0.05)
        seen_status.append(crawler.status)
        await crawler.resume()

    class PauseOnRoot(CrawlListener):
        async def on_page_scraped(self, page):
            if page.depth == 0:
                await crawler.pause()
                asyncio.get_running_loop().create_task(resume_later())

    crawler.add_listener(PauseOnRoot())
    result = await crawler.crawl("http://example.com/")

    assert seen_status == [CrawlStatus.PAUSED]
    assert result.progress.pages_scraped == 4


@pytest.mark.asyncio
async def test_update_config_rejected_while_running(fast_config):
    crawler = Crawler(dataclasses.replace(fast_config, max_concurrent_requests=1), transport=make_transport(fixture_site()))
    raised = []

    class Reconfigure(CrawlListener):
        def on_page_scraped(self, page):
            try:
                crawler.update_config(CrawlConfig())
            except AlreadyRunningError:
                raised.append(page.url)

    crawler.add_listener(Reconfigure())
    await crawler.crawl("http://example.com/")

    assert raised
    crawler.update_config(dataclasses.replace(fast_config, max_depth=0))
    assert crawler.config.max_depth == 0


@pytest.mark.asyncio
async def test_listener_failure_does_not_stop_crawl(fast_config):
    class Broken(CrawlListener):
        def on_page_scraped(self, page):
            raise RuntimeError("listener bug")

    result = await Crawler(fast_config, transport=make_transport(fixture_site()), listeners=[Broken()]).crawl(
        "http://example.com/"
    )

    assert result.progress.pages_scraped == 4


@pytest.mark.asyncio
async def test_checkpoint_and_resume(fast_config, tmp_path):
    path = tmp_path / "checkpoint.json"
    first = Crawler(dataclasses.replace(fast_config, max_pages=1), transport=make_transport(fixture_site()), checkpoint_path=path)
    await first.crawl("http://example.com/")

    checkpoint = load_checkpoint(path)
    assert checkpoint is not None
    assert checkpoint.visited == ["http://example.com/"]
    assert len(checkpoint.pending) == 3

    second = Crawler(fast_config, transport=make_transport(fixture_site()))
    result = await second.crawl("http://example.com/", resume_from=checkpoint)

    assert result.progress.pages_scraped == 4
    assert "http://example.com/" not in {p.url for p in result.pages}


@pytest.mark.asyncio
async def test_sitemap_seeding(fast_config):
    site = {
        "/": html_page("Home", "home"),
        "/robots.txt": (200, {"Content-Type": "text/plain"}, "User-agent: *\nAllow: /\nSitemap: http://example.com/sm.xml\n"),
        "/sm.xml": (
            200,
            {"Content-Type": "application/xml"},
            '<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>http://example.com/hidden</loc></url>"
            "<url><loc>http://other.net/elsewhere</loc></url></urlset>",
        ),
        "/hidden": html_page("Hidden", "hidden"),
    }
    cfg = dataclasses.replace(fast_config, seed_from_sitemaps=True)

    result = await Crawler(cfg, transport=make_transport(site)).crawl("http://example.com/")

    assert "http://example.com/hidden" in {p.url for p in result.pages}
    assert not any("other.net" in p.url for p in result.pages)


@pytest.mark.asyncio
async def test_crawl_local_files(tmp_path, fast_config):
    (tmp_path / "index.html").write_text(
        '<html><head><title>Local</title></head><body><a href="page2.html">Next</a></body></html>', encoding="utf-8"
    )
    (tmp_path / "page2.html").write_text("<html><head><title>Two</title></head><body>hi</body></html>", encoding="utf-8")

    result = await Crawler(fast_config).crawl((tmp_path / "index.html").as_uri())

    assert sorted(p.title for p in result.pages) == ["Local", "Two"]
