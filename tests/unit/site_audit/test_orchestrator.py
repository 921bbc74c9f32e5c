"""
Test Audit Orchestrator

End-to-end crawls against fake discovery, browser and analyzers, with the
real record store on an in-memory database.
"""
import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from site_audit.analyzers import BaseAnalyzer
from site_audit.browser import PageVisit
from site_audit.discovery import DiscoveryResult, FetchResponse
from site_audit.exceptions import (
    AuditNotFoundError,
    DiscoveryError,
    InvalidTransitionError,
    NavigationError,
    QuotaExceededError,
)
from site_audit.orchestrator import NO_SITEMAP, AuditOrchestrator, _progress
from site_audit.quota import SITE_AUDITS, DatabaseQuotaGate
from site_audit.schemas import FilmstripFrame, Issue, QuotaCheck, QuotaUsage
from site_audit.scoring import calculate_audit_score
from site_audit.store import AuditRecordStore
from site_audit.types import AuditStatus, DeviceType, DiscoveryMethod, IssueSeverity, IssueSource

HOME = "https://example.com"
ABOUT = "https://example.com/about"
CONTACT = "https://example.com/contact"


class FakeBrowser:
    """Yields a settled PageVisit per URL, or raises the configured failure"""

    def __init__(self, failures=None, page_factory=None, filmstrip=None):
        self.failures = failures or {}
        self.page_factory = page_factory or MagicMock
        self.filmstrip = filmstrip or []
        self.visited = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.closed = True

    @asynccontextmanager
    async def visit(self, url, device=DeviceType.DESKTOP):
        self.visited.append(url)
        if url in self.failures:
            raise self.failures[url]
        yield PageVisit(
            page=self.page_factory(), url=url, device=device, status_code=200, ttfb_ms=120,
            filmstrip=list(self.filmstrip),
        )


class FakeFetcher:
    def __init__(self, routes=None):
        self.routes = routes or {}

    async def get(self, url, timeout=None):
        route = self.routes.get(url, (200, "<html><head><title>Home</title></head><body><h1>Welcome</h1></body></html>"))
        if isinstance(route, Exception):
            raise route
        status, text = route
        return FetchResponse(url=url, status=status, text=text, elapsed_ms=80)


class FindingAnalyzer(BaseAnalyzer):
    name = "finding"
    source = IssueSource.HTML

    def __init__(self, key="audit.issues.noH1", severity=IssueSeverity.ERROR):
        self.key = key
        self.severity = severity

    async def analyze(self, visit, context):
        context.metrics.title = f"Title of {visit.url}"
        return [self.issue(visit.url, self.key, self.severity)]


class ExplodingAnalyzer(BaseAnalyzer):
    name = "exploding"

    async def analyze(self, visit, context):
        raise RuntimeError("analyzer bug")


class SlowAnalyzer(BaseAnalyzer):
    name = "slow"
    timeout = 0.01

    async def analyze(self, visit, context):
        await asyncio.sleep(1)
        return [self.issue(visit.url, "audit.issues.never", IssueSeverity.ERROR)]


class UrlOnlyAnalyzer(BaseAnalyzer):
    name = "url_only"
    source = IssueSource.PSI
    requires_browser = False

    async def analyze(self, visit, context):
        return await self.analyze_url(visit.url, context)

    async def analyze_url(self, url, context):
        context.metrics.performance_score = 77
        return [self.issue(url, "audit.issues.psiScoreModerate", IssueSeverity.WARNING, type="performance")]


class RecordingStore(AuditRecordStore):
    """Keeps every progress percentage written during a crawl"""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.percentages = []
        self.page_steps = []

    def update_progress(self, audit_id, progress, **fields):
        self.percentages.append(progress.percentage)
        return super().update_progress(audit_id, progress, **fields)

    def append_page(self, audit_id, page_result, issues, progress=None):
        if progress is not None:
            self.percentages.append(progress.percentage)
            self.page_steps.append(progress)
        return super().append_page(audit_id, page_result, issues, progress)


def site_wide_issues():
    return [Issue(message="audit.issues.robotsTxtFound", severity="passed", source="html")]


def make_orchestrator(
    store,
    pages=(HOME, ABOUT),
    has_sitemap=True,
    browser=None,
    browser_factory=None,
    analyzers=None,
    quota_gate=None,
    fetcher=None,
    page_screenshots=None,
):
    discovery = MagicMock()
    discovery.discover = AsyncMock(
        return_value=DiscoveryResult(
            urls=list(pages),
            method=DiscoveryMethod.SITEMAP if has_sitemap else DiscoveryMethod.HOMEPAGE,
            has_sitemap=has_sitemap,
        )
    )
    site_checker = MagicMock()
    site_checker.check_robots_and_sitemap = AsyncMock(side_effect=lambda url: site_wide_issues())
    browser = browser or FakeBrowser()
    analyzers = [FindingAnalyzer()] if analyzers is None else analyzers

    return AuditOrchestrator(
        store=store,
        quota_gate=quota_gate,
        discovery=discovery,
        browser_factory=browser_factory or (lambda: browser),
        analyzer_factory=lambda: list(analyzers),
        site_checker=site_checker,
        fetcher=fetcher or FakeFetcher(),
        page_screenshots=page_screenshots,
    )


async def run_to_end(orchestrator, device=DeviceType.DESKTOP, account_id=None):
    started = await orchestrator.start_audit("site-1", HOME, device, account_id=account_id)
    assert await orchestrator.wait_for_background(timeout=5) == 0
    return orchestrator.store.require(started.record.id)


class TestStartAudit:
    @pytest.mark.asyncio
    async def test_returns_pending_record_immediately(self, store):
        orchestrator = make_orchestrator(store)

        started = await orchestrator.start_audit("site-1", HOME, DeviceType.DESKTOP)

        assert started.created is True
        assert started.record.status == AuditStatus.PENDING
        assert orchestrator.pending_tasks == 1
        await orchestrator.wait_for_background(timeout=5)

    @pytest.mark.asyncio
    async def test_in_flight_duplicate_returns_same_record(self, store):
        orchestrator = make_orchestrator(store)

        first = await orchestrator.start_audit("site-1", HOME, DeviceType.DESKTOP)
        second = await orchestrator.start_audit("site-1", HOME, DeviceType.DESKTOP)

        assert second.created is False
        assert second.record.id == first.record.id
        assert len(store.list_for_site("site-1")) == 1
        await orchestrator.wait_for_background(timeout=5)

    @pytest.mark.asyncio
    async def test_one_job_per_device(self, store):
        orchestrator = make_orchestrator(store)

        results = await orchestrator.start_site_audits("site-1", HOME)
        await orchestrator.wait_for_background(timeout=5)

        devices = {store.require(r.record.id).device_type for r in results}
        assert devices == {DeviceType.DESKTOP, DeviceType.MOBILE}

    @pytest.mark.asyncio
    async def test_quota_denial_creates_no_records(self, store):
        gate = MagicMock()
        gate.check_quota.return_value = QuotaCheck(
            allowed=False,
            resource_key=SITE_AUDITS,
            usage=QuotaUsage(used=10, limit=10, remaining=0, is_limit_reached=True, percent_used=100),
        )
        orchestrator = make_orchestrator(store, quota_gate=gate)

        with pytest.raises(QuotaExceededError) as exc_info:
            await orchestrator.start_site_audits("site-1", HOME, account_id="acct-1")

        assert exc_info.value.status_code == 403
        assert exc_info.value.to_dict()["usage"]["limit"] == 10
        assert store.list_for_site("site-1") == []
        assert orchestrator.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_no_quota_check_without_account(self, store):
        gate = MagicMock()
        orchestrator = make_orchestrator(store, quota_gate=gate)

        await run_to_end(orchestrator)

        gate.check_quota.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_audit_does_not_consume_quota(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 1)
        orchestrator = make_orchestrator(store, has_sitemap=False, quota_gate=gate)

        failed = await run_to_end(orchestrator, account_id="acct-1")
        second = await orchestrator.start_audit("site-1", HOME, DeviceType.DESKTOP, account_id="acct-1")
        await orchestrator.wait_for_background(timeout=5)

        assert failed.status == AuditStatus.FAILED
        assert second.created is True


class TestProgress:
    def test_page_label_params_may_use_any_name(self):
        progress = _progress(2, 5, 40, "scanningPage", current=1, total=2, page=HOME)

        assert (progress.current_step, progress.total_steps, progress.percentage) == (2, 5, 40)
        assert progress.label_key == "siteAudit.progress.scanningPage"
        assert progress.label_params == {"current": 1, "total": 2, "page": HOME}


class TestCrawl:
    @pytest.mark.asyncio
    async def test_completed_audit(self, store):
        orchestrator = make_orchestrator(store)

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        assert record.pages_found == 2
        assert record.pages_scanned == 2
        assert record.discovery_method == "sitemap"
        assert record.progress["percentage"] == 100
        assert record.progress["label_key"] == "siteAudit.progress.complete"
        issues = record.get_issues()
        assert {(i.message, i.url) for i in issues} == {
            ("audit.issues.noH1", HOME),
            ("audit.issues.noH1", ABOUT),
            ("audit.issues.robotsTxtFound", None),
        }
        assert record.score == calculate_audit_score(issues).score
        assert record.category_scores["technical"] == 80

    @pytest.mark.asyncio
    async def test_page_results_and_device_tags(self, store):
        orchestrator = make_orchestrator(store)

        record = await run_to_end(orchestrator, device=DeviceType.MOBILE)

        pages = record.get_page_results()
        assert [p.url for p in pages] == [HOME, ABOUT]
        assert pages[0].status_code == 200
        assert pages[0].ttfb == 120
        assert pages[0].title == f"Title of {HOME}"
        assert pages[0].issue_count == 1
        assert {i.device for i in record.get_issues() if i.url} == {"mobile"}

    @pytest.mark.asyncio
    async def test_page_screenshots_attached(self, store):
        def screenshot_page():
            page = MagicMock()
            page.screenshot = AsyncMock(return_value=b"jpeg")
            page.evaluate = AsyncMock(return_value=2000)
            page.wait_for_timeout = AsyncMock()
            return page

        frames = [
            FilmstripFrame(stage="domcontentloaded", image="ZGNs"),
            FilmstripFrame(stage="networkidle", image="bmk="),
        ]
        browser = FakeBrowser(page_factory=screenshot_page, filmstrip=frames)
        orchestrator = make_orchestrator(store, pages=(HOME,), browser=browser, page_screenshots=True)

        record = await run_to_end(orchestrator)

        page = record.get_page_results()[0]
        assert page.screenshot == "anBlZw=="
        # 2000px page at the 1080px desktop viewport
        assert page.screenshots == ["anBlZw==", "anBlZw=="]
        assert [frame.stage for frame in page.filmstrip] == ["domcontentloaded", "networkidle"]
        assert record.status == AuditStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_page_screenshots_disabled(self, store):
        orchestrator = make_orchestrator(store, pages=(HOME,), page_screenshots=False)

        record = await run_to_end(orchestrator)

        page = record.get_page_results()[0]
        assert page.screenshot is None
        assert page.screenshots == []

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, session_factory):
        store = RecordingStore(session_factory)
        orchestrator = make_orchestrator(store)

        await run_to_end(orchestrator)

        assert store.percentages == [5, 45, 85, 90]

    @pytest.mark.asyncio
    async def test_page_steps_carry_page_counts(self, session_factory):
        store = RecordingStore(session_factory)
        orchestrator = make_orchestrator(store)

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        assert [(s.current_step, s.total_steps) for s in store.page_steps] == [(2, 5), (3, 5)]
        assert [s.label_params for s in store.page_steps] == [
            {"current": 1, "total": 2, "page": HOME},
            {"current": 2, "total": 2, "page": ABOUT},
        ]
        assert store.page_steps[0].label_key == "siteAudit.progress.scanningPage"

    @pytest.mark.asyncio
    async def test_no_sitemap_fails_the_audit(self, store):
        browser = FakeBrowser()
        orchestrator = make_orchestrator(store, pages=(HOME,), has_sitemap=False, browser=browser)

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.FAILED
        assert record.failure_reason == NO_SITEMAP
        assert record.pages_scanned == 0
        assert record.progress["failure_reason"] == NO_SITEMAP
        issues = record.get_issues()
        assert [i.message for i in issues] == ["audit.issues.noSitemap"]
        assert issues[0].suggestion == "audit.suggestions.addSitemap"
        assert issues[0].device == "desktop"
        assert browser.visited == []

    @pytest.mark.asyncio
    async def test_unreachable_page_does_not_stop_the_crawl(self, store):
        browser = FakeBrowser(failures={ABOUT: NavigationError(ABOUT, "net::ERR_NAME_NOT_RESOLVED")})
        orchestrator = make_orchestrator(store, pages=(HOME, ABOUT, CONTACT), browser=browser)

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        assert record.pages_scanned == 3
        failed = next(i for i in record.get_issues() if i.message == "audit.issues.pageLoadFailed")
        assert failed.url == ABOUT
        assert failed.severity == "error"
        assert failed.source == "system"
        about = next(p for p in record.get_page_results() if p.url == ABOUT)
        assert about.status_code is None
        assert ("audit.issues.noH1", CONTACT) in {(i.message, i.url) for i in record.get_issues()}

    @pytest.mark.asyncio
    async def test_http_error_status_is_kept_on_the_page(self, store):
        browser = FakeBrowser(failures={ABOUT: NavigationError(ABOUT, "HTTP 503", status_code=503)})
        orchestrator = make_orchestrator(store, browser=browser)

        record = await run_to_end(orchestrator)

        about = next(p for p in record.get_page_results() if p.url == ABOUT)
        assert about.status_code == 503

    @pytest.mark.asyncio
    async def test_unexpected_page_error_is_contained(self, store):
        browser = FakeBrowser(failures={HOME: RuntimeError("Target page, context or browser has been closed")})
        orchestrator = make_orchestrator(store, browser=browser)

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        failed = next(i for i in record.get_issues() if i.message == "audit.issues.pageLoadFailed")
        assert "has been closed" in failed.details.text

    @pytest.mark.asyncio
    async def test_failing_analyzer_is_isolated(self, store):
        orchestrator = make_orchestrator(
            store, pages=(HOME,), analyzers=[ExplodingAnalyzer(), SlowAnalyzer(), FindingAnalyzer()]
        )

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        page_issues = [i.message for i in record.get_issues() if i.url]
        assert page_issues == ["audit.issues.noH1"]

    @pytest.mark.asyncio
    async def test_bounded_concurrency_scans_every_page(self, store):
        pages = tuple(f"{HOME}/p{n}" for n in range(5))
        orchestrator = make_orchestrator(store, pages=(HOME,) + pages)
        orchestrator.page_concurrency = 3

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        assert record.pages_scanned == 6
        assert record.progress["percentage"] == 100

    @pytest.mark.asyncio
    async def test_max_pages_caps_the_crawl(self, store):
        pages = tuple(f"{HOME}/p{n}" for n in range(10))
        browser = FakeBrowser()
        orchestrator = make_orchestrator(store, pages=pages, browser=browser)
        orchestrator.max_pages = 4

        record = await run_to_end(orchestrator)

        assert record.pages_found == 4
        assert len(browser.visited) == 4

    @pytest.mark.asyncio
    async def test_browser_is_closed_after_crawl(self, store):
        browser = FakeBrowser()
        orchestrator = make_orchestrator(store, browser=browser)

        await run_to_end(orchestrator)

        assert browser.closed is True

    @pytest.mark.asyncio
    async def test_crash_marks_the_record_failed(self, store):
        orchestrator = make_orchestrator(store)
        orchestrator.discovery.discover = AsyncMock(side_effect=RuntimeError("resolver exploded"))

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.FAILED
        assert record.failure_reason == "resolver exploded"
        issue = record.get_issues()[0]
        assert issue.message == "audit.issues.auditFailed"
        assert issue.suggestion == "resolver exploded"

    @pytest.mark.asyncio
    async def test_discovery_error_marks_the_record_failed(self, store):
        orchestrator = make_orchestrator(store)
        orchestrator.discovery.discover = AsyncMock(side_effect=DiscoveryError("https://", "no host in site URL"))

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.FAILED
        assert "no host in site URL" in record.failure_reason


class TestFetchFallback:
    @pytest.mark.asyncio
    async def test_scans_with_plain_fetch_when_browser_is_missing(self, store):
        fetcher = FakeFetcher({ABOUT: (404, "Not Found"), CONTACT: aiohttp.ClientConnectionError("reset")})
        orchestrator = make_orchestrator(
            store,
            pages=(HOME, ABOUT, CONTACT),
            browser_factory=MagicMock(side_effect=RuntimeError("Executable doesn't exist")),
            analyzers=[FindingAnalyzer(), UrlOnlyAnalyzer()],
            fetcher=fetcher,
        )

        record = await run_to_end(orchestrator)

        assert record.status == AuditStatus.COMPLETED
        by_key = {(i.message, i.url): i for i in record.get_issues()}
        # Browser-only analyzers are skipped; URL-only ones still run
        assert ("audit.issues.noH1", HOME) not in by_key
        assert ("audit.issues.psiScoreModerate", HOME) in by_key
        assert by_key[("audit.issues.pageLoadFailed", ABOUT)].source == "fetch"
        assert by_key[("audit.issues.siteUnreachable", CONTACT)].source == "fetch"

        pages = {p.url: p for p in record.get_page_results()}
        assert pages[HOME].title == "Home"
        assert pages[HOME].performance_score == 77
        assert pages[ABOUT].status_code == 404


class TestPostRun:
    @pytest.mark.asyncio
    async def test_rescan_replaces_one_page(self, store):
        browser = FakeBrowser(failures={ABOUT: NavigationError(ABOUT, "timeout")})
        orchestrator = make_orchestrator(store, browser=browser)
        record = await run_to_end(orchestrator)
        browser.failures.clear()

        updated = await orchestrator.rescan_page(record.id, ABOUT)

        pairs = {(i.message, i.url) for i in updated.get_issues()}
        assert ("audit.issues.pageLoadFailed", ABOUT) not in pairs
        assert ("audit.issues.noH1", ABOUT) in pairs
        assert ("audit.issues.noH1", HOME) in pairs
        assert {p.url: p.status_code for p in updated.get_page_results()}[ABOUT] == 200
        assert updated.score == calculate_audit_score(updated.get_issues()).score

    @pytest.mark.asyncio
    async def test_rescan_requires_completed_audit(self, store):
        orchestrator = make_orchestrator(store)
        record = store.create("site-1", DeviceType.DESKTOP, site_url=HOME)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.rescan_page(record.id, HOME)

    @pytest.mark.asyncio
    async def test_favicon_fix(self, store):
        orchestrator = make_orchestrator(
            store, analyzers=[FindingAnalyzer("audit.issues.noFavicon", IssueSeverity.WARNING)]
        )
        record = await run_to_end(orchestrator)

        updated = orchestrator.apply_favicon_fix(record.id, attachment_id=42)

        issues = store.require(record.id).get_issues()
        assert updated == 2
        assert "audit.issues.noFavicon" not in {i.message for i in issues}
        fixed = [i for i in issues if i.message == "audit.issues.faviconGood"]
        assert all(i.severity == "passed" for i in fixed)
        assert fixed[0].details.text == "Favicon set (attachment #42)"

    def test_fix_on_unknown_audit(self, store):
        orchestrator = make_orchestrator(store)

        with pytest.raises(AuditNotFoundError):
            orchestrator.apply_fix("missing", "audit.issues.noFavicon")
