"""
Audit Orchestrator

Owns the audit state machine: PENDING -> RUNNING -> {COMPLETED | ERROR | FAILED}.

Starting an audit is synchronous and cheap (duplicate check, quota gate,
record creation); the crawl itself runs as a background task per
(site, device) and reports only through the persisted record. Inside one
crawl, pages are scanned sequentially unless ``audit_page_concurrency`` asks
for a small bounded pool; every page gets its own browser context and its
own screenshot budget either way.

Failure handling:
- analyzer failure: logged, that analyzer contributes nothing for the page
- page failure: one system issue plus a degraded PageResult, crawl continues
- job failure: record goes FAILED with a reason, quota is not consumed
"""
import asyncio
import time
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional, Sequence, Set

import aiohttp

from core.config import get_settings
from core.exceptions import DatabaseError
from core.logging import get_logger

from .aggregator import deduplicate_issues
from .analyzers import AnalyzerContext, BaseAnalyzer, ScreenshotBudget, analyze_html, build_analyzers
from .analyzers.structural import extract_page_meta
from .browser import BrowserSessionManager
from .discovery import DiscoveryResult, HttpFetcher, SiteWideChecker, UrlDiscovery
from .exceptions import DiscoveryError, InvalidTransitionError, NavigationError, QuotaExceededError
from .metrics import audit_metrics
from .models import SiteAudit
from .page_capture import PageCaptures, capture_page_evidence
from .quota import SITE_AUDITS, DatabaseQuotaGate, QuotaGate
from .schemas import AuditProgress, Issue, PageResult
from .scoring import calculate_audit_score
from .store import AuditRecordStore
from .types import AuditStatus, DeviceType, IssueSeverity, IssueSource, IssueType

logger = get_logger(__name__, domain="site_audit")

DEFAULT_DEVICES = (DeviceType.DESKTOP, DeviceType.MOBILE)

NO_SITEMAP = "NO_SITEMAP"
MAX_FAILURE_TEXT = 300
PAGE_PHASE_START = 5
PAGE_PHASE_CAP = 85
SITE_CHECK_PERCENT = 90

PROGRESS_LABEL = "siteAudit.progress.{}"


@dataclass
class StartAuditResult:
    """Record handed back to the caller; ``created`` is False for an in-flight duplicate"""

    record: SiteAudit
    created: bool


@dataclass
class PageScan:
    page_result: PageResult
    issues: List[Issue]


@dataclass(frozen=True)
class IssueFix:
    """Canned rewrite applied through the fix channel"""

    issue_key: str
    severity: IssueSeverity
    message: str
    suggestion: Optional[str] = None


FAVICON_FIX = IssueFix(
    issue_key="audit.issues.noFavicon",
    severity=IssueSeverity.PASSED,
    message="audit.issues.faviconGood",
)


def _progress(current_step: int, total_steps: int, percentage: int, label: str, **label_params) -> AuditProgress:
    return AuditProgress(
        current_step=current_step,
        total_steps=total_steps,
        percentage=percentage,
        label_key=PROGRESS_LABEL.format(label),
        label_params=label_params,
    )


def _system_issue(key: str, url: Optional[str], suggestion: Optional[str] = None, details=None,
                  source: IssueSource = IssueSource.SYSTEM) -> Issue:
    return Issue(
        type=IssueType.TECHNICAL,
        severity=IssueSeverity.ERROR,
        message=f"audit.issues.{key}",
        url=url,
        suggestion=suggestion,
        source=source,
        details=details,
    )


class AuditOrchestrator:
    """Starts audits and drives each one to a terminal state"""

    def __init__(
        self,
        store: Optional[AuditRecordStore] = None,
        quota_gate: Optional[QuotaGate] = None,
        discovery: Optional[UrlDiscovery] = None,
        browser_factory: Optional[Callable[[], BrowserSessionManager]] = None,
        analyzer_factory: Optional[Callable[[], List[BaseAnalyzer]]] = None,
        site_checker: Optional[SiteWideChecker] = None,
        fetcher: Optional[HttpFetcher] = None,
        page_screenshots: Optional[bool] = None,
    ):
        settings = get_settings()
        self.store = store or AuditRecordStore()
        self.quota_gate = quota_gate or DatabaseQuotaGate(self.store)
        self.fetcher = fetcher or HttpFetcher()
        self.discovery = discovery or UrlDiscovery(self.fetcher)
        self.site_checker = site_checker or SiteWideChecker(self.fetcher)
        self.browser_factory = browser_factory or BrowserSessionManager
        self.analyzer_factory = analyzer_factory or build_analyzers

        self.max_pages = settings.audit_max_pages
        self.page_concurrency = settings.audit_page_concurrency
        self.max_screenshots = settings.audit_max_element_screenshots
        self.page_screenshots = settings.audit_page_screenshots if page_screenshots is None else page_screenshots

        self._tasks: Set[asyncio.Task] = set()

    # Starting

    async def start_audit(
        self,
        site_id: str,
        site_url: str,
        device: DeviceType,
        account_id: Optional[str] = None,
    ) -> StartAuditResult:
        results = await self.start_site_audits(site_id, site_url, account_id=account_id, devices=(device,))
        return results[0]

    async def start_site_audits(
        self,
        site_id: str,
        site_url: str,
        account_id: Optional[str] = None,
        devices: Sequence[DeviceType] = DEFAULT_DEVICES,
    ) -> List[StartAuditResult]:
        """
        Start one audit job per device

        In-flight (site, device) pairs return their existing record. The quota
        is checked once, and only when at least one new record is needed.

        Raises:
            QuotaExceededError: the gate denied the run; no record was created
        """
        existing = {device: self.store.find_in_flight(site_id, device) for device in devices}

        if any(record is None for record in existing.values()):
            self._enforce_quota(account_id)

        results = []
        for device in devices:
            record = existing[device]
            if record is not None:
                logger.info(f"Audit {record.id} already in flight for site {site_id} ({device.value})")
                results.append(StartAuditResult(record=record, created=False))
                continue

            record = self.store.create(site_id, device, site_url=site_url, account_id=account_id)
            audit_metrics.audit_started(device.value)
            self._spawn(self.run_audit(record.id), name=f"site-audit-{record.id}")
            results.append(StartAuditResult(record=record, created=True))
        return results

    def _enforce_quota(self, account_id: Optional[str]) -> None:
        if account_id is None:
            return
        check = self.quota_gate.check_quota(account_id, SITE_AUDITS)
        if not check.allowed:
            audit_metrics.quota_denied()
            logger.warning(f"Quota denied site audit for account {account_id}")
            raise QuotaExceededError(account_id, SITE_AUDITS, check.usage.model_dump())

    # Background tasks

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_for_background(self, timeout: Optional[float] = None) -> int:
        """Wait for running audit tasks; returns how many are still running"""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(pending)

    # Running

    async def run_audit(self, audit_id: str) -> None:
        """Drive one PENDING audit to a terminal state"""
        record = self.store.require(audit_id)
        device = record.device_type
        log = logger.with_context(audit_id=audit_id, device=device.value)
        started = time.monotonic()

        try:
            status = await self._run(record, log)
        except InvalidTransitionError as e:
            log.warning(f"Audit {audit_id} stopped: {e.message}")
            return
        except DiscoveryError as e:
            log.warning(f"Audit {audit_id} has no page list: {e.message}")
            status = self._record_crash(audit_id, e, log)
        except Exception as e:
            log.error(f"Audit {audit_id} crashed: {e}", exc_info=True)
            status = self._record_crash(audit_id, e, log)

        if status is not None:
            audit_metrics.audit_finished(device.value, status.value, time.monotonic() - started)

    async def _run(self, record: SiteAudit, log) -> AuditStatus:
        audit_id = record.id
        self.store.mark_running(audit_id, _progress(0, 1, 0, "discovering"))
        log.info(f"Audit {audit_id} running for {record.site_url}")

        discovery = await self.discovery.discover(record.site_url)
        if not discovery.has_sitemap:
            self._fail_without_sitemap(record, discovery)
            return AuditStatus.FAILED

        pages = discovery.urls[: self.max_pages]
        total_steps = len(pages) + 3
        self.store.update_progress(
            audit_id,
            _progress(1, total_steps, PAGE_PHASE_START, "discoveredPages", count=len(pages)),
            pages_found=len(pages),
            discovery_method=discovery.method.value,
        )

        scans = await self._scan_pages(record, pages, total_steps)

        site_issues = await self.site_checker.check_robots_and_sitemap(record.site_url)
        self.store.update_progress(
            audit_id, _progress(len(pages) + 2, total_steps, SITE_CHECK_PERCENT, "finalizing")
        )

        issues = deduplicate_issues([issue for scan in scans for issue in scan.issues] + site_issues)
        score = calculate_audit_score(issues)
        self.store.complete(
            audit_id,
            issues,
            [scan.page_result for scan in scans],
            score.score,
            score.category_scores,
            progress=_progress(total_steps, total_steps, 100, "complete"),
        )
        log.info(f"Audit {audit_id} finished: {len(pages)} pages, {len(issues)} issues, score {score.score}")
        return AuditStatus.COMPLETED

    def _fail_without_sitemap(self, record: SiteAudit, discovery: DiscoveryResult) -> None:
        issue = _system_issue("noSitemap", record.site_url, suggestion="audit.suggestions.addSitemap")
        issue.device = record.device_type.value
        progress = _progress(1, 1, 100, "failed")
        progress.failure_reason = NO_SITEMAP
        self.store.fail(
            record.id,
            NO_SITEMAP,
            [issue],
            progress=progress,
            discovery_method=discovery.method.value,
            pages_found=0,
            pages_scanned=0,
        )

    def _record_crash(self, audit_id: str, error: Exception, log) -> Optional[AuditStatus]:
        reason = str(error)[:MAX_FAILURE_TEXT] or "Unknown error"
        issue = _system_issue("auditFailed", None, suggestion=reason)
        progress = _progress(1, 1, 100, "failed")
        progress.failure_reason = reason
        try:
            self.store.fail(audit_id, reason, [issue], status=AuditStatus.FAILED, progress=progress)
        except (InvalidTransitionError, DatabaseError) as e:
            log.error(f"Could not record failure of audit {audit_id}: {e}")
            return None
        return AuditStatus.FAILED

    # Page scanning

    async def _open_browser(self, stack: AsyncExitStack) -> Optional[BrowserSessionManager]:
        try:
            return await stack.enter_async_context(self.browser_factory())
        except Exception as e:
            logger.warning(f"Browser unavailable, scanning with plain fetch: {e}")
            return None

    async def _page_environment(self, stack: AsyncExitStack):
        browser = await self._open_browser(stack)
        analyzers = self.analyzer_factory()
        stack.push_async_callback(self._close_analyzers, analyzers)
        return browser, analyzers

    @staticmethod
    async def _close_analyzers(analyzers: List[BaseAnalyzer]) -> None:
        for analyzer in analyzers:
            try:
                await analyzer.close()
            except Exception as e:
                logger.warning(f"Closing analyzer {analyzer.name} failed: {e}")

    async def _scan_pages(self, record: SiteAudit, pages: List[str], total_steps: int) -> List[PageScan]:
        device = record.device_type
        completed = 0

        async with AsyncExitStack() as stack:
            browser, analyzers = await self._page_environment(stack)

            async def scan_and_record(index: int, url: str) -> PageScan:
                nonlocal completed
                scan = await self.scan_page(browser, analyzers, url, device, index)
                completed += 1
                percentage = min(
                    PAGE_PHASE_CAP,
                    PAGE_PHASE_START + (PAGE_PHASE_CAP - PAGE_PHASE_START) * completed // len(pages),
                )
                progress = _progress(
                    1 + completed, total_steps, percentage, "scanningPage",
                    current=completed, total=len(pages), page=url,
                )
                self.store.append_page(record.id, scan.page_result, scan.issues, progress)
                return scan

            if self.page_concurrency <= 1:
                return [await scan_and_record(index, url) for index, url in enumerate(pages)]

            semaphore = asyncio.Semaphore(self.page_concurrency)

            async def bounded(index: int, url: str) -> PageScan:
                async with semaphore:
                    return await scan_and_record(index, url)

            results = await asyncio.gather(
                *(bounded(index, url) for index, url in enumerate(pages)), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return results

    async def scan_page(
        self,
        browser: Optional[BrowserSessionManager],
        analyzers: List[BaseAnalyzer],
        url: str,
        device: DeviceType,
        index: int = 0,
    ) -> PageScan:
        """Load and analyze one URL; never raises for page-level problems"""
        started = time.monotonic()
        context = AnalyzerContext(
            device=device, budget=ScreenshotBudget(self.max_screenshots), page_index=index
        )

        if browser is None:
            scan = await self._scan_with_fetch(url, analyzers, context)
        else:
            scan = await self._scan_with_browser(browser, url, analyzers, context)

        for issue in scan.issues:
            if not issue.device:
                issue.device = device.value
        scan.page_result.issue_count = len(scan.issues)
        audit_metrics.page_scanned(device.value, time.monotonic() - started)
        return scan

    async def _scan_with_browser(
        self, browser: BrowserSessionManager, url: str, analyzers: List[BaseAnalyzer], context: AnalyzerContext
    ) -> PageScan:
        try:
            async with browser.visit(url, context.device) as visit:
                # Captured before any analyzer applies evidence outlines
                captures = PageCaptures()
                if self.page_screenshots:
                    captures = await capture_page_evidence(visit.page, context.device)
                issues = []
                for analyzer in analyzers:
                    issues.extend(await self._run_analyzer(analyzer, visit, context))
                page_result = PageResult(
                    url=url,
                    status_code=visit.status_code,
                    ttfb=visit.ttfb_ms,
                    js_errors=list(visit.console_errors),
                    broken_resources=list(visit.broken_resources),
                    screenshot=captures.screenshot,
                    screenshots=captures.segments,
                    filmstrip=list(visit.filmstrip),
                    **asdict(context.metrics),
                )
                return PageScan(page_result=page_result, issues=issues)
        except NavigationError as e:
            logger.warning(f"Page load failed for {url}: {e.reason}")
            audit_metrics.page_failed("navigation")
            return self._failed_page(url, "pageLoadFailed", e.reason, status_code=e.page_status_code)
        except Exception as e:
            logger.error(f"Page scan crashed for {url}: {e}")
            audit_metrics.page_failed("crash")
            return self._failed_page(url, "pageLoadFailed", str(e)[:MAX_FAILURE_TEXT])

    async def _scan_with_fetch(
        self, url: str, analyzers: List[BaseAnalyzer], context: AnalyzerContext
    ) -> PageScan:
        try:
            response = await self.fetcher.get(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Fetch failed for {url}: {e}")
            audit_metrics.page_failed("unreachable")
            return self._failed_page(
                url, "siteUnreachable", str(e)[:MAX_FAILURE_TEXT] or "unreachable", source=IssueSource.FETCH
            )

        if not response.ok:
            audit_metrics.page_failed("http_status")
            return self._failed_page(
                url, "pageLoadFailed", f"HTTP {response.status}", status_code=response.status,
                source=IssueSource.FETCH,
            )

        issues = analyze_html(response.text, url, headers=response.headers, ttfb=response.elapsed_ms)
        context.metrics.title, context.metrics.meta_description = extract_page_meta(response.text)
        for analyzer in analyzers:
            if not analyzer.requires_browser:
                issues.extend(await self._run_analyzer(analyzer, url, context, url_only=True))

        page_result = PageResult(
            url=url, status_code=response.status, ttfb=response.elapsed_ms, **asdict(context.metrics)
        )
        return PageScan(page_result=page_result, issues=issues)

    async def _run_analyzer(self, analyzer: BaseAnalyzer, target, context: AnalyzerContext,
                            url_only: bool = False) -> List[Issue]:
        if not analyzer.is_available():
            logger.debug(f"Analyzer {analyzer.name} not available, skipping")
            return []

        url = target if url_only else target.url
        try:
            if url_only:
                run = analyzer.analyze_url(target, context)
            else:
                run = analyzer.analyze(target, context)
            return await asyncio.wait_for(run, timeout=analyzer.get_timeout())
        except asyncio.TimeoutError:
            logger.warning(f"Analyzer {analyzer.name} timed out on {url}")
            audit_metrics.analyzer_failed(analyzer.name)
            return []
        except Exception as e:
            logger.error(f"Analyzer {analyzer.name} failed on {url}: {e}")
            audit_metrics.analyzer_failed(analyzer.name)
            return []

    @staticmethod
    def _failed_page(url: str, key: str, reason: str, status_code: Optional[int] = None,
                     source: IssueSource = IssueSource.SYSTEM) -> PageScan:
        issue = _system_issue(key, url, suggestion="audit.suggestions.checkUrl", details=reason, source=source)
        return PageScan(page_result=PageResult(url=url, status_code=status_code), issues=[issue])

    # Post-run operations

    def apply_fix(
        self,
        audit_id: str,
        issue_key: str,
        severity: IssueSeverity = IssueSeverity.PASSED,
        message: Optional[str] = None,
        suggestion: Optional[str] = None,
        details: Optional[str] = None,
    ) -> int:
        """Rewrite matching issues in place; returns how many were updated"""
        self.store.require(audit_id)
        return self.store.apply_fix(
            audit_id,
            issue_key,
            IssueSeverity(severity).value,
            message=message,
            suggestion=suggestion,
            details=details,
        )

    def apply_favicon_fix(self, audit_id: str, attachment_id: Optional[int] = None) -> int:
        details = f"Favicon set (attachment #{attachment_id})" if attachment_id is not None else None
        return self.apply_fix(
            audit_id,
            FAVICON_FIX.issue_key,
            FAVICON_FIX.severity,
            message=FAVICON_FIX.message,
            suggestion=FAVICON_FIX.suggestion,
            details=details,
        )

    async def rescan_page(self, audit_id: str, url: str) -> SiteAudit:
        """
        Re-run every analyzer for one URL of a completed audit

        That URL's issues and PageResult are replaced and the score is
        recalculated over the merged issue list.

        Raises:
            InvalidTransitionError: the audit is not COMPLETED
        """
        record = self.store.require(audit_id)
        if record.status != AuditStatus.COMPLETED:
            raise InvalidTransitionError(audit_id, record.status.value, "rescan")

        async with AsyncExitStack() as stack:
            browser, analyzers = await self._page_environment(stack)
            scan = await self.scan_page(browser, analyzers, url, record.device_type, index=0)

        issues = [issue for issue in record.get_issues() if issue.url != url] + scan.issues
        score = calculate_audit_score(issues)
        logger.info(f"Rescanned {url} on audit {audit_id}: {len(scan.issues)} issues, score {score.score}")
        return self.store.replace_page(audit_id, scan.page_result, scan.issues, score.score, score.category_scores)
