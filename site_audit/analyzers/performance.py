"""
Performance analyzer - Google PageSpeed Insights v5

Fetches the lab performance score and Core Web Vitals for a page and maps
them onto good / needs-work / poor issues. PSI is slow and rate limited, so
only the first few pages of an audit are sent and any API failure simply
yields no issues.

Timeout: 45s per request, one retry
Cost: Free (25k requests/day with a key)
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from core.config import get_settings
from core.exceptions import ExternalAPIError
from core.logging import get_logger
from site_audit.schemas import Issue
from site_audit.types import DeviceType, IssueSeverity, IssueSource, IssueType

from .base import AnalyzerContext, BaseAnalyzer

logger = get_logger(__name__, domain="site_audit")

RUN_PAGESPEED_PATH = "/pagespeedonline/v5/runPagespeed"


@dataclass
class PsiResult:
    score: int
    lcp: Optional[float] = None
    cls: Optional[float] = None
    inp: Optional[int] = None
    fcp: Optional[float] = None
    speed_index: Optional[float] = None
    tbt: Optional[int] = None
    issues: List[Issue] = field(default_factory=list)


def _numeric(audits: Dict[str, Any], key: str) -> Optional[float]:
    value = (audits.get(key) or {}).get("numericValue")
    return value if value else None


def _psi_issue(url, severity, key, details, suggestion=None) -> Issue:
    return Issue(
        type=IssueType.PERFORMANCE,
        severity=severity,
        message=f"audit.issues.{key}",
        url=url,
        suggestion=f"audit.suggestions.{suggestion}" if suggestion else None,
        source=IssueSource.PSI,
        details=details,
    )


def parse_psi_response(data: Dict[str, Any], url: str) -> Optional[PsiResult]:
    """Score, vitals and issues from a runPagespeed payload; None without a lighthouse result"""
    lighthouse = data.get("lighthouseResult")
    if not lighthouse:
        return None

    audits = lighthouse.get("audits") or {}
    raw_score = ((lighthouse.get("categories") or {}).get("performance") or {}).get("score") or 0
    score = round(raw_score * 100)

    lcp_ms = _numeric(audits, "largest-contentful-paint")
    lcp = round(lcp_ms) / 1000 if lcp_ms else None
    cls = (audits.get("cumulative-layout-shift") or {}).get("numericValue")
    inp_ms = _numeric(audits, "interaction-to-next-paint")
    inp = round(inp_ms) if inp_ms else None
    fcp_ms = _numeric(audits, "first-contentful-paint")
    si_ms = _numeric(audits, "speed-index")
    tbt_ms = _numeric(audits, "total-blocking-time")

    issues = []
    if score < 50:
        issues.append(_psi_issue(url, IssueSeverity.ERROR, "psiScoreLow", f"{score}/100", "improvePageSpeed"))
    elif score < 90:
        issues.append(_psi_issue(url, IssueSeverity.WARNING, "psiScoreModerate", f"{score}/100", "improvePageSpeed"))
    else:
        issues.append(_psi_issue(url, IssueSeverity.PASSED, "psiScoreGood", f"{score}/100"))

    # LCP: good <= 2.5s, poor > 4s
    if lcp is not None:
        if lcp > 4:
            issues.append(_psi_issue(url, IssueSeverity.ERROR, "lcpPoor", f"{lcp:.1f}s", "improveLcp"))
        elif lcp > 2.5:
            issues.append(_psi_issue(url, IssueSeverity.WARNING, "lcpNeedsWork", f"{lcp:.1f}s", "improveLcp"))
        else:
            issues.append(_psi_issue(url, IssueSeverity.PASSED, "lcpGood", f"{lcp:.1f}s"))

    # CLS: good <= 0.1, poor > 0.25
    if cls is not None:
        if cls > 0.25:
            issues.append(_psi_issue(url, IssueSeverity.ERROR, "clsPoor", f"{cls:.3f}", "improveCls"))
        elif cls > 0.1:
            issues.append(_psi_issue(url, IssueSeverity.WARNING, "clsNeedsWork", f"{cls:.3f}", "improveCls"))
        else:
            issues.append(_psi_issue(url, IssueSeverity.PASSED, "clsGood", f"{cls:.3f}"))

    # INP: good <= 200ms, poor > 500ms
    if inp is not None:
        if inp > 500:
            issues.append(_psi_issue(url, IssueSeverity.ERROR, "inpPoor", f"{inp}ms", "improveInp"))
        elif inp > 200:
            issues.append(_psi_issue(url, IssueSeverity.WARNING, "inpNeedsWork", f"{inp}ms", "improveInp"))
        else:
            issues.append(_psi_issue(url, IssueSeverity.PASSED, "inpGood", f"{inp}ms"))

    return PsiResult(
        score=score,
        lcp=lcp,
        cls=cls,
        inp=inp,
        fcp=round(fcp_ms) / 1000 if fcp_ms else None,
        speed_index=round(si_ms) / 1000 if si_ms else None,
        tbt=round(tbt_ms) if tbt_ms else None,
        issues=issues,
    )


class PageSpeedClient:
    """Google PageSpeed Insights API v5 client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self.provider = "pagespeed"
        self.api_key = api_key or settings.get_api_key("pagespeed")
        self.base_url = base_url or settings.pagespeed_base_url
        self.max_retries = settings.pagespeed_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.pagespeed_retry_delay if retry_delay is None else retry_delay
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout or settings.pagespeed_timeout))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def run_pagespeed(self, url: str, strategy: str = "mobile") -> Dict[str, Any]:
        """
        Single runPagespeed call

        Raises:
            ExternalAPIError: on HTTP error status
        """
        params = {"url": url, "strategy": strategy, "category": "performance"}
        if self.api_key:
            params["key"] = self.api_key

        response = await self.client.get(f"{self.base_url.rstrip('/')}{RUN_PAGESPEED_PATH}", params=params)
        if response.status_code >= 400:
            raise ExternalAPIError(
                provider=self.provider,
                message=f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
        return response.json()

    async def get_insights(self, url: str, strategy: str = "mobile") -> Optional[PsiResult]:
        """Run PSI with retry; None when the API stays unavailable"""
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"PSI retry {attempt}/{self.max_retries} for {url}")
                await asyncio.sleep(self.retry_delay * attempt)
            try:
                data = await self.run_pagespeed(url, strategy)
                return parse_psi_response(data, url)
            except (ExternalAPIError, httpx.HTTPError, ValueError) as e:
                logger.warning(f"PSI request failed for {url} (attempt {attempt + 1}): {e}")
        return None


class PerformanceAnalyzer(BaseAnalyzer):
    """PageSpeed Insights for the first pages of an audit"""

    name = "performance"
    source = IssueSource.PSI
    requires_browser = False

    def __init__(self, client: Optional[PageSpeedClient] = None, max_pages: Optional[int] = None):
        settings = get_settings()
        self.enabled = settings.enable_pagespeed
        self.max_pages = settings.pagespeed_max_pages if max_pages is None else max_pages
        self.timeout = settings.pagespeed_timeout * (settings.pagespeed_max_retries + 1) + 10
        self._client = client

    def is_available(self) -> bool:
        return self.enabled or self._client is not None

    @property
    def client(self) -> PageSpeedClient:
        if self._client is None:
            self._client = PageSpeedClient()
        return self._client

    async def analyze(self, visit, context: AnalyzerContext) -> List[Issue]:
        return await self.analyze_url(visit.url, context)

    async def analyze_url(self, url: str, context: AnalyzerContext) -> List[Issue]:
        """Lab data comes from the API, so no loaded page is needed"""
        if context.page_index >= self.max_pages:
            return []

        strategy = "mobile" if context.device == DeviceType.MOBILE else "desktop"
        result = await self.client.get_insights(url, strategy)
        if result is None:
            return []

        context.metrics.performance_score = result.score
        context.metrics.lcp = result.lcp
        context.metrics.cls = result.cls
        context.metrics.inp = result.inp
        return result.issues

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
