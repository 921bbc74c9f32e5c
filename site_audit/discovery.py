"""
URL discovery and site-wide checks

Establishes the page list of an audit from the site's sitemaps (robots.txt
``Sitemap:`` directives first, then the common sitemap locations of
WordPress, Yoast, RankMath, Shopify and friends) and runs the robots.txt /
sitemap.xml checks that apply to the whole site rather than to one page.

All HTTP here is plain aiohttp; no browser is involved.
"""
import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from core.config import get_settings
from core.logging import get_logger
from core.metrics import track_time

from .exceptions import DiscoveryError
from .schemas import Issue
from .types import DiscoveryMethod, IssueSeverity, IssueSource, IssueType

logger = get_logger(__name__, domain="site_audit")

ROBOTS_TIMEOUT = 8
SITEMAP_CHECK_TIMEOUT = 5
MAX_SITEMAP_DEPTH = 2

SITEMAP_PATHS = [
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/wp-sitemap.xml",
    "/sitemap-index.xml",
    "/post-sitemap.xml",
    "/page-sitemap.xml",
    "/sitemap-0.xml",
    "/sitemap-1.xml",
    "/sitemaps/sitemap-index.xml",
    "/sitemap/sitemap-index.xml",
]

# Never crawled: CDN internals, admin, feeds, transactional pages
IGNORED_PATH_PATTERNS = [
    re.compile(r"/cdn-cgi/", re.IGNORECASE),
    re.compile(r"/wp-admin(/|$)", re.IGNORECASE),
    re.compile(r"/wp-login\.php", re.IGNORECASE),
    re.compile(r"/wp-json(/|$)", re.IGNORECASE),
    re.compile(r"/feed(/|$)", re.IGNORECASE),
    re.compile(r"/xmlrpc\.php", re.IGNORECASE),
    re.compile(r"/wp-content/uploads/", re.IGNORECASE),
    re.compile(r"/(cart|checkout|my-account)(/|$)", re.IGNORECASE),
    re.compile(r"/tag/", re.IGNORECASE),
    re.compile(r"[?&](replytocom|share)=", re.IGNORECASE),
]

ROBOTS_SITEMAP_LINE = re.compile(r"^sitemap:\s*(.+)", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Add https:// when no scheme is given and strip trailing slashes"""
    if not url:
        return ""
    url = url.strip()
    if not url.startswith("http"):
        url = "https://" + url
    return url.rstrip("/")


def site_origin(url: str) -> str:
    parsed = urlparse(normalize_url(url))
    return f"{parsed.scheme}://{parsed.netloc}"


def is_ignored_path(url: str) -> bool:
    path = urlparse(url).path
    return any(pattern.search(path) or pattern.search(url) for pattern in IGNORED_PATH_PATTERNS)


def looks_like_sitemap(text: str) -> bool:
    """Some servers answer 200 with an HTML page for missing sitemaps"""
    return "<" in text and any(tag in text for tag in ("<urlset", "<sitemapindex", "<url"))


def parse_sitemap_xml(xml: str) -> Tuple[List[str], List[str]]:
    """
    Split a sitemap document into page URLs and child sitemap URLs

    Returns:
        (page_urls, child_sitemaps)
    """
    soup = BeautifulSoup(xml, "html.parser")
    page_urls = []
    child_sitemaps = []

    if "<sitemapindex" in xml:
        for sitemap in soup.find_all("sitemap"):
            loc = sitemap.find("loc")
            if loc and loc.get_text(strip=True):
                child_sitemaps.append(loc.get_text(strip=True))
    if "<urlset" in xml or "<url>" in xml:
        for entry in soup.find_all("url"):
            loc = entry.find("loc")
            if loc and loc.get_text(strip=True):
                page_urls.append(loc.get_text(strip=True))
    return page_urls, child_sitemaps


def parse_robots_sitemaps(robots_txt: str) -> List[str]:
    urls = []
    for line in robots_txt.splitlines():
        match = ROBOTS_SITEMAP_LINE.match(line.strip())
        if match:
            candidate = match.group(1).strip()
            if candidate.startswith("http"):
                urls.append(candidate)
    return urls


def dedupe_with_home(home_url: str, urls: List[str], max_urls: int) -> List[str]:
    """Homepage first, ignored paths dropped, first-seen order, capped"""
    result = [home_url]
    seen = {home_url}
    for url in urls:
        if not url or url in seen or is_ignored_path(url):
            continue
        seen.add(url)
        result.append(url)
    return result[:max_urls]


@dataclass
class FetchResponse:
    url: str
    status: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpFetcher:
    """Plain GET with timeout and the audit user agent"""

    def __init__(self, timeout: Optional[float] = None, user_agent: Optional[str] = None):
        settings = get_settings()
        self.timeout = timeout or settings.fetch_timeout
        self.user_agent = user_agent or settings.user_agent

    async def get(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        """
        Raises:
            aiohttp.ClientError, asyncio.TimeoutError: on network failure
        """
        started = time.monotonic()
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
                headers={"User-Agent": self.user_agent},
                allow_redirects=True,
            ) as response:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                text = await response.text(errors="replace")
                return FetchResponse(
                    url=str(response.url),
                    status=response.status,
                    text=text,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    elapsed_ms=elapsed_ms,
                )

    async def get_text(self, url: str, timeout: Optional[float] = None) -> Optional[str]:
        """Body of a 2xx response, None for anything else"""
        try:
            response = await self.get(url, timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Fetch failed for {url}: {e}")
            return None
        return response.text if response.ok else None


@dataclass
class DiscoveryResult:
    urls: List[str]
    method: DiscoveryMethod
    has_sitemap: bool


class UrlDiscovery:
    """Sitemap-driven page list for one site"""

    def __init__(self, fetcher: Optional[HttpFetcher] = None, max_urls: Optional[int] = None):
        self.fetcher = fetcher or HttpFetcher()
        self.max_urls = max_urls or get_settings().audit_max_pages

    @track_time("site_audit.discovery")
    async def discover(self, site_url: str) -> DiscoveryResult:
        home_url = normalize_url(site_url)
        if not urlparse(home_url).netloc:
            raise DiscoveryError(site_url, "no host in site URL")
        logger.info(f"Starting URL discovery for {home_url}")

        sitemap_urls = await self.discover_from_sitemaps(home_url)
        if len(sitemap_urls) > 1:
            logger.info(f"Sitemap yielded {len(sitemap_urls)} URLs for {home_url}")
            return DiscoveryResult(
                urls=dedupe_with_home(home_url, sitemap_urls, self.max_urls),
                method=DiscoveryMethod.SITEMAP,
                has_sitemap=True,
            )

        logger.info(f"No usable sitemap for {home_url}")
        return DiscoveryResult(urls=[home_url], method=DiscoveryMethod.HOMEPAGE, has_sitemap=False)

    async def discover_from_sitemaps(self, home_url: str) -> List[str]:
        origin = site_origin(home_url)
        robots_txt = await self.fetcher.get_text(f"{origin}/robots.txt", timeout=ROBOTS_TIMEOUT)
        robots_sitemaps = parse_robots_sitemaps(robots_txt) if robots_txt else []

        candidates = list(dict.fromkeys(robots_sitemaps + [f"{origin}{path}" for path in SITEMAP_PATHS]))
        found: List[str] = []
        processed: Set[str] = set()

        for candidate in candidates:
            if len(found) >= self.max_urls:
                break
            await self._process_sitemap(candidate, found, processed, depth=0)
            # First common path with results wins; robots.txt entries are all read
            if found and candidate not in robots_sitemaps:
                break

        return list(dict.fromkeys(found))[: self.max_urls]

    async def _process_sitemap(self, sitemap_url: str, found: List[str], processed: Set[str], depth: int):
        if sitemap_url in processed or depth > MAX_SITEMAP_DEPTH:
            return
        processed.add(sitemap_url)

        text = await self.fetcher.get_text(sitemap_url)
        if not text or not looks_like_sitemap(text):
            return

        page_urls, child_sitemaps = parse_sitemap_xml(text)
        found.extend(page_urls)
        for child in child_sitemaps:
            if len(found) >= self.max_urls:
                break
            await self._process_sitemap(child, found, processed, depth + 1)


class SiteWideChecker:
    """robots.txt and sitemap.xml presence checks; issues carry no URL"""

    FALLBACK_SITEMAP_PATHS = ["/sitemap_index.xml", "/wp-sitemap.xml"]

    def __init__(self, fetcher: Optional[HttpFetcher] = None):
        self.fetcher = fetcher or HttpFetcher()

    @staticmethod
    def _issue(severity, key, suggestion=None) -> Issue:
        return Issue(
            type=IssueType.TECHNICAL,
            severity=severity,
            message=f"audit.issues.{key}",
            suggestion=f"audit.suggestions.{suggestion}" if suggestion else None,
            source=IssueSource.HTML,
        )

    @track_time("site_audit.site_checks")
    async def check_robots_and_sitemap(self, base_url: str) -> List[Issue]:
        origin = site_origin(base_url)
        issues = []

        try:
            robots = await self.fetcher.get(f"{origin}/robots.txt", timeout=ROBOTS_TIMEOUT)
            if robots.ok:
                issues.append(self._issue(IssueSeverity.PASSED, "robotsTxtFound"))
                if "sitemap:" in robots.text.lower():
                    issues.append(self._issue(IssueSeverity.PASSED, "sitemapInRobotsTxt"))
            else:
                issues.append(self._issue(IssueSeverity.WARNING, "noRobotsTxt", "addRobotsTxt"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"robots.txt check failed for {origin}: {e}")
            issues.append(self._issue(IssueSeverity.WARNING, "robotsTxtError"))

        try:
            sitemap = await self.fetcher.get(f"{origin}/sitemap.xml", timeout=ROBOTS_TIMEOUT)
            if sitemap.ok:
                if "<urlset" in sitemap.text or "<sitemapindex" in sitemap.text:
                    issues.append(self._issue(IssueSeverity.PASSED, "sitemapFound"))
                else:
                    issues.append(self._issue(IssueSeverity.WARNING, "sitemapInvalid", "fixSitemap"))
            elif await self._any_fallback_sitemap(origin):
                issues.append(self._issue(IssueSeverity.PASSED, "sitemapFound"))
            else:
                issues.append(self._issue(IssueSeverity.WARNING, "noSitemap", "addSitemap"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"sitemap.xml check failed for {origin}: {e}")
            issues.append(self._issue(IssueSeverity.WARNING, "sitemapError"))

        return issues

    async def _any_fallback_sitemap(self, origin: str) -> bool:
        for path in self.FALLBACK_SITEMAP_PATHS:
            if await self.fetcher.get_text(f"{origin}{path}", timeout=SITEMAP_CHECK_TIMEOUT) is not None:
                return True
        return False
