"""
Structural analyzer - markup, SEO and header checks with BeautifulSoup

Works on the rendered HTML of a browser visit, or on the raw HTML of a
plain fetch when no browser is available. Every check emits either a
problem issue or its "passed" counterpart so the report shows what was
verified, not only what failed.

Timeout: 5s
Cost: Free (no external API)
"""
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from site_audit.schemas import Issue, ResourceListDetails
from site_audit.types import IssueSeverity, IssueSource, IssueType

from .base import AnalyzerContext, BaseAnalyzer

ERROR = IssueSeverity.ERROR
WARNING = IssueSeverity.WARNING
INFO = IssueSeverity.INFO
PASSED = IssueSeverity.PASSED

ZOOM_DISABLED = re.compile(r"maximum-scale\s*=\s*1([^.\d]|$)")
INLINE_FONT_SIZE = re.compile(r"font-size\s*:\s*(\d+)\s*px", re.IGNORECASE)
FAVICON_RELS = {"icon", "shortcut icon", "apple-touch-icon"}


def _file_name(src: str) -> str:
    return src.rsplit("/", 1)[-1].split("?", 1)[0]


class _IssueCollector:
    """Accumulates issues for one page with shared url/source"""

    def __init__(self, url: str):
        self.url = url
        self.issues: List[Issue] = []

    def add(self, issue_type, severity, key, suggestion=None, details=None):
        self.issues.append(
            Issue(
                type=issue_type,
                severity=severity,
                message=f"audit.issues.{key}",
                url=self.url,
                suggestion=f"audit.suggestions.{suggestion}" if suggestion else None,
                source=IssueSource.HTML,
                details=details,
            )
        )

    def perf(self, severity, key, suggestion=None, details=None):
        self.add(IssueType.PERFORMANCE, severity, key, suggestion, details)

    def tech(self, severity, key, suggestion=None, details=None):
        self.add(IssueType.TECHNICAL, severity, key, suggestion, details)


def analyze_html(
    html: str,
    page_url: str,
    headers: Optional[Dict[str, str]] = None,
    ttfb: Optional[int] = None,
) -> List[Issue]:
    """
    Run all markup checks on one page

    Args:
        html: Page HTML (rendered or raw)
        page_url: URL the issues are attributed to
        headers: Response headers with lower-case names; header checks are
            skipped when empty
        ttfb: Time to first byte in ms, skipped when None

    Returns:
        List of issues, passed checks included
    """
    headers = {k.lower(): v for k, v in (headers or {}).items()}
    soup = BeautifulSoup(html or "", "html.parser")
    out = _IssueCollector(page_url)

    _check_performance(soup, html or "", headers, ttfb, out)
    _check_seo(soup, page_url, out)
    if headers:
        _check_security(soup, page_url, headers, out)
    _check_mobile(soup, out)
    return out.issues


def _check_performance(soup, html, headers, ttfb, out: _IssueCollector):
    if ttfb is not None:
        if ttfb > 3000:
            out.perf(ERROR, "ttfbCritical", "ttfb", f"{ttfb}ms")
        elif ttfb > 1500:
            out.perf(WARNING, "ttfbSlow", "ttfb", f"{ttfb}ms")
        else:
            out.perf(PASSED, "ttfbGood", details=f"{ttfb}ms")

    size_kb = round(len(html.encode("utf-8")) / 1024)
    if size_kb > 500:
        out.perf(ERROR, "htmlTooLarge", "htmlSize", f"{size_kb}KB")
    elif size_kb > 200:
        out.perf(WARNING, "htmlLarge", "htmlSize", f"{size_kb}KB")
    else:
        out.perf(PASSED, "htmlSizeGood", details=f"{size_kb}KB")

    inline_scripts = len([s for s in soup.find_all("script") if not s.get("src")])
    if inline_scripts > 10:
        out.perf(WARNING, "tooManyInlineScripts", "inlineScripts", f"{inline_scripts}")
    else:
        out.perf(PASSED, "inlineScriptsOk", details=f"{inline_scripts}")

    script_urls = [s["src"] for s in soup.find_all("script", src=True) if s["src"]]
    if len(script_urls) > 20:
        out.perf(
            ERROR,
            "tooManyScripts",
            "reduceScripts",
            ResourceListDetails(summary=f"{len(script_urls)}", entries=[{"url": u} for u in script_urls[:30]]),
        )
    elif len(script_urls) > 10:
        out.perf(
            WARNING,
            "manyScripts",
            "reduceScripts",
            ResourceListDetails(summary=f"{len(script_urls)}", entries=[{"url": u} for u in script_urls[:20]]),
        )
    else:
        out.perf(PASSED, "scriptsOk", details=f"{len(script_urls)}")

    stylesheets = soup.find_all("link", rel="stylesheet")
    if len(stylesheets) > 10:
        out.perf(WARNING, "tooManyStylesheets", "reduceStylesheets")
    else:
        out.perf(PASSED, "stylesheetsOk")

    images = soup.find_all("img")
    not_lazy = [img for img in images if not img.get("loading")]
    if images and len(not_lazy) > 5:
        out.perf(WARNING, "imagesNotLazy", "lazyLoading", f"{len(not_lazy)}/{len(images)}")
    elif images:
        out.perf(PASSED, "lazyLoadingGood", details=f"{len(images)}")

    no_dimensions = [img for img in images if not img.get("width") or not img.get("height")]
    if len(no_dimensions) > 3:
        out.perf(WARNING, "imagesNoDimensions", "imageDimensions")

    if headers:
        encoding = headers.get("content-encoding", "").lower()
        if any(e in encoding for e in ("gzip", "br", "deflate")):
            out.perf(PASSED, "compressionEnabled")
        else:
            out.perf(WARNING, "noCompression", "enableCompression")

        if headers.get("cache-control"):
            out.perf(PASSED, "cacheHeadersGood")
        else:
            out.perf(WARNING, "noCacheHeaders", "cacheHeaders")

    render_blocking = [link for link in stylesheets if not link.get("media")]
    if len(render_blocking) > 5:
        out.perf(WARNING, "renderBlockingCSS", "deferCSS")


def _check_seo(soup, page_url: str, out: _IssueCollector):
    title_tag = soup.find("title")
    title = title_tag.get_text().strip() if title_tag else ""
    if not title:
        out.tech(ERROR, "noTitle", "addTitle")
    elif len(title) < 30:
        out.tech(WARNING, "titleTooShort", "titleLength", f'{len(title)} chars: "{title[:50]}"')
    elif len(title) > 60:
        out.tech(WARNING, "titleTooLong", "titleLength", f'{len(title)} chars: "{title[:50]}..."')
    else:
        out.tech(PASSED, "titleGood", details=f"{len(title)} chars")

    meta = soup.find("meta", attrs={"name": "description"})
    description = (meta.get("content") or "").strip() if meta else ""
    if not description:
        out.tech(ERROR, "noMetaDescription", "addMetaDescription")
    elif len(description) < 120:
        out.tech(WARNING, "metaDescriptionShort", "metaDescriptionLength", f"{len(description)} chars")
    elif len(description) > 160:
        out.tech(WARNING, "metaDescriptionLong", "metaDescriptionLength", f"{len(description)} chars")
    else:
        out.tech(PASSED, "metaDescriptionGood", details=f"{len(description)} chars")

    h1s = soup.find_all("h1")
    if not h1s:
        out.tech(ERROR, "noH1", "addH1")
    elif len(h1s) > 1:
        out.tech(WARNING, "multipleH1", "singleH1", f"{len(h1s)} H1 tags")
    else:
        out.tech(PASSED, "h1Good")

    if not soup.find("h2"):
        out.tech(WARNING, "noH2", "addH2")
    else:
        out.tech(PASSED, "headingStructureGood")

    canonical = soup.find("link", rel="canonical")
    if not canonical or not canonical.get("href"):
        out.tech(WARNING, "noCanonical", "addCanonical")
    else:
        out.tech(PASSED, "canonicalGood")

    og = {
        prop: soup.find("meta", attrs={"property": f"og:{prop}"})
        for prop in ("title", "description", "image")
    }
    if all(tag is not None and tag.get("content") for tag in og.values()):
        out.tech(PASSED, "ogTagsGood")
    else:
        out.tech(WARNING, "missingOG", "addOG")

    images = soup.find_all("img")
    no_alt = [img for img in images if not (img.get("alt") or "").strip()]
    if no_alt:
        entries = []
        for img in no_alt[:20]:
            src = img.get("src") or img.get("data-src") or ""
            entries.append({"url": src, "fileName": _file_name(src)})
        out.tech(
            WARNING,
            "imagesNoAlt",
            "addAltText",
            ResourceListDetails(summary=f"{len(no_alt)}/{len(images)}", entries=entries),
        )
    elif images:
        out.tech(PASSED, "allImagesHaveAlt")

    if soup.find("script", attrs={"type": "application/ld+json"}):
        out.tech(PASSED, "structuredDataFound")
    else:
        out.tech(WARNING, "noStructuredData", "addStructuredData")

    html_tag = soup.find("html")
    if html_tag is not None and html_tag.get("lang"):
        out.tech(PASSED, "langAttributeGood")
    else:
        out.tech(WARNING, "noLangAttribute", "addLangAttribute")

    domain = urlparse(page_url).hostname or ""
    internal = 0
    for link in soup.find_all("a", href=True):
        href = link["href"]
        if href.startswith("/") or (domain and domain in href):
            internal += 1
    if internal < 3:
        out.tech(WARNING, "fewInternalLinks", "addInternalLinks", f"{internal}")
    else:
        out.tech(PASSED, "internalLinksGood", details=f"{internal}")

    has_favicon = any(
        " ".join(link.get("rel") or []).lower() in FAVICON_RELS for link in soup.find_all("link")
    )
    if has_favicon:
        out.tech(PASSED, "faviconGood")
    else:
        out.tech(WARNING, "noFavicon", "addFavicon")


def _check_security(soup, page_url: str, headers: Dict[str, str], out: _IssueCollector):
    is_https = page_url.startswith("https://")
    if is_https:
        out.tech(PASSED, "httpsEnabled")
    else:
        out.tech(ERROR, "noHttps", "enableHttps")

    if headers.get("strict-transport-security"):
        out.tech(PASSED, "hstsEnabled")
    else:
        out.tech(WARNING, "noHsts", "enableHsts")

    if headers.get("x-frame-options"):
        out.tech(PASSED, "xFrameOptionsSet")
    else:
        out.tech(WARNING, "noXFrameOptions", "addXFrameOptions")

    if headers.get("x-content-type-options", "").lower() == "nosniff":
        out.tech(PASSED, "contentTypeOptionsSet")
    else:
        out.tech(WARNING, "noContentTypeOptions", "addContentTypeOptions")

    if headers.get("content-security-policy"):
        out.tech(PASSED, "cspSet")
    else:
        out.tech(WARNING, "noCsp", "addCsp")

    if headers.get("x-xss-protection"):
        out.tech(PASSED, "xssProtectionSet")

    if headers.get("referrer-policy"):
        out.tech(PASSED, "referrerPolicySet")
    else:
        out.tech(WARNING, "noReferrerPolicy", "addReferrerPolicy")

    if headers.get("permissions-policy") or headers.get("feature-policy"):
        out.tech(PASSED, "permissionsPolicySet")
    else:
        out.tech(INFO, "noPermissionsPolicy", "addPermissionsPolicy")

    if is_https:
        mixed = 0
        for el in soup.find_all(lambda tag: tag.has_attr("src") or tag.has_attr("href")):
            attr = el.get("src") or el.get("href") or ""
            if attr.startswith("http://") and "localhost" not in attr:
                mixed += 1
        if mixed:
            out.tech(WARNING, "mixedContent", "fixMixedContent")
        else:
            out.tech(PASSED, "noMixedContent")


def _check_mobile(soup, out: _IssueCollector):
    viewport = soup.find("meta", attrs={"name": "viewport"})
    if viewport is None:
        out.tech(ERROR, "noViewport", "addViewport")
    else:
        content = viewport.get("content") or ""
        if "width=device-width" in content:
            out.tech(PASSED, "viewportGood")
        else:
            out.tech(WARNING, "viewportNoDeviceWidth", "fixViewport")
        if "user-scalable=no" in content or ZOOM_DISABLED.search(content):
            out.tech(WARNING, "zoomDisabled", "enableZoom")

    images = soup.find_all("img")
    if len(images) > 5:
        without_srcset = [img for img in images if not img.get("srcset")]
        responsive = len(images) - len(without_srcset)
        if responsive < len(images) * 0.3:
            entries = []
            for img in without_srcset[:15]:
                src = img.get("src") or img.get("data-src") or ""
                entries.append({"url": src, "fileName": _file_name(src)})
            out.tech(
                WARNING,
                "noResponsiveImages",
                "addSrcset",
                ResourceListDetails(summary=f"{len(without_srcset)}/{len(images)}", entries=entries),
            )
        else:
            out.tech(PASSED, "responsiveImagesGood")

    tiny_fonts = 0
    for el in soup.find_all(style=True):
        match = INLINE_FONT_SIZE.search(el["style"])
        if match and int(match.group(1)) < 12:
            tiny_fonts += 1
    if tiny_fonts > 3:
        out.tech(WARNING, "smallFontSizes", "increaseFontSize")


def extract_page_meta(html: str) -> Tuple[Optional[str], Optional[str]]:
    """Title and meta description of a fetched page"""
    soup = BeautifulSoup(html or "", "html.parser")
    title_tag = soup.find("title")
    meta = soup.find("meta", attrs={"name": "description"})
    title = title_tag.get_text().strip() if title_tag else None
    description = (meta.get("content") or "").strip() if meta else None
    return title or None, description or None


class StructuralAnalyzer(BaseAnalyzer):
    """Markup checks against the rendered DOM of a browser visit"""

    name = "structural"
    source = IssueSource.HTML
    timeout = 5

    async def analyze(self, visit, context: AnalyzerContext) -> List[Issue]:
        html = await visit.content()
        summary = await visit.dom_summary()
        context.metrics.title = summary.get("title") or None
        context.metrics.meta_description = summary.get("metaDescription") or None
        return analyze_html(html, visit.url, headers=visit.headers, ttfb=visit.ttfb_ms)
