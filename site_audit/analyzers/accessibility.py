"""
Accessibility Analyzer - axe-core evidence collector

Injects the bundled axe-core engine into a loaded page, runs it against the
WCAG 2.0/2.1 A/AA and best-practice rule families and turns every violated
rule into one issue carrying per-element evidence:

1. Code snippet - the violating element's HTML
2. Visual proof - an element screenshot with a red outline
3. Metadata - image src/size for alt-text rules, colors for contrast rules

Engine problems (missing asset, injection or run failure) degrade to an empty
result; they never fail the audit.
"""
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import get_settings
from core.logging import get_logger
from site_audit.metrics import audit_metrics
from site_audit.schemas import AccessibilityDetails, AccessibilityViolationNode, Issue
from site_audit.types import IMPACT_TO_SEVERITY, IssueSeverity, IssueSource, IssueType

from .base import AnalyzerContext, BaseAnalyzer
from .evidence import (
    CONTRAST_RULES,
    IMAGE_RULES,
    best_selector,
    capture_element_screenshot,
    extract_contrast_metadata,
    extract_image_metadata,
)

logger = get_logger(__name__, domain="site_audit")

BUNDLED_AXE_PATH = Path(__file__).resolve().parent.parent / "static" / "axe.min.js"

RUN_AXE_SCRIPT = """
(tags) => window.axe.run(document, { runOnly: { type: 'tag', values: tags } })
"""

SETTLE_DELAY_MS = 200
# Share of the analyzer timeout available for evidence; the rest covers the axe run
EVIDENCE_TIME_SHARE = 0.8

_axe_source_cache: Dict[str, str] = {}


def load_axe_source(path: Optional[str] = None) -> Optional[str]:
    """Read the axe-core bundle once per path; None when it is not installed"""
    resolved = Path(path) if path else BUNDLED_AXE_PATH
    key = str(resolved)
    if key not in _axe_source_cache:
        try:
            source = resolved.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"axe-core bundle not available at {resolved}: {e}")
            return None
        if not source.strip():
            logger.warning(f"axe-core bundle at {resolved} is empty")
            return None
        _axe_source_cache[key] = source
    return _axe_source_cache[key]


class AccessibilityAnalyzer(BaseAnalyzer):
    """Runs axe-core on a loaded page and collects per-node evidence"""

    name = "accessibility"
    source = IssueSource.AXE

    def __init__(self, axe_source: Optional[str] = None):
        settings = get_settings()
        self.run_only_tags = list(settings.axe_run_only_tags)
        self.padding = settings.audit_screenshot_padding_px
        self.max_height = settings.audit_screenshot_max_height_px
        self.quality = settings.audit_screenshot_quality
        self.screenshot_timeout_ms = settings.audit_screenshot_timeout_ms
        self.timeout = max(30, settings.audit_page_timeout_ms // 1000 * 2)
        self._axe_source = axe_source
        self._axe_path = settings.axe_script_path

    def get_axe_source(self) -> Optional[str]:
        if self._axe_source is None:
            self._axe_source = load_axe_source(self._axe_path)
        return self._axe_source

    def is_available(self) -> bool:
        return self.get_axe_source() is not None

    async def run_axe(self, page) -> Optional[Dict[str, Any]]:
        """Inject the engine and return axe's raw results, or None on failure"""
        axe_source = self.get_axe_source()
        if axe_source is None:
            return None
        try:
            await page.evaluate("() => window.scrollTo(0, 0)")
            await page.wait_for_timeout(SETTLE_DELAY_MS)
            await page.add_script_tag(content=axe_source)
            return await page.evaluate(RUN_AXE_SCRIPT, self.run_only_tags)
        except Exception as e:
            logger.warning(f"axe-core analysis failed: {e}")
            return None

    async def analyze(self, visit, context: AnalyzerContext) -> List[Issue]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.get_timeout() * EVIDENCE_TIME_SHARE
        results = await self.run_axe(visit.page)
        violations = (results or {}).get("violations") or []
        if not violations:
            logger.info(f"No accessibility violations on {visit.url}")
            return []

        logger.info(f"Found {len(violations)} violated accessibility rules on {visit.url}")
        issues = []
        for violation in violations:
            nodes = []
            for node in violation.get("nodes") or []:
                nodes.append(await self._build_node(visit.page, violation.get("id", ""), node, context, deadline))
            issues.append(self._build_issue(visit.url, violation, nodes))
            audit_metrics.violation(violation.get("impact"))

        logger.info(
            f"Produced {len(issues)} accessibility issues, "
            f"{context.budget.taken} element screenshots for {visit.url}"
        )
        return issues

    async def _build_node(
        self, page, rule_id: str, node: Dict[str, Any], context: AnalyzerContext, deadline: Optional[float] = None
    ) -> AccessibilityViolationNode:
        """
        Evidence for one affected element

        Screenshots stop once ``deadline`` (event loop time) has passed, so a
        page of slow captures still returns its issues before the analyzer
        timeout; those nodes keep selector, snippet and metadata only.
        """
        selector = best_selector(node)
        metadata: Dict[str, Any] = {}
        screenshot = None

        try:
            if rule_id in IMAGE_RULES:
                metadata = await extract_image_metadata(page, selector)
            elif rule_id in CONTRAST_RULES:
                metadata = extract_contrast_metadata(node)
        except Exception as e:
            logger.debug(f"Metadata extraction failed for {rule_id} at {selector}: {e}")
            metadata = {}

        remaining = None if deadline is None else deadline - asyncio.get_running_loop().time()
        if selector and remaining is not None and remaining <= 0:
            logger.debug(f"Evidence time used up, no screenshot for {selector}")
            audit_metrics.screenshot("skipped")
        elif selector and context.budget.try_consume():
            try:
                screenshot = await asyncio.wait_for(
                    capture_element_screenshot(
                        page,
                        selector,
                        padding=self.padding,
                        max_height=self.max_height,
                        quality=self.quality,
                        timeout_ms=self.screenshot_timeout_ms,
                    ),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                logger.debug(f"Screenshot of {selector} ran past the evidence deadline")
                screenshot = None
            except Exception as e:
                logger.debug(f"Screenshot failed for {selector}: {e}")
                screenshot = None
            if screenshot is None:
                context.budget.release()
            audit_metrics.screenshot("captured" if screenshot else "failed")

        return AccessibilityViolationNode(
            selector=selector,
            code_snippet=node.get("html") or "",
            element_screenshot=screenshot,
            metadata=metadata,
            failure_summary=node.get("failureSummary") or "",
        )

    def _build_issue(self, url: str, violation: Dict[str, Any], nodes: List[AccessibilityViolationNode]) -> Issue:
        rule_id = violation.get("id", "unknown")
        impact = violation.get("impact")
        return Issue(
            type=IssueType.ACCESSIBILITY,
            severity=IMPACT_TO_SEVERITY.get(impact, IssueSeverity.WARNING),
            message=f"a11y.{rule_id}",
            url=url,
            suggestion=violation.get("help") or "",
            source=self.source,
            details=AccessibilityDetails(
                rule_id=rule_id,
                impact=impact,
                description=violation.get("description") or "",
                help_url=violation.get("helpUrl"),
                tags=violation.get("tags") or [],
                node_count=len(nodes),
                nodes=nodes,
            ),
        )
