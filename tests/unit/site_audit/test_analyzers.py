"""
Test page analyzers

Accessibility evidence collection (with soft failure of the rule engine),
browser signals and the structural analyzer wrapper.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from site_audit.analyzers import (
    ANALYZER_REGISTRY,
    AccessibilityAnalyzer,
    AnalyzerContext,
    BrowserSignalsAnalyzer,
    ScreenshotBudget,
    StructuralAnalyzer,
    build_analyzers,
)
from site_audit.analyzers.accessibility import RUN_AXE_SCRIPT, load_axe_source
from site_audit.analyzers.evidence import IMAGE_METADATA_SCRIPT, REMOVE_OUTLINE_SCRIPT
from site_audit.browser import PageVisit
from site_audit.types import DeviceType

PAGE_URL = "https://example.com/"


def axe_violation(rule_id, impact, targets, **extra):
    nodes = [
        {
            "target": [target],
            "html": f'<div class="n{i}"></div>',
            "failureSummary": "Fix any of the following",
            **extra,
        }
        for i, target in enumerate(targets)
    ]
    return {
        "id": rule_id,
        "impact": impact,
        "description": f"{rule_id} description",
        "help": f"{rule_id} help",
        "helpUrl": f"https://dequeuniversity.com/rules/axe/4.10/{rule_id}",
        "tags": ["wcag2a"],
        "nodes": nodes,
    }


def make_page(axe_results=None, image_meta=None):
    handle = MagicMock()
    handle.bounding_box = AsyncMock(return_value={"x": 0, "y": 0, "width": 50, "height": 20})
    handle.screenshot = AsyncMock(return_value=b"shot")

    async def evaluate(script, arg=None):
        if script == RUN_AXE_SCRIPT:
            return axe_results
        if script == IMAGE_METADATA_SCRIPT:
            return image_meta or {}
        return None

    page = MagicMock()
    page.evaluate = AsyncMock(side_effect=evaluate)
    page.add_script_tag = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.query_selector = AsyncMock(return_value=handle)
    page.screenshot = AsyncMock(return_value=b"clip")
    return page


def make_context(limit=30, device=DeviceType.DESKTOP):
    return AnalyzerContext(device=device, budget=ScreenshotBudget(limit))


class TestAccessibilityAnalyzer:
    """Test axe-core run and evidence assembly"""

    @pytest.fixture
    def analyzer(self):
        return AccessibilityAnalyzer(axe_source="window.axe = {};")

    @pytest.mark.asyncio
    async def test_no_violations_returns_empty_list(self, analyzer):
        page = make_page({"violations": []})

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues == []

    @pytest.mark.asyncio
    async def test_image_alt_violation_becomes_one_error_issue(self, analyzer):
        page = make_page(
            {"violations": [axe_violation("image-alt", "critical", ["img.logo"])]},
            image_meta={"imageSrc": "https://example.com/logo.png", "imageFileName": "logo.png"},
        )

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity == "error"
        assert issue.message == "a11y.image-alt"
        assert issue.type == "accessibility"
        assert issue.source == "axe"
        assert issue.url == PAGE_URL
        assert len(issue.details.nodes) == 1
        node = issue.details.nodes[0]
        assert node.metadata["imageSrc"] is not None
        assert node.selector == "img.logo"
        assert node.element_screenshot is not None

    @pytest.mark.asyncio
    async def test_node_payload_shape_on_the_wire(self, analyzer):
        page = make_page({"violations": [axe_violation("label", "serious", ["input#email"])]})

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        wire = issues[0].to_wire()
        node = wire["details"]["nodes"][0]
        assert set(node) == {"selector", "codeSnippet", "elementScreenshot", "metadata", "failureSummary"}
        assert wire["details"]["ruleId"] == "label"
        assert wire["details"]["nodeCount"] == 1

    @pytest.mark.asyncio
    async def test_contrast_metadata_from_check_data(self, analyzer):
        violation = axe_violation(
            "color-contrast",
            "moderate",
            ["p.muted"],
            any=[{"data": {"fgColor": "#999999", "bgColor": "#ffffff", "contrastRatio": 2.85}}],
        )
        page = make_page({"violations": [violation]})

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues[0].severity == "warning"
        assert issues[0].details.nodes[0].metadata == {
            "fgColor": "#999999",
            "bgColor": "#ffffff",
            "contrastRatio": 2.85,
        }

    @pytest.mark.asyncio
    async def test_minor_impact_maps_to_info(self, analyzer):
        page = make_page({"violations": [axe_violation("region", "minor", ["div.ad"])]})

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues[0].severity == "info"

    @pytest.mark.asyncio
    async def test_screenshot_budget_caps_captures(self, analyzer):
        page = make_page({"violations": [axe_violation("link-name", "serious", ["a.1", "a.2", "a.3"])]})
        context = make_context(limit=2)

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), context)

        shots = [node.element_screenshot for node in issues[0].details.nodes]
        assert shots[0] is not None and shots[1] is not None
        assert shots[2] is None
        assert len(issues[0].details.nodes) == 3
        assert context.budget.taken == 2

    @pytest.mark.asyncio
    async def test_missing_element_releases_budget_slot(self, analyzer):
        page = make_page({"violations": [axe_violation("link-name", "serious", ["a.gone", "a.here"])]})
        handle = page.query_selector.return_value
        page.query_selector = AsyncMock(side_effect=[None, handle])
        context = make_context(limit=1)

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), context)

        nodes = issues[0].details.nodes
        assert nodes[0].element_screenshot is None
        assert nodes[1].element_screenshot is not None

    @pytest.mark.asyncio
    async def test_every_outline_is_removed(self, analyzer):
        page = make_page({"violations": [axe_violation("link-name", "serious", ["a.1", "a.2"])]})

        await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        scripts = [c.args[0] for c in page.evaluate.await_args_list]
        assert scripts.count(REMOVE_OUTLINE_SCRIPT) == 2

    @pytest.mark.asyncio
    async def test_injection_failure_returns_empty(self, analyzer):
        page = make_page({"violations": [axe_violation("image-alt", "critical", ["img"])]})
        page.add_script_tag.side_effect = RuntimeError("Content Security Policy blocked inline script")

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues == []

    @pytest.mark.asyncio
    async def test_engine_returning_nothing_returns_empty(self, analyzer):
        page = make_page(None)

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues == []

    @pytest.mark.asyncio
    async def test_metadata_failure_keeps_the_node(self, analyzer):
        page = make_page({"violations": [axe_violation("image-alt", "critical", ["img.a"])]})
        original = page.evaluate.side_effect

        async def evaluate(script, arg=None):
            if script == IMAGE_METADATA_SCRIPT:
                raise RuntimeError("boom")
            return await original(script, arg)

        page.evaluate.side_effect = evaluate

        issues = await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        assert issues[0].details.nodes[0].metadata == {}
        assert issues[0].details.nodes[0].code_snippet

    @pytest.mark.asyncio
    async def test_screenshots_use_short_capture_timeout(self, analyzer):
        page = make_page({"violations": [axe_violation("link-name", "serious", ["a.1"])]})

        await analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), make_context())

        handle = page.query_selector.return_value
        assert handle.screenshot.await_args.kwargs["timeout"] == analyzer.screenshot_timeout_ms

    @pytest.mark.asyncio
    async def test_slow_screenshots_keep_issues_within_timeout(self, analyzer):
        page = make_page({"violations": [axe_violation("image-alt", "critical", ["img.a", "img.b", "img.c"])]})
        handle = page.query_selector.return_value

        async def stalled_screenshot(**kwargs):
            await asyncio.sleep(0.6)
            raise PlaywrightTimeoutError("waiting for element to be visible")

        handle.screenshot = AsyncMock(side_effect=stalled_screenshot)
        page.screenshot = AsyncMock(side_effect=PlaywrightError("clip failed"))
        analyzer.timeout = 1
        context = make_context()

        issues = await asyncio.wait_for(
            analyzer.analyze(PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP), context),
            timeout=analyzer.get_timeout(),
        )

        assert len(issues) == 1
        nodes = issues[0].details.nodes
        assert [node.selector for node in nodes] == ["img.a", "img.b", "img.c"]
        assert all(node.element_screenshot is None for node in nodes)
        assert handle.screenshot.await_count == 2
        assert context.budget.taken == 0

    def test_unavailable_without_bundle(self, tmp_path):
        analyzer = AccessibilityAnalyzer()
        analyzer._axe_path = str(tmp_path / "missing-axe.js")

        assert analyzer.is_available() is False

    def test_load_axe_source_from_file(self, tmp_path):
        bundle = tmp_path / "axe.min.js"
        bundle.write_text("/*! axe */ window.axe = {};", encoding="utf-8")

        assert load_axe_source(str(bundle)).startswith("/*! axe */")

    def test_empty_bundle_is_unavailable(self, tmp_path):
        bundle = tmp_path / "empty-axe.js"
        bundle.write_text("   ", encoding="utf-8")

        assert load_axe_source(str(bundle)) is None


class TestBrowserSignalsAnalyzer:
    @pytest.mark.asyncio
    async def test_console_and_resource_failures(self):
        visit = PageVisit(
            page=MagicMock(),
            url=PAGE_URL,
            device=DeviceType.MOBILE,
            console_errors=["Uncaught TypeError: x is undefined"],
            broken_resources=["404 https://example.com/missing.css", "503 https://example.com/api"],
        )

        issues = await BrowserSignalsAnalyzer().analyze(visit, make_context())

        by_key = {i.message: i for i in issues}
        assert set(by_key) == {
            "audit.issues.jsConsoleErrors",
            "audit.issues.brokenResources",
            "audit.issues.serverErrors",
        }
        assert by_key["audit.issues.serverErrors"].severity == "error"
        assert by_key["audit.issues.brokenResources"].details.summary == "1 resources"
        assert all(i.source == "playwright" for i in issues)

    @pytest.mark.asyncio
    async def test_clean_page(self):
        visit = PageVisit(page=MagicMock(), url=PAGE_URL, device=DeviceType.DESKTOP)

        assert await BrowserSignalsAnalyzer().analyze(visit, make_context()) == []


class TestStructuralAnalyzer:
    @pytest.mark.asyncio
    async def test_uses_rendered_dom_and_fills_metrics(self):
        html = "<html><head><title>Rendered title</title></head><body></body></html>"
        page = MagicMock()
        page.content = AsyncMock(return_value=html)
        page.evaluate = AsyncMock(return_value={"title": "Rendered title", "metaDescription": "About us"})
        visit = PageVisit(page=page, url=PAGE_URL, device=DeviceType.DESKTOP, ttfb_ms=120)
        context = make_context()

        issues = await StructuralAnalyzer().analyze(visit, context)

        assert context.metrics.title == "Rendered title"
        assert context.metrics.meta_description == "About us"
        assert "audit.issues.ttfbGood" in {i.message for i in issues}


class TestRegistry:
    def test_accessibility_runs_first(self):
        assert list(ANALYZER_REGISTRY)[0] == "accessibility"

    def test_build_analyzers_keeps_registry_order(self):
        analyzers = build_analyzers(["performance", "structural"])

        assert [a.name for a in analyzers] == ["structural", "performance"]

    def test_build_analyzers_returns_fresh_instances(self):
        assert build_analyzers()[0] is not build_analyzers()[0]
