"""
Page-level visual evidence

Three kinds of capture per visited page, all base64 JPEG:

1. Filmstrip - one viewport frame at each load stage, taken during the visit
2. Full page - a single full-height screenshot
3. Segments - viewport-height scroll captures, capped per page

Every capture is bounded by its own timeout and yields None (or is skipped)
on failure; none of them can fail the page.
"""
import base64
from dataclasses import dataclass, field
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError

from core.config import get_settings
from core.logging import get_logger

from .schemas import FilmstripFrame
from .types import VIEWPORTS, DeviceType

logger = get_logger(__name__, domain="site_audit")

STAGE_DOM_CONTENT_LOADED = "domcontentloaded"
STAGE_NETWORK_IDLE = "networkidle"
STAGE_FULLY_LOADED = "fullyLoaded"

SCROLL_SETTLE_MS = 300
# Full-height captures render the whole document
FULL_PAGE_TIMEOUT_FACTOR = 4

SCROLL_HEIGHT_SCRIPT = "() => document.body ? document.body.scrollHeight : 0"
SCROLL_TO_SCRIPT = "(y) => window.scrollTo(0, y)"


@dataclass
class PageCaptures:
    """Full-page and segment captures of one visit"""

    screenshot: Optional[str] = None
    segments: List[str] = field(default_factory=list)


def _encode(buffer: Optional[bytes]) -> Optional[str]:
    if not buffer:
        return None
    return base64.b64encode(buffer).decode("ascii")


async def take_screenshot(page, timeout_ms: int, **options) -> Optional[str]:
    """One page screenshot as base64 JPEG, None when the capture fails"""
    try:
        buffer = await page.screenshot(type="jpeg", timeout=timeout_ms, **options)
    except PlaywrightError as e:
        logger.debug(f"Page screenshot failed: {e}")
        return None
    return _encode(buffer)


async def capture_filmstrip_frame(page, stage: str, quality: int, timeout_ms: int) -> Optional[FilmstripFrame]:
    image = await take_screenshot(page, timeout_ms, quality=quality)
    if image is None:
        return None
    return FilmstripFrame(stage=stage, image=image)


async def capture_segments(page, viewport_height: int, max_segments: int, quality: int, timeout_ms: int) -> List[str]:
    """
    Scroll through the page one viewport at a time and capture each stop

    The number of segments is ``ceil(scrollHeight / viewport_height)`` capped
    at ``max_segments``. Scroll position is reset to the top afterwards.
    """
    if max_segments <= 0 or viewport_height <= 0:
        return []
    try:
        total_height = int(await page.evaluate(SCROLL_HEIGHT_SCRIPT) or 0)
    except PlaywrightError as e:
        logger.debug(f"Page height unavailable, skipping segments: {e}")
        return []

    count = min(max_segments, -(-total_height // viewport_height))
    segments = []
    try:
        for index in range(count):
            await page.evaluate(SCROLL_TO_SCRIPT, index * viewport_height)
            await page.wait_for_timeout(SCROLL_SETTLE_MS)
            image = await take_screenshot(page, timeout_ms, quality=quality)
            if image is not None:
                segments.append(image)
    except PlaywrightError as e:
        logger.debug(f"Segment capture stopped after {len(segments)} of {count}: {e}")
    finally:
        try:
            await page.evaluate(SCROLL_TO_SCRIPT, 0)
        except PlaywrightError as e:
            logger.debug(f"Scroll reset failed: {e}")
    return segments


async def capture_page_evidence(page, device: DeviceType, settings=None) -> PageCaptures:
    """Full-page screenshot plus scroll segments for the device viewport"""
    settings = settings or get_settings()
    timeout_ms = settings.audit_screenshot_timeout_ms
    captures = PageCaptures()
    captures.screenshot = await take_screenshot(
        page, timeout_ms * FULL_PAGE_TIMEOUT_FACTOR, full_page=True, quality=settings.audit_page_screenshot_quality
    )
    captures.segments = await capture_segments(
        page,
        VIEWPORTS[device].height,
        settings.audit_max_segments,
        settings.audit_segment_quality,
        timeout_ms,
    )
    logger.debug(
        f"Captured page evidence: full page {'yes' if captures.screenshot else 'no'}, "
        f"{len(captures.segments)} segments"
    )
    return captures
