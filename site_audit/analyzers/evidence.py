"""
Evidence extraction for accessibility violations

Selector flattening, rule-specific metadata and element screenshots. Every
helper here degrades to an empty/None result instead of raising, so one bad
element never costs the rest of the page its evidence.
"""
import base64
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError

from core.logging import get_logger

logger = get_logger(__name__, domain="site_audit")

IMAGE_RULES = frozenset({"image-alt", "input-image-alt", "area-alt"})
CONTRAST_RULES = frozenset({"color-contrast"})

HIGHLIGHT_ATTRIBUTE = "data-audit-highlight"
PAINT_DELAY_MS = 100

# Previous inline outline values are kept on the marker attribute and put back on cleanup
APPLY_OUTLINE_SCRIPT = """
({ sel, attr }) => {
    const el = document.querySelector(sel);
    if (!el) return false;
    if (!el.hasAttribute(attr)) {
        el.setAttribute(attr, JSON.stringify({
            hadStyle: el.hasAttribute('style'),
            outline: el.style.getPropertyValue('outline'),
            outlinePriority: el.style.getPropertyPriority('outline'),
            offset: el.style.getPropertyValue('outline-offset'),
            offsetPriority: el.style.getPropertyPriority('outline-offset'),
        }));
    }
    el.style.setProperty('outline', '3px solid red', 'important');
    el.style.setProperty('outline-offset', '2px', 'important');
    return true;
}
"""

REMOVE_OUTLINE_SCRIPT = """
({ attr }) => {
    const restore = (el, prop, value, priority) => {
        if (value) {
            el.style.setProperty(prop, value, priority || '');
        } else {
            el.style.removeProperty(prop);
        }
    };
    for (const el of document.querySelectorAll('[' + attr + ']')) {
        let saved = {};
        try {
            saved = JSON.parse(el.getAttribute(attr)) || {};
        } catch (e) {
            saved = {};
        }
        restore(el, 'outline', saved.outline, saved.outlinePriority);
        restore(el, 'outline-offset', saved.offset, saved.offsetPriority);
        if (!saved.hadStyle && !el.getAttribute('style')) el.removeAttribute('style');
        el.removeAttribute(attr);
    }
}
"""

IMAGE_METADATA_SCRIPT = """
(sel) => {
    const el = document.querySelector(sel);
    if (!el) return {};
    const src = el.src || el.getAttribute('data-src') || '';
    const fileName = (src.split('/').pop() || '').split('?')[0] || '';
    return {
        imageSrc: src,
        imageFileName: fileName,
        imageAlt: el.alt || null,
        imageWidth: el.naturalWidth || el.width || 0,
        imageHeight: el.naturalHeight || el.height || 0,
    };
}
"""


class ScreenshotBudget:
    """
    Caps element screenshots for one page visit

    A slot is reserved before a capture and released again when the capture
    yields nothing, so only real images count against the limit.
    """

    def __init__(self, limit: int = 30):
        self.limit = max(0, limit)
        self.taken = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.taken)

    def try_consume(self) -> bool:
        if self.taken >= self.limit:
            return False
        self.taken += 1
        return True

    def release(self) -> None:
        if self.taken > 0:
            self.taken -= 1


def best_selector(node: Dict[str, Any]) -> Optional[str]:
    """
    CSS selector for an axe node

    Cross-frame targets are nested lists; only the deepest frame's innermost
    selector is kept, so elements inside iframes resolve against the top
    document and usually miss.
    """
    target = node.get("target") or []
    if not target:
        return None
    last = target[-1]
    if isinstance(last, list):
        return last[-1] if last else None
    return last


def extract_contrast_metadata(node: Dict[str, Any]) -> Dict[str, Any]:
    """Colors, ratios and font metrics from axe's own check data"""
    meta: Dict[str, Any] = {}
    for check in (node.get("any") or []) + (node.get("all") or []):
        data = check.get("data")
        if not isinstance(data, dict):
            continue
        if data.get("fgColor"):
            meta["fgColor"] = data["fgColor"]
        if data.get("bgColor"):
            meta["bgColor"] = data["bgColor"]
        if data.get("contrastRatio"):
            meta["contrastRatio"] = round(float(data["contrastRatio"]), 2)
        if data.get("expectedContrastRatio"):
            meta["expectedRatio"] = data["expectedContrastRatio"]
        if data.get("fontSize"):
            meta["fontSize"] = data["fontSize"]
        if data.get("fontWeight"):
            meta["fontWeight"] = data["fontWeight"]
    return meta


async def extract_image_metadata(page, selector: Optional[str]) -> Dict[str, Any]:
    """Source, file name, alt and natural size of the offending image"""
    if not selector:
        return {}
    try:
        return await page.evaluate(IMAGE_METADATA_SCRIPT, selector) or {}
    except PlaywrightError as e:
        logger.debug(f"Image metadata unavailable for {selector}: {e}")
        return {}


async def capture_element_screenshot(
    page,
    selector: str,
    padding: int = 8,
    max_height: int = 800,
    quality: int = 70,
    timeout_ms: int = 3000,
) -> Optional[str]:
    """
    Screenshot one element with a red outline, as base64 JPEG

    Falls back to a padded page clip around the element's bounding box when
    the element-level capture fails. The outline is always removed before
    returning. Each capture is bounded by ``timeout_ms`` rather than the page's
    default action timeout. Returns None if the element is missing, zero-size
    or neither capture works.
    """
    try:
        handle = await page.query_selector(selector)
    except PlaywrightError as e:
        logger.debug(f"Selector {selector} not queryable: {e}")
        return None
    if handle is None:
        return None

    try:
        box = await handle.bounding_box()
    except PlaywrightError:
        return None
    if not box or box["width"] == 0 or box["height"] == 0:
        return None

    args = {"sel": selector, "attr": HIGHLIGHT_ATTRIBUTE}
    buffer = None
    try:
        await page.evaluate(APPLY_OUTLINE_SCRIPT, args)
        await page.wait_for_timeout(PAINT_DELAY_MS)
        try:
            buffer = await handle.screenshot(type="jpeg", quality=quality, timeout=timeout_ms)
        except PlaywrightError as e:
            logger.debug(f"Element screenshot failed for {selector}, clipping page instead: {e}")
            try:
                buffer = await page.screenshot(
                    type="jpeg",
                    quality=quality,
                    timeout=timeout_ms,
                    clip={
                        "x": max(0, box["x"] - padding),
                        "y": max(0, box["y"] - padding),
                        "width": box["width"] + padding * 2,
                        "height": min(box["height"] + padding * 2, max_height),
                    },
                )
            except PlaywrightError as clip_error:
                logger.debug(f"Clip screenshot failed for {selector}: {clip_error}")
                buffer = None
    except PlaywrightError as e:
        logger.debug(f"Could not highlight {selector}: {e}")
    finally:
        try:
            await page.evaluate(REMOVE_OUTLINE_SCRIPT, args)
        except PlaywrightError as e:
            logger.warning(f"Outline cleanup failed for {selector}: {e}")

    if not buffer:
        return None
    return base64.b64encode(buffer).decode("ascii")
