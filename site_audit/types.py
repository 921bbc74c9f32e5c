"""
Site Audit Types

Enums, rank tables and small value types shared across the audit engine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class AuditStatus(str, Enum):
    """Lifecycle state of an audit record"""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    FAILED = "FAILED"


class DeviceType(str, Enum):
    """Device profile an audit or issue belongs to"""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    BOTH = "both"


class IssueType(str, Enum):
    """Issue category"""

    ACCESSIBILITY = "accessibility"
    TECHNICAL = "technical"
    PERFORMANCE = "performance"
    VISUAL = "visual"


class IssueSeverity(str, Enum):
    """Issue severity, ordered worst first"""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    PASSED = "passed"


class IssueSource(str, Enum):
    """Analyzer family that produced an issue"""

    HTML = "html"
    PLAYWRIGHT = "playwright"
    PSI = "psi"
    AXE = "axe"
    AI_VISION = "ai-vision"
    SYSTEM = "system"
    FETCH = "fetch"


class DiscoveryMethod(str, Enum):
    """How the page list of an audit was established"""

    SITEMAP = "sitemap"
    HOMEPAGE = "homepage"
    NONE = "none"


TERMINAL_STATUSES: FrozenSet[AuditStatus] = frozenset(
    {AuditStatus.COMPLETED, AuditStatus.ERROR, AuditStatus.FAILED}
)
IN_FLIGHT_STATUSES: Tuple[AuditStatus, ...] = (AuditStatus.PENDING, AuditStatus.RUNNING)

# Worst severity first; anything unrecognised sorts after "passed"
SEVERITY_RANK: Dict[str, int] = {"error": 0, "warning": 1, "info": 2, "passed": 3}
UNKNOWN_SEVERITY_RANK = 4

# Markup findings surface above slower or more speculative sources on ties
SOURCE_PRIORITY: Dict[str, int] = {
    "html": 0,
    "playwright": 1,
    "psi": 2,
    "axe": 3,
    "ai-vision": 4,
    "system": 5,
    "fetch": 6,
}
UNKNOWN_SOURCE_PRIORITY = 99

# Axe impact levels mapped onto issue severities
IMPACT_TO_SEVERITY: Dict[str, IssueSeverity] = {
    "critical": IssueSeverity.ERROR,
    "serious": IssueSeverity.ERROR,
    "moderate": IssueSeverity.WARNING,
    "minor": IssueSeverity.INFO,
}


def severity_rank(severity) -> int:
    """Rank of a severity value (enum or plain string)"""
    value = severity.value if isinstance(severity, Enum) else severity
    return SEVERITY_RANK.get(value, UNKNOWN_SEVERITY_RANK)


def source_priority(source) -> int:
    """Priority of a source value (enum or plain string)"""
    value = source.value if isinstance(source, Enum) else source
    return SOURCE_PRIORITY.get(value, UNKNOWN_SOURCE_PRIORITY)


@dataclass(frozen=True)
class Viewport:
    """Browser viewport profile for one device type"""

    width: int
    height: int
    user_agent: str = None
    is_mobile: bool = False
    has_touch: bool = False


MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)

VIEWPORTS: Dict[DeviceType, Viewport] = {
    DeviceType.DESKTOP: Viewport(width=1920, height=1080),
    DeviceType.MOBILE: Viewport(
        width=375,
        height=812,
        user_agent=MOBILE_USER_AGENT,
        is_mobile=True,
        has_touch=True,
    ),
}
