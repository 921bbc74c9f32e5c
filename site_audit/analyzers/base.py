"""
Base analyzer class for all page analyzers
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from site_audit.schemas import Issue
from site_audit.types import DeviceType, IssueSource

from .evidence import ScreenshotBudget


@dataclass
class PageMetrics:
    """Numbers analyzers report back for the page's PageResult"""

    performance_score: Optional[int] = None
    lcp: Optional[float] = None
    cls: Optional[float] = None
    inp: Optional[int] = None
    title: Optional[str] = None
    meta_description: Optional[str] = None


@dataclass
class AnalyzerContext:
    """Per-page state threaded through every analyzer of one visit"""

    device: DeviceType
    budget: ScreenshotBudget
    metrics: PageMetrics = field(default_factory=PageMetrics)
    page_index: int = 0


class BaseAnalyzer(ABC):
    """Abstract base class for all analyzers"""

    name: str = "base"
    source: IssueSource = IssueSource.SYSTEM
    timeout: int = 60
    # False when the analyzer works from the URL alone (see analyze_url)
    requires_browser: bool = True

    @abstractmethod
    async def analyze(self, visit, context: AnalyzerContext) -> List[Issue]:
        """
        Inspect a loaded page

        Args:
            visit: PageVisit for the loaded page
            context: per-page budget and metrics accumulator

        Returns:
            Issues found on the page, attributed to ``visit.url``
        """

    def is_available(self) -> bool:
        """Check if this analyzer can run (has its assets, API keys, etc)"""
        return True

    def get_timeout(self) -> int:
        """Get timeout in seconds for one page"""
        return getattr(self, "timeout", 60)

    def issue(self, url: Optional[str], message: str, severity, **kwargs) -> Issue:
        """Build an issue attributed to this analyzer's source"""
        kwargs.setdefault("source", self.source)
        return Issue(url=url, message=message, severity=severity, **kwargs)

    async def close(self) -> None:
        """Release clients held across pages"""
