"""
Page analyzers for the site audit engine
"""

from typing import Dict, List, Optional, Type

from site_audit.analyzers.accessibility import AccessibilityAnalyzer
from site_audit.analyzers.base import AnalyzerContext, BaseAnalyzer, PageMetrics
from site_audit.analyzers.browser_signals import BrowserSignalsAnalyzer
from site_audit.analyzers.evidence import ScreenshotBudget
from site_audit.analyzers.performance import PerformanceAnalyzer
from site_audit.analyzers.structural import StructuralAnalyzer, analyze_html

# Analyzer registry; order is run order (accessibility first)
ANALYZER_REGISTRY: Dict[str, Type[BaseAnalyzer]] = {
    "accessibility": AccessibilityAnalyzer,
    "browser_signals": BrowserSignalsAnalyzer,
    "structural": StructuralAnalyzer,
    "performance": PerformanceAnalyzer,
}


def build_analyzers(names: Optional[List[str]] = None) -> List[BaseAnalyzer]:
    """Fresh analyzer instances in registry order"""
    selected = names or list(ANALYZER_REGISTRY)
    return [ANALYZER_REGISTRY[name]() for name in ANALYZER_REGISTRY if name in selected]


__all__ = [
    "AnalyzerContext",
    "BaseAnalyzer",
    "PageMetrics",
    "ScreenshotBudget",
    "AccessibilityAnalyzer",
    "BrowserSignalsAnalyzer",
    "StructuralAnalyzer",
    "PerformanceAnalyzer",
    "analyze_html",
    "ANALYZER_REGISTRY",
    "build_analyzers",
]
