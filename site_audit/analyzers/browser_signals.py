"""
Browser signals analyzer

Turns what the browser observed while loading a page (console errors,
failed sub-resource requests) into technical issues.
"""
from typing import List

from site_audit.schemas import Issue, ResourceListDetails
from site_audit.types import IssueSeverity, IssueSource, IssueType

from .base import AnalyzerContext, BaseAnalyzer


class BrowserSignalsAnalyzer(BaseAnalyzer):
    name = "browser_signals"
    source = IssueSource.PLAYWRIGHT
    timeout = 5

    async def analyze(self, visit, context: AnalyzerContext) -> List[Issue]:
        issues = []

        if visit.console_errors:
            issues.append(
                self.issue(
                    visit.url,
                    "audit.issues.jsConsoleErrors",
                    IssueSeverity.WARNING,
                    type=IssueType.TECHNICAL,
                    suggestion="audit.suggestions.fixJsErrors",
                    details=ResourceListDetails(
                        summary=f"{len(visit.console_errors)} errors",
                        entries=[{"text": text} for text in visit.console_errors],
                    ),
                )
            )

        client_errors = [r for r in visit.broken_resources if r.startswith("4")]
        server_errors = [r for r in visit.broken_resources if r.startswith("5")]

        if client_errors:
            issues.append(
                self.issue(
                    visit.url,
                    "audit.issues.brokenResources",
                    IssueSeverity.WARNING,
                    type=IssueType.TECHNICAL,
                    suggestion="audit.suggestions.fixBrokenResources",
                    details=ResourceListDetails(
                        summary=f"{len(client_errors)} resources",
                        entries=[{"resource": r} for r in client_errors],
                    ),
                )
            )

        if server_errors:
            issues.append(
                self.issue(
                    visit.url,
                    "audit.issues.serverErrors",
                    IssueSeverity.ERROR,
                    type=IssueType.TECHNICAL,
                    suggestion="audit.suggestions.fixServerErrors",
                    details=ResourceListDetails(
                        summary=f"{len(server_errors)} server errors",
                        entries=[{"resource": r} for r in server_errors],
                    ),
                )
            )

        return issues
