"""
Issue aggregation

Collapses the flat issue list of an audit into one row per message key for
presentation, plus the drill-down queries behind it. Everything here is
computed on read; nothing is persisted.
"""
import math
from typing import Dict, List, Optional, Sequence

from .schemas import AggregatedIssueGroup, Issue, IssuePage, PageResult, SeverityCounts
from .types import DeviceType, severity_rank, source_priority

UNKNOWN_KEY = "unknown"
GLOBAL_URL = "global"


def aggregate_issues(issues: Sequence[Issue]) -> List[AggregatedIssueGroup]:
    """
    Group issues by ``message``

    Each group keeps the first occurrence's type/source/suggestion/details,
    the worst severity seen, the distinct URLs in first-seen order, and a
    device of ``both`` once two devices disagree. Groups are sorted by
    severity (errors first), then by source priority.
    """
    groups: Dict[str, AggregatedIssueGroup] = {}

    for issue in issues:
        key = issue.message or UNKNOWN_KEY
        group = groups.get(key)
        if group is None:
            group = AggregatedIssueGroup(
                key=key,
                message=issue.message,
                severity=issue.severity,
                type=issue.type,
                source=issue.source or None,
                suggestion=issue.suggestion or None,
                details=issue.details,
                device=issue.device or None,
            )
            groups[key] = group

        group.count += 1
        if issue.url and issue.url not in group.urls:
            group.urls.append(issue.url)

        if severity_rank(issue.severity) < severity_rank(group.severity):
            group.severity = issue.severity

        if issue.device:
            if not group.device:
                group.device = issue.device
            elif group.device != issue.device and group.device != DeviceType.BOTH.value:
                group.device = DeviceType.BOTH.value

    return sorted(
        groups.values(),
        key=lambda g: (severity_rank(g.severity), source_priority(g.source)),
    )


def aggregate_issues_by_category(issues: Sequence[Issue], category: str) -> List[AggregatedIssueGroup]:
    return aggregate_issues([issue for issue in issues if issue.type == category])


def get_issues_by_key(issues: Sequence[Issue], issue_key: str) -> List[Issue]:
    return [issue for issue in issues if issue.message == issue_key]


def get_affected_pages(
    issues: Sequence[Issue], page_results: Sequence[PageResult], issue_key: str
) -> List[PageResult]:
    """Pages hit by ``issue_key``; every page when the finding is site-wide"""
    affected = {issue.url for issue in issues if issue.message == issue_key and issue.url}
    if not affected:
        return list(page_results)
    return [page for page in page_results if page.url in affected]


def count_by_severity(issues: Optional[Sequence[Issue]] = None) -> SeverityCounts:
    counts = SeverityCounts()
    for issue in issues or []:
        if issue.severity == "passed":
            counts.passed += 1
        elif issue.severity == "warning":
            counts.warnings += 1
        elif issue.severity == "error":
            counts.errors += 1
        elif issue.severity == "info":
            counts.info += 1
    return counts


def deduplicate_issues(issues: Sequence[Issue]) -> List[Issue]:
    """Keep the first issue per ``message::url`` (site-wide issues share one slot)"""
    seen = set()
    unique = []
    for issue in issues:
        key = f"{issue.message}::{issue.url or GLOBAL_URL}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(issue)
    return unique


def paginate(groups: Sequence[AggregatedIssueGroup], page: int = 1, page_size: int = 25) -> IssuePage:
    """1-based page slice; a page past the end is empty"""
    page = max(1, page)
    page_size = max(1, page_size)
    total = len(groups)
    start = (page - 1) * page_size
    return IssuePage(
        items=list(groups[start : start + page_size]),
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )
