"""
Site Audit - crawl-and-analyze engine for one site and one device

Discovers a site's pages, loads each one in an isolated browser context, runs
the page analyzers (accessibility evidence first) and persists issues and
page results incrementally on an audit record. Aggregation and scoring are
computed on read.
"""

from .models import SiteAudit
from .schemas import AggregatedIssueGroup, AuditProgress, Issue, PageResult
from .types import AuditStatus, DeviceType, IssueSeverity, IssueSource, IssueType

__all__ = [
    # Models
    "SiteAudit",
    # Schemas
    "Issue",
    "PageResult",
    "AggregatedIssueGroup",
    "AuditProgress",
    # Types
    "AuditStatus",
    "DeviceType",
    "IssueType",
    "IssueSeverity",
    "IssueSource",
]
