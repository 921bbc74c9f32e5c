"""
Site Audit Schemas

Pydantic models for issues, evidence, page results and the audit API.

Issue payloads are persisted and served in camelCase (``codeSnippet``,
``elementScreenshot``...) because presentation code depends on that shape;
API envelope models stay snake_case like the rest of the service.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .types import AuditStatus, DeviceType, IssueSeverity, IssueSource, IssueType


class WireModel(BaseModel):
    """Base for models stored inside audit JSON columns"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe dict in the persisted (camelCase) shape"""
        return self.model_dump(mode="json", by_alias=True)


class AccessibilityViolationNode(WireModel):
    """One affected DOM element for one accessibility rule"""

    selector: Optional[str] = None
    code_snippet: str = ""
    element_screenshot: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    failure_summary: str = ""


class AccessibilityDetails(WireModel):
    kind: Literal["accessibility"] = "accessibility"
    rule_id: str
    impact: Optional[str] = None
    description: str = ""
    help_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    node_count: int = 0
    nodes: List[AccessibilityViolationNode] = Field(default_factory=list)


class TextDetails(WireModel):
    kind: Literal["text"] = "text"
    text: str


class ResourceListDetails(WireModel):
    """Summary plus the individual offending resources or messages"""

    kind: Literal["resources"] = "resources"
    summary: str
    entries: List[Dict[str, Any]] = Field(default_factory=list)


IssueDetails = Annotated[
    Union[AccessibilityDetails, TextDetails, ResourceListDetails],
    Field(discriminator="kind"),
]


class Issue(WireModel):
    """One finding at raw, pre-aggregation granularity"""

    type: IssueType = IssueType.TECHNICAL
    severity: IssueSeverity
    message: str
    url: Optional[str] = None
    source: Optional[IssueSource] = None
    suggestion: Optional[str] = None
    details: Optional[IssueDetails] = None
    device: Optional[DeviceType] = None

    @field_validator("details", mode="before")
    @classmethod
    def coerce_plain_text_details(cls, v):
        # Older records and fix flows store details as a bare string
        if isinstance(v, str):
            return {"kind": "text", "text": v}
        return v


class FilmstripFrame(WireModel):
    """Viewport capture at one load stage (domcontentloaded, networkidle, fullyLoaded)"""

    stage: str
    image: str


class PageResult(WireModel):
    """
    Summary of one crawled URL within an audit

    ``screenshot`` is the full-page capture, ``screenshots`` the viewport-height
    scroll segments; all images are base64 JPEG for the audit's device.
    """

    url: str
    status_code: Optional[int] = None
    ttfb: Optional[int] = None
    performance_score: Optional[int] = None
    lcp: Optional[float] = None
    cls: Optional[float] = None
    inp: Optional[int] = None
    title: Optional[str] = None
    meta_description: Optional[str] = None
    js_errors: List[str] = Field(default_factory=list)
    broken_resources: List[str] = Field(default_factory=list)
    screenshot: Optional[str] = None
    screenshots: List[str] = Field(default_factory=list)
    filmstrip: List[FilmstripFrame] = Field(default_factory=list)
    issue_count: int = 0


class AggregatedIssueGroup(WireModel):
    """One row per distinct message key, computed on read"""

    key: str
    message: Optional[str] = None
    severity: str
    type: Optional[str] = None
    source: Optional[str] = None
    suggestion: Optional[str] = None
    details: Optional[IssueDetails] = None
    device: Optional[str] = None
    count: int = 0
    urls: List[str] = Field(default_factory=list)


class SeverityCounts(BaseModel):
    passed: int = 0
    warnings: int = 0
    errors: int = 0
    info: int = 0


class AuditProgress(BaseModel):
    """Progress snapshot persisted on the audit record"""

    current_step: int = 0
    total_steps: int = 1
    percentage: int = 0
    label_key: str = "siteAudit.progress.queued"
    label_params: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None


class QuotaUsage(BaseModel):
    used: int = 0
    limit: Optional[int] = None  # None = unlimited
    remaining: Optional[int] = None
    is_limit_reached: bool = False
    percent_used: int = 0


class QuotaCheck(BaseModel):
    """Result of a quota gate lookup"""

    allowed: bool
    resource_key: str
    usage: QuotaUsage


class IssuePage(BaseModel):
    items: List[AggregatedIssueGroup]
    total: int
    page: int
    page_size: int
    pages: int


# API request/response models


class StartAuditRequest(BaseModel):
    """Request model for starting site audits"""

    site_id: str = Field(..., min_length=1, description="Site identifier")
    site_url: str = Field(..., min_length=1, description="Site homepage URL")
    account_id: Optional[str] = Field(default=None, description="Account charged for the audit")
    device_type: Optional[DeviceType] = Field(
        default=None, description="Audit a single device; both devices when omitted"
    )

    @field_validator("device_type")
    @classmethod
    def validate_device_type(cls, v):
        if v == DeviceType.BOTH:
            raise ValueError("device_type must be 'desktop' or 'mobile'")
        return v


class AuditRecordResponse(BaseModel):
    id: str
    site_id: str
    account_id: Optional[str] = None
    site_url: Optional[str] = None
    device_type: DeviceType
    status: AuditStatus
    score: Optional[int] = None
    category_scores: Optional[Dict[str, int]] = None
    progress: Optional[AuditProgress] = None
    pages_found: int = 0
    pages_scanned: int = 0
    discovery_method: Optional[str] = None
    failure_reason: Optional[str] = None
    issue_count: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    issues: Optional[List[Issue]] = None
    page_results: Optional[List[PageResult]] = None

    @classmethod
    def from_record(cls, record, include_results: bool = False) -> "AuditRecordResponse":
        issues = record.issues or []
        return cls(
            id=record.id,
            site_id=record.site_id,
            account_id=record.account_id,
            site_url=record.site_url,
            device_type=record.device_type,
            status=record.status,
            score=record.score,
            category_scores=record.category_scores,
            progress=AuditProgress(**record.progress) if record.progress else None,
            pages_found=record.pages_found or 0,
            pages_scanned=record.pages_scanned or 0,
            discovery_method=record.discovery_method,
            failure_reason=record.failure_reason,
            issue_count=len(issues),
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            issues=record.get_issues() if include_results else None,
            page_results=record.get_page_results() if include_results else None,
        )


class StartAuditResponse(BaseModel):
    audits: List[AuditRecordResponse]
    created: bool
    message: str


class AuditListResponse(BaseModel):
    audits: List[AuditRecordResponse]
    latest: Optional[AuditRecordResponse] = None


class AuditSummaryResponse(BaseModel):
    audit_id: str
    status: AuditStatus
    score: Optional[int] = None
    category_scores: Optional[Dict[str, int]] = None
    counts: SeverityCounts
    counts_by_category: Dict[str, SeverityCounts]


class ApplyFixRequest(BaseModel):
    """Rewrite every issue carrying ``issue_key`` in place"""

    issue_key: str = Field(..., min_length=1)
    severity: IssueSeverity = IssueSeverity.PASSED
    message: Optional[str] = Field(default=None, description="Replacement message key")
    suggestion: Optional[str] = None
    details: Optional[str] = None


class ApplyFixResponse(BaseModel):
    audit_id: str
    updated: int


class RescanRequest(BaseModel):
    url: str = Field(..., min_length=1)
