"""
Site Audit API Endpoints

FastAPI endpoints for starting audits, polling records and reading the
aggregated issue views. Errors raised by the engine (quota denial, unknown
audit, invalid transition) are ``SiteAuditError`` subclasses and are turned
into JSON responses by the application's exception handler.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from core.logging import get_logger

from .aggregator import (
    aggregate_issues,
    aggregate_issues_by_category,
    count_by_severity,
    get_affected_pages,
    get_issues_by_key,
    paginate,
)
from .orchestrator import DEFAULT_DEVICES, AuditOrchestrator
from .schemas import (
    ApplyFixRequest,
    ApplyFixResponse,
    AuditListResponse,
    AuditRecordResponse,
    AuditSummaryResponse,
    Issue,
    IssuePage,
    PageResult,
    RescanRequest,
    StartAuditRequest,
    StartAuditResponse,
)
from .types import DeviceType, IssueType

logger = get_logger(__name__, domain="site_audit")

router = APIRouter(prefix="/api/v1/site-audits", tags=["site-audits"])

_orchestrator: Optional[AuditOrchestrator] = None


def get_orchestrator() -> AuditOrchestrator:
    """Dependency to get the process-wide orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AuditOrchestrator()
    return _orchestrator


def current_orchestrator() -> Optional[AuditOrchestrator]:
    """The orchestrator if one was created, without creating it"""
    return _orchestrator


@router.post(
    "/",
    response_model=StartAuditResponse,
    summary="Start Site Audit",
    description="Start desktop and mobile audits for a site, or one device when device_type is given",
)
async def start_audits(
    request: StartAuditRequest,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> StartAuditResponse:
    devices = (request.device_type,) if request.device_type else DEFAULT_DEVICES
    results = await orchestrator.start_site_audits(
        request.site_id, request.site_url, account_id=request.account_id, devices=devices
    )

    created = any(result.created for result in results)
    if created:
        message = "Audit started"
    else:
        message = "Audit already in progress"
    logger.info(f"Start request for site {request.site_id}: {message.lower()}")

    return StartAuditResponse(
        audits=[AuditRecordResponse.from_record(result.record) for result in results],
        created=created,
        message=message,
    )


@router.get("/", response_model=AuditListResponse, summary="List Site Audits")
async def list_audits(
    site_id: str = Query(..., min_length=1),
    device_type: Optional[DeviceType] = Query(None),
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditListResponse:
    """Most recent audits for a site, newest first"""
    records = orchestrator.store.list_for_site(site_id, device_type)
    audits = [AuditRecordResponse.from_record(record) for record in records]
    return AuditListResponse(audits=audits, latest=audits[0] if audits else None)


@router.get("/{audit_id}", response_model=AuditRecordResponse, summary="Get Site Audit")
async def get_audit(
    audit_id: str,
    include_results: bool = Query(True),
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditRecordResponse:
    record = orchestrator.store.require(audit_id)
    return AuditRecordResponse.from_record(record, include_results=include_results)


@router.get("/{audit_id}/issues", response_model=IssuePage, summary="Aggregated Issues")
async def get_aggregated_issues(
    audit_id: str,
    category: Optional[IssueType] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=200),
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> IssuePage:
    """One row per issue key, worst severity first"""
    issues = orchestrator.store.require(audit_id).get_issues()
    if category is not None:
        groups = aggregate_issues_by_category(issues, category.value)
    else:
        groups = aggregate_issues(issues)
    return paginate(groups, page=page, page_size=page_size)


@router.get("/{audit_id}/issues/{issue_key}", response_model=List[Issue], summary="Issue Drill-down")
async def get_issue_occurrences(
    audit_id: str,
    issue_key: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> List[Issue]:
    issues = orchestrator.store.require(audit_id).get_issues()
    return get_issues_by_key(issues, issue_key)


@router.get("/{audit_id}/issues/{issue_key}/pages", response_model=List[PageResult], summary="Affected Pages")
async def get_issue_pages(
    audit_id: str,
    issue_key: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> List[PageResult]:
    record = orchestrator.store.require(audit_id)
    return get_affected_pages(record.get_issues(), record.get_page_results(), issue_key)


@router.get("/{audit_id}/summary", response_model=AuditSummaryResponse, summary="Audit Summary")
async def get_summary(
    audit_id: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditSummaryResponse:
    record = orchestrator.store.require(audit_id)
    issues = record.get_issues()
    return AuditSummaryResponse(
        audit_id=record.id,
        status=record.status,
        score=record.score,
        category_scores=record.category_scores,
        counts=count_by_severity(issues),
        counts_by_category={
            category.value: count_by_severity([issue for issue in issues if issue.type == category.value])
            for category in IssueType
        },
    )


@router.post("/{audit_id}/fixes", response_model=ApplyFixResponse, summary="Apply Fix")
async def apply_fix(
    audit_id: str,
    request: ApplyFixRequest,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> ApplyFixResponse:
    """Rewrite every issue with ``issue_key`` in place, without re-running the audit"""
    updated = orchestrator.apply_fix(
        audit_id,
        request.issue_key,
        severity=request.severity,
        message=request.message,
        suggestion=request.suggestion,
        details=request.details,
    )
    return ApplyFixResponse(audit_id=audit_id, updated=updated)


@router.post("/{audit_id}/rescan", response_model=AuditRecordResponse, summary="Rescan Page")
async def rescan_page(
    audit_id: str,
    request: RescanRequest,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditRecordResponse:
    record = await orchestrator.rescan_page(audit_id, request.url)
    return AuditRecordResponse.from_record(record, include_results=True)
