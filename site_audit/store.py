"""
Audit Record Store

Database service for ``SiteAudit`` records. Every status write goes through
``_transition`` so a terminal record is never re-entered; result writes
append one page at a time so pollers always see a consistent prefix of the
crawl.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import DatabaseError
from core.logging import get_logger
from database.session import SessionLocal, get_db_sync

from .exceptions import AuditNotFoundError, InvalidTransitionError
from .models import SiteAudit, utcnow
from .schemas import AuditProgress, Issue, PageResult
from .types import IN_FLIGHT_STATUSES, TERMINAL_STATUSES, AuditStatus, DeviceType

logger = get_logger(__name__, domain="site_audit")

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    AuditStatus.RUNNING: {AuditStatus.PENDING},
    AuditStatus.COMPLETED: {AuditStatus.RUNNING},
    AuditStatus.ERROR: {AuditStatus.PENDING, AuditStatus.RUNNING},
    AuditStatus.FAILED: {AuditStatus.PENDING, AuditStatus.RUNNING},
}


def _wire(items) -> List[Dict[str, Any]]:
    return [item.to_wire() if hasattr(item, "to_wire") else item for item in items]


class AuditRecordStore:
    """Create, read and update audit records"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self, operation: str):
        with get_db_sync(self.session_factory) as db:
            try:
                yield db
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Audit store {operation} failed: {e}")
                raise DatabaseError(str(e), operation=operation) from e

    @staticmethod
    def _detach(db, record: SiteAudit) -> SiteAudit:
        db.refresh(record)
        db.expunge(record)
        return record

    @staticmethod
    def _load(db, audit_id: str) -> SiteAudit:
        record = db.get(SiteAudit, audit_id)
        if record is None:
            raise AuditNotFoundError(audit_id)
        return record

    @staticmethod
    def _transition(record: SiteAudit, target: AuditStatus) -> None:
        current = record.status
        if current in TERMINAL_STATUSES or current not in ALLOWED_TRANSITIONS[target]:
            raise InvalidTransitionError(record.id, str(current.value), target.value)
        record.status = target

    # Reads

    def get(self, audit_id: str) -> Optional[SiteAudit]:
        with self._session("get") as db:
            record = db.get(SiteAudit, audit_id)
            if record is not None:
                db.expunge(record)
            return record

    def require(self, audit_id: str) -> SiteAudit:
        record = self.get(audit_id)
        if record is None:
            raise AuditNotFoundError(audit_id)
        return record

    def list_for_site(
        self, site_id: str, device_type: Optional[DeviceType] = None, limit: int = 20
    ) -> List[SiteAudit]:
        with self._session("list_for_site") as db:
            query = db.query(SiteAudit).filter(SiteAudit.site_id == site_id)
            if device_type is not None:
                query = query.filter(SiteAudit.device_type == device_type)
            records = query.order_by(SiteAudit.created_at.desc()).limit(limit).all()
            for record in records:
                db.expunge(record)
            return records

    def find_in_flight(self, site_id: str, device_type: DeviceType) -> Optional[SiteAudit]:
        """Newest PENDING/RUNNING audit for (site, device), if any"""
        with self._session("find_in_flight") as db:
            record = (
                db.query(SiteAudit)
                .filter(
                    SiteAudit.site_id == site_id,
                    SiteAudit.device_type == device_type,
                    SiteAudit.status.in_(IN_FLIGHT_STATUSES),
                )
                .order_by(SiteAudit.created_at.desc())
                .first()
            )
            if record is not None:
                db.expunge(record)
            return record

    def count_billable(self, account_id: str, since: datetime) -> int:
        """Audits charged to an account since ``since``; FAILED runs are free"""
        with self._session("count_billable") as db:
            return (
                db.query(SiteAudit)
                .filter(
                    SiteAudit.account_id == account_id,
                    SiteAudit.created_at >= since,
                    SiteAudit.status != AuditStatus.FAILED,
                )
                .count()
            )

    # Writes

    def create(
        self,
        site_id: str,
        device_type: DeviceType,
        site_url: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> SiteAudit:
        with self._session("create") as db:
            record = SiteAudit(
                site_id=site_id,
                device_type=device_type,
                site_url=site_url,
                account_id=account_id,
                status=AuditStatus.PENDING,
                issues=[],
                page_results=[],
                progress=AuditProgress().model_dump(),
            )
            db.add(record)
            db.commit()
            logger.info(f"Created audit {record.id} for site {site_id} ({device_type.value})")
            return self._detach(db, record)

    def mark_running(self, audit_id: str, progress: Optional[AuditProgress] = None) -> SiteAudit:
        with self._session("mark_running") as db:
            record = self._load(db, audit_id)
            self._transition(record, AuditStatus.RUNNING)
            record.started_at = utcnow()
            if progress is not None:
                record.progress = progress.model_dump()
            db.commit()
            return self._detach(db, record)

    def update_progress(self, audit_id: str, progress: AuditProgress, **fields) -> bool:
        """Write progress and bookkeeping fields; ignored once terminal"""
        with self._session("update_progress") as db:
            record = self._load(db, audit_id)
            if record.is_terminal:
                logger.warning(f"Ignoring progress update for terminal audit {audit_id}")
                return False
            record.progress = progress.model_dump()
            for name, value in fields.items():
                setattr(record, name, value)
            db.commit()
            return True

    def append_page(
        self,
        audit_id: str,
        page_result: PageResult,
        issues: List[Issue],
        progress: Optional[AuditProgress] = None,
    ) -> int:
        """Append one page's result and issues in a single commit; returns pages scanned"""
        with self._session("append_page") as db:
            record = self._load(db, audit_id)
            if record.is_terminal:
                raise InvalidTransitionError(audit_id, record.status.value, "append_page")
            # Reassign so the JSON columns are flagged dirty
            record.page_results = list(record.page_results or []) + [page_result.to_wire()]
            record.issues = list(record.issues or []) + _wire(issues)
            record.pages_scanned = len(record.page_results)
            if progress is not None:
                record.progress = progress.model_dump()
            db.commit()
            return record.pages_scanned

    def complete(
        self,
        audit_id: str,
        issues: List[Issue],
        page_results: List[PageResult],
        score: int,
        category_scores: Dict[str, int],
        progress: Optional[AuditProgress] = None,
    ) -> SiteAudit:
        with self._session("complete") as db:
            record = self._load(db, audit_id)
            self._transition(record, AuditStatus.COMPLETED)
            record.issues = _wire(issues)
            record.page_results = _wire(page_results)
            record.pages_scanned = len(page_results)
            record.score = score
            record.category_scores = category_scores
            record.completed_at = utcnow()
            if progress is not None:
                record.progress = progress.model_dump()
            db.commit()
            logger.info(f"Audit {audit_id} completed: score={score}, pages={len(page_results)}")
            return self._detach(db, record)

    def fail(
        self,
        audit_id: str,
        reason: str,
        issues: List[Issue],
        status: AuditStatus = AuditStatus.FAILED,
        progress: Optional[AuditProgress] = None,
        **fields,
    ) -> SiteAudit:
        with self._session("fail") as db:
            record = self._load(db, audit_id)
            self._transition(record, status)
            record.failure_reason = reason
            record.issues = _wire(issues)
            record.score = 0
            record.completed_at = utcnow()
            if progress is not None:
                record.progress = progress.model_dump()
            for name, value in fields.items():
                setattr(record, name, value)
            db.commit()
            logger.warning(f"Audit {audit_id} marked {status.value}: {reason}")
            return self._detach(db, record)

    def replace_page(
        self,
        audit_id: str,
        page_result: PageResult,
        issues: List[Issue],
        score: int,
        category_scores: Dict[str, int],
    ) -> SiteAudit:
        """Swap one URL's page result and issues on a finished audit"""
        with self._session("replace_page") as db:
            record = self._load(db, audit_id)
            url = page_result.url
            record.page_results = [
                pr for pr in (record.page_results or []) if pr.get("url") != url
            ] + [page_result.to_wire()]
            record.issues = [i for i in (record.issues or []) if i.get("url") != url] + _wire(issues)
            record.score = score
            record.category_scores = category_scores
            db.commit()
            return self._detach(db, record)

    def apply_fix(
        self,
        audit_id: str,
        issue_key: str,
        severity: str,
        message: Optional[str] = None,
        suggestion: Optional[str] = None,
        details: Any = None,
    ) -> int:
        """
        Rewrite every issue whose message equals ``issue_key`` in place

        Used by external fix flows to mark a finding resolved without re-running
        the audit. Returns the number of issues rewritten.
        """
        with self._session("apply_fix") as db:
            record = self._load(db, audit_id)
            updated = 0
            rewritten = []
            for raw in record.issues or []:
                if raw.get("message") == issue_key:
                    raw = {
                        **raw,
                        "severity": severity,
                        "message": message or issue_key,
                        "suggestion": suggestion,
                        "details": details,
                    }
                    # Round-trip through the schema so details land in the tagged shape
                    raw = Issue.model_validate(raw).to_wire()
                    updated += 1
                rewritten.append(raw)
            if updated:
                record.issues = rewritten
                db.commit()
            logger.info(f"Applied fix for {issue_key} on audit {audit_id}: {updated} issue(s) updated")
            return updated
