"""
Site Audit Models

One ``SiteAudit`` row per audit run for one (site, device) pair. Issues, page
results and progress live in JSON columns so a running audit can be polled
while pages are still being appended.
"""
import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import JSON, TIMESTAMP, Column, Index, Integer, String, Text
from sqlalchemy.sql import func

from database.base import Base, DatabaseAgnosticEnum

from .schemas import Issue, PageResult
from .types import AuditStatus, DeviceType, TERMINAL_STATUSES


def generate_uuid():
    """Generate a new UUID"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SiteAudit(Base):
    """Persistent audit record"""

    __tablename__ = "site_audits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    site_id = Column(String(64), nullable=False)
    account_id = Column(String(64))
    site_url = Column(String(2048))

    device_type = Column(DatabaseAgnosticEnum(DeviceType), nullable=False)
    status = Column(DatabaseAgnosticEnum(AuditStatus), nullable=False, default=AuditStatus.PENDING)

    # Results
    score = Column(Integer)
    category_scores = Column(JSON)
    issues = Column(JSON, default=list)
    page_results = Column(JSON, default=list)

    # Crawl bookkeeping
    progress = Column(JSON)
    pages_found = Column(Integer, default=0)
    pages_scanned = Column(Integer, default=0)
    discovery_method = Column(String(32))
    failure_reason = Column(Text)

    # Timestamps
    created_at = Column(TIMESTAMP, default=utcnow, server_default=func.now(), nullable=False)
    started_at = Column(TIMESTAMP)
    completed_at = Column(TIMESTAMP)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_site_audits_in_flight", "site_id", "device_type", "status"),
        Index("idx_site_audits_account_created", "account_id", "created_at"),
        Index("idx_site_audits_site_created", "site_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_issues(self) -> List[Issue]:
        return [Issue.model_validate(raw) for raw in (self.issues or [])]

    def get_page_results(self) -> List[PageResult]:
        return [PageResult.model_validate(raw) for raw in (self.page_results or [])]

    def __repr__(self):
        return f"<SiteAudit(id={self.id}, site={self.site_id}, device={self.device_type}, status={self.status})>"
