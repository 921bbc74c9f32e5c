"""
Quota gate for expensive audit runs

The orchestrator only depends on the ``QuotaGate`` protocol:
``check_quota(account_id, resource_key) -> QuotaCheck``. The default
implementation counts billable audits in the current period against a
per-account limit from settings.
"""
from datetime import timedelta
from typing import Callable, Optional, Protocol

from core.config import get_settings
from core.logging import get_logger

from .models import utcnow
from .schemas import QuotaCheck, QuotaUsage
from .store import AuditRecordStore

logger = get_logger("site_audit.quota", domain="site_audit")

SITE_AUDITS = "siteAudits"


class QuotaGate(Protocol):
    def check_quota(self, account_id: str, resource_key: str) -> QuotaCheck:
        ...


def build_usage(used: int, limit: Optional[int]) -> QuotaUsage:
    """Derive remaining/limit-reached/percent from raw counts"""
    remaining = None if limit is None else max(0, limit - used)
    is_limit_reached = limit is not None and used >= limit
    if limit is None or limit == 0:
        percent_used = 100 if used > 0 else 0
    else:
        percent_used = min(100, round(used / limit * 100))
    return QuotaUsage(
        used=used,
        limit=limit,
        remaining=remaining,
        is_limit_reached=is_limit_reached,
        percent_used=percent_used,
    )


class DatabaseQuotaGate:
    """Counts non-FAILED audits created in the current period"""

    def __init__(
        self,
        store: AuditRecordStore,
        limit_lookup: Optional[Callable[[str], Optional[int]]] = None,
        period_days: Optional[int] = None,
    ):
        settings = get_settings()
        self.store = store
        self.limit_lookup = limit_lookup or settings.get_audit_quota
        self.period_days = period_days if period_days is not None else settings.quota_period_days

    def check_quota(self, account_id: str, resource_key: str) -> QuotaCheck:
        if resource_key != SITE_AUDITS:
            # Unknown resources are not metered here
            return QuotaCheck(allowed=True, resource_key=resource_key, usage=build_usage(0, None))

        limit = self.limit_lookup(account_id)
        since = utcnow() - timedelta(days=self.period_days)
        used = self.store.count_billable(account_id, since)
        usage = build_usage(used, limit)

        if usage.is_limit_reached:
            logger.info(f"Quota reached for account {account_id}: {used}/{limit} {resource_key}")
        return QuotaCheck(allowed=not usage.is_limit_reached, resource_key=resource_key, usage=usage)


class UnlimitedQuotaGate:
    """Always allows; used for local CLI runs"""

    def check_quota(self, account_id: str, resource_key: str) -> QuotaCheck:
        return QuotaCheck(allowed=True, resource_key=resource_key, usage=build_usage(0, None))
