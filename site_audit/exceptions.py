"""
Site audit exceptions
"""
from typing import Any, Dict, Optional

from core.exceptions import NotFoundError, SiteAuditError


class NavigationError(SiteAuditError):
    """Raised when a page cannot be loaded within the navigation budget"""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        super().__init__(
            message=f"Navigation to {url} failed: {reason}",
            error_code="NAVIGATION_ERROR",
            details={"url": url, "reason": reason, "page_status_code": status_code},
            status_code=502,
        )
        self.url = url
        self.reason = reason
        self.page_status_code = status_code


class QuotaExceededError(SiteAuditError):
    """Raised when the quota gate denies a new audit"""

    def __init__(self, account_id: str, resource_key: str, usage: Dict[str, Any]):
        super().__init__(
            message=f"Quota exhausted for {resource_key}",
            error_code="QUOTA_EXCEEDED",
            details={"account_id": account_id, "resource_key": resource_key, "usage": usage},
            status_code=403,
        )
        self.account_id = account_id
        self.resource_key = resource_key
        self.usage = usage

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["allowed"] = False
        payload["usage"] = self.usage
        return payload


class AuditNotFoundError(NotFoundError):
    """Raised when an audit id does not exist"""

    def __init__(self, audit_id: str):
        super().__init__("SiteAudit", audit_id)


class InvalidTransitionError(SiteAuditError):
    """Raised when a status write would leave a terminal state"""

    def __init__(self, audit_id: str, current: str, target: str):
        super().__init__(
            message=f"Audit {audit_id} cannot move from {current} to {target}",
            error_code="INVALID_TRANSITION",
            details={"audit_id": audit_id, "current": current, "target": target},
            status_code=409,
        )


class DiscoveryError(SiteAuditError):
    """Raised when no page list can be established for a site"""

    def __init__(self, site_url: str, reason: str):
        super().__init__(
            message=f"URL discovery failed for {site_url}: {reason}",
            error_code="DISCOVERY_ERROR",
            details={"site_url": site_url, "reason": reason},
            status_code=422,
        )
