"""Core utilities and configuration for the site audit service"""
from core.config import settings
from core.exceptions import ExternalAPIError, SiteAuditError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "SiteAuditError",
    "ExternalAPIError",
]
