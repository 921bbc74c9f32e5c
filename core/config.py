"""
Configuration management using Pydantic Settings
Handles environment variables and validation
"""
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    testing: bool = Field(default=False)

    # Application
    app_name: str = "SiteAudit"
    app_version: str = "0.1.0"
    base_url: str = Field(default="http://localhost:8000")

    # Database
    database_url: str = Field(default="sqlite:///./site_audit.db")
    database_pool_size: int = Field(default=10)
    database_echo: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Monitoring
    prometheus_enabled: bool = Field(default=True)

    # Crawl budget and browser
    audit_max_pages: int = Field(default=50, ge=1)
    audit_page_concurrency: int = Field(default=1, ge=1, le=8)
    audit_page_timeout_ms: int = Field(default=25000)
    audit_network_idle_timeout_ms: int = Field(default=10000)
    browser_headless: bool = Field(default=True)

    # Accessibility evidence
    audit_max_element_screenshots: int = Field(default=30, ge=0)
    audit_screenshot_padding_px: int = Field(default=8)
    audit_screenshot_max_height_px: int = Field(default=800)
    audit_screenshot_quality: int = Field(default=70, ge=1, le=100)
    audit_screenshot_timeout_ms: int = Field(default=3000, ge=100, description="Per capture, element or page")

    # Page-level visual evidence (full page, scroll segments, load filmstrip)
    audit_page_screenshots: bool = Field(default=True)
    audit_page_screenshot_quality: int = Field(default=60, ge=1, le=100)
    audit_segment_quality: int = Field(default=55, ge=1, le=100)
    audit_filmstrip_quality: int = Field(default=50, ge=1, le=100)
    audit_max_segments: int = Field(default=8, ge=0)
    axe_script_path: Optional[str] = Field(default=None, description="Override for the bundled axe.min.js")
    axe_run_only_tags: List[str] = Field(
        default=["wcag2a", "wcag2aa", "wcag21a", "wcag21aa", "best-practice"]
    )

    # PageSpeed Insights
    enable_pagespeed: bool = Field(default=True, description="Enable PageSpeed Insights API")
    google_api_key: Optional[SecretStr] = Field(default=None)
    pagespeed_base_url: str = Field(default="https://www.googleapis.com")
    pagespeed_max_pages: int = Field(default=3)
    pagespeed_timeout: int = Field(default=45)
    pagespeed_max_retries: int = Field(default=1)
    pagespeed_retry_delay: float = Field(default=3.0)

    # Plain fetches (discovery, robots.txt, fallback scan)
    fetch_timeout: int = Field(default=12)
    user_agent: str = Field(default="SiteAudit/2.0")

    # Quota
    site_audit_quota_default: Optional[int] = Field(default=10, description="Audits per period, None = unlimited")
    site_audit_quota_overrides: Dict[str, int] = Field(default={})
    quota_period_days: int = Field(default=30)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v, info):
        if info.data.get("testing") and not v.startswith("sqlite"):
            # Force SQLite for testing
            return "sqlite:///:memory:"
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v

    @field_validator("enable_pagespeed")
    @classmethod
    def disable_pagespeed_in_tests(cls, v, info):
        if info.data.get("environment") == "test":
            return False
        return v

    @model_validator(mode="after")
    def validate_screenshot_settings(self):
        """Validate evidence capture settings after all fields are set"""
        if self.audit_screenshot_max_height_px <= self.audit_screenshot_padding_px * 2:
            raise ValueError("Screenshot max height must exceed twice the padding")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def get_api_key(self, service: str) -> Optional[str]:
        """Get API key for a service, None when not configured"""
        keys = {
            "google": self.google_api_key,
            "pagespeed": self.google_api_key,
        }
        key = keys.get(service)
        return key.get_secret_value() if key else None

    def get_audit_quota(self, account_id: str) -> Optional[int]:
        """Site audit limit for an account, None means unlimited"""
        return self.site_audit_quota_overrides.get(account_id, self.site_audit_quota_default)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        for field in ["google_api_key"]:
            if field in data and data[field]:
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
