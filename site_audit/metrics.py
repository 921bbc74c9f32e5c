"""
Site Audit Metrics

Prometheus counters and histograms for audit runs, page scans and evidence
capture, registered on the application registry.
"""
from prometheus_client import Counter, Histogram

from core.metrics import REGISTRY

audits_started = Counter(
    "site_audits_started_total",
    "Audit records created and scheduled",
    ["device"],
    registry=REGISTRY,
)

audits_finished = Counter(
    "site_audits_finished_total",
    "Audits that reached a terminal state",
    ["device", "status"],
    registry=REGISTRY,
)

audit_duration = Histogram(
    "site_audit_duration_seconds",
    "Wall time of a full audit run",
    ["device"],
    buckets=(5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, float("inf")),
    registry=REGISTRY,
)

page_scan_duration = Histogram(
    "site_audit_page_scan_seconds",
    "Time to load and analyze one page",
    ["device"],
    buckets=(1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, float("inf")),
    registry=REGISTRY,
)

page_failures = Counter(
    "site_audit_page_failures_total",
    "Pages that could not be scanned",
    ["reason"],
    registry=REGISTRY,
)

a11y_violations = Counter(
    "site_audit_a11y_violations_total",
    "Accessibility rule violations reported",
    ["impact"],
    registry=REGISTRY,
)

element_screenshots = Counter(
    "site_audit_element_screenshots_total",
    "Element screenshot attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

analyzer_failures = Counter(
    "site_audit_analyzer_failures_total",
    "Analyzer runs that raised and were contained",
    ["analyzer"],
    registry=REGISTRY,
)

quota_denials = Counter(
    "site_audit_quota_denials_total",
    "Audit start requests denied by the quota gate",
    registry=REGISTRY,
)


class AuditMetrics:
    """Thin facade so callers don't touch label plumbing"""

    def audit_started(self, device: str):
        audits_started.labels(device=device).inc()

    def audit_finished(self, device: str, status: str, duration: float = None):
        audits_finished.labels(device=device, status=status).inc()
        if duration is not None:
            audit_duration.labels(device=device).observe(duration)

    def page_scanned(self, device: str, duration: float):
        page_scan_duration.labels(device=device).observe(duration)

    def page_failed(self, reason: str):
        page_failures.labels(reason=reason).inc()

    def violation(self, impact: str):
        a11y_violations.labels(impact=impact or "unknown").inc()

    def screenshot(self, outcome: str):
        element_screenshots.labels(outcome=outcome).inc()

    def analyzer_failed(self, analyzer: str):
        analyzer_failures.labels(analyzer=analyzer).inc()

    def quota_denied(self):
        quota_denials.inc()


audit_metrics = AuditMetrics()
