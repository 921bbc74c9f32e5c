"""
Command-line interface for SiteAudit
"""
import asyncio

import click

from core.config import settings
from core.logging import get_logger, setup_logging
from database.session import init_db as create_tables

logger = get_logger(__name__)

SEVERITY_MARKS = {"error": "✗", "warning": "!", "info": "i", "passed": "✓"}


@click.group()
@click.version_option(version=settings.app_version)
def cli():
    """SiteAudit CLI - crawl a site and report accessibility, SEO and performance issues"""
    setup_logging()


@cli.command()
def init_db():
    """Initialize database with tables"""
    click.echo("Creating database tables...")
    create_tables()
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
def runserver(host: str, port: int, reload: bool):
    """Run the FastAPI development server"""
    import uvicorn

    click.echo(f"Starting SiteAudit server on {host}:{port}")
    click.echo(f"Environment: {settings.environment}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.argument("url")
@click.option(
    "--device",
    type=click.Choice(["desktop", "mobile"]),
    default="desktop",
    help="Device profile to audit with",
)
@click.option("--site-id", default=None, help="Site identifier (defaults to the URL)")
@click.option("--top", default=15, help="Number of issue groups to print")
def audit(url: str, device: str, site_id: str, top: int):
    """Run one audit to completion and print the aggregated issues"""
    from site_audit.aggregator import aggregate_issues, count_by_severity
    from site_audit.orchestrator import AuditOrchestrator
    from site_audit.quota import UnlimitedQuotaGate
    from site_audit.types import DeviceType

    create_tables()
    orchestrator = AuditOrchestrator(quota_gate=UnlimitedQuotaGate())

    async def run_audit():
        result = await orchestrator.start_audit(site_id or url, url, DeviceType(device))
        click.echo(f"Audit {result.record.id} ({device}) for {url}")
        await orchestrator.wait_for_background()
        return orchestrator.store.require(result.record.id)

    record = asyncio.run(run_audit())

    click.echo(f"Status: {record.status.value}")
    if record.failure_reason:
        click.echo(f"Failure: {record.failure_reason}", err=True)
    click.echo(f"Score: {record.score}")
    for category, score in (record.category_scores or {}).items():
        click.echo(f"  {category}: {score}")

    issues = record.get_issues()
    counts = count_by_severity(issues)
    click.echo(
        f"Pages: {record.pages_scanned}/{record.pages_found}  "
        f"errors={counts.errors} warnings={counts.warnings} info={counts.info} passed={counts.passed}"
    )

    for group in aggregate_issues(issues)[:top]:
        mark = SEVERITY_MARKS.get(group.severity, "?")
        click.echo(f"{mark} {group.key} x{group.count} ({len(group.urls)} pages)")


@cli.command()
def check_api():
    """Check PageSpeed Insights configuration"""
    click.echo("Checking pagespeed API configuration...")
    if not settings.enable_pagespeed:
        click.echo("✗ PageSpeed Insights disabled (ENABLE_PAGESPEED=false)")
        return

    api_key = settings.get_api_key("pagespeed")
    if api_key:
        masked_key = api_key[:8] + "..." if len(api_key) > 8 else "***"
        click.echo(f"✓ API key configured: {masked_key}")
    else:
        click.echo("! No API key configured, requests will be anonymous and rate limited")
    click.echo(f"✓ pagespeed API ready ({settings.pagespeed_base_url})")


@cli.command()
def env_info():
    """Display environment information"""
    click.echo(f"SiteAudit v{settings.app_version}")
    click.echo(f"Environment: {settings.environment}")
    click.echo(f"Database: {settings.database_url}")
    click.echo(f"Max pages per audit: {settings.audit_max_pages}")
    click.echo(f"Page concurrency: {settings.audit_page_concurrency}")
    click.echo(f"Element screenshots per page: {settings.audit_max_element_screenshots}")
    click.echo(f"PageSpeed enabled: {settings.enable_pagespeed}")


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
