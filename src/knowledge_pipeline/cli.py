"""CLI commands for the knowledge pipeline."""

import asyncio
import json
import logging
import re
import signal
import sys

import click

from knowledge_pipeline.config import settings


class SecretRedactingFilter(logging.Filter):
    """Filter to redact sensitive information from logs."""

    # Patterns for common secrets
    SECRET_PATTERNS = [
        (re.compile(r"(api[_-]?key[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(token[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(password[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(secret[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(bearer\s+)[\w-]+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"\bxox[abposr]-[\w-]+"), "[REDACTED]"),
        (re.compile(r"\bsk-ant-[\w-]+"), "[REDACTED]"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from log messages."""
        if isinstance(record.msg, str):
            for pattern, replacement in self.SECRET_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


# Configure logging with secret redaction
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Knowledge Pipeline CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""
    from knowledge_pipeline.db.database import init_db

    asyncio.run(init_db())
    click.echo(f"Database initialized at {settings.DATABASE_URL}")


@cli.command()
@click.option("--concurrency", "-c", type=int, help="Maximum concurrent jobs (defaults to MAX_CONCURRENT_JOBS)")
@click.option("--poll-interval", type=float, help="Seconds between polls (defaults to JOB_POLL_INTERVAL_SECONDS)")
def worker(concurrency: int | None, poll_interval: float | None) -> None:
    """Run the job orchestrator until interrupted."""
    asyncio.run(_worker(concurrency, poll_interval))


async def _worker(concurrency: int | None, poll_interval: float | None) -> None:
    """Async implementation of worker command."""
    from knowledge_pipeline.db.database import init_db
    from knowledge_pipeline.services import build_services

    await init_db()
    services = await build_services()
    if concurrency:
        services.orchestrator.max_concurrent = concurrency

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(services.orchestrator.shutdown()))
        except NotImplementedError:
            pass

    await services.orchestrator.run_forever(poll_interval)


@cli.command()
@click.argument("message_ids", nargs=-1, type=int)
@click.option("--all", "assemble_all", is_flag=True, help="Assemble every unprocessed message")
@click.option("--title", help="Document title (generated when omitted)")
@click.option("--category", help="Document category (generated when omitted)")
@click.option("--batch-size", type=int, help="Messages per document with --all")
def assemble(
    message_ids: tuple[int, ...],
    assemble_all: bool,
    title: str | None,
    category: str | None,
    batch_size: int | None,
) -> None:
    """Assemble messages into a document."""
    if not message_ids and not assemble_all:
        click.echo("Error: give message ids or --all.", err=True)
        sys.exit(1)
    asyncio.run(_assemble(list(message_ids), assemble_all, title, category, batch_size))


async def _assemble(
    message_ids: list[int],
    assemble_all: bool,
    title: str | None,
    category: str | None,
    batch_size: int | None,
) -> None:
    """Async implementation of assemble command."""
    from knowledge_pipeline.db.database import init_db
    from knowledge_pipeline.documents.models import AssemblyOptions
    from knowledge_pipeline.exceptions import PipelineError
    from knowledge_pipeline.services import build_services

    await init_db()
    services = await build_services()
    options = AssemblyOptions(title=title, category=category, created_by="cli")
    try:
        if assemble_all:
            result = await services.assembler.assemble_all_unprocessed(batch_size=batch_size, options=options)
            _echo_json(result.to_dict())
        else:
            document = await services.assembler.assemble(message_ids, options)
            click.echo(f"Document {document.id}: {document.title} ({document.category})")
            click.echo(f"  Confidence: {document.confidence_score:.2f}")
    except PipelineError as e:
        click.echo(f"Error ({e.error_type}): {e}", err=True)
        sys.exit(1)


@cli.command("generate-faqs")
@click.argument("document_ids", nargs=-1, type=int)
@click.option("--no-approval", is_flag=True, help="Approve new FAQs immediately")
def generate_faqs(document_ids: tuple[int, ...], no_approval: bool) -> None:
    """Synthesize FAQs for documents (defaults to documents without FAQs)."""
    asyncio.run(_generate_faqs(list(document_ids), no_approval))


async def _generate_faqs(document_ids: list[int], no_approval: bool) -> None:
    """Async implementation of generate-faqs command."""
    from knowledge_pipeline.db.database import init_db
    from knowledge_pipeline.faqs.models import SynthesisOptions
    from knowledge_pipeline.services import build_services

    await init_db()
    services = await build_services()
    document_ids = document_ids or await services.synthesizer.documents_without_faqs()
    if not document_ids:
        click.echo("No documents need FAQs.")
        return

    result = await services.synthesizer.synthesize_many(
        document_ids,
        SynthesisOptions(require_approval=False if no_approval else None, created_by="cli"),
    )
    _echo_json(result.to_dict())
    if result.halted:
        sys.exit(2)


@cli.command("pull-channel")
@click.argument("channel_id")
@click.option("--oldest", help="Only messages after this time (epoch seconds or ISO 8601)")
@click.option("--latest", help="Only messages before this time (epoch seconds or ISO 8601)")
@click.option("--no-threads", is_flag=True, help="Skip thread replies")
def pull_channel(channel_id: str, oldest: str | None, latest: str | None, no_threads: bool) -> None:
    """Backfill a Slack channel's history (needs SLACK_BOT_TOKEN)."""
    asyncio.run(_pull_channel(channel_id, oldest, latest, no_threads))


async def _pull_channel(channel_id: str, oldest: str | None, latest: str | None, no_threads: bool) -> None:
    from knowledge_pipeline.db.database import init_db
    from knowledge_pipeline.exceptions import PipelineError
    from knowledge_pipeline.ingestion.models import ChannelPullOptions
    from knowledge_pipeline.services import build_services

    await init_db()
    services = await build_services(discover=False)
    options = ChannelPullOptions(
        channel_id=channel_id,
        oldest=oldest,
        latest=latest,
        include_threads=False if no_threads else None,
    )
    try:
        result = await services.puller.pull(options)
    except PipelineError as e:
        click.echo(f"Error ({e.error_type}): {e}", err=True)
        sys.exit(1)
    _echo_json(result.to_dict())


@cli.command("retry-events")
@click.option("--max-attempts", type=int, help="Skip events with this many attempts or more")
@click.option("--limit", type=int, default=100, show_default=True)
def retry_events(max_attempts: int | None, limit: int) -> None:
    """Re-process FAILED ingestion events."""
    asyncio.run(_retry_events(max_attempts, limit))


async def _retry_events(max_attempts: int | None, limit: int) -> None:
    from knowledge_pipeline.ingestion.guard import EventIngestionGuard

    stats = await EventIngestionGuard().retry_failed_events(max_attempts=max_attempts, limit=limit)
    _echo_json(stats)


@cli.command("event-stats")
def event_stats() -> None:
    """Show ingestion event counts by status."""
    from knowledge_pipeline.ingestion.guard import EventIngestionGuard

    _echo_json(asyncio.run(EventIngestionGuard().get_event_stats()))


@cli.command("run-rule")
@click.argument("rule_id", type=int)
def run_rule(rule_id: int) -> None:
    """Fire an automation rule now (the worker runs the job)."""
    asyncio.run(_run_rule(rule_id))


async def _run_rule(rule_id: int) -> None:
    from knowledge_pipeline.exceptions import PipelineError
    from knowledge_pipeline.jobs.rules import AutomationRuleService

    try:
        job_id = await AutomationRuleService().fire_rule(rule_id, triggered_by="cli")
    except PipelineError as e:
        click.echo(f"Error ({e.error_type}): {e}", err=True)
        sys.exit(1)
    click.echo(f"Queued job {job_id}")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("knowledge_pipeline.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
