"""
Command Line Interface for the ReachOut workflow engine.

``run-scheduler`` and ``sweep-messages`` run one batch in-process, for
cron jobs that can reach the database directly instead of the HTTP
trigger.
"""

from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import init_database, session_scope
from ..db.services import ExecutionService, MessageService
from ..db.models import utc_now
from ..engine.scheduler import Scheduler
from ..errors import EngineError
from ..logging_config import configure_logging

app = typer.Typer(help="ReachOut Engine - multi-step outreach workflow execution")
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
    log_format: Optional[str] = typer.Option(None, help="json or console"),
):
    settings = get_settings()
    configure_logging(log_level or settings.log_level, log_format or "console")


@app.command("init-db")
def init_db():
    """Create any missing tables."""
    init_database()
    console.print("✅ Database tables created")


@app.command("run-scheduler")
def run_scheduler(
    batch_size: Optional[int] = typer.Option(None, help="Executions to process"),
):
    """Process one batch of due executions."""
    try:
        with session_scope() as db:
            summary = Scheduler(db).run_executions(batch_size)
    except EngineError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    table = Table(title="Scheduler run", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green")
    for key in ("processed", "succeeded", "failed", "skipped"):
        table.add_row(key, str(getattr(summary, key)))
    for status, count in summary.status_breakdown.items():
        table.add_row(f"→ {status}", str(count))
    table.add_row("duration_ms", str(summary.duration_ms))
    console.print(table)


@app.command("sweep-messages")
def sweep_messages(
    batch_size: Optional[int] = typer.Option(None, help="Scheduled messages to send"),
):
    """Send one batch of due scheduled messages."""
    try:
        with session_scope() as db:
            result = Scheduler(db).run_message_sweep(batch_size)
    except EngineError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    rprint(result)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API."""
    from ..main import run

    rprint(Panel.fit("Starting ReachOut Engine", style="bold blue"))
    run(host=host, port=port, reload=reload)


@app.command()
def status():
    """Show execution and message counts."""
    with session_scope() as db:
        executions = ExecutionService(db)
        counts = executions.count_by_status()
        due = executions.count_due(utc_now())
        scheduled = MessageService(db).count_by_status().get("scheduled", 0)

    table = Table(title="ReachOut Engine Status", show_header=True, header_style="bold magenta")
    table.add_column("Component", style="cyan")
    table.add_column("Count", style="green")
    for state in ("waiting", "active", "completed", "stopped", "failed"):
        table.add_row(f"Executions: {state}", str(counts.get(state, 0)))
    table.add_row("Executions due now", str(due))
    table.add_row("Scheduled messages", str(scheduled))
    console.print(table)


if __name__ == "__main__":
    app()
