"""
Command Line Interface for the deliverable review service.
"""

import asyncio
from typing import Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import get_session_local, init_database
from ..logging_config import configure_logging
from ..review.engine import get_runtime
from ..review.errors import ReviewError

app = typer.Typer(help="Deliverable Review - revision and approval workflows")
console = Console()

STATUS_STYLE = {
    "draft": "dim",
    "pending": "dim",
    "in_review": "yellow",
    "in_progress": "yellow",
    "revision_requested": "magenta",
    "approved": "green",
    "passed": "green",
    "rejected": "red",
    "failed": "red",
}


def _styled(status: str) -> str:
    style = STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API."""
    settings = get_settings()
    rprint(Panel.fit("Starting Deliverable Review", style="bold blue"))
    uvicorn.run(
        "deliverable_review.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
    )


@app.command("init-db")
def init_db():
    """Create all database tables."""
    configure_logging()
    asyncio.run(init_database())
    console.print("✅ Database initialized")


@app.command()
def templates():
    """List registered workflow types and their levels."""
    registry = get_runtime().templates

    table = Table(title="Workflow Templates", show_header=True, header_style="bold cyan")
    table.add_column("Type", style="yellow")
    table.add_column("#", justify="right")
    table.add_column("Level")
    table.add_column("Approvers", style="magenta")
    table.add_column("Quorum", justify="right")
    table.add_column("Deadline", justify="right")

    for workflow_type in registry.workflow_types:
        template = registry.get(workflow_type)
        for number, level in enumerate(template.levels, start=1):
            approvers = ", ".join(
                getattr(spec, "role", None) or getattr(spec, "name", "") for spec in level.approvers
            )
            table.add_row(
                workflow_type if number == 1 else "",
                str(number),
                level.name,
                approvers,
                str(level.min_approvers) if level.min_approvers else "all",
                f"{level.deadline_offset_hours}h" if level.deadline_offset_hours else "-",
            )

    console.print(table)
    console.print(f"Checklist templates: {', '.join(registry.checklist_ids) or 'none'}")


@app.command()
def show(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Show a workflow with its levels and approvers."""
    db = get_session_local()()
    try:
        try:
            workflow = get_runtime().engine(db).get_workflow_by_id(workflow_id)
        except ReviewError as e:
            console.print(f"❌ {e.message}")
            raise typer.Exit(code=1)

        console.print(
            Panel.fit(
                f"Workflow [bold]{workflow.id}[/bold]\n"
                f"Type: {workflow.workflow_type}  Status: {_styled(workflow.status)}\n"
                f"Current level: {workflow.current_level}  Round: {workflow.revision_round}",
                title="Review Workflow",
            )
        )

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Level", style="cyan")
        table.add_column("Status")
        table.add_column("Approver")
        table.add_column("Decision")

        for level in workflow.levels:
            for index, approver in enumerate(level.approvers):
                table.add_row(
                    str(level.level_number) if index == 0 else "",
                    level.name if index == 0 else "",
                    _styled(level.status) if index == 0 else "",
                    approver.approver_name,
                    _styled(approver.status),
                )
        console.print(table)

        if workflow.checklist:
            checklist = workflow.checklist
            console.print(
                f"Checklist: {_styled(checklist.status)} "
                f"(score {checklist.overall_score:.0%})"
            )
    finally:
        db.close()


@app.command()
def audit(
    workflow_id: str = typer.Argument(..., help="Workflow ID"),
    limit: int = typer.Option(50, help="Maximum number of entries"),
):
    """Print the audit trail of a workflow."""
    db = get_session_local()()
    try:
        entries = [
            e.to_dict()
            for e in get_runtime().engine(db).get_audit_trail(workflow_id)[:limit]
        ]
    except ReviewError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    if not entries:
        console.print("No audit entries")
        return

    table = Table(title=f"Audit trail {workflow_id}", show_header=True, header_style="bold cyan")
    table.add_column("Seq", justify="right")
    table.add_column("Time")
    table.add_column("Actor", style="yellow")
    table.add_column("Action", style="green")
    table.add_column("Entity")
    table.add_column("Note")

    for entry in entries:
        table.add_row(
            str(entry["id"]),
            entry["ts"] or "",
            f"{entry['actor_kind']}:{entry['actor_id']}",
            entry["action"],
            f"{entry['entity_kind']} {entry['entity_id']}",
            entry["note"] or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
