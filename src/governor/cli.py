"""CLI entry point for the Agent Governor."""

from __future__ import annotations

import json
import logging
import sys
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from governor import __version__
from governor.config import GovernorConfig
from governor.errors import GovernorError

if TYPE_CHECKING:
    from governor.agents.http import HttpAgent
    from governor.audit.log import AuditLog
    from governor.engine.orchestrator import Orchestrator
    from governor.governance.approval import ApprovalRequest
    from governor.models import Job
    from governor.storage.database import Database

console = Console()

_STATUS_STYLE = {
    "completed": "green",
    "done": "green",
    "approved": "green",
    "failed": "red",
    "rejected": "red",
    "awaiting_approval": "yellow",
    "running": "cyan",
}


def _setup_logging(verbose: int) -> None:
    from rich.logging import RichHandler

    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@click.group()
@click.version_option(version=__version__, prog_name="governor")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (default: ./governor.toml or ~/.governor/config.toml)",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Override the data directory",
)
@click.option("-v", "--verbose", count=True, help="-v for INFO logs, -vv for DEBUG")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, data_dir: Path | None, verbose: int) -> None:
    """Agent Governor: governed orchestration of specialist agents."""
    _setup_logging(verbose)
    try:
        config = GovernorConfig.load(config_path)
    except GovernorError as e:
        raise click.ClickException(e.message) from e
    if data_dir is not None:
        config.data_dir = data_dir
    ctx.obj = config


def _database(config: GovernorConfig) -> Database:
    from governor.storage.database import Database

    db = Database(config.data_dir)
    db.ensure_tables()
    return db


def _load_document(path: Path) -> dict[str, Any]:
    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise click.ClickException(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain an object")
    return data


def _build_agent(spec: dict[str, Any]) -> HttpAgent:
    from governor.agents.http import HttpAgent

    return HttpAgent(spec["endpoint"], timeout=float(spec.get("timeout", 30.0)))


def _register_agents(orch: Orchestrator, specs: list[Any]) -> list[HttpAgent]:
    from governor.models import AgentDescriptor

    agents = []
    for spec in specs:
        if not isinstance(spec, dict) or not spec.get("endpoint"):
            raise click.ClickException(f"agent entry needs an endpoint: {spec!r}")
        try:
            descriptor = AgentDescriptor(
                agent_id=spec.get("agent_id") or spec["id"],
                capabilities=frozenset(spec.get("capabilities", [])),
                concurrency_limit=int(spec.get("concurrency_limit", 1)),
                endpoint=spec["endpoint"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise click.ClickException(f"invalid agent entry {spec!r}: {e}") from e
        agent = _build_agent(spec)
        orch.register_agent(descriptor, agent)
        agents.append(agent)
    return agents


def _stored_agents(db: Database) -> list[dict[str, Any]]:
    rows = db.execute("SELECT * FROM agents WHERE endpoint IS NOT NULL ORDER BY agent_id")
    return [
        {
            "agent_id": row["agent_id"],
            "capabilities": json.loads(row["capabilities"]),
            "concurrency_limit": row["concurrency_limit"],
            "endpoint": row["endpoint"],
        }
        for row in rows
    ]


@main.command()
@click.pass_obj
def init(config: GovernorConfig) -> None:
    """Initialize governor: create the data directory and database."""
    db = _database(config)
    console.print(f"[green]Governor initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {db.data_dir / 'config.toml'}")


@main.command()
@click.argument("job_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--agents",
    "agents_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="TOML/JSON file with [[agents]] entries (id, capabilities, endpoint)",
)
@click.option("--reviewer", default="cli", help="Reviewer name recorded with decisions")
@click.option(
    "--interactive/--no-interactive", default=True, help="Prompt for approval decisions"
)
@click.pass_obj
def run(
    config: GovernorConfig,
    job_file: Path,
    agents_file: Path | None,
    reviewer: str,
    interactive: bool,
) -> None:
    """Run a job file to completion, prompting for approvals."""
    from governor.engine.orchestrator import Orchestrator
    from governor.models import JobStatus

    request = _load_document(job_file)
    specs = list(request.pop("agents", []))
    if agents_file is not None:
        specs.extend(_load_document(agents_file).get("agents", []))

    db = _database(config)
    if not specs:
        specs = _stored_agents(db)

    with Orchestrator(config, db) as orch:
        agents = _register_agents(orch, specs)
        try:
            try:
                job = orch.submit(request)
            except GovernorError as e:
                raise click.ClickException(e.message) from e
            console.print(
                f"[bold cyan]Job:[/bold cyan] {job.job_id} ({job.name}), "
                f"{len(job.subtasks)} subtasks"
            )

            status = orch.run(job.job_id)
            while status == JobStatus.AWAITING_APPROVAL and interactive:
                if not _prompt_decisions(orch, orch.pending_approvals(job.job_id), reviewer):
                    break
                status = orch.run(job.job_id)

            _print_job(orch.get_job(job.job_id))
            if status == JobStatus.AWAITING_APPROVAL:
                _print_pending(orch.pending_approvals(job.job_id))
                console.print("[yellow]Job left awaiting approval.[/yellow]")
                sys.exit(3)
            if status == JobStatus.FAILED:
                sys.exit(1)
        finally:
            for agent in agents:
                agent.close()


def _prompt_decisions(orch: Orchestrator, pending: list[ApprovalRequest], reviewer: str) -> bool:
    """Ask for a decision on each pending request. False if every one was skipped."""
    decided = False
    for request in pending:
        _print_pending([request])
        console.print(f"[dim]{request.to_dict()['output_preview']}[/dim]")
        choice = click.prompt(
            f"Decision for {request.subtask_id}",
            type=click.Choice(["approve", "reject", "skip"]),
            default="skip",
        )
        if choice == "skip":
            continue
        rationale = click.prompt("Rationale", default="", show_default=False)
        try:
            orch.record_decision(
                request.subtask_id,
                reviewer,
                "approved" if choice == "approve" else "rejected",
                rationale,
                resume=False,
            )
        except GovernorError as e:
            console.print(f"[red]{e.message}[/red]")
            continue
        decided = True
    return decided


@main.command()
@click.argument("job_id", required=False)
@click.pass_obj
def status(config: GovernorConfig, job_id: str | None) -> None:
    """Show recorded jobs, or the subtasks of one job."""
    db = _database(config)
    if job_id:
        rows = db.execute("SELECT snapshot FROM jobs WHERE job_id = ?", (job_id,))
        if not rows:
            raise click.ClickException(f"unknown job {job_id}")
        _print_snapshot(json.loads(rows[0]["snapshot"]))
        return

    rows = db.execute("SELECT * FROM jobs ORDER BY created_at DESC LIMIT 50")
    if not rows:
        console.print("[dim]No jobs recorded yet.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Name", max_width=30)
    table.add_column("Status")
    table.add_column("Failure", max_width=50)
    for row in rows:
        style = _STATUS_STYLE.get(row["status"], "dim")
        table.add_row(
            row["job_id"],
            row["name"],
            f"[{style}]{row['status']}[/{style}]",
            row["failure_reason"] or "",
        )
    console.print(table)


@main.command()
@click.pass_obj
def agents(config: GovernorConfig) -> None:
    """List agents registered through the API."""
    specs = _stored_agents(_database(config))
    if not specs:
        console.print("[dim]No agents registered.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("Agent ID", style="cyan")
    table.add_column("Capabilities", style="green")
    table.add_column("Limit")
    table.add_column("Endpoint")
    for spec in specs:
        table.add_row(
            spec["agent_id"],
            ", ".join(spec["capabilities"]),
            str(spec["concurrency_limit"]),
            spec["endpoint"],
        )
    console.print(table)


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include decided requests")
@click.pass_obj
def approvals(config: GovernorConfig, show_all: bool) -> None:
    """List approval requests recorded in the database."""
    db = _database(config)
    sql = "SELECT * FROM approvals"
    if not show_all:
        sql += " WHERE decision IS NULL"
    rows = db.execute(sql + " ORDER BY requested_at")
    if not rows:
        console.print("[dim]No pending approvals.[/dim]")
        return

    table = Table(title="Approvals")
    table.add_column("Subtask", style="cyan")
    table.add_column("Capability")
    table.add_column("Tier", style="bold")
    table.add_column("Reason")
    table.add_column("Decision")
    table.add_column("Reviewer")
    for row in rows:
        decision = row["decision"] or "pending"
        style = _STATUS_STYLE.get(decision, "yellow")
        table.add_row(
            row["subtask_id"],
            row["capability"],
            row["tier"],
            row["reason"],
            f"[{style}]{decision}[/{style}]",
            row["reviewer"] or "",
        )
    console.print(table)


@main.group()
def audit() -> None:
    """Inspect, export and verify the audit log."""


def _audit_log(config: GovernorConfig) -> AuditLog:
    from governor.audit.log import AuditLog

    return AuditLog(_database(config))


@audit.command("export")
@click.option("--output", "-o", type=click.File("w"), default="-", help="Output file (default stdout)")
@click.option("--job", "job_id", help="Only entries for this job")
@click.option("--entity", "entity_id", help="Only entries for this entity")
@click.option("--event", "event_type", help="Only entries of this event type")
@click.option("--since", "since_seq", default=0, help="Only entries after this sequence number")
@click.pass_obj
def audit_export(
    config: GovernorConfig,
    output: Any,
    job_id: str | None,
    entity_id: str | None,
    event_type: str | None,
    since_seq: int,
) -> None:
    """Export audit entries as JSON lines."""
    count = _audit_log(config).export_jsonl(
        output, job_id=job_id, entity_id=entity_id, event_type=event_type, since_seq=since_seq
    )
    click.echo(f"exported {count} entries", err=True)


@audit.command("verify")
@click.pass_obj
def audit_verify(config: GovernorConfig) -> None:
    """Verify the hash chain of the whole log."""
    log = _audit_log(config)
    broken = log.verify()
    if broken is not None:
        console.print(f"[red]Audit chain broken at entry {broken}[/red]")
        sys.exit(1)
    console.print(f"[green]Audit chain intact ({log.last_seq} entries)[/green]")


@audit.command("show")
@click.option("--job", "job_id", help="Only entries for this job")
@click.option("--limit", default=50, help="Number of entries to show")
@click.pass_obj
def audit_show(config: GovernorConfig, job_id: str | None, limit: int) -> None:
    """Show the most recent audit entries."""
    log = _audit_log(config)
    since = max(0, log.last_seq - limit) if job_id is None else 0
    entries = log.query(job_id=job_id, since_seq=since)[-limit:]
    if not entries:
        console.print("[dim]Audit log is empty.[/dim]")
        return

    table = Table(title="Audit Log")
    table.add_column("Seq", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Event", style="green")
    table.add_column("Payload", max_width=60)
    for entry in entries:
        table.add_row(
            str(entry.seq),
            entry.entity_id,
            entry.event_type,
            json.dumps(entry.payload, sort_keys=True)[:200],
        )
    console.print(table)


def _print_job(job: Job) -> None:
    _print_snapshot(job.to_dict())


def _print_snapshot(data: dict[str, Any]) -> None:
    """Print a job summary and its subtasks."""
    style = _STATUS_STYLE.get(data["status"], "dim")
    console.print(f"\n[{style}]Status: {data['status']}[/{style}]")
    if data.get("failure_reason"):
        console.print(f"[red]Reason:[/red] {data['failure_reason']}")

    table = Table(title=f"{data['name']} ({data['job_id']})")
    table.add_column("Subtask", style="cyan")
    table.add_column("Capability")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Tier")
    table.add_column("Score", justify="right")
    table.add_column("Attempts", justify="right")
    for subtask in data.get("subtasks", {}).values():
        sub_style = _STATUS_STYLE.get(subtask["status"], "dim")
        score = subtask.get("score")
        table.add_row(
            subtask["subtask_id"],
            subtask["capability"],
            subtask.get("agent_id") or "",
            f"[{sub_style}]{subtask['status']}[/{sub_style}]",
            subtask.get("tier") or "",
            f"{score:.2f}" if score is not None else "",
            str(subtask.get("attempts", 0)),
        )
    console.print(table)


def _print_pending(pending: list[ApprovalRequest]) -> None:
    if not pending:
        return
    table = Table(title="Awaiting Approval")
    table.add_column("Subtask", style="cyan")
    table.add_column("Agent")
    table.add_column("Tier", style="bold yellow")
    table.add_column("Reason")
    table.add_column("Score", justify="right")
    for request in pending:
        table.add_row(
            request.subtask_id,
            request.agent_id,
            request.tier.value,
            request.reason,
            f"{request.score:.2f}",
        )
    console.print(table)
