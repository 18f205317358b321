"""amendgov CLI — operator commands for amendment governance.

`amendgov pending` lists what waits for a human, `amendgov approve ID`
and `amendgov resolve ID approved` carry the decisions, `amendgov review`
and `amendgov sweep` run the loop by hand, and `amendgov serve` starts
the HTTP API with the scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from amendgov.cli.context import GovContext, run_async
from amendgov.runtime import Governance
from amendgov.types import OperationError, Result

console = Console()

app = typer.Typer(
    name="amendgov",
    help="amendgov -- amendment governance for supervised agents.",
    no_args_is_help=True,
)


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    ctx = GovContext.get()
    level = "DEBUG" if verbose else ctx.settings.log_level.upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _run(action) -> object:
    """Run an async action against an open governance session."""

    async def _session():
        async with GovContext.get().session() as gov:
            return await action(gov)

    return run_async(_session())


def _unwrap(result: Result) -> object:
    if not result.ok:
        _fail(result.error)
    return result.data


def _fail(error: OperationError) -> None:
    console.print(f"[red]{error.kind}:[/red] {error.message}")
    raise typer.Exit(1)


@app.command("status")
def status():
    """Show governance status."""
    from amendgov import __version__

    info = _run(lambda gov: gov.status())
    mode = info["approval_mode"]
    console.print(Panel(
        f"[bold]amendgov v{__version__}[/bold]\n\n"
        f"Store:        {info['store']}\n"
        f"Mode:         [cyan]{mode['mode']}[/cyan] ({mode['description']})\n"
        f"Agents:       {info['agents']}\n"
        f"Active:       {info['active_amendments']} amendments\n"
        f"Pending:      {info['pending_approvals']} approvals\n"
        f"Escalations:  {info['pending_escalations']} open\n"
        f"Monitor:      {info['monitor_health']} ({info['active_alerts']} active alerts)",
        title="Governance Status",
        border_style="cyan",
    ))


@app.command("pending")
def pending():
    """List amendments waiting for approval."""
    rows = _unwrap(_run(lambda gov: gov.workflow.get_pending_approvals()))
    if not rows:
        console.print("[dim]Nothing waiting for approval.[/dim]")
        return

    table = Table(title="Pending Approvals")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Agent", style="blue")
    table.add_column("Type")
    table.add_column("Trigger", style="white")
    table.add_column("Conf", justify="right", style="yellow")
    table.add_column("Age (h)", justify="right")
    table.add_column("Escalation", style="red")

    for r in rows:
        conf = r["pattern_confidence"]
        table.add_row(
            r["id"],
            r["agent_role"],
            r["amendment_type"],
            r["trigger_pattern"],
            f"{conf:.2f}" if conf is not None else "-",
            str(r["age_hours"]),
            r["escalation_reason"] or "",
        )
    console.print(table)


@app.command("approve")
def approve(
    amendment_id: str = typer.Argument(help="Amendment ID"),
    approver: str = typer.Option("ceo", "--by", help="Who approves"),
    notes: str = typer.Option(None, "--notes", "-n"),
):
    """Approve a pending amendment and start its evaluation."""
    amendment = _unwrap(_run(lambda gov: gov.workflow.approve(amendment_id, approver, notes)))
    console.print(
        f"[green]Approved {amendment.id}[/green] for {amendment.agent_role} "
        f"({amendment.trigger_pattern}), now {amendment.evaluation_status.value}"
    )


@app.command("reject")
def reject(
    amendment_id: str = typer.Argument(help="Amendment ID"),
    approver: str = typer.Option("ceo", "--by", help="Who rejects"),
    reason: str = typer.Option(None, "--reason", "-r"),
):
    """Reject a pending amendment."""
    amendment = _unwrap(_run(lambda gov: gov.workflow.reject(amendment_id, approver, reason)))
    console.print(f"[yellow]Rejected {amendment.id}[/yellow] for {amendment.agent_role}")


@app.command("escalations")
def escalations(
    history: bool = typer.Option(False, "--all", "-a", help="Include resolved escalations"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List open escalations."""
    if history:
        items = _unwrap(_run(lambda gov: gov.escalation.get_escalation_history(limit)))
    else:
        items = _unwrap(_run(lambda gov: gov.escalation.get_active_escalations()))
    if not items:
        console.print("[dim]No escalations.[/dim]")
        return

    table = Table(title="Escalations")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Agent", style="blue")
    table.add_column("Reason", style="red")
    table.add_column("Amendment")
    table.add_column("Status")
    table.add_column("Created", style="dim")

    for e in items:
        table.add_row(
            e.id, e.agent_role, e.reason.value, e.amendment_id or "",
            e.status.value, e.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("resolve")
def resolve(
    escalation_id: str = typer.Argument(help="Escalation ID"),
    resolution: str = typer.Argument(help="approved, rejected or dismissed"),
    resolved_by: str = typer.Option("ceo", "--by"),
    notes: str = typer.Option(None, "--notes", "-n"),
):
    """Resolve an escalation and apply the decision to its amendment."""
    escalation = _unwrap(_run(lambda gov: gov.workflow.resolve_escalation(
        escalation_id, resolution, resolved_by, notes,
    )))
    console.print(f"[green]Escalation {escalation.id} {escalation.status.value}[/green]")


@app.command("review")
def review(
    roles: list[str] = typer.Argument(None, help="Agent roles (default: all)"),
):
    """Run a review cycle now."""
    report = _unwrap(_run(lambda gov: gov.cycle.run(roles or None)))

    table = Table(title="Review Cycle")
    table.add_column("Agent", style="blue")
    table.add_column("Patterns", justify="right")
    table.add_column("Submitted", justify="right", style="green")
    table.add_column("Rejected", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_column("Note", style="dim")
    for r in report.reviews:
        table.add_row(
            r.agent_role, str(len(r.patterns)), str(len(r.submitted)),
            str(len(r.rejected)), str(len(r.skipped_triggers)), r.message,
        )
    console.print(table)
    if report.safety and report.safety.total_reverted:
        console.print(f"[yellow]Safety sweep reverted {report.safety.total_reverted} amendments[/yellow]")
    for role, error in report.errors.items():
        console.print(f"[red]{role}: {error.kind}: {error.message}[/red]")


@app.command("sweep")
def sweep():
    """Run the evaluation-timeout and auto-revert checks now."""
    report = _unwrap(_run(lambda gov: gov.safety.run_safety_checks()))
    if not report.total_reverted:
        console.print(f"[green]Checked {report.timeouts.checked} evaluating amendments, nothing reverted.[/green]")
        return
    for reverted in [*report.timeouts.reverted, *report.auto_reverts]:
        console.print(
            f"[yellow]Reverted {reverted.amendment_id}[/yellow] "
            f"({reverted.agent_role}): {reverted.rule.value}"
        )


@app.command("safety-log")
def safety_log(
    agent_role: str = typer.Option("", "--agent", "-a"),
    constraint_type: str = typer.Option("", "--type", "-t"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show recent safety events."""
    events = _unwrap(_run(lambda gov: gov.safety.get_safety_log(agent_role, constraint_type, limit)))
    if not events:
        console.print("[dim]No safety events.[/dim]")
        return

    table = Table(title="Safety Log")
    table.add_column("Time", style="dim")
    table.add_column("Agent", style="blue")
    table.add_column("Constraint", style="yellow")
    table.add_column("Action")
    table.add_column("Amendment", style="cyan")

    for e in events:
        action_style = "bold red" if e.action_taken == "blocked" else "white"
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.agent_role,
            e.constraint_type.value,
            f"[{action_style}]{e.action_taken}[/{action_style}]",
            e.amendment_id or "",
        )
    console.print(table)


HEALTH_STYLE = {"healthy": "green", "warning": "yellow", "critical": "red", "initializing": "dim"}


@app.command("monitor")
def monitor(
    history: bool = typer.Option(False, "--all", "-a", help="Include closed alerts"),
):
    """Show amendment success rate and CEO alerts."""
    health = _unwrap(_run(lambda gov: gov.monitor.get_health_status()))
    m = health.metrics
    rate = f"{m.success_rate:.1%}" if m.success_rate is not None else "-"
    style = HEALTH_STYLE.get(health.status.value, "white")
    console.print(Panel(
        f"[{style}]{health.status.value}[/{style}]: {health.message}\n\n"
        f"Success rate: {rate} ({m.successes}/{m.total}, window {m.window_size})\n"
        f"Trend:        {m.trend.value}",
        title="Self-Monitor",
        border_style=style,
    ))

    if history:
        alerts = _unwrap(_run(lambda gov: gov.monitor.list_alerts()))
    else:
        alerts = m.active_alerts
    if not alerts:
        console.print("[dim]No alerts.[/dim]")
        return

    table = Table(title="CEO Alerts")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="red")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("Created", style="dim")
    for a in alerts:
        table.add_row(
            a.id, a.alert_type.value, a.status.value, a.message,
            a.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("ack-alert")
def ack_alert(
    alert_id: str = typer.Argument(help="Alert ID"),
    acknowledged_by: str = typer.Option("ceo", "--by"),
):
    """Acknowledge an active CEO alert."""
    alert = _unwrap(_run(lambda gov: gov.monitor.acknowledge_alert(alert_id, acknowledged_by)))
    console.print(f"[yellow]Alert {alert.id} acknowledged[/yellow] by {alert.acknowledged_by}")


@app.command("resolve-alert")
def resolve_alert(alert_id: str = typer.Argument(help="Alert ID")):
    """Resolve a CEO alert."""
    alert = _unwrap(_run(lambda gov: gov.monitor.resolve_alert(alert_id)))
    console.print(f"[green]Alert {alert.id} resolved[/green]")


@app.command("knowledge")
def knowledge(
    role: str = typer.Argument(help="Agent role"),
    refresh: bool = typer.Option(False, "--refresh", help="Recompute, ignoring the cache"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Show an agent's effective knowledge."""
    lookup = _unwrap(_run(lambda gov: gov.knowledge.get_effective_knowledge(role, refresh)))
    k = lookup.knowledge
    if as_json:
        console.print_json(json.dumps(k.model_dump(mode="json")))
        return
    console.print(Panel(
        k.text or "[dim](empty)[/dim]",
        title=f"{role} | {k.version_hash[:12]} | {len(k.amendments_applied)} amendments",
        border_style="cyan",
    ))


@app.command("serve")
def serve(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port"),
    no_scheduler: bool = typer.Option(False, "--no-scheduler", help="Do not run scheduled reviews"),
):
    """Start the HTTP API (and the review scheduler)."""
    ctx = GovContext.get()
    asyncio.run(_serve(
        ctx.governance,
        host or ctx.settings.api_host,
        port or ctx.settings.api_port,
        scheduler=not no_scheduler,
    ))


async def _serve(gov: Governance, host: str, port: int, scheduler: bool = True) -> None:
    import uvicorn

    from amendgov.api import create_app

    await gov.initialize()
    if scheduler:
        await gov.scheduler().start()
    console.print(f"[cyan]amendgov API on http://{host}:{port}[/cyan]")
    config = uvicorn.Config(create_app(gov), host=host, port=port, log_level="warning")
    try:
        await uvicorn.Server(config).serve()
    finally:
        await gov.close()


@app.command("version")
def version_cmd():
    """Show amendgov version."""
    from amendgov import __version__
    console.print(f"amendgov v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
