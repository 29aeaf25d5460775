"""CLI entry point for the Arisa daemon and its tooling."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

app = typer.Typer(help="Arisa — resilient gateway for AI-agent CLIs", no_args_is_help=True)
console = Console()


@app.command()
def run(
    policy: Optional[str] = typer.Option(
        None, "--policy", help="Escalation after a failed retry: 'queue' or 'fallback'",
    ),
    no_autofix: bool = typer.Option(False, "--no-autofix", help="Disable auto-fix on core crash"),
) -> None:
    """Start the daemon: supervise the core and chat from this terminal."""
    from arisa.bridge.pipeline import DeliveryPolicy
    from arisa.config import get_settings
    from arisa.daemon import ConsoleChannel, build_daemon
    from arisa.logging_config import setup_logging

    setup_logging()
    settings = get_settings()

    try:
        chosen = DeliveryPolicy(policy or settings.delivery_policy)
    except ValueError:
        console.print(f"[red]Unknown policy: {policy}[/red] (expected 'queue' or 'fallback')")
        raise typer.Exit(1)

    autofix = settings.autofix_enabled and not no_autofix
    console.print("\n[bold cyan]🛰  Arisa daemon[/bold cyan]\n")
    console.print(f"  Project:   {settings.arisa_project_dir}")
    console.print(f"  Core:      {settings.core_url}")
    console.print(f"  Policy:    [bold]{chosen}[/bold]")
    console.print(f"  Auto-fix:  {'[green]ON[/green]' if autofix else '[red]OFF[/red]'}")
    console.print()

    daemon = build_daemon(ConsoleChannel(), settings, policy=chosen, autofix_enabled=autofix)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped[/yellow]")


@app.command()
def core() -> None:
    """Run the core worker in the foreground."""
    from arisa.core.__main__ import main

    main()


@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of audit entries to show"),
) -> None:
    """Probe the core and show recent supervisor activity."""
    from arisa.bridge.health import HealthProbe
    from arisa.config import get_settings
    from arisa.supervisor.audit import AuditLog

    settings = get_settings()
    healthy = asyncio.run(HealthProbe(settings=settings).is_healthy())

    console.print("\n[bold cyan]🛰  Arisa status[/bold cyan]\n")
    state = "[green]healthy[/green]" if healthy else "[red]unreachable[/red]"
    console.print(f"  Core ({settings.core_url}): {state}")
    console.print(f"  Delivery policy: {settings.delivery_policy}")
    console.print()

    entries = AuditLog(settings.audit_log_path).recent(limit)
    if not entries:
        console.print("[dim]No audit log yet[/dim]\n")
        return
    console.print("[bold]Recent activity:[/bold]")
    for entry in entries:
        ts = entry.get("timestamp", "")[:19]
        action = entry.get("action", "unknown")
        console.print(f"  {ts} — {action}")
    console.print()


@app.command()
def autofix(
    error_file: Optional[Path] = typer.Argument(None, help="File containing the error output to fix"),
) -> None:
    """Manually run one auto-fix attempt on a captured error."""
    from arisa.agents import AgentCliNotFound, resolve_agent
    from arisa.config import get_settings
    from arisa.supervisor.audit import AuditLog
    from arisa.supervisor.notifier import SupervisorNotifier
    from arisa.supervisor.repair import RemediationOrchestrator

    if error_file:
        diagnostic = error_file.read_text(encoding="utf-8", errors="replace")
    else:
        console.print("Paste the error/traceback (Ctrl+D when done):")
        diagnostic = sys.stdin.read()

    if not diagnostic.strip():
        console.print("[red]No error input provided[/red]")
        raise typer.Exit(1)

    async def _print(text: str) -> None:
        console.print(text, markup=False)

    settings = get_settings()
    try:
        agent = resolve_agent(settings.agent_cli_order)
    except AgentCliNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    engine = RemediationOrchestrator(
        SupervisorNotifier(_print), settings=settings, audit=AuditLog(settings.audit_log_path), agent=agent,
    )
    console.print("\n[cyan]🔍 Running auto-fix...[/cyan]")
    if asyncio.run(engine.trigger(diagnostic)):
        console.print("\n[bold green]✅ Auto-fix attempted[/bold green]")
    else:
        console.print("\n[red]❌ Auto-fix failed[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
