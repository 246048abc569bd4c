"""Command-line interface for mailcrm.

Every state change is triggered from here or from the HTTP API; nothing
runs on a schedule.

Usage:
    python -m mailcrm validate-config
    python -m mailcrm triage --count 20
    python -m mailcrm triage-email AAMkAGI2...
    python -m mailcrm feedback AAMkAGI2... --bad --text "Should have archived"
    python -m mailcrm resolve-last-chat
    python -m mailcrm feedback-history --verdict bad
    python -m mailcrm llm-log --task triage
    python -m mailcrm serve
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.table import Table

from mailcrm.config import validate_config_file
from mailcrm.core.logging import configure_logging

if TYPE_CHECKING:
    import anthropic

    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import DatabaseStore
    from mailcrm.engine.orchestrator import TriageOutcome
    from mailcrm.graph.mailbox import GraphMailbox

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    mailbox: GraphMailbox | None
    anthropic_client: anthropic.Anthropic | None


async def _init_cli_deps(need_mailbox: bool = True, need_anthropic: bool = True) -> CLIDeps:
    """Load config and initialize the store, mailbox and Anthropic client.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from mailcrm.config import get_config
    from mailcrm.core.errors import AuthenticationError, ConfigLoadError, ConfigValidationError
    from mailcrm.db.store import DatabaseStore
    from mailcrm.engine.factory import build_mailbox

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml from config/config.yaml.example "
            "(or set MAILCRM_CONFIG_PATH)."
        )
        sys.exit(1)

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # 3. Initialize mail transport
    mailbox = None
    if need_mailbox:
        try:
            mailbox = build_mailbox(config)
        except AuthenticationError as e:
            console.print(
                f"[red]Authentication error:[/red] {e}\n\n"
                "Check your Azure AD app registration and try again."
            )
            sys.exit(1)

    # 4. Initialize Anthropic client (SDK retries transient errors)
    anthropic_client = anthropic_mod.Anthropic(max_retries=3) if need_anthropic else None

    return CLIDeps(
        config=config,
        store=store,
        mailbox=mailbox,
        anthropic_client=anthropic_client,
    )


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run an async command with the standard interrupt and error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailcrm - CRM-aware email triage."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------


def _print_outcome(outcome: TriageOutcome) -> None:
    decision = outcome.decision
    if decision is None:
        console.print(f"[red]✗[/red] {outcome.email_id[:20]}... [red]{outcome.error}[/red]")
        return

    flags = []
    if decision.auto_archived:
        flags.append("archived")
    if decision.draft_created:
        flags.append("draft created")
    if outcome.plan and outcome.plan.archive_pending:
        flags.append("archive pending")
    if not outcome.persisted:
        flags.append("[yellow]not saved[/yellow]")

    console.print(
        f"[green]✓[/green] {outcome.email_id[:20]}... "
        f"[bold]{decision.key_point.value}[/bold] ({decision.confidence}/10) "
        f"{decision.action_reason}"
        + (f" [dim][{', '.join(flags)}][/dim]" if flags else "")
    )
    for variant, text in outcome.surfaced_drafts.items():
        console.print(f"    [cyan]{variant} draft:[/cyan] {text}")


@cli.command("triage")
@click.option("--count", "-n", default=None, type=int, help="Number of recent emails to fetch")
@click.option("--retriage", is_flag=True, help="Also triage emails that already have a decision")
def triage(count: int | None, retriage: bool) -> None:
    """Triage the most recent emails, one at a time."""
    _run(_run_triage(count, retriage))


async def _run_triage(count: int | None, retriage: bool) -> None:
    from mailcrm.engine.factory import build_orchestrator

    deps = await _init_cli_deps()
    orchestrator = build_orchestrator(deps.config, deps.store, deps.mailbox, deps.anthropic_client)

    result = await orchestrator.triage_recent(count, retriage=retriage)
    for outcome in result.outcomes:
        _print_outcome(outcome)

    console.print(f"\n[bold]Triage Summary[/bold] (run {result.run_id[:8]}...)")
    console.print(f"  Processed:   {result.processed}")
    console.print(f"  Failed:      {result.failed}")
    console.print(f"  Skipped:     {len(result.skipped_ids)} (already triaged)")


@cli.command("triage-email")
@click.argument("email_id")
def triage_email(email_id: str) -> None:
    """Triage (or re-triage) a single email by ID."""
    _run(_run_triage_email(email_id))


async def _run_triage_email(email_id: str) -> None:
    from mailcrm.engine.factory import build_orchestrator

    deps = await _init_cli_deps()
    orchestrator = build_orchestrator(deps.config, deps.store, deps.mailbox, deps.anthropic_client)
    outcome = await orchestrator.triage_by_id(email_id)
    _print_outcome(outcome)
    if outcome.decision is None:
        sys.exit(1)


@cli.command("feedback")
@click.argument("email_id")
@click.option("--good/--bad", "good", required=True, help="Was the decision right?")
@click.option("--text", default=None, help="Optional comment")
def feedback(email_id: str, good: bool, text: str | None) -> None:
    """Record feedback on a stored decision."""
    _run(_run_feedback(email_id, "good" if good else "bad", text))


async def _run_feedback(email_id: str, verdict: str, text: str | None) -> None:
    from mailcrm.engine.factory import build_orchestrator

    deps = await _init_cli_deps()
    orchestrator = build_orchestrator(deps.config, deps.store, deps.mailbox, deps.anthropic_client)
    outcome = await orchestrator.record_feedback(email_id, verdict, text)
    if outcome is None:
        console.print(f"[red]No decision found for email {email_id}[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Feedback recorded: [bold]{verdict}[/bold]")


# ---------------------------------------------------------------------------
# Resolver and calendar
# ---------------------------------------------------------------------------


@cli.command("resolve-last-chat")
def resolve_last_chat() -> None:
    """Backfill last_chat for contacts and companies from mail history."""
    _run(_run_resolver())


async def _run_resolver() -> None:
    from mailcrm.engine.factory import build_resolver

    deps = await _init_cli_deps(need_anthropic=False)
    resolver = build_resolver(deps.config, deps.store, deps.mailbox)

    with console.status("Searching mail history..."):
        result = await resolver.run()

    table = Table(title=f"Last-chat backfill (run {result.run_id[:8]}...)")
    table.add_column("Pass")
    table.add_column("Updated", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Skipped", justify="right")
    for name, pass_result in (("Contacts", result.contacts), ("Companies", result.companies)):
        table.add_row(
            name,
            str(pass_result.updated),
            str(pass_result.total),
            str(pass_result.skipped),
        )
    console.print(table)


@cli.command("slots")
def slots() -> None:
    """Show free calendar slots and proposed meeting windows."""
    _run(_run_slots())


async def _run_slots() -> None:
    from mailcrm.enrichment.context import STRUCTURED_WINDOW_DAYS
    from mailcrm.enrichment.slots import generate_slots, generate_structured_slots

    deps = await _init_cli_deps(need_anthropic=False)
    lookahead = deps.config.calendar.lookahead_days
    busy = deps.mailbox.get_busy_intervals(max(lookahead, STRUCTURED_WINDOW_DAYS))
    now = datetime.now(ZoneInfo(deps.config.timezone))

    console.print("[bold]Proposed meeting windows[/bold]")
    for window in generate_structured_slots(busy, now):
        console.print(f"  {window.label}")
    console.print(f"\n[bold]Open 30-minute slots[/bold] (next {lookahead} days)")
    for slot in generate_slots(busy, now, lookahead_days=lookahead):
        console.print(f"  {slot.label}")


# ---------------------------------------------------------------------------
# Logs and feedback history
# ---------------------------------------------------------------------------


@cli.command("feedback-history")
@click.option("--verdict", type=click.Choice(["good", "bad"]), default=None)
@click.option("--limit", default=20, type=click.IntRange(1, 500), show_default=True)
def feedback_history(verdict: str | None, limit: int) -> None:
    """List decisions the user has judged, most recent first."""
    _run(_run_feedback_history(verdict, limit))


async def _run_feedback_history(verdict: str | None, limit: int) -> None:
    deps = await _init_cli_deps(need_mailbox=False, need_anthropic=False)
    entries = await deps.store.list_feedback(verdict=verdict, limit=limit)
    if not entries:
        console.print("[dim]No feedback recorded[/dim]")
        return

    table = Table(title="Feedback history")
    table.add_column("When")
    table.add_column("Email")
    table.add_column("Subject")
    table.add_column("Decision")
    table.add_column("Verdict")
    table.add_column("Comment")
    for entry in entries:
        email = entry["source_email"] or {}
        triage = entry["original_triage"] or {}
        decision = f"{triage.get('key_point', '?')} ({triage.get('confidence', '?')}/10)"
        colour = "green" if entry["feedback"] == "good" else "red"
        table.add_row(
            (entry["feedback_at"] or "")[:19],
            entry["email_id"][:20],
            email.get("subject", ""),
            decision,
            f"[{colour}]{entry['feedback']}[/{colour}]",
            entry["feedback_text"] or "",
        )
    console.print(table)


@cli.command("llm-log")
@click.option("--email-id", default=None, help="Only requests for this email")
@click.option("--task", "task_type", type=click.Choice(["triage", "research"]), default=None)
@click.option("--limit", default=20, type=click.IntRange(1, 500), show_default=True)
def llm_log(email_id: str | None, task_type: str | None, limit: int) -> None:
    """Show recent requests sent to Claude."""
    _run(_run_llm_log(email_id, task_type, limit))


async def _run_llm_log(email_id: str | None, task_type: str | None, limit: int) -> None:
    deps = await _init_cli_deps(need_mailbox=False, need_anthropic=False)
    entries = await deps.store.get_llm_logs(limit=limit, email_id=email_id, task_type=task_type)
    if not entries:
        console.print("[dim]No LLM requests logged[/dim]")
        return

    table = Table(title="LLM requests")
    table.add_column("When")
    table.add_column("Task")
    table.add_column("Email")
    table.add_column("Tokens in/out", justify="right")
    table.add_column("ms", justify="right")
    table.add_column("Error")
    for entry in entries:
        table.add_row(
            (entry["timestamp"] or "")[:19],
            entry["task_type"],
            (entry["email_id"] or "")[:20],
            f"{entry['input_tokens'] or 0}/{entry['output_tokens'] or 0}",
            str(entry["duration_ms"] or ""),
            f"[red]{entry['error']}[/red]" if entry["error"] else "",
        )
    console.print(table)


@cli.command("actions")
@click.option("--email-id", default=None, help="Only actions on this email")
@click.option("--type", "action_type", default=None, help="e.g. archive, create_draft")
@click.option("--limit", default=50, type=click.IntRange(1, 500), show_default=True)
def actions(email_id: str | None, action_type: str | None, limit: int) -> None:
    """Show the audit trail of automation and user actions."""
    _run(_run_actions(email_id, action_type, limit))


async def _run_actions(email_id: str | None, action_type: str | None, limit: int) -> None:
    deps = await _init_cli_deps(need_mailbox=False, need_anthropic=False)
    entries = await deps.store.get_action_logs(
        email_id=email_id, action_type=action_type, limit=limit
    )
    if not entries:
        console.print("[dim]No actions logged[/dim]")
        return

    table = Table(title="Action log")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Email")
    table.add_column("By")
    table.add_column("Details")
    for entry in entries:
        table.add_row(
            (entry["timestamp"] or "")[:19],
            entry["action_type"],
            (entry["email_id"] or "")[:20],
            entry["triggered_by"],
            ", ".join(f"{k}={v}" for k, v in (entry["details"] or {}).items()),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Editable triage prompt
# ---------------------------------------------------------------------------


@cli.group("prompt")
def prompt() -> None:
    """Show or edit the triage logic section of the decision prompt."""


@prompt.command("show")
def prompt_show() -> None:
    """Print the triage logic currently in use."""
    _run(_run_prompt_show())


async def _run_prompt_show() -> None:
    from mailcrm.decision.prompts import DEFAULT_TRIAGE_LOGIC, TRIAGE_LOGIC_PROMPT

    deps = await _init_cli_deps(need_mailbox=False, need_anthropic=False)
    stored = await deps.store.get_prompt(TRIAGE_LOGIC_PROMPT)
    console.print("[dim](stored)[/dim]" if stored else "[dim](default)[/dim]")
    console.print(stored or DEFAULT_TRIAGE_LOGIC, markup=False)


@prompt.command("set")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def prompt_set(source: Path) -> None:
    """Replace the triage logic with the contents of SOURCE."""
    _run(_run_prompt_set(source.read_text(encoding="utf-8")))


async def _run_prompt_set(content: str) -> None:
    from mailcrm.decision.prompts import TRIAGE_LOGIC_PROMPT

    if not content.strip():
        console.print("[red]Prompt file is empty[/red]")
        sys.exit(1)

    deps = await _init_cli_deps(need_mailbox=False, need_anthropic=False)
    await deps.store.save_prompt(TRIAGE_LOGIC_PROMPT, content.strip())
    console.print("[green]✓[/green] Triage logic updated")


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(host: str, port: int) -> None:
    """Start the JSON API server for manual triage triggers."""
    import uvicorn

    from mailcrm.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI (also used by the console script)."""
    from dotenv import load_dotenv

    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
