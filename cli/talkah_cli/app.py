"""Talkah operator CLI -- Typer-based interface to the subscription engine.

Commands talk to the state store directly (no API round-trip).  Human
readable output goes to *stderr* via Rich; ``--json`` writes machine
readable results to *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError as PayloadValidationError
from rich.console import Console
from talkah_engine.engine import SubscriptionEngine
from talkah_engine.errors import SubscriptionEngineError
from talkah_engine.models import ApplyOutcome, ReconciliationEvent
from talkah_engine.periods import utcnow
from talkah_engine.processor.disabled import DisabledProcessor
from talkah_engine.state.database import get_engine, get_session_factory
from talkah_engine.state.repository import SubscriptionRepository
from talkah_engine.state.sqlite_adapter import create_local_tables

from talkah_cli.display import (
    display_apply_result,
    display_plans,
    display_state,
    display_subscription,
)

T = TypeVar("T")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.talkah/state.db"

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="talkah",
    help="Talkah - subscription lifecycle and usage enforcement operator tools",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str = DEFAULT_DATABASE_URL


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str = typer.Option(
        DEFAULT_DATABASE_URL,
        "--database-url",
        help="State store connection string (asyncpg or aiosqlite).",
        envvar="TALKAH_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run(operation: Callable[[SubscriptionEngine], Awaitable[T]]) -> T:
    """Run *operation* against a subscription engine bound to the configured store.

    Plan changes are not offered here, so the engine gets a processor
    that refuses every call.  Engine errors exit with code 3.
    """

    async def _main() -> T:
        db_engine = get_engine(_database_url)
        try:
            if _database_url.startswith("sqlite"):
                await create_local_tables(db_engine)
            subscription_engine = SubscriptionEngine(get_session_factory(db_engine), DisabledProcessor())
            return await operation(subscription_engine)
        finally:
            await db_engine.dispose()

    try:
        return asyncio.run(_main())
    except SubscriptionEngineError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_price(value: str) -> tuple[str, str]:
    key, sep, price_id = value.partition("=")
    if not sep or not key or not price_id:
        console.print(f"[red]Invalid --price '{value}', expected <plan>_<interval>=<price id>[/red]")
        raise typer.Exit(code=2)
    return key, price_id


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("seed-plans")
def seed_plans(
    price: list[str] = typer.Option(
        [],
        "--price",
        help="Processor price id as <plan>_<interval>=<price id>, e.g. pro_monthly=price_123. Repeatable.",
    ),
) -> None:
    """Insert or update the default plan catalog (free, pro, premium)."""
    price_ids = dict(_parse_price(value) for value in price)
    plans = _run(lambda engine: engine.catalog.seed_defaults(price_ids))
    if _json_output:
        _emit_json([plan.model_dump(mode="json") for plan in plans])
    else:
        console.print(f"[green]Seeded {len(plans)} plans.[/green]")
        display_plans(console, plans)


@app.command("plans")
def list_plans() -> None:
    """List active plans."""
    plans = _run(lambda engine: engine.catalog.list_active_plans())
    if _json_output:
        _emit_json([plan.model_dump(mode="json") for plan in plans])
    else:
        display_plans(console, plans)


@app.command()
def provision(
    user_id: str = typer.Argument(..., help="User to create the signup subscription for."),
    customer_ref: str | None = typer.Option(None, "--customer-ref", help="Existing processor customer id."),
) -> None:
    """Create a user's free monthly subscription.  Idempotent."""
    state = _run(lambda engine: engine.provisioner.provision_user(user_id, external_customer_ref=customer_ref))
    if _json_output:
        _emit_json(state.model_dump(mode="json"))
    else:
        display_state(console, state)


@app.command()
def view(user_id: str = typer.Argument(..., help="User to inspect.")) -> None:
    """Show a user's plan, billing period, usage and pending change."""
    subscription = _run(lambda engine: engine.facade.get_subscription_view(user_id))
    if _json_output:
        _emit_json(subscription.model_dump(mode="json"))
    else:
        display_subscription(console, subscription)


@app.command()
def rollover(
    user_id: str | None = typer.Argument(None, help="Single user to roll over; all due users when omitted."),
    batch_size: int = typer.Option(500, "--batch-size", min=1, help="Maximum users to process."),
) -> None:
    """Advance ended billing periods.

    Periods also roll over lazily on every read and consume; this command
    lets a scheduler do it eagerly.
    """

    async def _rollover(engine: SubscriptionEngine) -> list[str]:
        if user_id is not None:
            return [user_id] if await engine.ledger.rollover_if_needed(user_id) else []
        async with engine.session_factory() as session:
            due = await SubscriptionRepository(session).list_due_for_rollover(utcnow(), limit=batch_size)
        rolled: list[str] = []
        for candidate in due:
            if await engine.ledger.rollover_if_needed(candidate):
                rolled.append(candidate)
        return rolled

    rolled = _run(_rollover)
    if _json_output:
        _emit_json({"rolled_over": rolled})
    elif rolled:
        console.print(f"[green]Rolled over {len(rolled)} subscription(s):[/green] {', '.join(rolled)}")
    else:
        console.print("[dim]No billing periods were due.[/dim]")


@app.command()
def replay(
    event_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="JSON file holding one reconciliation event.",
    ),
) -> None:
    """Apply a reconciliation event from a file, e.g. one that previously failed.

    Exits with code 1 when the event fails to apply.
    """
    try:
        event = ReconciliationEvent.model_validate_json(event_file.read_text(encoding="utf-8"))
    except PayloadValidationError as exc:
        console.print(f"[red]Invalid event file {event_file}:[/red]\n{exc}")
        raise typer.Exit(code=2) from exc

    result = _run(lambda engine: engine.reconciler.apply(event))
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        display_apply_result(console, result)
    if result.outcome == ApplyOutcome.FAILED:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development)."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    # The API reads its settings from the environment.
    os.environ["TALKAH_DATABASE_URL"] = _database_url
    console.print(f"Serving Talkah API on [bold]http://{host}:{port}[/bold]")
    uvicorn.run("talkah_api.main:app", host=host, port=port, reload=reload)
