"""Rich output formatting for the Talkah operator CLI.

All functions write to a :class:`rich.console.Console` instance (bound to
*stderr*) so that JSON output on *stdout* is never polluted with
human-readable decoration.
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from talkah_engine.models import (
    ApplyOutcome,
    ApplyResult,
    BillingInterval,
    Feature,
    Limited,
    Plan,
    SubscriptionView,
    Unlimited,
    UserSubscriptionState,
)

_STATUS_COLOURS: dict[str, str] = {
    "active": "green",
    "trialing": "cyan",
    "past_due": "yellow",
    "canceled": "red",
    "applied": "green",
    "ignored": "dim",
    "failed": "red",
}


def _coloured(value: str) -> str:
    colour = _STATUS_COLOURS.get(value, "white")
    return f"[{colour}]{value}[/{colour}]"


def format_limit(limit: Limited | Unlimited | int) -> str:
    """Render a limit or remaining count, with ``unlimited`` spelled out."""
    if isinstance(limit, Unlimited):
        return "unlimited"
    if isinstance(limit, Limited):
        return str(limit.count)
    return str(limit)


def display_plans(console: Console, plans: list[Plan]) -> None:
    """Render the plan catalog as a table."""
    if not plans:
        console.print("[yellow]No active plans. Run 'talkah seed-plans' first.[/yellow]")
        return

    table = Table(title="Plans")
    table.add_column("Plan", style="bold")
    table.add_column("Rank", justify="right")
    table.add_column("Calls", justify="right")
    table.add_column("Texts", justify="right")
    table.add_column("Emails", justify="right")
    table.add_column("Monthly", justify="right")
    table.add_column("Yearly", justify="right")

    for plan in plans:
        limits = [format_limit(plan.limit_for(feature)) for feature in Feature]
        table.add_row(
            plan.id,
            str(plan.rank),
            *limits,
            f"${plan.price(BillingInterval.MONTHLY)}",
            f"${plan.price(BillingInterval.YEARLY)}",
        )
    console.print(table)


def display_state(console: Console, state: UserSubscriptionState) -> None:
    """Render a freshly provisioned subscription row."""
    console.print(
        f"User [bold]{state.user_id}[/bold] on [bold]{state.plan_id}[/bold]/{state.billing_interval.value} "
        f"({_coloured(state.status.value)}), period "
        f"{state.billing_period.start:%Y-%m-%d %H:%M} - {state.billing_period.end:%Y-%m-%d %H:%M} UTC"
    )


def display_subscription(console: Console, view: SubscriptionView) -> None:
    """Render a subscription view: header panel, usage table, pending change.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    view:
        The view returned by the query facade.
    """
    header_lines = [
        f"[bold]User:[/bold]     {view.user_id}",
        f"[bold]Plan:[/bold]     {view.plan.name} ({view.plan.id}, {view.billing_interval.value})",
        f"[bold]Status:[/bold]   {_coloured(view.status.value)}",
        f"[bold]Period:[/bold]   {view.billing_period.start:%Y-%m-%d %H:%M} - {view.billing_period.end:%Y-%m-%d %H:%M}",
    ]
    console.print(Panel("\n".join(header_lines), title="Subscription", border_style="blue"))

    table = Table(title="Usage this period")
    table.add_column("Feature")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    for item in view.usage:
        table.add_row(item.feature.value, str(item.used), format_limit(item.limit), format_limit(item.remaining))
    console.print(table)

    pending = view.pending_change
    if pending is not None:
        console.print(
            f"[yellow]Pending {pending.change_type.value}[/yellow] to "
            f"[bold]{pending.target_plan_id}[/bold]/{pending.target_billing_interval.value} "
            f"effective {pending.effective_date:%Y-%m-%d %H:%M} UTC"
        )


def display_apply_result(console: Console, result: ApplyResult) -> None:
    """Render the outcome of a replayed reconciliation event."""
    line = f"Event [bold]{result.external_event_id}[/bold]: {_coloured(result.outcome.value)}"
    if result.reason:
        line += f" ({result.reason})"
    console.print(line)
    if result.outcome == ApplyOutcome.APPLIED and result.changes:
        for change in result.changes:
            console.print(f"  [green]+[/green] {change}")
