"""
Dashboard Panels - Individual UI components.

Each function renders one panel from the engine context.
"""

from datetime import datetime, timezone

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from core.models import Action, TrendDirection
from core.state import EngineContext, EventLevel

_TREND_STYLE = {
    TrendDirection.UP: "green",
    TrendDirection.DOWN: "red",
    TrendDirection.NEUTRAL: "yellow",
}

_ACTION_STYLE = {
    Action.HOLD: "dim",
    Action.OPEN_LONG: "bold green",
    Action.OPEN_SHORT: "bold red",
    Action.REDUCE: "cyan",
    Action.CLOSE: "bold magenta",
    Action.UPDATE_STOP: "blue",
}

_EVENT_STYLE = {
    EventLevel.TRADE: "green",
    EventLevel.SUCCESS: "green",
    EventLevel.WARNING: "yellow",
    EventLevel.ERROR: "red",
}


def render_top_bar(context: EngineContext) -> Text:
    """Render the status bar at top of dashboard."""
    bar = Text()

    mode_color = "yellow" if context.mode == "paper" else "green bold"
    bar.append("MODE: ", style="dim")
    bar.append(context.mode.upper(), style=mode_color)
    bar.append(" │ ")

    bar.append("ENGINE: ", style="dim")
    if context.enabled:
        bar.append("RUNNING", style="green")
    else:
        bar.append("STOPPED", style="red")
    bar.append(" │ ")

    account = context.account
    if account:
        bar.append(f"${account.total_equity:.2f}", style="bold white")
        bar.append(f" (avail ${account.available_equity:.2f})", style="dim")
    else:
        bar.append("no account data", style="dim")
    bar.append(" │ ")

    bar.append(f"{context.runtime.leverage:g}x / {context.runtime.allocation_pct:.0%}", style="cyan")
    bar.append(" │ ")
    bar.append(datetime.now(timezone.utc).strftime("%H:%M:%S"), style="dim")
    return bar


def render_instruments_panel(context: EngineContext) -> Panel:
    """One row per instrument: price, trend, position and latest decision."""
    table = Table(box=None, padding=(0, 1), expand=True)
    table.add_column("Inst", style="cyan", width=14)
    table.add_column("Price", justify="right", width=10)
    table.add_column("Trend", width=8)
    table.add_column("Position", width=16)
    table.add_column("Action", width=12)
    table.add_column("Why", overflow="ellipsis")

    account = context.account
    for inst in sorted(set(context.trends) | set(context.latest_decisions)):
        price = context.prices.get(inst)
        trend = context.trends.get(inst)
        decision = context.latest_decisions.get(inst)
        position = account.position_for(inst) if account else None

        trend_text = Text(trend.direction.value, style=_TREND_STYLE[trend.direction]) if trend else Text("-")
        if position:
            pos_text = f"{position.side.value} {position.contracts:g} @{position.avg_entry_price:.2f}"
        else:
            pos_text = "[dim]flat[/]"
        if decision:
            action_text = Text(decision.action.value, style=_ACTION_STYLE[decision.action])
            why = decision.rationale
        else:
            action_text, why = Text("-"), ""
        table.add_row(inst, f"{price:.4f}" if price else "-", trend_text, pos_text, action_text, why)

    if not table.row_count:
        table.add_row("[dim]Waiting for first cycle[/]", "", "", "", "", "")
    return Panel(table, title="[bold cyan]Instruments[/]", border_style="cyan")


def render_events_panel(context: EngineContext, limit: int = 8) -> Panel:
    lines = []
    for event in list(context.events)[:limit]:
        color = _EVENT_STYLE.get(event.level, "dim")
        lines.append(f"[{color}]{event.ts.strftime('%H:%M:%S')}[/] {event.message[:90]}")
    if not lines:
        lines.append("[dim]No recent events[/]")
    return Panel("\n".join(lines), title="[dim]Events[/]", border_style="dim")
