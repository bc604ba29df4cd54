"""
Console status panel for the engine.

Renders the per-instrument read model with Rich and refreshes it via
Rich Live while the engine runs.
"""

import asyncio

from rich.console import Console
from rich.layout import Layout
from rich.live import Live

from core.state import EngineContext
from dashboard.panels import render_events_panel, render_instruments_panel, render_top_bar

console = Console()


class Dashboard:
    """Terminal view of an EngineContext."""

    def __init__(self, context: EngineContext):
        self.console = console
        self.context = context

    def render(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=1),
            Layout(name="instruments"),
            Layout(name="events", size=10),
        )
        layout["header"].update(render_top_bar(self.context))
        layout["instruments"].update(render_instruments_panel(self.context))
        layout["events"].update(render_events_panel(self.context))
        return layout

    async def run(self, refresh_seconds: float = 1.0):
        """Refresh until cancelled."""
        with Live(self.render(), console=self.console, refresh_per_second=4, screen=False) as live:
            while True:
                await asyncio.sleep(refresh_seconds)
                live.update(self.render())
