"""
Dashboard module - Terminal UI for the engine.

Built with Rich; each panel is a separate function in dashboard.panels.
"""

from dashboard.display import Dashboard

__all__ = ["Dashboard"]
