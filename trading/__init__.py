"""
Trading module - the engine loop.

This module provides:
- Orchestrator: single-flight decision cycles
- CycleReport: what one cycle did
"""

from trading.orchestrator import CycleReport, Orchestrator

__all__ = [
    "CycleReport",
    "Orchestrator",
]
