"""
Reaper module.
Contains the reaper that recovers stalled broker items.
"""

from orchestrator.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
