"""
Core package: canonical state, persistence, host abstractions, alarms
and the coordinator that ties them together.
"""

from core.coordinator import Coordinator
from core.state import GlobalState

__all__ = ["Coordinator", "GlobalState"]
