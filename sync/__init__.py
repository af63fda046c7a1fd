"""
Sync package: messages, the channel between contexts, and the two
non-coordinator contexts (page monitor and control surface).
"""

from sync.channel import MessageChannel, ReceiverUnavailable
from sync.control_surface import ControlSurface
from sync.page_monitor import PageMonitor

__all__ = ["ControlSurface", "MessageChannel", "PageMonitor", "ReceiverUnavailable"]
