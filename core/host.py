"""
Host capabilities consumed by the coordinator.

The coordinator never talks to a browser directly. It enumerates and
redirects tabs through a TabHost and reaches the user through a
Notifier. InMemoryTabHost and LoggingNotifier let the engine run
headless (CLI `run`, tests).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Tab:
    """A browser tab as seen by the coordinator."""

    id: int
    url: Optional[str] = None
    window_id: int = 0
    active: bool = False


class TabHost(ABC):
    """Enumerate and redirect open tabs."""

    @abstractmethod
    async def query_tabs(self) -> List[Tab]:
        """All open tabs in every window."""

    @abstractmethod
    async def get_tab(self, tab_id: int) -> Optional[Tab]:
        """A single tab, or None if it no longer exists."""

    @abstractmethod
    async def active_tab(self, window_id: Optional[int] = None) -> Optional[Tab]:
        """Active tab of a window (the focused window when None)."""

    @abstractmethod
    async def redirect(self, tab_id: int, url: str) -> None:
        """Navigate a tab to a new URL."""


class Notifier(ABC):
    """User-visible notifications and the toolbar badge."""

    @abstractmethod
    async def notify(self, title: str, message: str) -> None:
        """Show one notification."""

    @abstractmethod
    async def set_badge(self, text: str) -> None:
        """Set the badge text (empty string clears it)."""


class InMemoryTabHost(TabHost):
    """Tab host holding tabs in a dict, with one focused window."""

    def __init__(self, tabs: Optional[List[Tab]] = None) -> None:
        self.tabs: Dict[int, Tab] = {t.id: t for t in (tabs or [])}
        self.focused_window: Optional[int] = 0
        self.redirects: List[tuple] = []

    def open(self, tab: Tab) -> Tab:
        if tab.active:
            for other in self.tabs.values():
                if other.window_id == tab.window_id:
                    other.active = False
        self.tabs[tab.id] = tab
        return tab

    def close(self, tab_id: int) -> None:
        self.tabs.pop(tab_id, None)

    def activate(self, tab_id: int) -> None:
        tab = self.tabs[tab_id]
        for other in self.tabs.values():
            if other.window_id == tab.window_id:
                other.active = other.id == tab_id
        self.focused_window = tab.window_id

    async def query_tabs(self) -> List[Tab]:
        return list(self.tabs.values())

    async def get_tab(self, tab_id: int) -> Optional[Tab]:
        return self.tabs.get(tab_id)

    async def active_tab(self, window_id: Optional[int] = None) -> Optional[Tab]:
        window = self.focused_window if window_id is None else window_id
        if window is None:
            return None
        for tab in self.tabs.values():
            if tab.window_id == window and tab.active:
                return tab
        return None

    async def redirect(self, tab_id: int, url: str) -> None:
        tab = self.tabs.get(tab_id)
        if tab is None:
            logger.debug(f"Redirect of closed tab {tab_id} ignored")
            return
        tab.url = url
        self.redirects.append((tab_id, url))


class LoggingNotifier(Notifier):
    """Notifier that writes to the log (headless runs)."""

    def __init__(self) -> None:
        self.badge = ""

    async def notify(self, title: str, message: str) -> None:
        logger.info(f"{title}: {message}")

    async def set_badge(self, text: str) -> None:
        if text != self.badge:
            logger.debug(f"Badge: {text!r}")
        self.badge = text
