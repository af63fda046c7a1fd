"""
Page monitor: the per-page context.

One PageMonitor runs for each open page. It keeps a read-only replica
of the coordinator's state, decides from it whether to cover the page
with a block view, and shows a live countdown on detox domains. The
coordinator pushes time-remaining updates after each flush; between
updates the countdown runs down locally through tick().

Drawing is left to a PageRenderer so the monitor stays headless.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import config
from blocking.decision import BlockVerdict, should_block
from core.state import GlobalState
from sync.channel import COORDINATOR, MessageChannel, ReceiverUnavailable, tab_address
from sync.dispatcher import MessageDispatcher
from sync.messages import (
    PAGE_MONITOR_INBOUND,
    DetoxReset,
    GetDetoxInfo,
    GetState,
    QuotaExhausted,
    ReportBlock,
    StateChanged,
    TimeRemaining,
)
from tracking.analytics import format_minutes, time_status
from tracking.quota import QuotaScheduler

logger = logging.getLogger(__name__)

VIEW_PAGE = "page"
VIEW_BLOCKED = "blocked"
VIEW_LOCKOUT = "lockout"


class PageRenderer(ABC):
    """Draws the monitor's views on the page."""

    @abstractmethod
    def show_block(self, domain: str) -> None:
        """Cover the page: domain is always blocked."""

    @abstractmethod
    def show_detox_block(self, domain: str, daily_limit: float) -> None:
        """Cover the page: today's detox time is used up."""

    @abstractmethod
    def show_countdown(self, domain: str, remaining: float, daily_limit: float) -> None:
        """Show or update the remaining-time overlay."""

    @abstractmethod
    def clear_countdown(self) -> None:
        """Remove the remaining-time overlay."""


class LoggingRenderer(PageRenderer):
    """Renderer that logs instead of drawing (headless runs)."""

    def show_block(self, domain: str) -> None:
        logger.info(f"[block view] {domain} is blocked")

    def show_detox_block(self, domain: str, daily_limit: float) -> None:
        logger.info(f"[lockout view] {domain}: all {daily_limit:g} minutes used today")

    def show_countdown(self, domain: str, remaining: float, daily_limit: float) -> None:
        logger.debug(f"[countdown] {domain}: {format_minutes(remaining)} ({time_status(remaining)})")

    def clear_countdown(self) -> None:
        pass


class PageMonitor:
    """
    Replica-backed monitor for one page.

    Attributes:
        view: VIEW_PAGE, VIEW_BLOCKED or VIEW_LOCKOUT.
        countdown: Minutes left on the local countdown, None when not shown.
    """

    def __init__(
        self,
        tab_id: int,
        url: str,
        channel: MessageChannel,
        renderer: Optional[PageRenderer] = None,
        scheduler: Optional[QuotaScheduler] = None,
    ) -> None:
        self.tab_id = tab_id
        self.url = url
        self.address = tab_address(tab_id)
        self.channel = channel
        self.renderer = renderer or LoggingRenderer()
        self.scheduler = scheduler or QuotaScheduler()

        self.replica: Optional[GlobalState] = None
        self.view = VIEW_PAGE
        self.domain: Optional[str] = None
        self.countdown: Optional[float] = None
        self.daily_limit: float = 0.0
        self._reported = False

        self.dispatcher = MessageDispatcher(
            self.address,
            PAGE_MONITOR_INBOUND,
            {
                TimeRemaining: self._handle_time_remaining,
                QuotaExhausted: self._handle_quota_exhausted,
                StateChanged: self._handle_state_changed,
                DetoxReset: self._handle_detox_reset,
            },
        )

    # ----- Lifecycle -----

    async def load(self) -> None:
        """Start listening, fetch the replica and evaluate the page."""
        self.channel.register(self.address, self._on_message)
        if await self.refresh():
            await self.check_current_page()

    async def unload(self) -> None:
        """Stop the countdown and stop listening."""
        self._stop_countdown()
        self.channel.unregister(self.address)

    async def refresh(self) -> bool:
        """
        Replace the replica with a fresh snapshot.

        Returns:
            False if the coordinator could not be reached.
        """
        try:
            response = await self.channel.request(self.address, COORDINATOR, GetState())
        except ReceiverUnavailable:
            logger.debug(f"{self.address}: coordinator unavailable, keeping replica")
            return False
        if not response.get("success"):
            return False
        self.replica = GlobalState.from_store(response.get("state") or {})
        return True

    # ----- Page evaluation -----

    async def check_current_page(self) -> BlockVerdict:
        """
        Decide what this page shows, using the replica.

        A blocked page gets the block or lockout view and is reported to
        the coordinator once. A detox page that still has time starts
        the countdown.
        """
        if self.replica is None:
            return BlockVerdict(blocked=False)

        verdict = should_block(
            self.replica.enabled, self.replica.rules, self.replica.quotas,
            self.url, self.scheduler,
        )
        self.domain = verdict.domain

        if verdict.blocked:
            self._stop_countdown()
            if verdict.reason == config.BLOCK_REASON_TIMEOUT:
                record = self.replica.quotas.get(verdict.domain)
                self._show_lockout(verdict.domain, record.daily_limit if record else 0.0)
            else:
                self.view = VIEW_BLOCKED
                self.renderer.show_block(verdict.domain)
            await self._report_block(verdict.domain)
            return verdict

        self.view = VIEW_PAGE
        self._reported = False
        if verdict.domain is not None and verdict.domain in self.replica.quotas:
            await self._start_countdown(verdict.domain)
        else:
            self._stop_countdown()
        return verdict

    def tick(self, seconds: float = 1.0) -> None:
        """Advance the local countdown; show the lockout view at zero."""
        if self.countdown is None or self.view != VIEW_PAGE:
            return
        self.countdown = max(0.0, self.countdown - seconds / 60.0)
        if self.countdown <= 0:
            self._stop_countdown()
            self._show_lockout(self.domain, self.daily_limit)
            return
        self.renderer.show_countdown(self.domain, self.countdown, self.daily_limit)

    # ----- Message handlers -----

    async def _on_message(self, message, sender: str) -> Dict[str, Any]:
        return await self.dispatcher.dispatch(message, sender)

    async def _handle_time_remaining(self, message: TimeRemaining, sender: str) -> None:
        if message.domain != self.domain or self.view != VIEW_PAGE:
            return
        self.daily_limit = message.daily_limit
        if message.remaining <= 0:
            self._stop_countdown()
            self._show_lockout(message.domain, message.daily_limit)
            return
        self.countdown = message.remaining
        self.renderer.show_countdown(message.domain, message.remaining, message.daily_limit)

    async def _handle_quota_exhausted(self, message: QuotaExhausted, sender: str) -> None:
        if message.domain != self.domain:
            return
        self._stop_countdown()
        self._show_lockout(message.domain, message.daily_limit)

    async def _handle_state_changed(self, message: StateChanged, sender: str) -> None:
        self.replica = GlobalState.from_store(message.state)
        await self.check_current_page()

    async def _handle_detox_reset(self, message: DetoxReset, sender: str) -> None:
        if await self.refresh():
            await self.check_current_page()

    # ----- Internals -----

    async def _start_countdown(self, domain: str) -> None:
        try:
            response = await self.channel.request(
                self.address, COORDINATOR, GetDetoxInfo(domain=domain)
            )
        except ReceiverUnavailable:
            logger.debug(f"{self.address}: no detox info for {domain}")
            return
        info = response.get("info")
        if not info or info["remaining"] <= 0:
            self._stop_countdown()
            return
        self.countdown = info["remaining"]
        self.daily_limit = info["daily_limit"]
        self.renderer.show_countdown(domain, self.countdown, self.daily_limit)

    def _stop_countdown(self) -> None:
        if self.countdown is not None:
            self.countdown = None
            self.renderer.clear_countdown()

    def _show_lockout(self, domain: str, daily_limit: float) -> None:
        self.view = VIEW_LOCKOUT
        self.renderer.show_detox_block(domain, daily_limit)

    async def _report_block(self, domain: str) -> None:
        if self._reported:
            return
        self._reported = True
        await self.channel.send(self.address, COORDINATOR, ReportBlock(domain=domain, url=self.url))
