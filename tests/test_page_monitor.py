"""Tests for sync/page_monitor.py against a live in-process coordinator."""

import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.coordinator import Coordinator
from core.host import InMemoryTabHost, Tab
from core.store import MemoryStore
from sync.channel import COORDINATOR, PANEL, MessageChannel, tab_address
from sync.messages import AddRule, ApplyEdit, QuotaExhausted, RemoveRule, SetEnabled
from sync.page_monitor import VIEW_BLOCKED, VIEW_LOCKOUT, VIEW_PAGE, PageMonitor, PageRenderer
from tracking.quota import QuotaScheduler, QuotaSettings

T0 = datetime(2024, 3, 1, 9, 0, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class TestPageMonitor(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = Clock(T0)
        self.scheduler = QuotaScheduler(QuotaSettings(60, 10, 5), clock=self.clock)
        self.channel = MessageChannel()
        self.tabs = InMemoryTabHost()
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        notifier.set_badge = AsyncMock()
        alarms = MagicMock()
        alarms.shutdown = AsyncMock()

        self.coordinator = Coordinator(
            MemoryStore(), self.channel, self.tabs, notifier,
            scheduler=self.scheduler, alarms=alarms, flush_threshold_seconds=30,
        )
        await self.coordinator.start()
        await self.channel.request(PANEL, COORDINATOR, ApplyEdit(edits=[
            AddRule(domain="youtube.com", detox=True),
            AddRule(domain="facebook.com", detox=False),
        ]))
        self.renderer = MagicMock(spec=PageRenderer)

    async def asyncTearDown(self):
        await self.coordinator.stop()

    async def open_page(self, url: str, tab_id: int = 1) -> PageMonitor:
        self.tabs.open(Tab(id=tab_id, url=url, active=True))
        monitor = PageMonitor(tab_id, url, self.channel, self.renderer, self.scheduler)
        await monitor.load()
        return monitor

    async def test_detox_page_starts_countdown(self):
        monitor = await self.open_page("https://www.youtube.com/watch?v=1")
        self.assertEqual(monitor.view, VIEW_PAGE)
        self.assertEqual(monitor.countdown, 60)
        self.renderer.show_countdown.assert_called_with("youtube.com", 60, 60)

    async def test_tick_counts_down_to_lockout(self):
        monitor = await self.open_page("https://youtube.com/")
        monitor.tick(30)
        self.assertAlmostEqual(monitor.countdown, 59.5)

        monitor.countdown = 1 / 60
        monitor.tick(1)
        self.assertEqual(monitor.view, VIEW_LOCKOUT)
        self.assertIsNone(monitor.countdown)
        self.renderer.show_detox_block.assert_called_once_with("youtube.com", 60)

        # Ticks after lockout do nothing
        monitor.tick(1)
        self.renderer.show_detox_block.assert_called_once()

    async def test_hard_rule_page_blocked_and_reported_once(self):
        monitor = await self.open_page("https://facebook.com/")
        self.assertEqual(monitor.view, VIEW_BLOCKED)
        self.renderer.show_block.assert_called_once_with("facebook.com")
        self.assertEqual(self.coordinator.state.lockout_counts, {"2024-03-01": 1})

        # An unrelated edit re-evaluates the page without counting again
        await self.channel.request(PANEL, COORDINATOR, ApplyEdit(edits=[AddRule(domain="reddit.com")]))
        self.assertEqual(self.coordinator.state.lockout_counts, {"2024-03-01": 1})

    async def test_exhausted_detox_page_shows_lockout(self):
        self.coordinator.state.quotas["youtube.com"].used_time_today = 60
        monitor = await self.open_page("https://youtube.com/")
        self.assertEqual(monitor.view, VIEW_LOCKOUT)
        self.renderer.show_detox_block.assert_called_once_with("youtube.com", 60)

    async def test_time_remaining_push_updates_countdown(self):
        monitor = await self.open_page("https://youtube.com/")
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=5)
        await self.coordinator.handle_time_tracking()
        self.assertAlmostEqual(monitor.countdown, 55)

    async def test_quota_exhausted_shows_lockout(self):
        monitor = await self.open_page("https://youtube.com/")
        await self.channel.send(COORDINATOR, tab_address(1), QuotaExhausted("youtube.com", 60))
        self.assertEqual(monitor.view, VIEW_LOCKOUT)
        self.assertIsNone(monitor.countdown)

    async def test_quota_exhausted_for_other_domain_ignored(self):
        monitor = await self.open_page("https://youtube.com/")
        await self.channel.send(COORDINATOR, tab_address(1), QuotaExhausted("reddit.com", 60))
        self.assertEqual(monitor.view, VIEW_PAGE)

    async def test_rule_removal_clears_countdown(self):
        monitor = await self.open_page("https://youtube.com/")
        await self.channel.request(PANEL, COORDINATOR, ApplyEdit(edits=[RemoveRule(domain="youtube.com")]))
        self.assertIsNone(monitor.countdown)
        self.assertEqual(monitor.view, VIEW_PAGE)
        self.renderer.clear_countdown.assert_called()

    async def test_unblocked_page_shows_nothing(self):
        monitor = await self.open_page("https://example.org/")
        self.assertEqual(monitor.view, VIEW_PAGE)
        self.assertIsNone(monitor.countdown)
        self.renderer.show_countdown.assert_not_called()

    async def test_unload_unregisters(self):
        monitor = await self.open_page("https://youtube.com/")
        await monitor.unload()
        self.assertFalse(self.channel.is_registered(tab_address(1)))
        self.assertIsNone(monitor.countdown)

    async def test_load_without_coordinator(self):
        channel = MessageChannel()
        monitor = PageMonitor(7, "https://youtube.com/", channel, self.renderer, self.scheduler)
        await monitor.load()
        self.assertIsNone(monitor.replica)
        self.assertEqual(monitor.view, VIEW_PAGE)
        self.assertTrue(channel.is_registered(tab_address(7)))

    async def test_disable_lifts_block(self):
        monitor = await self.open_page("https://facebook.com/")
        await self.channel.request(PANEL, COORDINATOR, ApplyEdit(edits=[
            SetEnabled(enabled=False)
        ]))
        self.assertEqual(monitor.view, VIEW_PAGE)
        self.assertFalse(monitor.replica.enabled)


if __name__ == '__main__':
    unittest.main()
