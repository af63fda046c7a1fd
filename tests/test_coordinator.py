"""
Tests for core/coordinator.py: edits, tracking, lockout sweeps, daily
reset and store failures, driven through the message channel the same
way the other contexts use it.
"""

import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, MagicMock

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from core.coordinator import Coordinator
from core.host import InMemoryTabHost, Tab
from core.state import GlobalState
from core.store import MemoryStore, StoreError
from sync.channel import COORDINATOR, PANEL, MessageChannel, tab_address
from sync.messages import (
    AddRule,
    ApplyEdit,
    CheckUrl,
    ClearRules,
    DetoxReset,
    GetDetoxInfo,
    GetState,
    QuotaExhausted,
    RemoveRule,
    ReportBlock,
    SetEnabled,
    SetMode,
    StateChanged,
    TimeLimitExceeded,
    TimeRemaining,
    UsageDelta,
)
from tracking.quota import QuotaScheduler, QuotaSettings

T0 = datetime(2024, 3, 1, 9, 0, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Recorder:
    """Channel endpoint that remembers what it received."""

    def __init__(self):
        self.messages: List = []

    async def __call__(self, message, sender):
        self.messages.append(message)
        return None

    def of(self, cls):
        return [m for m in self.messages if isinstance(m, cls)]


class FailingStore(MemoryStore):
    """Store whose writes always fail."""

    async def set(self, items):
        raise StoreError("disk full")


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared harness: coordinator, panel recorder and one tab recorder."""

    store_class = MemoryStore
    initial_store = None

    async def asyncSetUp(self):
        self.clock = Clock(T0)
        self.scheduler = QuotaScheduler(QuotaSettings(60, 10, 5), clock=self.clock)
        self.store = self.store_class(self.initial_store)
        self.channel = MessageChannel()
        self.tabs = InMemoryTabHost()
        self.notifier = MagicMock()
        self.notifier.notify = AsyncMock()
        self.notifier.set_badge = AsyncMock()
        self.alarms = MagicMock()
        self.alarms.shutdown = AsyncMock()

        self.coordinator = Coordinator(
            self.store, self.channel, self.tabs, self.notifier,
            scheduler=self.scheduler, alarms=self.alarms, flush_threshold_seconds=30,
        )
        await self.coordinator.start()

        self.panel = Recorder()
        self.tab1 = Recorder()
        self.channel.register(PANEL, self.panel)
        self.channel.register(tab_address(1), self.tab1)

    async def asyncTearDown(self):
        await self.coordinator.stop()

    async def edit(self, *edits, expected_revision=None):
        return await self.channel.request(
            PANEL, COORDINATOR, ApplyEdit(edits=list(edits), expected_revision=expected_revision)
        )

    async def check(self, url):
        return await self.channel.request(PANEL, COORDINATOR, CheckUrl(url=url))

    @property
    def state(self) -> GlobalState:
        return self.coordinator.state


class TestLifecycle(CoordinatorTestCase):

    async def test_start_schedules_alarms_and_registers(self):
        names = [c.args[0] for c in self.alarms.create.call_args_list]
        self.assertEqual(names, [config.ALARM_DAILY_RESET, config.ALARM_TIME_TRACKING])
        self.assertEqual(
            self.alarms.create.call_args_list[0].kwargs["first_at"], datetime(2024, 3, 2)
        )
        self.assertTrue(self.channel.is_registered(COORDINATOR))
        self.notifier.set_badge.assert_awaited_with("")

    async def test_get_state_returns_snapshot(self):
        await self.edit(AddRule(domain="youtube.com"))
        response = await self.channel.request(PANEL, COORDINATOR, GetState())
        self.assertTrue(response["success"])
        self.assertEqual(response["state"]["revision"], 1)
        self.assertIn("youtube.com", response["state"]["quotaRecords"])
        self.assertEqual(response["state"]["lockoutsToday"], 0)

    async def test_alarm_names_route_to_handlers(self):
        self.coordinator.handle_daily_reset = AsyncMock()
        self.coordinator.handle_time_tracking = AsyncMock()
        await self.coordinator.on_alarm(config.ALARM_DAILY_RESET)
        await self.coordinator.on_alarm(config.ALARM_TIME_TRACKING)
        await self.coordinator.on_alarm("unknown")
        self.coordinator.handle_daily_reset.assert_awaited_once()
        self.coordinator.handle_time_tracking.assert_awaited_once()


class TestEdits(CoordinatorTestCase):
    """apply-edit semantics."""

    async def test_add_detox_rule(self):
        response = await self.edit(AddRule(domain=" YouTube.com "))
        self.assertTrue(response["success"])
        self.assertEqual(response["revision"], 1)

        rule = self.state.get_rule("youtube.com")
        self.assertTrue(rule.detox)
        self.assertEqual(self.state.quotas["youtube.com"].daily_limit, 60)

        persisted = self.store.dump()
        self.assertEqual(persisted["rules"][0]["domain"], "youtube.com")
        self.assertEqual(persisted["revision"], 1)

        changed = self.panel.of(StateChanged)
        self.assertEqual(len(changed), 1)
        self.assertIn("youtube.com", changed[0].state["quotaRecords"])
        self.notifier.set_badge.assert_awaited_with("1")

    async def test_add_follows_mode(self):
        await self.edit(SetMode(mode=config.MODE_NORMAL), AddRule(domain="facebook.com"))
        rule = self.state.get_rule("facebook.com")
        self.assertFalse(rule.detox)
        self.assertEqual(rule.category, config.CATEGORY_SOCIAL)
        self.assertNotIn("facebook.com", self.state.quotas)

    async def test_duplicate_add_rejected_without_mutation(self):
        await self.edit(AddRule(domain="youtube.com"))
        self.state.quotas["youtube.com"].used_time_today = 12
        writes = self.store.writes

        response = await self.edit(AddRule(domain="youtube.com"))
        self.assertFalse(response["success"])
        self.assertEqual(response["error_type"], "duplicate_domain")
        self.assertEqual(len(self.state.rules), 1)
        self.assertEqual(len(self.state.quotas), 1)
        self.assertEqual(self.state.quotas["youtube.com"].used_time_today, 12)
        self.assertEqual(self.state.revision, 1)
        self.assertEqual(self.store.writes, writes)

    async def test_invalid_domain_rejected(self):
        response = await self.edit(AddRule(domain="not a domain"))
        self.assertEqual(response["error_type"], "invalid_domain")
        self.assertEqual(self.state.rules, [])

    async def test_failed_batch_rolls_back(self):
        response = await self.edit(
            AddRule(domain="youtube.com"), SetEnabled(enabled=False), AddRule(domain="bad")
        )
        self.assertFalse(response["success"])
        self.assertEqual(self.state.rules, [])
        self.assertTrue(self.state.enabled)
        self.assertEqual(self.state.revision, 0)

    async def test_stale_revision_rejected(self):
        await self.edit(AddRule(domain="youtube.com"))
        response = await self.edit(AddRule(domain="reddit.com"), expected_revision=0)
        self.assertFalse(response["success"])
        self.assertEqual(response["error_type"], "stale_revision")
        self.assertEqual(response["revision"], 1)
        self.assertFalse(self.state.has_rule("reddit.com"))

        response = await self.edit(AddRule(domain="reddit.com"), expected_revision=1)
        self.assertTrue(response["success"])

    async def test_remove_rule_unblocks(self):
        await self.edit(AddRule(domain="youtube.com"))
        self.state.quotas["youtube.com"].used_time_today = 60
        self.assertTrue((await self.check("https://youtube.com/"))["should_block"])

        response = await self.edit(RemoveRule(domain="youtube.com"))
        self.assertTrue(response["success"])
        self.assertFalse(self.state.has_rule("youtube.com"))
        self.assertNotIn("youtube.com", self.state.quotas)
        self.assertFalse((await self.check("https://youtube.com/"))["should_block"])
        self.assertNotIn("youtube.com", self.store.dump()["quotaRecords"])

    async def test_remove_unknown_rule(self):
        response = await self.edit(RemoveRule(domain="youtube.com"))
        self.assertEqual(response["error_type"], "not_found")

    async def test_invalid_mode_rejected(self):
        response = await self.edit(SetMode(mode="turbo"))
        self.assertEqual(response["error_type"], "invalid_mode")

    async def test_clear_rules(self):
        await self.edit(AddRule(domain="youtube.com"), AddRule(domain="reddit.com", detox=False))
        await self.edit(ClearRules())
        self.assertEqual(self.state.rules, [])
        self.assertEqual(self.state.quotas, {})

    async def test_disable_stops_blocking_and_tracking(self):
        await self.edit(AddRule(domain="facebook.com", detox=False), AddRule(domain="youtube.com"))
        self.tabs.open(Tab(id=1, url="https://youtube.com/", active=True))
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=5)

        await self.edit(SetEnabled(enabled=False))
        self.assertEqual(self.coordinator.tracker.sessions, {})
        self.assertAlmostEqual(self.state.quotas["youtube.com"].used_time_today, 5)
        self.assertFalse((await self.check("https://facebook.com/"))["should_block"])
        self.notifier.set_badge.assert_awaited_with(config.BADGE_DISABLED_TEXT)

        # No new session while disabled
        await self.coordinator.handle_time_tracking()
        self.assertEqual(self.coordinator.tracker.sessions, {})


class TestTracking(CoordinatorTestCase):
    """Time accounting and the lockout sweep."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.edit(AddRule(domain="youtube.com"))
        self.tabs.open(Tab(id=1, url="https://www.youtube.com/watch?v=1", active=True))
        self.tabs.open(Tab(id=2, url="https://m.youtube.com/", active=False))
        self.tabs.open(Tab(id=3, url="https://example.org/", active=False))

    async def test_activation_starts_session_and_sends_remaining(self):
        await self.coordinator.on_tab_activated(1)
        self.assertEqual(self.coordinator.tracker.session_for(1).domain, "youtube.com")
        remaining = self.tab1.of(TimeRemaining)
        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0].remaining, 60)

    async def test_flushes_sum_and_sweep_fires_once(self):
        await self.coordinator.on_tab_activated(1)

        self.clock.advance(minutes=25)
        await self.coordinator.handle_time_tracking()
        record = self.state.quotas["youtube.com"]
        self.assertAlmostEqual(record.used_time_today, 25)
        self.assertAlmostEqual(record.remaining_time, 35)
        self.assertAlmostEqual(self.panel.of(UsageDelta)[-1].minutes, 25)
        self.assertAlmostEqual(self.tab1.of(TimeRemaining)[-1].remaining, 35)
        self.notifier.notify.assert_not_awaited()

        self.clock.advance(minutes=40)
        await self.coordinator.handle_time_tracking()
        self.assertAlmostEqual(record.used_time_today, 65)
        self.assertEqual(record.remaining_time, 0)

        # Both youtube tabs redirected with reason=timeout, the other tab left alone
        redirected = {tab_id: url for tab_id, url in self.tabs.redirects}
        self.assertEqual(set(redirected), {1, 2})
        self.assertIn("reason=timeout", redirected[1])
        self.assertEqual(len(self.tab1.of(QuotaExhausted)), 1)
        self.notifier.notify.assert_awaited_once()
        self.assertIn("youtube.com", self.notifier.notify.call_args.args[0])

        # Further ticks don't repeat the sweep
        self.clock.advance(minutes=1)
        await self.coordinator.handle_time_tracking()
        self.notifier.notify.assert_awaited_once()
        self.assertEqual(len(self.tabs.redirects), 2)

    async def test_usage_persisted_on_flush(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=3)
        await self.coordinator.handle_time_tracking()
        persisted = self.store.dump()["quotaRecords"]["youtube.com"]
        self.assertAlmostEqual(persisted["usedTimeToday"], 3)

    async def test_switching_tabs_ends_previous_session(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=2)
        self.tabs.activate(3)
        await self.coordinator.on_tab_activated(3)
        self.assertEqual(self.coordinator.tracker.sessions, {})
        self.assertAlmostEqual(self.state.quotas["youtube.com"].used_time_today, 2)

    async def test_navigating_away_ends_session(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=4)
        self.tabs.tabs[1].url = "https://example.org/"
        await self.coordinator.on_tab_updated(1, "https://example.org/")
        self.assertIsNone(self.coordinator.tracker.session_for(1))
        self.assertAlmostEqual(self.state.quotas["youtube.com"].used_time_today, 4)

    async def test_loading_status_is_ignored(self):
        await self.coordinator.on_tab_updated(1, "https://youtube.com/", status="loading")
        self.assertEqual(self.coordinator.tracker.sessions, {})

    async def test_background_tab_update_does_not_start_session(self):
        await self.coordinator.on_tab_updated(2, "https://m.youtube.com/")
        self.assertIsNone(self.coordinator.tracker.session_for(2))

    async def test_tab_removed_flushes(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=6)
        self.tabs.close(1)
        await self.coordinator.on_tab_removed(1)
        self.assertAlmostEqual(self.state.quotas["youtube.com"].used_time_today, 6)
        self.assertAlmostEqual(self.panel.of(UsageDelta)[-1].minutes, 6)

    async def test_window_focus_lost_ends_all_sessions(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=1)
        await self.coordinator.on_window_focus_changed(None)
        self.assertEqual(self.coordinator.tracker.sessions, {})
        self.assertAlmostEqual(self.state.quotas["youtube.com"].used_time_today, 1)

        await self.coordinator.on_window_focus_changed(0)
        self.assertIsNotNone(self.coordinator.tracker.session_for(1))

    async def test_removing_rule_discards_open_session(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=3)
        await self.edit(RemoveRule(domain="youtube.com"))
        self.assertEqual(self.coordinator.tracker.sessions, {})
        self.assertEqual(self.panel.of(UsageDelta), [])

    async def test_remove_and_readd_in_one_batch_starts_clean(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=20)
        await self.edit(RemoveRule(domain="youtube.com"), AddRule(domain="youtube.com"))
        self.assertIsNone(self.coordinator.tracker.session_for(1))

        await self.coordinator.handle_time_tracking()
        record = self.state.quotas["youtube.com"]
        self.assertEqual(record.used_time_today, 0)
        self.assertEqual(record.total_used_time, 0)

        # Time after the edit is counted against the new record
        self.clock.advance(minutes=4)
        await self.coordinator.handle_time_tracking()
        self.assertAlmostEqual(record.used_time_today, 4)

    async def test_clear_and_readd_in_one_batch_starts_clean(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=20)
        await self.edit(ClearRules(), AddRule(domain="youtube.com"))
        await self.coordinator.handle_time_tracking()
        self.assertEqual(self.state.quotas["youtube.com"].used_time_today, 0)

    async def test_stop_flushes_open_sessions(self):
        await self.coordinator.on_tab_activated(1)
        self.clock.advance(minutes=2)
        await self.coordinator.stop()
        persisted = self.store.dump()["quotaRecords"]["youtube.com"]
        self.assertAlmostEqual(persisted["usedTimeToday"], 2)
        self.alarms.shutdown.assert_awaited()

    async def test_time_limit_exceeded_requires_exhaustion(self):
        response = await self.channel.request(
            PANEL, COORDINATOR, TimeLimitExceeded(domain="youtube.com")
        )
        self.assertFalse(response["success"])
        self.assertEqual(response["error_type"], "not_exhausted")
        self.assertEqual(self.tabs.redirects, [])

        self.state.quotas["youtube.com"].used_time_today = 60
        response = await self.channel.request(
            PANEL, COORDINATOR, TimeLimitExceeded(domain="youtube.com")
        )
        self.assertTrue(response["success"])
        self.assertEqual(response["redirected"], 2)


class TestNavigationAndQueries(CoordinatorTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.edit(AddRule(domain="facebook.com", detox=False), AddRule(domain="youtube.com"))

    async def test_before_navigate_redirects_hard_rule(self):
        self.tabs.open(Tab(id=5, url="about:blank"))
        redirected = await self.coordinator.on_before_navigate(5, "https://www.facebook.com/")
        self.assertTrue(redirected)
        tab_id, url = self.tabs.redirects[-1]
        self.assertEqual(tab_id, 5)
        self.assertTrue(url.startswith(config.BLOCK_PAGE_URL))
        self.assertIn("reason=blocked", url)

    async def test_before_navigate_ignores_subframes_and_allowed(self):
        self.assertFalse(await self.coordinator.on_before_navigate(5, "https://facebook.com/", frame_id=3))
        self.assertFalse(await self.coordinator.on_before_navigate(5, "https://youtube.com/"))

    async def test_check_url_response(self):
        response = await self.check("https://facebook.com/")
        self.assertTrue(response["should_block"])
        self.assertEqual(response["reason"], config.BLOCK_REASON_BLOCKED)
        self.assertEqual(response["domain"], "facebook.com")

    async def test_get_detox_info(self):
        response = await self.channel.request(PANEL, COORDINATOR, GetDetoxInfo(domain="youtube.com"))
        info = response["info"]
        self.assertEqual(info["day"], 1)
        self.assertEqual(info["remaining"], 60)
        self.assertEqual(info["next_limit"], 50)

        response = await self.channel.request(PANEL, COORDINATOR, GetDetoxInfo(domain="facebook.com"))
        self.assertIsNone(response["info"])

    async def test_report_block_counts_per_day(self):
        for expected in (1, 2):
            response = await self.channel.request(
                tab_address(1), COORDINATOR, ReportBlock(domain="facebook.com")
            )
            self.assertEqual(response["count"], expected)
        self.assertEqual(self.store.dump()["lockoutCounts"], {"2024-03-01": 2})

    async def test_daily_reset_rebases_and_broadcasts(self):
        self.state.quotas["youtube.com"].used_time_today = 60
        self.clock.advance(days=1)
        rebased = await self.coordinator.handle_daily_reset()
        self.assertEqual(rebased, ["youtube.com"])
        record = self.state.quotas["youtube.com"]
        self.assertEqual(record.daily_limit, 50)
        self.assertEqual(record.used_time_today, 0)
        self.assertEqual(self.panel.of(DetoxReset)[-1].count, 1)

    async def test_stale_record_rebased_by_check_url(self):
        """A missed midnight alarm is healed by the next read."""
        self.state.quotas["youtube.com"].used_time_today = 60
        self.clock.advance(days=1)
        response = await self.check("https://youtube.com/")
        self.assertFalse(response["should_block"])
        self.assertEqual(self.store.dump()["quotaRecords"]["youtube.com"]["dailyLimit"], 50)


class TestLoad(CoordinatorTestCase):
    """Start-up repair of persisted state."""

    initial_store = {
        "rules": [
            {"domain": "youtube.com", "category": "other", "createdAt": "2024-02-27T09:00:00", "detox": True},
            {"domain": "reddit.com", "category": "social", "createdAt": "2024-02-27T09:00:00", "detox": True},
        ],
        "quotaRecords": {
            "youtube.com": {
                "startDate": "2024-02-27T09:00:00", "dailyLimit": 50, "usedTimeToday": 50,
                "totalUsedTime": 110, "lastReset": "2024-02-28T00:00:00",
                "lastUpdate": "2024-02-28T20:00:00",
            },
            "orphan.com": {"startDate": "2024-02-27T09:00:00", "dailyLimit": 60},
        },
        "enabled": False,
        "revision": 9,
    }

    async def test_load_repairs_and_rebases(self):
        self.assertEqual(set(self.state.quotas), {"youtube.com", "reddit.com"})
        record = self.state.quotas["youtube.com"]
        self.assertEqual(record.daily_limit, 30)
        self.assertEqual(record.used_time_today, 0)
        self.assertEqual(record.total_used_time, 110)
        self.assertFalse(self.state.enabled)
        self.assertEqual(self.state.revision, 9)
        self.assertNotIn("orphan.com", self.store.dump()["quotaRecords"])
        self.notifier.set_badge.assert_awaited_with(config.BADGE_DISABLED_TEXT)


class TestLoadOutOfRangeLimit(CoordinatorTestCase):
    """A hand-edited limit is pulled back into range on load."""

    initial_store = {
        "rules": [
            {"domain": "youtube.com", "category": "other", "createdAt": "2024-03-01T08:00:00", "detox": True},
            {"domain": "reddit.com", "category": "social", "createdAt": "2024-03-01T08:00:00", "detox": True},
        ],
        "quotaRecords": {
            "youtube.com": {
                "startDate": "2024-03-01T08:00:00", "dailyLimit": 500, "usedTimeToday": 10,
                "lastReset": "2024-03-01T08:00:00",
            },
            "reddit.com": {
                "startDate": "2024-03-01T08:00:00", "dailyLimit": 1,
                "lastReset": "2024-03-01T08:00:00",
            },
        },
    }

    async def test_limits_clamped_without_rebase(self):
        youtube = self.state.quotas["youtube.com"]
        self.assertEqual(youtube.daily_limit, 60)
        self.assertEqual(youtube.used_time_today, 10)
        self.assertEqual(youtube.remaining_time, 50)
        self.assertEqual(self.state.quotas["reddit.com"].daily_limit, 5)
        persisted = self.store.dump()["quotaRecords"]
        self.assertEqual(persisted["youtube.com"]["dailyLimit"], 60)
        self.assertEqual(persisted["reddit.com"]["dailyLimit"], 5)


class TestStoreFailures(CoordinatorTestCase):

    store_class = FailingStore

    async def test_edit_applies_in_memory_when_save_fails(self):
        response = await self.edit(AddRule(domain="youtube.com"))
        self.assertTrue(response["success"])
        self.assertTrue(self.state.has_rule("youtube.com"))

    async def test_unreadable_store_starts_with_defaults(self):
        store = MemoryStore()
        store.get = AsyncMock(side_effect=StoreError("corrupt"))
        coordinator = Coordinator(
            store, MessageChannel(), InMemoryTabHost(), self.notifier,
            scheduler=self.scheduler, alarms=self.alarms,
        )
        await coordinator.load()
        self.assertEqual(coordinator.state.rules, [])
        self.assertTrue(coordinator.state.enabled)


if __name__ == '__main__':
    unittest.main()
