"""
Coordinator: the long-lived context that owns SiteDetox state.

Holds the canonical GlobalState, is the only writer of the persisted
store, runs the daily-reset and time-tracking alarms, reacts to tab
lifecycle events and answers messages from page monitors and the
control surface.

Every read-modify-write and its persist happens under one asyncio.Lock,
so store writes land in event order. Messages, redirects and
notifications produced while holding the lock are queued and delivered
after it is released, because receivers may call straight back into
the coordinator.

Host events (called by whatever drives the browser):
    on_tab_activated(tab_id)
    on_tab_updated(tab_id, url, status)
    on_tab_removed(tab_id)
    on_window_focus_changed(window_id)
    on_before_navigate(tab_id, url, frame_id)
    on_alarm(name)
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import config
from blocking.decision import (
    BlockVerdict,
    block_page_url,
    extract_hostname,
    resolve_tracked_domain,
    should_block,
)
from blocking.rules import BlockRule, determine_category, is_valid_domain, matches_domain, normalize_domain
from core.alarms import AlarmScheduler, next_midnight
from core.host import Notifier, Tab, TabHost
from core.state import STORE_KEYS, GlobalState
from core.store import KeyValueStore, StoreError
from sync.channel import COORDINATOR, PANEL, MessageChannel, tab_address
from sync.dispatcher import MessageDispatcher
from sync.messages import (
    COORDINATOR_INBOUND,
    AddRule,
    ApplyEdit,
    CheckUrl,
    ClearRules,
    DetoxReset,
    Edit,
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
from tracking.analytics import day_number
from tracking.quota import QuotaRecord, QuotaScheduler
from tracking.usage_tracker import FlushResult, Observation, UsageTracker

logger = logging.getLogger(__name__)

Pending = List[Callable[[], Awaitable[Any]]]


class EditRejected(Exception):
    """An edit in an apply-edit batch cannot be applied."""

    def __init__(self, message: str, error_type: str) -> None:
        super().__init__(message)
        self.error_type = error_type


class Coordinator:
    """
    Canonical state owner and event handler.

    Usage:
        coordinator = Coordinator(store, channel, tabs, notifier)
        await coordinator.start()
        ...
        await coordinator.stop()
    """

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def __init__(
        self,
        store: KeyValueStore,
        channel: MessageChannel,
        tabs: TabHost,
        notifier: Notifier,
        scheduler: Optional[QuotaScheduler] = None,
        alarms: Optional[AlarmScheduler] = None,
        flush_threshold_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.tabs = tabs
        self.notifier = notifier
        self.scheduler: QuotaScheduler = scheduler or QuotaScheduler()
        self.tracker: UsageTracker = UsageTracker(self.scheduler, flush_threshold_seconds)
        self.alarms: AlarmScheduler = alarms or AlarmScheduler(self.scheduler.clock)

        self.state: GlobalState = GlobalState()
        self.is_running: bool = False
        self._lock = asyncio.Lock()

        self.dispatcher = MessageDispatcher(
            COORDINATOR,
            COORDINATOR_INBOUND,
            {
                GetState: self._handle_get_state,
                ApplyEdit: self._handle_apply_edit,
                ReportBlock: self._handle_report_block,
                CheckUrl: self._handle_check_url,
                GetDetoxInfo: self._handle_get_detox_info,
                TimeLimitExceeded: self._handle_time_limit_exceeded,
            },
        )
        self._edit_handlers = {
            AddRule: self._edit_add_rule,
            RemoveRule: self._edit_remove_rule,
            ClearRules: self._edit_clear_rules,
            SetEnabled: self._edit_set_enabled,
            SetMode: self._edit_set_mode,
        }

    def now(self) -> datetime:
        return self.scheduler.now()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load state, start listening and schedule the alarms."""
        await self.load()
        self.channel.register(COORDINATOR, self._on_message)

        self.alarms.add_listener(self.on_alarm)
        self.alarms.create(
            config.ALARM_DAILY_RESET,
            config.DAILY_RESET_PERIOD_SECONDS,
            first_at=next_midnight(self.now()),
        )
        self.alarms.create(config.ALARM_TIME_TRACKING, config.TRACKING_INTERVAL_SECONDS)

        await self._update_badge()
        self.is_running = True
        logger.info(
            f"Coordinator started ({len(self.state.rules)} rules, "
            f"{len(self.state.quotas)} in detox, enabled={self.state.enabled})"
        )

    async def stop(self) -> None:
        """Flush open sessions, cancel alarms and stop listening."""
        async with self._lock:
            flushes = self.tracker.end_all(self.state.quotas)
            if flushes:
                await self._save()
        await self.alarms.shutdown()
        self.channel.unregister(COORDINATOR)
        self.is_running = False
        logger.info("Coordinator stopped")

    async def load(self) -> None:
        """
        Load GlobalState from the store.

        An unreadable store is logged and replaced by defaults. Records
        are repaired against the rules, clamped into the limit range and
        rebased before first use.
        """
        try:
            data = await self.store.get(STORE_KEYS)
        except StoreError as e:
            logger.error(f"Failed to load state, starting with defaults: {e}")
            data = {}

        state = GlobalState.from_store(data)
        now = self.now()
        repaired = state.repair(now, partial(QuotaRecord.new, settings=self.scheduler.settings))
        clamped = [d for d, r in state.quotas.items() if self.scheduler.clamp_limit(r)]
        rebased = self.scheduler.rebase_all(state.quotas, now)

        async with self._lock:
            self.state = state
            if repaired or clamped or rebased:
                await self._save()

    async def _save(self) -> bool:
        """
        Persist the whole state. Caller holds the lock.

        Returns:
            False if the write failed; in-memory state is kept either way.
        """
        try:
            await self.store.set(self.state.to_store())
            return True
        except StoreError as e:
            logger.error(f"Failed to save state (continuing in memory): {e}")
            return False

    def snapshot(self) -> Dict[str, Any]:
        return self.state.snapshot(self.now().date())

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_tab_activated(self, tab_id: int) -> None:
        tab = await self.tabs.get_tab(tab_id)
        if tab is not None:
            await self._track(tab, active=True)

    async def on_tab_updated(self, tab_id: int, url: Optional[str], status: str = "complete") -> None:
        """Re-evaluate a tab once its navigation has completed."""
        if status != "complete":
            return
        tab = await self.tabs.get_tab(tab_id)
        if tab is None:
            tab = Tab(id=tab_id, url=url)
        elif url:
            tab.url = url
        await self._track(tab, active=tab.active)

    async def on_tab_removed(self, tab_id: int) -> None:
        pending: Pending = []
        async with self._lock:
            flush = self.tracker.end(tab_id, self.state.quotas)
            if flush is not None:
                await self._save()
                pending = self._after_flushes([flush])
        await self._deliver(pending)

    async def on_window_focus_changed(self, window_id: Optional[int]) -> None:
        """
        Re-evaluate the active tab of the newly focused window.

        window_id None means the browser lost focus; every session closes.
        """
        if window_id is None:
            pending: Pending = []
            async with self._lock:
                flushes = self.tracker.end_all(self.state.quotas)
                if flushes:
                    await self._save()
                    pending = self._after_flushes(flushes)
            await self._deliver(pending)
            return

        tab = await self.tabs.active_tab(window_id)
        if tab is not None:
            await self._track(tab, active=True)

    async def on_before_navigate(self, tab_id: int, url: str, frame_id: int = 0) -> bool:
        """
        Redirect a top-level navigation to the block page if it is blocked.

        Returns:
            True if the tab was redirected.
        """
        if frame_id != 0:
            return False

        async with self._lock:
            verdict = await self._decide(url)

        if not verdict.blocked:
            return False
        target = block_page_url(verdict.domain, url, verdict.reason)
        await self._deliver([partial(self.tabs.redirect, tab_id, target)])
        logger.info(f"Blocked navigation to {verdict.hostname} ({verdict.reason})")
        return True

    async def on_alarm(self, name: str) -> None:
        if name == config.ALARM_DAILY_RESET:
            await self.handle_daily_reset()
        elif name == config.ALARM_TIME_TRACKING:
            await self.handle_time_tracking()
        else:
            logger.debug(f"Ignoring unknown alarm {name}")

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    async def handle_daily_reset(self) -> List[str]:
        """
        Rebase every stale record and tell the other contexts.

        Returns:
            Domains that were rebased.
        """
        logger.info("Performing daily reset...")
        async with self._lock:
            rebased = self.scheduler.rebase_all(self.state.quotas)
            if rebased:
                await self._save()
            count = len(self.state.quotas)

        await self.channel.broadcast(COORDINATOR, DetoxReset(count=count))
        await self._update_badge()
        return rebased

    async def handle_time_tracking(self) -> None:
        """Minute tick: account time for the active tab."""
        tab = await self.tabs.active_tab()
        if tab is not None:
            await self._track(tab, active=True)

    async def _track(self, tab: Tab, active: bool) -> None:
        """
        Feed a tab into the usage tracker.

        The active tab may start a session (and ends every other one);
        a background tab can only end or switch its existing session.
        """
        pending: Pending = []
        async with self._lock:
            domain = None
            if self.state.enabled:
                domain = resolve_tracked_domain(tab.url, self.state.rules, self.state.quotas)

            if active:
                observation = self.tracker.observe_active(tab.id, domain, self.state.quotas)
            elif self.tracker.session_for(tab.id) is not None:
                observation = self.tracker.observe(tab.id, domain, self.state.quotas)
            else:
                return

            if observation.flushes:
                await self._save()
            pending = self._after_observation(observation)
        await self._deliver(pending)

    def _after_observation(self, observation: Observation) -> Pending:
        pending = self._after_flushes(observation.flushes)
        started = observation.started
        if started is not None:
            record = self.state.quotas.get(started.domain)
            if record is not None:
                pending.append(partial(
                    self.channel.send, COORDINATOR, tab_address(started.tab_id),
                    self._time_remaining(started.domain, record),
                ))
        return pending

    def _after_flushes(self, flushes: List[FlushResult]) -> Pending:
        """Queue the messages (and lockout sweeps) a set of flushes produces."""
        pending: Pending = []
        for flush in flushes:
            pending.append(partial(
                self.channel.send, COORDINATOR, PANEL,
                UsageDelta(domain=flush.domain, minutes=flush.minutes),
            ))
            pending.append(partial(
                self.channel.send, COORDINATOR, tab_address(flush.tab_id),
                self._time_remaining(flush.domain, flush.record),
            ))
            if flush.exhausted and self.state.enabled:
                pending.append(partial(self.lockout_sweep, flush.domain, flush.record.daily_limit))
        return pending

    @staticmethod
    def _time_remaining(domain: str, record: QuotaRecord) -> TimeRemaining:
        return TimeRemaining(
            domain=domain,
            remaining=record.remaining_time,
            daily_limit=record.daily_limit,
            used_today=record.used_time_today,
        )

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    async def lockout_sweep(self, domain: str, daily_limit: float) -> int:
        """
        Redirect every open tab on an exhausted domain and notify once.

        Returns:
            Number of tabs redirected.
        """
        redirected: List[int] = []
        for tab in await self.tabs.query_tabs():
            hostname = extract_hostname(tab.url, tracked_only=True)
            if hostname is None or not matches_domain(hostname, domain):
                continue
            await self.channel.send(
                COORDINATOR, tab_address(tab.id),
                QuotaExhausted(domain=domain, daily_limit=daily_limit),
            )
            try:
                await self.tabs.redirect(
                    tab.id, block_page_url(domain, tab.url, config.BLOCK_REASON_TIMEOUT)
                )
                redirected.append(tab.id)
            except Exception as e:
                logger.error(f"Failed to redirect tab {tab.id}: {e}")

        # Redirected tabs no longer show the domain
        pending: Pending = []
        async with self._lock:
            flushes = []
            for tab_id in redirected:
                flush = self.tracker.end(tab_id, self.state.quotas)
                if flush is not None:
                    flushes.append(flush)
            if flushes:
                await self._save()
                pending = self._after_flushes(flushes)
        await self._deliver(pending)

        await self._deliver([partial(
            self.notifier.notify,
            f"⏰ {domain}: time is up",
            f"You have used all {daily_limit:g} minutes for today",
        )])
        logger.info(f"Lockout for {domain}: {len(redirected)} tab(s) redirected")
        return len(redirected)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _on_message(self, message, sender: str) -> Dict[str, Any]:
        return await self.dispatcher.dispatch(message, sender)

    async def _handle_get_state(self, message: GetState, sender: str) -> Dict[str, Any]:
        async with self._lock:
            if self.scheduler.rebase_all(self.state.quotas):
                await self._save()
            snapshot = self.snapshot()
        return {"success": True, "state": snapshot}

    async def _handle_check_url(self, message: CheckUrl, sender: str) -> Dict[str, Any]:
        async with self._lock:
            verdict = await self._decide(message.url)
        return {
            "success": True,
            "should_block": verdict.blocked,
            "reason": verdict.reason,
            "domain": verdict.domain,
        }

    async def _handle_get_detox_info(self, message: GetDetoxInfo, sender: str) -> Dict[str, Any]:
        domain = normalize_domain(message.domain)
        async with self._lock:
            record = self.state.quotas.get(domain)
            if record is None:
                return {"success": True, "info": None}
            if self.scheduler.rebase_if_stale(record):
                await self._save()
            info = self.detox_info(domain, record)
        return {"success": True, "info": info}

    def detox_info(self, domain: str, record: QuotaRecord) -> Dict[str, Any]:
        """Display fields for one detox domain. Record must be current."""
        return {
            "domain": domain,
            "remaining": record.remaining_time,
            "daily_limit": record.daily_limit,
            "used_today": record.used_time_today,
            "total_used": record.total_used_time,
            "next_limit": self.scheduler.next_limit(record),
            "day": day_number(record, self.now()),
        }

    async def _handle_report_block(self, message: ReportBlock, sender: str) -> Dict[str, Any]:
        async with self._lock:
            count = self.state.count_lockout(self.now().date())
            await self._save()
        logger.debug(f"Block reported for {message.domain} by {sender} ({count} today)")
        return {"success": True, "count": count}

    async def _handle_time_limit_exceeded(
        self, message: TimeLimitExceeded, sender: str
    ) -> Dict[str, Any]:
        domain = normalize_domain(message.domain)
        async with self._lock:
            record = self.state.quotas.get(domain)
            exhausted = False
            if record is not None:
                if self.scheduler.rebase_if_stale(record):
                    await self._save()
                exhausted = record.is_exhausted and self.state.enabled
            daily_limit = record.daily_limit if record is not None else 0.0

        if not exhausted:
            return {"success": False, "error": f"{domain} still has time left", "error_type": "not_exhausted"}
        redirected = await self.lockout_sweep(domain, daily_limit)
        return {"success": True, "redirected": redirected}

    async def _handle_apply_edit(self, message: ApplyEdit, sender: str) -> Dict[str, Any]:
        """
        Apply a batch of edits all-or-nothing.

        Edits run against a copy of the state; the copy replaces the
        canonical state only if every edit succeeds.
        """
        pending: Pending = []
        async with self._lock:
            if (message.expected_revision is not None
                    and message.expected_revision != self.state.revision):
                return {
                    "success": False,
                    "error": "State changed since it was loaded; reload and retry",
                    "error_type": "stale_revision",
                    "revision": self.state.revision,
                }

            now = self.now()
            working = self.state.copy()
            removed: Set[str] = set()
            try:
                for edit in message.edits:
                    removed.update(self._apply_edit(working, edit, now))
            except EditRejected as e:
                logger.info(f"Edit rejected ({e.error_type}): {e}")
                return {
                    "success": False,
                    "error": str(e),
                    "error_type": e.error_type,
                    "revision": self.state.revision,
                }

            # Removed in this batch, even if re-added later in it. The final
            # partial usage lands in the outgoing record and is dropped with it.
            for domain in removed:
                self.tracker.end_domain(domain, self.state.quotas)
            working.revision = self.state.revision + 1
            self.state = working

            flushes = []
            if not self.state.enabled:
                flushes = self.tracker.end_all(self.state.quotas)

            await self._save()
            snapshot = self.snapshot()
            pending = self._after_flushes(flushes)
            pending.append(partial(
                self.channel.broadcast, COORDINATOR, StateChanged(state=snapshot)
            ))
            revision = self.state.revision

        pending.append(self._update_badge)
        await self._deliver(pending)
        return {"success": True, "error": None, "error_type": None, "revision": revision}

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def _apply_edit(self, state: GlobalState, edit: Edit, now: datetime) -> Iterable[str]:
        """Apply one edit to `state`. Returns the domains it removed."""
        handler = self._edit_handlers.get(type(edit))
        if handler is None:
            raise EditRejected(f"Unsupported edit: {edit.kind}", "unknown_edit")
        return handler(state, edit, now) or ()

    def _edit_add_rule(self, state: GlobalState, edit: AddRule, now: datetime) -> None:
        domain = normalize_domain(edit.domain or "")
        if not is_valid_domain(domain):
            raise EditRejected(f"Invalid domain: {edit.domain!r}", "invalid_domain")
        if state.has_rule(domain):
            raise EditRejected(f"{domain} is already in the list", "duplicate_domain")

        detox = edit.detox if edit.detox is not None else state.mode == config.MODE_DETOX
        category = edit.category or determine_category(domain)

        state.rules.insert(0, BlockRule(domain=domain, category=category, created_at=now, detox=detox))
        if detox:
            state.quotas[domain] = QuotaRecord.new(now, self.scheduler.settings)
        logger.info(f"Added {domain} ({'detox' if detox else 'always blocked'}, {category})")

    def _edit_remove_rule(self, state: GlobalState, edit: RemoveRule, now: datetime) -> List[str]:
        domain = normalize_domain(edit.domain or "")
        if not state.remove_rule(domain):
            raise EditRejected(f"{domain} is not in the list", "not_found")
        logger.info(f"Removed {domain}")
        return [domain]

    def _edit_clear_rules(self, state: GlobalState, edit: ClearRules, now: datetime) -> List[str]:
        logger.info(f"Cleared {len(state.rules)} rules")
        removed = [rule.domain for rule in state.rules]
        state.rules = []
        state.quotas = {}
        return removed

    def _edit_set_enabled(self, state: GlobalState, edit: SetEnabled, now: datetime) -> None:
        state.enabled = bool(edit.enabled)
        logger.info(f"Blocking {'enabled' if state.enabled else 'disabled'}")

    def _edit_set_mode(self, state: GlobalState, edit: SetMode, now: datetime) -> None:
        if edit.mode not in config.VALID_MODES:
            raise EditRejected(f"Invalid mode: {edit.mode!r}", "invalid_mode")
        state.mode = edit.mode

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _decide(self, url: Optional[str]) -> BlockVerdict:
        """Block decision against canonical state. Caller holds the lock."""
        verdict = should_block(
            self.state.enabled, self.state.rules, self.state.quotas, url, self.scheduler
        )
        if verdict.rebased:
            await self._save()
        return verdict

    def badge_text(self) -> str:
        if not self.state.enabled:
            return config.BADGE_DISABLED_TEXT
        count = len(self.state.quotas)
        return str(count) if count > 0 else ""

    async def _update_badge(self) -> None:
        await self._deliver([partial(self.notifier.set_badge, self.badge_text())])

    async def _deliver(self, pending: Pending) -> None:
        """Run queued side effects; a failing one is logged and skipped."""
        for action in pending:
            try:
                await action()
            except Exception as e:
                logger.error(f"Side effect failed: {e}", exc_info=True)
