"""
Control surface: the interactive panel context.

Holds a replica of the coordinator's state for display and turns user
commands into edit deltas. Input is validated against the replica before
anything is sent; the coordinator validates again when it applies the
edit, so a stale replica can never corrupt canonical state.

Command methods return result dicts in the same shape throughout:
    {"success": bool, "error": str | None, "error_type": str | None}
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

import config
from blocking.rules import determine_category, is_valid_domain, normalize_domain
from core.state import GlobalState
from sync.channel import COORDINATOR, PANEL, MessageChannel, ReceiverUnavailable
from sync.dispatcher import MessageDispatcher
from sync.messages import (
    CONTROL_SURFACE_INBOUND,
    AddRule,
    ApplyEdit,
    CheckUrl,
    ClearRules,
    DetoxReset,
    Edit,
    GetDetoxInfo,
    GetState,
    RemoveRule,
    SetEnabled,
    SetMode,
    StateChanged,
    TimeLimitExceeded,
    UsageDelta,
)
from tracking.analytics import compute_detox_stats, format_minutes, time_status
from tracking.quota import QuotaScheduler

logger = logging.getLogger(__name__)

# Edits built from the current replica, or a rejection result
EditBuilder = Callable[[GlobalState], Union[List[Edit], Dict[str, Any]]]


def _result(success: bool, error: Optional[str] = None, error_type: Optional[str] = None,
            **extra) -> Dict[str, Any]:
    result = {"success": success, "error": error, "error_type": error_type}
    result.update(extra)
    return result


class ControlSurface:
    """
    Panel context.

    Usage:
        panel = ControlSurface(channel)
        await panel.open()
        result = await panel.add_domain("youtube.com")
        if not result["success"]:
            print(result["error"])
    """

    def __init__(self, channel: MessageChannel, scheduler: Optional[QuotaScheduler] = None) -> None:
        self.channel = channel
        self.scheduler = scheduler or QuotaScheduler()
        self.replica: GlobalState = GlobalState()
        self.lockouts_today: int = 0
        self.warnings: List[str] = []
        self.is_open = False

        self.dispatcher = MessageDispatcher(
            PANEL,
            CONTROL_SURFACE_INBOUND,
            {
                UsageDelta: self._handle_usage_delta,
                StateChanged: self._handle_state_changed,
                DetoxReset: self._handle_detox_reset,
            },
        )

    # ----- Lifecycle -----

    async def open(self) -> bool:
        """
        Start listening and load the replica.

        Returns:
            False if the coordinator could not be reached.
        """
        self.channel.register(PANEL, self._on_message)
        self.is_open = True
        return await self.refresh()

    async def close(self) -> None:
        self.channel.unregister(PANEL)
        self.is_open = False

    async def refresh(self) -> bool:
        try:
            response = await self.channel.request(PANEL, COORDINATOR, GetState())
        except ReceiverUnavailable:
            logger.warning("Coordinator unavailable, panel shows cached state")
            return False
        if not response.get("success"):
            return False
        self._replace_replica(response.get("state") or {})
        return True

    # ----- Commands -----

    async def add_domain(self, raw: str, detox: Optional[bool] = None) -> Dict[str, Any]:
        """
        Add a domain to the block list.

        Args:
            raw: Domain or URL as typed by the user.
            detox: True for a decaying daily quota, False to always block,
                None to follow the selected mode.
        """
        domain = normalize_domain(raw or "")
        if not is_valid_domain(domain):
            return _result(False, f"Invalid domain: {raw!r}", "invalid_domain")

        def build(replica: GlobalState):
            if replica.has_rule(domain):
                return _result(False, f"{domain} is already in the list", "duplicate_domain")
            use_detox = detox if detox is not None else replica.mode == config.MODE_DETOX
            return [AddRule(domain=domain, category=determine_category(domain), detox=use_detox)]

        return await self._submit(build)

    async def remove_domain(self, raw: str) -> Dict[str, Any]:
        domain = normalize_domain(raw or "")

        def build(replica: GlobalState):
            if not replica.has_rule(domain):
                return _result(False, f"{domain} is not in the list", "not_found")
            return [RemoveRule(domain=domain)]

        return await self._submit(build)

    async def clear_all(self) -> Dict[str, Any]:
        return await self._submit(lambda replica: [ClearRules()])

    async def set_enabled(self, enabled: bool) -> Dict[str, Any]:
        return await self._submit(lambda replica: [SetEnabled(enabled=bool(enabled))])

    async def set_mode(self, mode: str) -> Dict[str, Any]:
        if mode not in config.VALID_MODES:
            return _result(False, f"Invalid mode: {mode!r}", "invalid_mode")
        return await self._submit(lambda replica: [SetMode(mode=mode)])

    async def report_time_limit_exceeded(self, raw: str) -> Dict[str, Any]:
        """Ask the coordinator to lock out every tab on an exhausted domain."""
        domain = normalize_domain(raw or "")
        try:
            response = await self.channel.request(PANEL, COORDINATOR, TimeLimitExceeded(domain=domain))
        except ReceiverUnavailable:
            return _result(False, "Coordinator is not running", "unavailable")
        return _result(
            bool(response.get("success")), response.get("error"), response.get("error_type"),
            redirected=response.get("redirected", 0),
        )

    async def check_url(self, url: str) -> Dict[str, Any]:
        try:
            response = await self.channel.request(PANEL, COORDINATOR, CheckUrl(url=url))
        except ReceiverUnavailable:
            return _result(False, "Coordinator is not running", "unavailable")
        return _result(
            True,
            should_block=response.get("should_block", False),
            reason=response.get("reason"),
            domain=response.get("domain"),
        )

    async def detox_info(self, raw: str) -> Optional[Dict[str, Any]]:
        """Coordinator's view of a detox domain, or None."""
        try:
            response = await self.channel.request(
                PANEL, COORDINATOR, GetDetoxInfo(domain=normalize_domain(raw or ""))
            )
        except ReceiverUnavailable:
            return None
        return response.get("info")

    # ----- Reads -----

    def remaining_time_info(self, raw: str) -> Optional[Dict[str, Any]]:
        """
        Remaining time of a detox domain from the replica.

        The replica record is rebased first if it is from an earlier day,
        then read.
        """
        domain = normalize_domain(raw or "")
        record = self.replica.quotas.get(domain)
        if record is None:
            return None

        self.scheduler.rebase_if_stale(record)
        remaining = record.remaining_time
        return {
            "domain": domain,
            "remaining": remaining,
            "daily_limit": record.daily_limit,
            "used_today": record.used_time_today,
            "formatted": format_minutes(remaining),
            "status": time_status(remaining),
        }

    def stats(self) -> Dict[str, Any]:
        now = self.scheduler.now()
        for record in self.replica.quotas.values():
            self.scheduler.rebase_if_stale(record, now)
        return compute_detox_stats(
            self.replica.rules, self.replica.quotas, self.replica.lockout_counts,
            now, self.scheduler.settings,
        )

    # ----- Message handlers -----

    async def _on_message(self, message, sender: str) -> Dict[str, Any]:
        return await self.dispatcher.dispatch(message, sender)

    async def _handle_usage_delta(self, message: UsageDelta, sender: str) -> None:
        record = self.replica.quotas.get(message.domain)
        if record is None:
            return
        self.scheduler.record_usage(record, message.minutes)
        remaining = record.remaining_time
        if 0 < remaining < config.LOW_TIME_WARNING_MINUTES:
            warning = f"⏰ {message.domain}: {format_minutes(remaining)} left today"
            self.warnings.append(warning)
            logger.warning(warning)

    async def _handle_state_changed(self, message: StateChanged, sender: str) -> None:
        self._replace_replica(message.state)

    async def _handle_detox_reset(self, message: DetoxReset, sender: str) -> None:
        logger.info(f"Daily reset: {message.count} domain(s) in detox")
        self.warnings.clear()
        await self.refresh()

    # ----- Internals -----

    def _replace_replica(self, state: Dict[str, Any]) -> None:
        self.replica = GlobalState.from_store(state)
        self.lockouts_today = int(state.get("lockoutsToday", 0))

    async def _submit(self, build: EditBuilder) -> Dict[str, Any]:
        """
        Validate against the replica and send the edits.

        A stale-revision rejection reloads the replica and tries once more
        so the edit is re-validated against current state.
        """
        for attempt in range(2):
            edits = build(self.replica)
            if isinstance(edits, dict):
                return edits

            message = ApplyEdit(edits=edits, expected_revision=self.replica.revision)
            try:
                response = await self.channel.request(PANEL, COORDINATOR, message)
            except ReceiverUnavailable:
                return _result(False, "Coordinator is not running", "unavailable")

            if response.get("error_type") != "stale_revision" or attempt > 0:
                break
            logger.info("Replica is stale, reloading before retry")
            await self.refresh()

        if not response.get("success"):
            await self.refresh()
        return _result(
            bool(response.get("success")), response.get("error"), response.get("error_type"),
            revision=response.get("revision"),
        )
