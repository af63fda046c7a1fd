"""
Usage tracker for detox domains.

Keeps one ActiveSession per tab that is showing a detox domain and turns
elapsed session time into quota usage ("flushing"). Each tab is either
idle or tracking exactly one domain:

    Idle -> Tracking(d)        tab starts showing detox domain d
    Tracking(d) -> Tracking(d) periodic re-evaluation, flush when due
    Tracking(d) -> Tracking(e) domain changed in the same tab
    Tracking(d) -> Idle        tab closed / left / rule removed / inactive

Precision is bounded by the tick interval: switching tabs faster than the
tick is not separately accounted. Sessions live in memory only, so a
restart loses at most one flush interval of usage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

import config
from tracking.quota import QuotaRecord, QuotaScheduler

logger = logging.getLogger(__name__)


@dataclass
class ActiveSession:
    """Time a tab has spent on a tracked domain since the last flush."""

    tab_id: int
    domain: str
    started_at: datetime

    def elapsed_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


@dataclass
class FlushResult:
    """Usage written into a quota record by one flush."""

    tab_id: int
    domain: str
    minutes: float
    record: QuotaRecord
    exhausted: bool  # This flush moved remaining time from >0 to 0


@dataclass
class Observation:
    """What happened when a tab was (re-)evaluated."""

    flushes: List[FlushResult]
    started: Optional[ActiveSession] = None


class UsageTracker:
    """
    Per-tab session bookkeeping.

    The tracker does not own quota records; callers pass the canonical
    record map on every call and persist/broadcast the returned flushes.
    """

    def __init__(
        self,
        scheduler: QuotaScheduler,
        flush_threshold_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.scheduler = scheduler
        self.flush_threshold_seconds = (
            config.FLUSH_THRESHOLD_SECONDS
            if flush_threshold_seconds is None else flush_threshold_seconds
        )
        self.clock = clock or scheduler.clock
        self.sessions: Dict[int, ActiveSession] = {}

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def observe(
        self,
        tab_id: int,
        domain: Optional[str],
        records: Dict[str, QuotaRecord],
    ) -> Observation:
        """
        Re-evaluate a tab that now shows `domain`.

        Args:
            tab_id: Tab being evaluated.
            domain: Tracked detox domain the tab resolves to, or None.
            records: Canonical quota records.

        Returns:
            Observation listing flushes and any newly started session.
        """
        now = self.clock()
        session = self.sessions.get(tab_id)
        flushes: List[FlushResult] = []

        if domain is None or domain not in records:
            if session is not None:
                self._append(flushes, self._flush(session, records, now))
                del self.sessions[tab_id]
                logger.debug(f"Tab {tab_id} stopped tracking {session.domain}")
            return Observation(flushes)

        if session is None:
            return Observation(flushes, self._start(tab_id, domain, now))

        if session.domain != domain:
            self._append(flushes, self._flush(session, records, now))
            return Observation(flushes, self._start(tab_id, domain, now))

        elapsed = session.elapsed_seconds(now)
        if elapsed >= self.flush_threshold_seconds:
            self._append(flushes, self._flush(session, records, now))
            session.started_at = now
        elif elapsed < 0:
            # Clock moved backwards; restart the session rather than wait it out
            session.started_at = now
        return Observation(flushes)

    def observe_active(
        self,
        tab_id: int,
        domain: Optional[str],
        records: Dict[str, QuotaRecord],
    ) -> Observation:
        """
        Re-evaluate the tab the user is looking at.

        Only the active tab accrues time, so sessions in every other tab
        are flushed and closed first.
        """
        flushes: List[FlushResult] = []
        for other_id in [t for t in self.sessions if t != tab_id]:
            self._append(flushes, self.end(other_id, records))
        observation = self.observe(tab_id, domain, records)
        observation.flushes[:0] = flushes
        return observation

    def end(self, tab_id: int, records: Dict[str, QuotaRecord]) -> Optional[FlushResult]:
        """Flush and discard a tab's session (tab closed or left)."""
        session = self.sessions.pop(tab_id, None)
        if session is None:
            return None
        return self._flush(session, records, self.clock())

    def end_all(self, records: Dict[str, QuotaRecord]) -> List[FlushResult]:
        """Flush and discard every session."""
        flushes: List[FlushResult] = []
        for tab_id in list(self.sessions):
            self._append(flushes, self.end(tab_id, records))
        return flushes

    def end_domain(self, domain: str, records: Dict[str, QuotaRecord]) -> List[FlushResult]:
        """
        Flush and discard every session on a domain.

        Called with the records as they were before the domain's rule was
        removed, so the final partial usage lands in the outgoing record
        and never in one created for the same domain afterwards.
        """
        flushes: List[FlushResult] = []
        for tab_id in [t for t, s in self.sessions.items() if s.domain == domain]:
            self._append(flushes, self.end(tab_id, records))
        return flushes

    def session_for(self, tab_id: int) -> Optional[ActiveSession]:
        return self.sessions.get(tab_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(self, tab_id: int, domain: str, now: datetime) -> ActiveSession:
        session = ActiveSession(tab_id=tab_id, domain=domain, started_at=now)
        self.sessions[tab_id] = session
        logger.debug(f"Tab {tab_id} started tracking {domain}")
        return session

    def _flush(
        self,
        session: ActiveSession,
        records: Dict[str, QuotaRecord],
        now: datetime,
    ) -> Optional[FlushResult]:
        """
        Convert a session's elapsed time into usage.

        Returns:
            FlushResult, or None if nothing was recorded (non-positive
            elapsed time or the record no longer exists).
        """
        minutes = session.elapsed_seconds(now) / 60.0
        if minutes <= 0:
            if minutes < 0:
                logger.warning(
                    f"Discarding negative elapsed time for {session.domain} "
                    f"(start={session.started_at}, now={now})"
                )
            return None

        record = records.get(session.domain)
        if record is None:
            return None

        exhausted = self.scheduler.record_usage(record, minutes, now)
        logger.debug(
            f"Recorded {minutes:.2f} min for {session.domain} "
            f"({record.remaining_time:.2f} min left)"
        )
        return FlushResult(
            tab_id=session.tab_id,
            domain=session.domain,
            minutes=minutes,
            record=record,
            exhausted=exhausted,
        )

    @staticmethod
    def _append(flushes: List[FlushResult], result: Optional[FlushResult]) -> None:
        if result is not None:
            flushes.append(result)
