"""
Detox quota records and the daily quota scheduler.

Each detox domain owns a QuotaRecord. Its daily limit decays by a fixed
number of minutes per calendar day since activation until it reaches a
floor. Records are rebased (limit recomputed, daily counters reset) the
first time they are touched on a new calendar day, so rollover heals
itself even if nothing was running at midnight.

All durations are float minutes. Truncation for display happens only in
tracking/analytics.py.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaSettings:
    """Shape of the decay curve, in minutes."""

    initial: float = 60.0
    decay_per_day: float = 10.0
    floor: float = 5.0

    @classmethod
    def from_config(cls) -> 'QuotaSettings':
        """Build settings from config.py (which honours .env overrides)."""
        return cls(
            initial=config.DETOX_INITIAL_MINUTES,
            decay_per_day=config.DETOX_DECAY_MINUTES,
            floor=config.DETOX_FLOOR_MINUTES,
        )


def days_since_start(start: datetime, now: datetime) -> int:
    """
    Whole days elapsed since activation (day 0 is the first day).

    A clock set backwards yields a negative difference, which is clamped to 0.
    """
    elapsed = (now - start).total_seconds()
    return max(0, math.floor(elapsed / config.SECONDS_PER_DAY))


def compute_daily_limit(days: int, settings: QuotaSettings) -> float:
    """
    Daily limit for a given day index.

    Examples:
        >>> compute_daily_limit(0, QuotaSettings())
        60.0
        >>> compute_daily_limit(6, QuotaSettings())
        5.0
    """
    days = max(0, days)
    return float(max(settings.floor, settings.initial - settings.decay_per_day * days))


@dataclass
class QuotaRecord:
    """
    Daily usage allowance for one detox domain.

    remaining_time is derived from daily_limit and used_time_today and
    can never be set directly.
    """

    start_date: datetime
    daily_limit: float
    last_reset: datetime
    last_update: datetime
    used_time_today: float = 0.0
    total_used_time: float = 0.0

    @classmethod
    def new(cls, now: datetime, settings: QuotaSettings) -> 'QuotaRecord':
        """Create a day-0 record activated at `now`."""
        return cls(
            start_date=now,
            daily_limit=compute_daily_limit(0, settings),
            last_reset=now,
            last_update=now,
        )

    @property
    def remaining_time(self) -> float:
        """Minutes left today, clamped to [0, daily_limit]."""
        return min(self.daily_limit, max(0.0, self.daily_limit - self.used_time_today))

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_time <= 0

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to the persisted form.

        remainingTime is written for readers of the store but ignored by
        from_dict().
        """
        return {
            "startDate": self.start_date.isoformat(),
            "dailyLimit": self.daily_limit,
            "usedTimeToday": self.used_time_today,
            "remainingTime": self.remaining_time,
            "totalUsedTime": self.total_used_time,
            "lastReset": self.last_reset.isoformat(),
            "lastUpdate": self.last_update.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuotaRecord':
        """
        Create a QuotaRecord from its persisted form.

        Raises:
            KeyError, ValueError, TypeError: If required fields are missing or malformed.
        """
        start_date = datetime.fromisoformat(data["startDate"])
        last_reset = datetime.fromisoformat(data.get("lastReset") or data["startDate"])
        last_update = datetime.fromisoformat(data.get("lastUpdate") or data["startDate"])
        return cls(
            start_date=start_date,
            daily_limit=float(data["dailyLimit"]),
            last_reset=last_reset,
            last_update=last_update,
            used_time_today=max(0.0, float(data.get("usedTimeToday", 0.0))),
            total_used_time=max(0.0, float(data.get("totalUsedTime", 0.0))),
        )

    def copy(self) -> 'QuotaRecord':
        return QuotaRecord(
            start_date=self.start_date,
            daily_limit=self.daily_limit,
            last_reset=self.last_reset,
            last_update=self.last_update,
            used_time_today=self.used_time_today,
            total_used_time=self.total_used_time,
        )


class QuotaScheduler:
    """
    Decides when a QuotaRecord is stale and rebases it.

    Every read or write path that touches a record calls rebase_if_stale()
    first and then reads. Rebasing twice on the same calendar day is a
    no-op because the date comparison short-circuits.
    """

    def __init__(
        self,
        settings: Optional[QuotaSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings or QuotaSettings.from_config()
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    def limit_for(self, record: QuotaRecord, now: Optional[datetime] = None) -> float:
        """Limit the record would get if rebased at `now`."""
        now = now or self.clock()
        return compute_daily_limit(days_since_start(record.start_date, now), self.settings)

    def next_limit(self, record: QuotaRecord) -> float:
        """Limit tomorrow, assuming today's limit is current."""
        return max(self.settings.floor, record.daily_limit - self.settings.decay_per_day)

    @staticmethod
    def is_stale(record: QuotaRecord, now: datetime) -> bool:
        """True when the record was last reset on a different calendar day."""
        return record.last_reset.date() != now.date()

    def rebase(self, record: QuotaRecord, now: Optional[datetime] = None) -> None:
        """Recompute the daily limit and reset today's counters."""
        now = now or self.clock()
        record.daily_limit = self.limit_for(record, now)
        record.used_time_today = 0.0
        record.last_reset = now

    def rebase_if_stale(self, record: QuotaRecord, now: Optional[datetime] = None) -> bool:
        """
        Rebase the record if its last reset was on another day.

        Returns:
            True if the record was rebased.
        """
        now = now or self.clock()
        if not self.is_stale(record, now):
            return False
        self.rebase(record, now)
        return True

    def clamp_limit(self, record: QuotaRecord) -> bool:
        """
        Pull a loaded daily_limit back into [floor, initial].

        Returns:
            True if the limit was out of range and has been changed.
        """
        clamped = float(min(self.settings.initial, max(self.settings.floor, record.daily_limit)))
        if clamped == record.daily_limit:
            return False
        logger.warning(f"Daily limit {record.daily_limit:g} out of range, using {clamped:g}")
        record.daily_limit = clamped
        return True

    def rebase_all(
        self, records: Dict[str, QuotaRecord], now: Optional[datetime] = None
    ) -> List[str]:
        """
        Rebase every stale record in the map.

        Returns:
            Domains that were rebased.
        """
        now = now or self.clock()
        rebased = []
        for domain, record in records.items():
            if self.rebase_if_stale(record, now):
                day = days_since_start(record.start_date, now) + 1
                logger.info(f"Reset {domain}: day {day}, limit {record.daily_limit:g} min")
                rebased.append(domain)
        return rebased

    def record_usage(
        self, record: QuotaRecord, minutes: float, now: Optional[datetime] = None
    ) -> bool:
        """
        Add usage to a record, rebasing first if a day boundary was crossed.

        Args:
            record: Record to update in place.
            minutes: Elapsed active minutes. Non-positive values are ignored.
            now: Timestamp of the flush.

        Returns:
            True if this call moved remaining_time from above zero to zero.
        """
        if minutes <= 0:
            return False

        now = now or self.clock()
        self.rebase_if_stale(record, now)

        was_available = record.remaining_time > 0
        record.used_time_today += minutes
        record.total_used_time += minutes
        record.last_update = now
        return was_available and record.is_exhausted
