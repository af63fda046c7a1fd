"""Analytics and display helpers for detox usage."""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

import config
from blocking.rules import BlockRule
from tracking.quota import QuotaRecord, QuotaSettings, days_since_start


def format_minutes(minutes: float) -> str:
    """
    Format float minutes as a countdown string.

    Truncates to whole seconds at display time only.

    Examples:
        >>> format_minutes(12.5)
        '12:30'
        >>> format_minutes(-3)
        '0:00'
    """
    total_seconds = int(max(0.0, minutes) * 60)
    return f"{total_seconds // 60}:{total_seconds % 60:02d}"


def describe_minutes(minutes: float) -> str:
    """
    Format float minutes as words, e.g. "1 hr 5 mins" or "45 mins".
    """
    total = int(max(0.0, minutes))
    hours, mins = divmod(total, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours} {'hr' if hours == 1 else 'hrs'}")
    if mins > 0 or hours == 0:
        parts.append(f"{mins} {'min' if mins == 1 else 'mins'}")
    return " ".join(parts)


def time_status(remaining: float) -> str:
    """
    Urgency class of the remaining time: "critical", "warning" or "normal".
    """
    if remaining < config.CRITICAL_TIME_MINUTES:
        return "critical"
    if remaining < config.WARNING_TIME_MINUTES:
        return "warning"
    return "normal"


def hours_until_reset(now: datetime) -> int:
    """Whole hours (rounded up) until the next local midnight."""
    midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
    return math.ceil((midnight - now).total_seconds() / 3600)


def day_number(record: QuotaRecord, now: datetime) -> int:
    """1-based day of the detox for display ("day 1" is the first day)."""
    return days_since_start(record.start_date, now) + 1


def detox_progress(
    quotas: Dict[str, QuotaRecord],
    now: datetime,
    settings: QuotaSettings,
) -> int:
    """
    Average progress towards the floor limit across detox domains.

    A domain is 100% done once enough days have passed for its limit to
    reach the floor.

    Returns:
        Rounded percentage (0-100), or 0 if there are no detox domains.
    """
    if not quotas:
        return 0

    target_days = (settings.initial - settings.floor) / settings.decay_per_day \
        if settings.decay_per_day > 0 else 0
    if target_days <= 0:
        return 100

    total = 0.0
    for record in quotas.values():
        total += min(100.0, day_number(record, now) / target_days * 100.0)
    return round(total / len(quotas))


def compute_detox_stats(
    rules: Iterable[BlockRule],
    quotas: Dict[str, QuotaRecord],
    lockout_counts: Dict[str, int],
    now: datetime,
    settings: QuotaSettings,
) -> Dict[str, Any]:
    """
    Compute summary statistics for the control surface.

    Returns:
        Dictionary with rule/category counts, total detox minutes used,
        average daily reduction, progress and today's lockout count.
    """
    rules = list(rules)
    categories = {
        config.CATEGORY_SOCIAL: 0,
        config.CATEGORY_GAME: 0,
        config.CATEGORY_OTHER: 0,
    }
    for rule in rules:
        categories[rule.category] = categories.get(rule.category, 0) + 1

    detox_rules = sum(1 for rule in rules if rule.detox)
    added_today = sum(1 for rule in rules if rule.created_at.date() == now.date())

    return {
        "total_rules": len(rules),
        "detox_rules": detox_rules,
        "hard_rules": len(rules) - detox_rules,
        "active_detox": len(quotas),
        "added_today": added_today,
        "categories": categories,
        "total_used_minutes": sum(r.total_used_time for r in quotas.values()),
        "avg_daily_reduction": len(quotas) * settings.decay_per_day,
        "progress_percent": detox_progress(quotas, now, settings),
        "lockouts_today": lockout_counts.get(now.date().isoformat(), 0),
    }


def generate_summary_text(stats: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """
    Render compute_detox_stats() output as plain text.
    """
    now = now or datetime.now()
    lines = [
        "Detox statistics",
        f"  Domains in detox: {stats['active_detox']}",
        f"  Always blocked: {stats['hard_rules']}",
        f"  Time used in detox: {describe_minutes(stats['total_used_minutes'])}",
        f"  Average reduction: {stats['avg_daily_reduction']:g} min/day",
        f"  Progress: {stats['progress_percent']}%",
        f"  Lockouts today: {stats['lockouts_today']}",
        f"  Next reset in: {hours_until_reset(now)} h",
    ]
    return "\n".join(lines)
