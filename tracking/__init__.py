"""
Tracking package: detox quota records, the quota scheduler and the
per-tab usage tracker.
"""

from tracking.quota import QuotaRecord, QuotaScheduler, QuotaSettings
from tracking.usage_tracker import ActiveSession, FlushResult, UsageTracker

__all__ = [
    "ActiveSession",
    "FlushResult",
    "QuotaRecord",
    "QuotaScheduler",
    "QuotaSettings",
    "UsageTracker",
]
