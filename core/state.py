"""
Canonical coordinator state and its persisted form.

GlobalState is built once by the coordinator at start and handed to the
components that need it. Page monitors and the control surface never
hold a GlobalState; they keep replicas built from snapshot().
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import config
from blocking.rules import BlockRule, dedupe_rules, normalize_domain
from tracking.quota import QuotaRecord

logger = logging.getLogger(__name__)

# Persisted store keys
KEY_RULES = "rules"
KEY_ENABLED = "enabled"
KEY_QUOTAS = "quotaRecords"
KEY_MODE = "mode"
KEY_LOCKOUTS = "lockoutCounts"
KEY_REVISION = "revision"
STORE_KEYS = (KEY_RULES, KEY_ENABLED, KEY_QUOTAS, KEY_MODE, KEY_LOCKOUTS, KEY_REVISION)


@dataclass
class GlobalState:
    """
    Everything the coordinator persists.

    Attributes:
        enabled: Master switch; nothing is blocked while False.
        mode: Mode given to newly added rules (config.MODE_*).
        rules: Block rules, newest first. Domains are unique.
        quotas: Quota records keyed by detox rule domain.
        lockout_counts: Block-view impressions keyed by ISO date.
        revision: Incremented on every accepted edit.
    """

    enabled: bool = True
    mode: str = config.MODE_DETOX
    rules: List[BlockRule] = field(default_factory=list)
    quotas: Dict[str, QuotaRecord] = field(default_factory=dict)
    lockout_counts: Dict[str, int] = field(default_factory=dict)
    revision: int = 0

    def get_rule(self, domain: str) -> Optional[BlockRule]:
        for rule in self.rules:
            if rule.domain == domain:
                return rule
        return None

    def has_rule(self, domain: str) -> bool:
        return self.get_rule(domain) is not None

    def remove_rule(self, domain: str) -> bool:
        """
        Remove a rule and its quota record.

        Returns:
            True if a rule was removed.
        """
        before = len(self.rules)
        self.rules = [r for r in self.rules if r.domain != domain]
        self.quotas.pop(domain, None)
        return len(self.rules) != before

    def count_lockout(self, day: date) -> int:
        """Increment and return the lockout counter for a day."""
        key = day.isoformat()
        self.lockout_counts[key] = self.lockout_counts.get(key, 0) + 1
        return self.lockout_counts[key]

    def repair(self, now: datetime, new_record) -> List[str]:
        """
        Make sure a quota record exists iff a detox rule exists.

        Args:
            now: Activation time for records that have to be created.
            new_record: Factory (now) -> QuotaRecord.

        Returns:
            Domains whose records were created or dropped.
        """
        changed = []
        detox_domains = {r.domain for r in self.rules if r.detox}
        for domain in list(self.quotas):
            if domain not in detox_domains:
                logger.warning(f"Dropping orphaned quota record for {domain}")
                del self.quotas[domain]
                changed.append(domain)
        for domain in detox_domains:
            if domain not in self.quotas:
                logger.warning(f"Creating missing quota record for {domain}")
                self.quotas[domain] = new_record(now)
                changed.append(domain)
        return changed

    def copy(self) -> 'GlobalState':
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_store(self) -> Dict[str, Any]:
        """Full persisted form, written wholesale on every save."""
        return {
            KEY_RULES: [r.to_dict() for r in self.rules],
            KEY_ENABLED: self.enabled,
            KEY_QUOTAS: {d: r.to_dict() for d, r in self.quotas.items()},
            KEY_MODE: self.mode,
            KEY_LOCKOUTS: dict(self.lockout_counts),
            KEY_REVISION: self.revision,
        }

    @classmethod
    def from_store(cls, data: Dict[str, Any]) -> 'GlobalState':
        """
        Build state from persisted keys, skipping malformed entries.

        Missing keys fall back to defaults.
        """
        rules = []
        for raw in data.get(KEY_RULES) or []:
            try:
                rules.append(BlockRule.from_dict(raw))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed rule {raw!r}: {e}")

        quotas = {}
        for domain, raw in (data.get(KEY_QUOTAS) or {}).items():
            try:
                quotas[normalize_domain(domain)] = QuotaRecord.from_dict(raw)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed quota record for {domain}: {e}")

        mode = data.get(KEY_MODE, config.MODE_DETOX)
        if mode not in config.VALID_MODES:
            logger.warning(f"Unknown mode {mode!r}, using {config.MODE_DETOX}")
            mode = config.MODE_DETOX

        lockouts = {}
        for day, count in (data.get(KEY_LOCKOUTS) or {}).items():
            try:
                lockouts[str(day)] = int(count)
            except (ValueError, TypeError):
                logger.warning(f"Skipping malformed lockout count {day}={count!r}")

        enabled = data.get(KEY_ENABLED)
        return cls(
            enabled=True if enabled is None else bool(enabled),
            mode=mode,
            rules=dedupe_rules(rules),
            quotas=quotas,
            lockout_counts=lockouts,
            revision=int(data.get(KEY_REVISION) or 0),
        )

    def snapshot(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Replica payload sent to page monitors and the control surface.

        Same shape as to_store() plus today's lockout count.
        """
        payload = self.to_store()
        if today is not None:
            payload["lockoutsToday"] = self.lockout_counts.get(today.isoformat(), 0)
        return payload
