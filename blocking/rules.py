"""
Block rules for restricted domains.

A BlockRule is one domain the user chose to restrict, either in detox
mode (quota-limited, see tracking/quota.py) or hard mode (always blocked).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import config

logger = logging.getLogger(__name__)


# Host made of dot-separated labels ending in an alphabetic TLD.
# Rejects schemes ("://"), paths, ports and bare words.
_DOMAIN_RE = re.compile(
    r"^(?!://)([a-z0-9-_]+\.)*[a-z0-9][a-z0-9-_]+\.[a-z]{2,}$"
)


def normalize_domain(raw: str) -> str:
    """
    Normalize user input to a lowercase host name.

    Args:
        raw: Domain as typed by the user (e.g. " YouTube.com ")

    Returns:
        Stripped, lowercased domain without a trailing dot.
    """
    return raw.strip().lower().rstrip('.')


def is_valid_domain(domain: str) -> bool:
    """
    Check that a normalized domain looks like a registrable host name.

    Examples:
        >>> is_valid_domain("youtube.com")
        True
        >>> is_valid_domain("https://youtube.com")
        False
    """
    return bool(domain) and _DOMAIN_RE.match(domain) is not None


def determine_category(domain: str) -> str:
    """
    Classify a domain by keyword.

    Social keywords are checked before game keywords; anything
    unmatched is "other".
    """
    for category in (config.CATEGORY_SOCIAL, config.CATEGORY_GAME):
        if any(keyword in domain for keyword in config.CATEGORY_KEYWORDS[category]):
            return category
    return config.CATEGORY_OTHER


def matches_domain(hostname: str, domain: str) -> bool:
    """
    Exact host match or proper subdomain match.

    "m.youtube.com" matches "youtube.com"; "notyoutube.com" does not.
    """
    return hostname == domain or hostname.endswith('.' + domain)


@dataclass
class BlockRule:
    """
    One restricted domain.

    Attributes:
        domain: Normalized lowercase host.
        category: One of config.CATEGORY_*.
        created_at: When the rule was added.
        detox: True for quota-limited access, False for always blocked.
    """

    domain: str
    category: str
    created_at: datetime
    detox: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "category": self.category,
            "createdAt": self.created_at.isoformat(),
            "detox": self.detox,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockRule':
        """
        Create a BlockRule from its persisted form.

        Raises:
            KeyError, ValueError: If the domain or timestamp is missing or malformed.
        """
        domain = normalize_domain(data["domain"])
        return cls(
            domain=domain,
            category=data.get("category") or determine_category(domain),
            created_at=datetime.fromisoformat(data["createdAt"]),
            detox=bool(data.get("detox", True)),
        )


def find_rule(rules: Iterable[BlockRule], hostname: str) -> Optional[BlockRule]:
    """
    Find the first rule whose domain covers the hostname.

    Returns:
        The matching rule, or None.
    """
    for rule in rules:
        if matches_domain(hostname, rule.domain):
            return rule
    return None


def dedupe_rules(rules: Iterable[BlockRule]) -> List[BlockRule]:
    """
    Drop later rules that repeat an earlier domain.

    Used when loading persisted state that was edited by hand.
    """
    seen = set()
    unique = []
    for rule in rules:
        if rule.domain in seen:
            logger.warning(f"Dropping duplicate rule for {rule.domain}")
            continue
        seen.add(rule.domain)
        unique.append(rule)
    return unique
