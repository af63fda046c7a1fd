"""
Block decision engine.

Decides whether a URL must be blocked given the enablement flag, the
rule set and the quota records. A URL that cannot be parsed is never
blocked, so a bad URL can't lock the user out of a page.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional
from urllib.parse import urlencode, urlsplit

import config
from blocking.rules import BlockRule, find_rule
from tracking.quota import QuotaRecord, QuotaScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockVerdict:
    """Outcome of a block decision."""

    blocked: bool
    hostname: Optional[str] = None
    domain: Optional[str] = None   # Domain of the matching rule
    reason: Optional[str] = None   # config.BLOCK_REASON_* when blocked
    rebased: bool = False          # A quota record was rebased on the way


NOT_BLOCKED = BlockVerdict(blocked=False)


def extract_hostname(url: Optional[str], tracked_only: bool = False) -> Optional[str]:
    """
    Resolve the lowercase hostname of a URL.

    Args:
        url: Full URL.
        tracked_only: If True, only http/https URLs resolve.

    Returns:
        Hostname, or None if the URL is empty, unparseable or has no host.
    """
    if not url:
        return None
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as e:
        logger.debug(f"Unparseable URL {url[:80]!r}: {e}")
        return None
    if not hostname:
        return None
    if tracked_only and parts.scheme.lower() not in config.TRACKED_URL_SCHEMES:
        return None
    return hostname.rstrip('.')


def resolve_tracked_domain(
    url: Optional[str],
    rules: Iterable[BlockRule],
    quotas: Dict[str, QuotaRecord],
) -> Optional[str]:
    """
    Resolve a page URL to the detox domain whose quota it consumes.

    Returns:
        The rule domain when the URL is an http(s) page covered by a detox
        rule that has a quota record, else None.
    """
    hostname = extract_hostname(url, tracked_only=True)
    if hostname is None:
        return None
    rule = find_rule(rules, hostname)
    if rule is None or not rule.detox or rule.domain not in quotas:
        return None
    return rule.domain


def should_block(
    enabled: bool,
    rules: Iterable[BlockRule],
    quotas: Dict[str, QuotaRecord],
    url: Optional[str],
    scheduler: QuotaScheduler,
    now: Optional[datetime] = None,
) -> BlockVerdict:
    """
    Decide whether a URL is blocked.

    A detox rule's quota record is rebased (in place) before it is read,
    so a record left over from yesterday never blocks today.

    Args:
        enabled: Global enablement flag.
        rules: Block rules, any order.
        quotas: Quota records keyed by rule domain.
        url: URL being visited.
        scheduler: Quota scheduler used for the lazy rebase.
        now: Decision time (defaults to the scheduler clock).

    Returns:
        BlockVerdict describing the decision.
    """
    if not enabled:
        return NOT_BLOCKED

    hostname = extract_hostname(url)
    if hostname is None:
        return NOT_BLOCKED

    rule = find_rule(rules, hostname)
    if rule is None:
        return BlockVerdict(blocked=False, hostname=hostname)

    if not rule.detox:
        return BlockVerdict(
            blocked=True, hostname=hostname, domain=rule.domain,
            reason=config.BLOCK_REASON_BLOCKED,
        )

    record = quotas.get(rule.domain)
    if record is None:
        # Detox rule without a record is inconsistent state; block like a hard rule
        logger.warning(f"Detox rule {rule.domain} has no quota record, blocking")
        return BlockVerdict(
            blocked=True, hostname=hostname, domain=rule.domain,
            reason=config.BLOCK_REASON_BLOCKED,
        )

    rebased = scheduler.rebase_if_stale(record, now)
    if record.is_exhausted:
        return BlockVerdict(
            blocked=True, hostname=hostname, domain=rule.domain,
            reason=config.BLOCK_REASON_TIMEOUT, rebased=rebased,
        )
    return BlockVerdict(blocked=False, hostname=hostname, domain=rule.domain, rebased=rebased)


def block_page_url(domain: str, original_url: Optional[str], reason: Optional[str] = None) -> str:
    """
    Build the URL of the block view a tab is redirected to.

    Examples:
        >>> block_page_url("youtube.com", "https://youtube.com/", "timeout")
        'sitedetox://blocked?domain=youtube.com&url=https%3A%2F%2Fyoutube.com%2F&reason=timeout'
    """
    params = {"domain": domain, "url": original_url or ""}
    if reason:
        params["reason"] = reason
    return f"{config.BLOCK_PAGE_URL}?{urlencode(params)}"
