"""
Membership tiers.

Canonical order is basic < premium < platinum. Older product names are
mapped explicitly: all/free/explorer -> basic, navigator -> premium,
voyager -> platinum. Anything unrecognised resolves to basic.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

log = logging.getLogger("membership")

TIER_RANK: Dict[str, int] = {"basic": 1, "premium": 2, "platinum": 3}

LEGACY_TIER_MAP: Dict[str, str] = {
    "all": "basic",
    "free": "basic",
    "explorer": "basic",
    "navigator": "premium",
    "voyager": "platinum",
}

DEFAULT_TIER = "basic"


class MembershipTitleSource(Protocol):
    def get_membership_titles(self, user_id: int) -> List[str]: ...


def normalize_tier(name: Optional[str]) -> str:
    """Map a canonical or legacy tier name onto the canonical scale."""
    key = (name or "").strip().lower()
    if key in TIER_RANK:
        return key
    return LEGACY_TIER_MAP.get(key, DEFAULT_TIER)


def tier_rank(name: Optional[str]) -> int:
    return TIER_RANK[normalize_tier(name)]


def has_access(user_tier: Optional[str], required_tier: str) -> bool:
    """True when *user_tier* meets *required_tier*. Unknown requirements deny."""
    required = (required_tier or "").strip().lower()
    if required not in TIER_RANK and required not in LEGACY_TIER_MAP:
        return False
    return tier_rank(user_tier) >= tier_rank(required)


def tier_from_titles(titles: List[str]) -> str:
    """Highest tier whose keyword appears in any active membership title."""
    keywords = dict(LEGACY_TIER_MAP)
    keywords.update({tier: tier for tier in TIER_RANK})
    # "all" and "free" are too generic to match inside product titles
    keywords.pop("all", None)
    keywords.pop("free", None)

    best = DEFAULT_TIER
    for title in titles:
        lowered = (title or "").lower()
        for keyword, tier in keywords.items():
            if keyword in lowered and TIER_RANK[tier] > TIER_RANK[best]:
                best = tier
    return best


class TitleMembershipService:
    """Resolves a user's tier from their active membership titles."""

    def __init__(self, title_source: MembershipTitleSource):
        self.title_source = title_source

    def get_user_tier(self, user_id: int) -> str:
        titles = self.title_source.get_membership_titles(user_id)
        tier = tier_from_titles(titles)
        log.debug("User %s tier=%s (titles=%s)", user_id, tier, titles)
        return tier


class StaticMembershipService:
    """Fixed user -> tier mapping; handy for local runs."""

    def __init__(self, tiers: Optional[Dict[int, str]] = None, default: str = DEFAULT_TIER):
        self.tiers = dict(tiers or {})
        self.default = normalize_tier(default)

    def get_user_tier(self, user_id: int) -> str:
        return normalize_tier(self.tiers.get(user_id, self.default))
