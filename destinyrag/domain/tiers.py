from __future__ import annotations

from typing import Literal


SubscriptionTier = Literal["free", "basic", "premium", "vip"]

SUBSCRIPTION_TIERS: tuple[str, ...] = ("free", "basic", "premium", "vip")

# Questions per report per billing period; None means unlimited.
QUESTION_LIMITS: dict[str, int | None] = {
    "free": 5,
    "basic": 15,
    "premium": 50,
    "vip": None,
}

# Conversation retention in days; None means never expires.
RETENTION_DAYS: dict[str, int | None] = {
    "free": 30,
    "basic": 90,
    "premium": 365,
    "vip": None,
}


def normalize_tier(tier: str | None) -> str:
    # Unknown tiers fall back to the most restrictive plan.
    if tier in QUESTION_LIMITS:
        return tier
    return "free"


def get_question_limit(tier: str) -> int | None:
    return QUESTION_LIMITS[normalize_tier(tier)]


def get_retention_days(tier: str) -> int | None:
    return RETENTION_DAYS[normalize_tier(tier)]
