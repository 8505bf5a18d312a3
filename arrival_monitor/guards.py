"""Subscription checks for paid notification channels."""

from __future__ import annotations

from typing import Optional

from . import config

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


def is_subscription_active(subscription_status: Optional[str]) -> bool:
    return (subscription_status or "") in ACTIVE_SUBSCRIPTION_STATUSES


def can_use_sms(subscription_status: Optional[str], plan_name: Optional[str]) -> bool:
    """SMS needs an active (or trialing) subscription on the SMS plan."""
    if not is_subscription_active(subscription_status):
        return False
    return (plan_name or "").strip().lower() == config.SMS_PLAN_NAME.lower()


__all__ = ["ACTIVE_SUBSCRIPTION_STATUSES", "is_subscription_active", "can_use_sms"]
