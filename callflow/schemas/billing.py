"""
Data models for usage counters, billing policy and usage summaries.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel


@dataclass(frozen=True)
class BillingPolicy:
    """Billing knobs handed to every usage computation."""

    call_rate_per_minute: Decimal
    monthly_free_minutes: int
    min_required_balance: Decimal
    phone_number_monthly_price: Decimal


class ChargeOutcome(str, Enum):
    """Result of applying a recording charge in storage."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    MISSING_USER = "missing_user"


@dataclass(frozen=True)
class RecordingCharge:
    """Outcome of billing one recording against a user's counters."""

    duration_seconds: int
    free_seconds_applied: int
    billed_minutes: int
    amount: Decimal
    free_minutes_remaining: int


class UsageCounters(BaseModel):
    user_id: int
    free_minutes_remaining: int = 0
    free_minutes_last_reset: Optional[datetime] = None
    balance: Decimal = Decimal("0")
    has_claimed_free_number: bool = False


class UsageSummary(BaseModel):
    """Computed view returned by the time-remaining endpoint."""
    period_start: datetime
    used_recording_seconds: int
    free_minutes_used: int
    free_minutes_remaining: int
    free_seconds_remaining: int
    balance_usd: Decimal
    call_rate_per_minute_usd: Decimal
    paid_seconds_available: int
    total_seconds_available: int
    total_minutes_available: int


class Pricing(BaseModel):
    min_required_balance: Decimal
    call_rate_per_minute: Decimal
    monthly_free_minutes: int
    phone_number_monthly_price: Decimal


class BillingState(BaseModel):
    user_id: int
    balance: Decimal
    free_minutes_remaining: int
    has_claimed_free_number: bool
    pricing: Pricing
