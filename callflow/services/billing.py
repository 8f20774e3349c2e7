"""
Billing Service.

Tracks the per-user usage counters: a monthly free-minutes allowance that
resets lazily on the first computation of a new calendar month, and a
pay-as-you-go balance debited once free minutes are exhausted. Recording
time is billed exactly once per recording SID.

Every function takes the ``BillingPolicy`` explicitly so the rate and
allowance come from configuration, not module state.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from callflow.db import DatabaseClient
from callflow.logging_config import get_logger
from callflow.schemas.billing import (
    BillingPolicy,
    BillingState,
    ChargeOutcome,
    Pricing,
    RecordingCharge,
    UsageSummary,
)

logger = get_logger(__name__)

AMOUNT_QUANTUM = Decimal("0.0001")
NUMBER_RENEWAL_DAYS = 30
CHARGE_ATTEMPTS = 3


class InsufficientBalanceError(Exception):
    """Raised when a user has no free minutes and too little balance."""

    def __init__(self, balance: Decimal, minimum: Decimal) -> None:
        super().__init__(f"Insufficient balance. Minimum ${minimum} required.")
        self.balance = balance
        self.minimum = minimum


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def ceil_minutes(seconds: int) -> int:
    """Whole minutes needed to cover ``seconds`` (0 for non-positive)."""
    if not seconds or seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def needs_monthly_reset(last_reset: datetime | None, now: datetime) -> bool:
    if last_reset is None:
        return True
    last_reset = last_reset.astimezone(timezone.utc)
    now = now.astimezone(timezone.utc)
    return (now.year, now.month) > (last_reset.year, last_reset.month)


def period_start(user: dict[str, Any], now: datetime) -> datetime:
    last_reset = parse_timestamp(user.get("free_minutes_last_reset"))
    if last_reset is not None:
        return last_reset
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def maybe_reset_free_minutes(
    db: DatabaseClient,
    user: dict[str, Any],
    policy: BillingPolicy,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Restore the monthly allowance when a new calendar month has started.

    Idempotent: a user already reset this month is returned untouched and
    nothing is written.
    """
    now = now or datetime.now(timezone.utc)
    last_reset = parse_timestamp(user.get("free_minutes_last_reset"))
    if not needs_monthly_reset(last_reset, now):
        return user

    updates = {
        "free_minutes_remaining": policy.monthly_free_minutes,
        "free_minutes_last_reset": now.isoformat(),
    }
    updated = await db.update_user(user["id"], updates)
    logger.info(
        "free_minutes_reset",
        user_id=user["id"],
        previous_reset=last_reset.isoformat() if last_reset else None,
        free_minutes=policy.monthly_free_minutes,
    )
    return updated or {**user, **updates}


def compute_recording_charge(
    duration_seconds: int,
    free_minutes_remaining: int,
    policy: BillingPolicy,
) -> RecordingCharge:
    """
    Split a recording between the free allowance and the balance.

    Free minutes are spent first. Any remaining seconds are rounded up to
    whole minutes and priced at the policy rate.
    """
    duration = max(0, int(duration_seconds or 0))
    free_minutes = max(0, int(free_minutes_remaining or 0))
    free_seconds = free_minutes * 60

    if duration <= free_seconds:
        return RecordingCharge(
            duration_seconds=duration,
            free_seconds_applied=duration,
            billed_minutes=0,
            amount=Decimal("0").quantize(AMOUNT_QUANTUM),
            free_minutes_remaining=free_minutes - ceil_minutes(duration),
        )

    billed_minutes = ceil_minutes(duration - free_seconds)
    amount = (Decimal(billed_minutes) * policy.call_rate_per_minute).quantize(
        AMOUNT_QUANTUM, rounding=ROUND_HALF_UP
    )
    return RecordingCharge(
        duration_seconds=duration,
        free_seconds_applied=free_seconds,
        billed_minutes=billed_minutes,
        amount=amount,
        free_minutes_remaining=0,
    )


async def charge_recording(
    db: DatabaseClient,
    user_id: int,
    call_sid: str,
    recording_sid: str,
    duration_seconds: int,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> RecordingCharge | None:
    """
    Bill a completed recording once.

    The charge is computed from the user's current free minutes and then
    applied by storage in one transaction: the ``recording_charges`` claim,
    the balance and free-minutes debit, and the call's billed flag commit
    together or not at all. A replayed callback for the same recording SID
    returns None. If another charge moved the user's free minutes in the
    meantime, the charge is recomputed from the fresh counters.
    """
    for attempt in range(1, CHARGE_ATTEMPTS + 1):
        user = await db.get_user(user_id)
        if not user:
            logger.warning("charge_unknown_user", user_id=user_id, recording_sid=recording_sid)
            return None

        user = await maybe_reset_free_minutes(db, user, policy, now)
        free_minutes = int(user.get("free_minutes_remaining") or 0)
        charge = compute_recording_charge(duration_seconds, free_minutes, policy)

        outcome = ChargeOutcome(
            await db.apply_recording_charge(
                recording_sid,
                call_sid,
                user_id,
                free_minutes,
                {
                    "duration_seconds": charge.duration_seconds,
                    "free_seconds_applied": charge.free_seconds_applied,
                    "billed_minutes": charge.billed_minutes,
                    "billed_amount": str(charge.amount),
                    "free_minutes_remaining": charge.free_minutes_remaining,
                },
            )
        )

        if outcome is ChargeOutcome.APPLIED:
            logger.info(
                "recording_billed",
                user_id=user_id,
                recording_sid=recording_sid,
                duration_seconds=charge.duration_seconds,
                billed_minutes=charge.billed_minutes,
                amount=str(charge.amount),
                free_minutes_remaining=charge.free_minutes_remaining,
            )
            return charge
        if outcome is ChargeOutcome.DUPLICATE:
            logger.info("recording_already_billed", recording_sid=recording_sid, call_sid=call_sid)
            return None
        if outcome is ChargeOutcome.MISSING_USER:
            logger.warning("charge_unknown_user", user_id=user_id, recording_sid=recording_sid)
            return None

        logger.info("recording_charge_stale", recording_sid=recording_sid, attempt=attempt)

    raise RuntimeError(
        f"Recording {recording_sid} could not be billed after {CHARGE_ATTEMPTS} attempts"
    )


async def usage_summary(
    db: DatabaseClient,
    user_id: int,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> UsageSummary | None:
    """Compute remaining free and paid time for a user, resetting first if due."""
    now = now or datetime.now(timezone.utc)
    user = await db.get_user(user_id)
    if not user:
        return None

    user = await maybe_reset_free_minutes(db, user, policy, now)
    start = period_start(user, now)
    used_seconds = await db.sum_recording_seconds_since(user_id, start.isoformat())

    free_minutes_remaining = max(0, int(user.get("free_minutes_remaining") or 0))
    free_seconds_remaining = free_minutes_remaining * 60
    balance = to_decimal(user.get("balance"))
    rate = policy.call_rate_per_minute

    paid_seconds = 0
    if balance > 0 and rate > 0:
        paid_seconds = int(balance * 60 / rate)

    total_seconds = free_seconds_remaining + paid_seconds
    return UsageSummary(
        period_start=start,
        used_recording_seconds=used_seconds,
        free_minutes_used=max(0, policy.monthly_free_minutes - free_minutes_remaining),
        free_minutes_remaining=free_minutes_remaining,
        free_seconds_remaining=free_seconds_remaining,
        balance_usd=balance,
        call_rate_per_minute_usd=rate,
        paid_seconds_available=paid_seconds,
        total_seconds_available=total_seconds,
        total_minutes_available=total_seconds // 60,
    )


async def billing_state(
    db: DatabaseClient,
    user_id: int,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> BillingState | None:
    user = await db.get_user(user_id)
    if not user:
        return None
    user = await maybe_reset_free_minutes(db, user, policy, now)
    return BillingState(
        user_id=user_id,
        balance=to_decimal(user.get("balance")),
        free_minutes_remaining=int(user.get("free_minutes_remaining") or 0),
        has_claimed_free_number=bool(user.get("has_claimed_free_number")),
        pricing=Pricing(
            min_required_balance=policy.min_required_balance,
            call_rate_per_minute=policy.call_rate_per_minute,
            monthly_free_minutes=policy.monthly_free_minutes,
            phone_number_monthly_price=policy.phone_number_monthly_price,
        ),
    )


async def assert_can_place_call(
    db: DatabaseClient,
    user_id: int,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Allow calls while free minutes remain, otherwise require the minimum balance."""
    user = await db.get_user(user_id)
    if not user:
        raise LookupError(f"User {user_id} not found")

    user = await maybe_reset_free_minutes(db, user, policy, now)
    if int(user.get("free_minutes_remaining") or 0) > 0:
        return user

    balance = to_decimal(user.get("balance"))
    if balance < policy.min_required_balance:
        raise InsufficientBalanceError(balance, policy.min_required_balance)
    return user


def assert_min_balance(user: dict[str, Any], policy: BillingPolicy) -> None:
    balance = to_decimal(user.get("balance"))
    if balance < policy.min_required_balance:
        raise InsufficientBalanceError(balance, policy.min_required_balance)


async def charge_for_number_purchase(
    db: DatabaseClient,
    user: dict[str, Any],
    phone_number_id: int,
    is_free: bool,
    policy: BillingPolicy,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Settle a number purchase.

    The first number a user buys is free; later numbers debit the monthly
    price up front and schedule the next renewal.
    """
    now = now or datetime.now(timezone.utc)

    if is_free:
        await db.update_phone_number(phone_number_id, {"is_free": True, "next_renewal_at": None})
        await db.update_user(user["id"], {"has_claimed_free_number": True})
        logger.info("free_number_claimed", user_id=user["id"], phone_number_id=phone_number_id)
        return {"charged": Decimal("0"), "next_renewal_at": None}

    price = policy.phone_number_monthly_price
    next_renewal = now + timedelta(days=NUMBER_RENEWAL_DAYS)
    new_balance = to_decimal(user.get("balance")) - price

    await db.update_user(user["id"], {"balance": str(new_balance)})
    await db.update_phone_number(
        phone_number_id,
        {"is_free": False, "next_renewal_at": next_renewal.isoformat()},
    )
    logger.info(
        "number_purchase_charged",
        user_id=user["id"],
        phone_number_id=phone_number_id,
        amount=str(price),
    )
    return {"charged": price, "next_renewal_at": next_renewal}
