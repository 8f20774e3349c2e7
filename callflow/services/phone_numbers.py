"""
Phone Number Registry service.

Purchase and release of Twilio numbers, kept in step with the
``user_phone_numbers`` table and the user's billing counters.
"""

from __future__ import annotations

from typing import Any

from callflow.config import Settings
from callflow.db import DatabaseClient
from callflow.logging_config import get_logger
from callflow.schemas.phone_number import BuyNumberRequest
from callflow.services.billing import (
    assert_min_balance,
    charge_for_number_purchase,
    maybe_reset_free_minutes,
)
from callflow.services.twilio_client import TwilioGateway

logger = get_logger(__name__)


class NumberAlreadyOwnedError(Exception):
    pass


class NoNumbersAvailableError(Exception):
    pass


async def buy_number(
    db: DatabaseClient,
    twilio: TwilioGateway,
    settings: Settings,
    user: dict[str, Any],
    request: BuyNumberRequest,
) -> dict[str, Any]:
    """
    Purchase a number for ``user`` and record it.

    The first number is free; later ones require the minimum balance and
    are charged the monthly price. A specific number that is no longer
    available falls back to another number in the same area code.
    """
    policy = settings.billing_policy()
    user = await maybe_reset_free_minutes(db, user, policy)
    is_free = not user.get("has_claimed_free_number")
    if not is_free:
        assert_min_balance(user, policy)

    if request.phone_number:
        existing = await db.get_phone_number_by_number(request.phone_number)
        if existing and existing["user_id"] == user["id"]:
            raise NumberAlreadyOwnedError(request.phone_number)

    candidate: dict[str, Any] = {}
    purchased: dict[str, Any] | None = None

    if request.phone_number:
        try:
            purchased = await twilio.purchase_number(request.phone_number)
        except Exception as e:
            logger.warning("specific_number_unavailable", phone_number=request.phone_number, error=str(e))
            alternatives = await twilio.search_available_numbers(
                request.country, area_code=request.phone_number[2:5], limit=5
            )
            if not alternatives:
                raise NoNumbersAvailableError(
                    f"The number {request.phone_number} is no longer available and no "
                    f"alternatives were found in the same area code."
                )
            candidate = alternatives[0]
    else:
        alternatives = await twilio.search_available_numbers(
            request.country, area_code=request.area_code, limit=1
        )
        if not alternatives:
            raise NoNumbersAvailableError("No available phone numbers found for the specified criteria")
        candidate = alternatives[0]

    if purchased is None:
        purchased = await twilio.purchase_number(candidate["phone_number"])

    locality = candidate.get("locality")
    row = await db.create_phone_number(
        {
            "user_id": user["id"],
            "phone_number": purchased["phone_number"],
            "twilio_sid": purchased["sid"],
            "friendly_name": purchased.get("friendly_name") or f"{locality or 'Unknown'} Number",
            "country": request.country,
            "region": candidate.get("region"),
            "locality": locality,
            "purchase_price_unit": "USD",
            "monthly_cost": str(policy.phone_number_monthly_price),
            "capabilities": candidate.get("capabilities") or purchased.get("capabilities") or {},
            "is_active": True,
        }
    )
    if row is None:
        raise RuntimeError("Phone number purchase could not be recorded")

    billing = await charge_for_number_purchase(db, user, row["id"], is_free, policy)

    requested = request.phone_number
    is_different = bool(requested) and requested != purchased["phone_number"]
    logger.info(
        "phone_number_bought",
        user_id=user["id"],
        phone_number=purchased["phone_number"],
        was_free=is_free,
        substituted=is_different,
    )
    return {
        "id": row["id"],
        "phone_number": purchased["phone_number"],
        "requested_number": requested,
        "is_different_number": is_different,
        "sid": purchased["sid"],
        "friendly_name": row.get("friendly_name"),
        "locality": locality,
        "region": candidate.get("region"),
        "billing": {
            "charged": billing["charged"],
            "next_renewal_at": billing["next_renewal_at"],
            "was_free": is_free,
        },
    }


async def release_number(
    db: DatabaseClient,
    twilio: TwilioGateway,
    number: dict[str, Any],
) -> None:
    """Release the number at Twilio, then drop its row."""
    await twilio.release_number(number["twilio_sid"])
    await db.delete_phone_number(number["id"])
    logger.info("phone_number_released", phone_number_id=number["id"], user_id=number["user_id"])
