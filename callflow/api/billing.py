"""
API Router: Billing and usage.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from callflow.api.deps import get_current_user
from callflow.config import Settings, get_settings
from callflow.db import DatabaseClient, get_db
from callflow.logging_config import get_logger
from callflow.services.billing import billing_state, usage_summary

logger = get_logger(__name__)
router = APIRouter(tags=["Billing"])


@router.get("/api/billing/me")
async def billing_me(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Balance, free minutes and pricing for the current user."""
    policy = settings.billing_policy()
    try:
        state = await billing_state(db, user["id"], policy)
        usage = await usage_summary(db, user["id"], policy)
    except Exception as e:
        logger.error("billing_state_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch billing state")

    if state is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, **state.model_dump(), "usage": usage}


@router.get("/api/twilio/time-remaining")
async def time_remaining(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """How much calling time the user can still afford this month."""
    try:
        summary = await usage_summary(db, user["id"], settings.billing_policy())
    except Exception as e:
        logger.error("time_remaining_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail="Failed to compute time remaining")

    if summary is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": summary}
