"""
API Router: Call Forwarding Rules.

One forwarding rule per owned number. The inbound router reads these
rules; only the owner can create or change them.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from callflow.api.deps import get_current_user
from callflow.db import DatabaseClient, get_db
from callflow.logging_config import get_logger
from callflow.schemas.forwarding import (
    ForwardingCreate,
    ForwardingRule,
    ForwardingToggle,
    ForwardingUpdate,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/call-forwarding", tags=["Call Forwarding"])


async def _owned_rule(db: DatabaseClient, user: dict[str, Any], forwarding_id: int) -> dict[str, Any]:
    row = await db.get_forwarding(forwarding_id)
    if not row or row["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Call forwarding setting not found")
    return row


@router.get("")
async def list_forwarding(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """All forwarding rules of the current user, with their source numbers."""
    try:
        rows = await db.list_forwarding(user["id"])
    except Exception as e:
        logger.error("list_forwarding_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch call forwarding settings")
    return {"success": True, "data": [ForwardingRule.from_row(row) for row in rows]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_forwarding(
    body: ForwardingCreate,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    number = await db.get_phone_number(body.phone_number_id)
    if not number or number["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Phone number not found or does not belong to you")

    if await db.get_forwarding_for_number(body.phone_number_id):
        raise HTTPException(
            status_code=400,
            detail="Call forwarding already exists for this phone number. Please update the existing setting instead.",
        )

    try:
        row = await db.create_forwarding(
            {
                "user_id": user["id"],
                "phone_number_id": body.phone_number_id,
                "forward_to_number": body.forward_to_number,
                "forwarding_type": body.forwarding_type.value,
                "ring_timeout": body.ring_timeout,
                "is_active": True,
            }
        )
    except Exception as e:
        logger.error("create_forwarding_error", phone_number_id=body.phone_number_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create call forwarding setting")
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create call forwarding setting")

    logger.info(
        "forwarding_created",
        phone_number_id=body.phone_number_id,
        forward_to=body.forward_to_number,
        forwarding_type=body.forwarding_type.value,
    )
    return {
        "success": True,
        "message": "Call forwarding created successfully",
        "data": ForwardingRule.from_row(
            {**row, "source_number": number["phone_number"], "friendly_name": number.get("friendly_name")}
        ),
    }


@router.put("/{forwarding_id}")
async def update_forwarding(
    forwarding_id: int,
    body: ForwardingUpdate,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    await _owned_rule(db, user, forwarding_id)

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "forwarding_type" in updates:
        updates["forwarding_type"] = updates["forwarding_type"].value

    try:
        row = await db.update_forwarding(forwarding_id, updates)
    except Exception as e:
        logger.error("update_forwarding_error", forwarding_id=forwarding_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to update call forwarding setting")
    if not row:
        raise HTTPException(status_code=400, detail="Failed to update call forwarding setting")

    logger.info("forwarding_updated", forwarding_id=forwarding_id, fields=sorted(updates))
    return {"success": True, "message": "Call forwarding updated successfully", "data": ForwardingRule.from_row(row)}


@router.patch("/{forwarding_id}/toggle")
async def toggle_forwarding(
    forwarding_id: int,
    body: ForwardingToggle,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    await _owned_rule(db, user, forwarding_id)
    try:
        row = await db.update_forwarding(forwarding_id, {"is_active": body.is_active})
    except Exception as e:
        logger.error("toggle_forwarding_error", forwarding_id=forwarding_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to toggle call forwarding")

    logger.info("forwarding_toggled", forwarding_id=forwarding_id, is_active=body.is_active)
    state = "enabled" if body.is_active else "disabled"
    return {
        "success": True,
        "message": f"Call forwarding {state} successfully",
        "data": ForwardingRule.from_row(row) if row else None,
    }


@router.delete("/{forwarding_id}")
async def delete_forwarding(
    forwarding_id: int,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    await _owned_rule(db, user, forwarding_id)
    try:
        await db.delete_forwarding(forwarding_id)
    except Exception as e:
        logger.error("delete_forwarding_error", forwarding_id=forwarding_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to delete call forwarding setting")

    logger.info("forwarding_deleted", forwarding_id=forwarding_id)
    return {"success": True, "message": "Call forwarding deleted successfully"}


@router.get("/phone-number/{phone_number_id}")
async def forwarding_for_number(
    phone_number_id: int,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    number = await db.get_phone_number(phone_number_id)
    if not number or number["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Phone number not found or does not belong to you")

    row = await db.get_forwarding_for_number(phone_number_id)
    return {"success": True, "data": ForwardingRule.from_row(row) if row else None}
