"""
API Router: Call Logs, Recordings and Browser Calling.

Read access to the user's call history and recordings, recording audio
proxied from Twilio, usage statistics, and Voice SDK access tokens.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel

from callflow.api.deps import get_current_user
from callflow.config import Settings, get_settings
from callflow.db import DatabaseClient, get_db
from callflow.logging_config import get_logger
from callflow.schemas.call import CallRecordResponse
from callflow.services.billing import InsufficientBalanceError, assert_can_place_call
from callflow.services.twilio_client import TwilioGateway, get_twilio_client

logger = get_logger(__name__)
router = APIRouter(prefix="/api/twilio", tags=["Calls"])


class AccessTokenRequest(BaseModel):
    identity: Optional[str] = None


def _page(rows: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    return {
        "success": True,
        "data": [CallRecordResponse(**row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit if limit else 0,
        },
    }


@router.get("/call-logs")
async def call_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """Paginated call history of the current user, newest first."""
    try:
        rows, total = await db.list_call_logs(
            user["id"], limit=limit, offset=(page - 1) * limit, status=status
        )
    except Exception as e:
        logger.error("call_logs_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return _page(rows, total, page, limit)


@router.get("/call-logs/{call_sid}")
async def call_log(
    call_sid: str,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    try:
        row = await db.get_call_log(call_sid)
    except Exception as e:
        logger.error("call_log_error", call_sid=call_sid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    if not row:
        raise HTTPException(status_code=404, detail="Call log not found")
    if row.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    return {"success": True, "data": CallRecordResponse(**row)}


@router.get("/recordings")
async def recordings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """Calls of the current user that carry a recording."""
    try:
        rows, total = await db.list_call_logs(
            user["id"], limit=limit, offset=(page - 1) * limit, with_recording=True
        )
    except Exception as e:
        logger.error("recordings_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return _page(rows, total, page, limit)


@router.get("/recordings/{recording_sid}/audio")
async def recording_audio(
    recording_sid: str,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
) -> Response:
    """Stream a recording the user owns without exposing Twilio credentials."""
    call = await db.find_call_by_recording(user["id"], recording_sid)
    if not call:
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        content, media_type = await twilio.fetch_recording_audio(recording_sid)
    except Exception as e:
        logger.error("recording_fetch_error", recording_sid=recording_sid, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch recording")

    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'inline; filename="{recording_sid}.mp3"'},
    )


@router.delete("/recordings/{recording_sid}")
async def delete_recording(
    recording_sid: str,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
) -> dict[str, Any]:
    call = await db.find_call_by_recording(user["id"], recording_sid)
    if not call:
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        await twilio.delete_recording(recording_sid)
        await db.update_call_log(
            call["call_sid"],
            {"recording_url": None, "recording_status": "deleted"},
        )
    except Exception as e:
        logger.error("recording_delete_error", recording_sid=recording_sid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("recording_deleted", recording_sid=recording_sid, call_sid=call["call_sid"])
    return {"success": True, "message": "Recording deleted successfully"}


@router.get("/usage-stats")
async def usage_stats(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    try:
        stats = await db.call_stats(user["id"])
        numbers = await db.list_phone_numbers(user["id"], active_only=True)
    except Exception as e:
        logger.error("usage_stats_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "stats": {**stats, "active_numbers": len(numbers)}}


async def _issue_token(
    identity: Optional[str],
    user: dict[str, Any],
    db: DatabaseClient,
    twilio: TwilioGateway,
    settings: Settings,
) -> dict[str, Any]:
    numbers = await db.list_phone_numbers(user["id"], active_only=True)
    if not numbers:
        raise HTTPException(
            status_code=400,
            detail="No phone numbers available. Please purchase a phone number first.",
        )

    try:
        await assert_can_place_call(db, user["id"], settings.billing_policy())
    except InsufficientBalanceError as e:
        raise HTTPException(status_code=402, detail=str(e))

    identity = identity or f"user_{user['id']}"
    try:
        token = twilio.create_access_token(identity)
    except Exception as e:
        logger.error("access_token_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail="Failed to generate access token")

    logger.info("access_token_issued", user_id=user["id"], identity=identity)
    return {
        "success": True,
        "token": token,
        "identity": identity,
        "available_numbers": [
            {"phone_number": n["phone_number"], "friendly_name": n.get("friendly_name")}
            for n in numbers
        ],
    }


@router.get("/access-token")
async def access_token(
    identity: Optional[str] = None,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Voice SDK token so the browser can place and receive calls."""
    return await _issue_token(identity, user, db, twilio, settings)


@router.post("/access-token")
async def access_token_post(
    body: AccessTokenRequest,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    return await _issue_token(body.identity, user, db, twilio, settings)
