"""
API Router: Twilio Webhooks.

Unauthenticated endpoints Twilio calls during a call: the voice webhook,
the callee whisper, whisper audio, and the status and recording
callbacks. Webhooks never surface an error to Twilio; TwiML endpoints
degrade to spoken fallbacks and callbacks always answer 200.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from callflow.config import Settings, get_settings
from callflow.db import DatabaseClient, get_db
from callflow.logging_config import get_logger
from callflow.schemas.call import RecordingCallback, StatusCallback
from callflow.services.call_router import build_whisper, route_call
from callflow.services.call_tracker import record_recording, record_status

logger = get_logger(__name__)
router = APIRouter(prefix="/api/twilio", tags=["Twilio Webhooks"])


def _twiml(response: Any) -> Response:
    return Response(content=str(response), media_type="application/xml")


async def _params(request: Request) -> dict[str, str]:
    """Merge query string and form body, form winning."""
    params = dict(request.query_params)
    try:
        form = await request.form()
        params.update({key: str(value) for key, value in form.items()})
    except Exception as e:
        logger.warning("webhook_form_unreadable", error=str(e))
    return params


@router.post("/twiml")
async def voice_webhook(
    request: Request,
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Answer an incoming or browser-originated call with TwiML."""
    params = await _params(request)
    response = await route_call(db, settings, params)
    return _twiml(response)


@router.get("/whisper")
async def whisper(
    called: str = "",
    caller: str = "",
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Private announcement for the callee leg, fetched by ``<Number url>``."""
    response = await build_whisper(db, settings, called.strip(), caller.strip())
    return _twiml(response)


@router.get("/whisper-audio/{whisper_id}")
async def whisper_audio(whisper_id: int, db: DatabaseClient = Depends(get_db)) -> Response:
    """Serve an uploaded whisper clip so Twilio can ``<Play>`` it."""
    try:
        clip = await db.get_whisper_audio(whisper_id)
    except Exception as e:
        logger.error("whisper_audio_error", whisper_id=whisper_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to load whisper audio")

    if not clip or not clip.get("bytes"):
        raise HTTPException(status_code=404, detail="Whisper audio not found")

    return Response(
        content=clip["bytes"],
        media_type=clip.get("mime") or "audio/mpeg",
        headers={"Cache-Control": "public, max-age=300"},
    )


@router.post("/status-callback")
async def status_callback(
    request: Request,
    db: DatabaseClient = Depends(get_db),
) -> dict[str, str]:
    """Record a call status transition."""
    params = await _params(request)
    try:
        await record_status(db, StatusCallback.from_form(params))
    except Exception as e:
        logger.error("status_callback_error", call_sid=params.get("CallSid"), error=str(e), exc_info=True)
    return {"status": "received"}


@router.post("/recording-callback")
async def recording_callback(
    request: Request,
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict[str, str]:
    """Attach a recording to its call and bill it when complete."""
    params = await _params(request)
    try:
        await record_recording(db, RecordingCallback.from_form(params), settings.billing_policy())
    except Exception as e:
        logger.error("recording_callback_error", call_sid=params.get("CallSid"), error=str(e), exc_info=True)
    return {"status": "received"}
