"""
API Router: Phone Number Registry.

Search, purchase, list, update and release the numbers a user owns, plus
the per-number whisper configuration and whisper audio upload.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from callflow.api.deps import get_current_user
from callflow.config import Settings, get_settings
from callflow.db import DatabaseClient, get_db
from callflow.logging_config import get_logger
from callflow.schemas.phone_number import (
    AvailableNumber,
    BuyNumberRequest,
    OwnedNumber,
    PhoneNumberUpdate,
    WhisperConfig,
    WhisperMode,
    WhisperUpdate,
)
from callflow.services.billing import InsufficientBalanceError
from callflow.services.phone_numbers import (
    NoNumbersAvailableError,
    NumberAlreadyOwnedError,
    buy_number,
    release_number,
)
from callflow.services.twilio_client import TwilioGateway, get_twilio_client

logger = get_logger(__name__)
router = APIRouter(prefix="/api/twilio", tags=["Phone Numbers"])

ALLOWED_AUDIO_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/ogg",
    "audio/webm",
    "audio/mp4",
    "audio/x-m4a",
    "audio/aac",
}


async def _owned_number(db: DatabaseClient, user: dict[str, Any], number_id: int) -> dict[str, Any]:
    number = await db.get_phone_number(number_id)
    if not number or number["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Phone number not found")
    return number


def _whisper_payload(row: dict[str, Any]) -> dict[str, Any]:
    config = WhisperConfig.from_row(row)
    return {
        "enabled": config.enabled,
        "type": config.mode.value,
        "text": config.text,
        "voice": config.voice,
        "language": config.language,
        "media_url": config.media_url,
        "active_whisper_id": config.active_whisper_id,
    }


@router.get("/available-numbers", response_model=list[AvailableNumber])
async def available_numbers(
    areaCode: str | None = None,
    country: str = "US",
    limit: int = 20,
    user: dict[str, Any] = Depends(get_current_user),
    twilio: TwilioGateway = Depends(get_twilio_client),
) -> list[AvailableNumber]:
    """Search Twilio for purchasable local numbers."""
    try:
        numbers = await twilio.search_available_numbers(country, area_code=areaCode, limit=limit)
        return [AvailableNumber(**n) for n in numbers]
    except Exception as e:
        logger.error("available_numbers_error", country=country, area_code=areaCode, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/buy-number")
async def buy(
    body: BuyNumberRequest,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Purchase a number; the first one is free."""
    try:
        result = await buy_number(db, twilio, settings, user, body)
    except InsufficientBalanceError as e:
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Insufficient balance to purchase number",
                "details": str(e),
                "price": str(settings.phone_number_monthly_price),
                "min_required": str(settings.min_required_balance),
            },
        )
    except NumberAlreadyOwnedError:
        raise HTTPException(status_code=400, detail="You already own this phone number")
    except NoNumbersAvailableError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error("buy_number_error", user_id=user["id"], error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    message = "Phone number purchased successfully"
    if result["is_different_number"]:
        message += (
            f". Note: {result['requested_number']} was no longer available, "
            f"so we got you {result['phone_number']} instead."
        )
    return {"success": True, "message": message, **result}


@router.get("/my-numbers", response_model=list[OwnedNumber])
async def my_numbers(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> list[OwnedNumber]:
    try:
        return [OwnedNumber(**row) for row in await db.list_phone_numbers(user["id"])]
    except Exception as e:
        logger.error("list_numbers_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/my-numbers/active", response_model=list[OwnedNumber])
async def my_active_numbers(
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> list[OwnedNumber]:
    try:
        rows = await db.list_phone_numbers(user["id"], active_only=True)
        return [OwnedNumber(**row) for row in rows]
    except Exception as e:
        logger.error("list_active_numbers_error", user_id=user["id"], error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/my-numbers/{number_id}")
async def update_number(
    number_id: int,
    body: PhoneNumberUpdate,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
) -> dict[str, Any]:
    """Update local fields and, when given, the Twilio webhook configuration."""
    number = await _owned_number(db, user, number_id)

    local = body.model_dump(include={"friendly_name", "is_active"}, exclude_none=True)
    remote = body.model_dump(
        include={"voice_url", "status_callback", "status_callback_method"},
        exclude_none=True,
    )
    if not local and not remote:
        raise HTTPException(status_code=400, detail="No fields to update")

    try:
        updated = await db.update_phone_number(number_id, local) if local else number
    except Exception as e:
        logger.error("update_number_error", phone_number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    if remote:
        try:
            await twilio.update_number(number["twilio_sid"], **remote)
        except Exception as e:
            # Local state is already saved.
            logger.error("twilio_number_update_error", phone_number_id=number_id, error=str(e))

    return {"success": True, "message": "Phone number updated successfully", "phone_number": updated}


@router.delete("/my-numbers/{number_id}")
async def delete_number(
    number_id: int,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    twilio: TwilioGateway = Depends(get_twilio_client),
) -> dict[str, Any]:
    """Release the number at Twilio and remove it."""
    number = await _owned_number(db, user, number_id)
    try:
        await release_number(db, twilio, number)
    except Exception as e:
        logger.error("release_number_error", phone_number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "message": "Phone number released successfully"}


@router.get("/my-numbers/{number_id}/whisper")
async def get_whisper(
    number_id: int,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    number = await _owned_number(db, user, number_id)
    return {"success": True, "whisper": _whisper_payload(number)}


@router.put("/my-numbers/{number_id}/whisper")
async def update_whisper(
    number_id: int,
    body: WhisperUpdate,
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    await _owned_number(db, user, number_id)

    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    if isinstance(updates.get("whisper_type"), WhisperMode):
        updates["whisper_type"] = updates["whisper_type"].value

    try:
        updated = await db.update_phone_number(number_id, updates)
    except Exception as e:
        logger.error("update_whisper_error", phone_number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    if not updated:
        raise HTTPException(status_code=400, detail="Failed to update whisper settings")

    logger.info("whisper_updated", phone_number_id=number_id, fields=sorted(updates))
    return {
        "success": True,
        "message": "Whisper settings updated successfully",
        "whisper": _whisper_payload(updated),
    }


@router.post("/my-numbers/{number_id}/whisper/upload")
async def upload_whisper(
    number_id: int,
    audio: UploadFile = File(...),
    user: dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Store an audio clip and switch the number's whisper to play it."""
    await _owned_number(db, user, number_id)

    mime = (audio.content_type or "").lower()
    if mime not in ALLOWED_AUDIO_TYPES:
        raise HTTPException(status_code=400, detail="Only audio files are allowed")

    data = await audio.read()
    if not data:
        raise HTTPException(status_code=400, detail="No audio file provided")
    if len(data) > settings.whisper_max_upload_bytes:
        raise HTTPException(status_code=413, detail="Audio file too large")

    try:
        clip = await db.create_whisper_audio(number_id, data, mime)
        if clip is None:
            raise RuntimeError("Whisper audio was not stored")
        media_url = settings.callback_url(f"/api/twilio/whisper-audio/{clip['id']}")
        await db.update_phone_number(
            number_id,
            {
                "whisper_enabled": True,
                "whisper_type": WhisperMode.PLAY.value,
                "active_whisper_id": clip["id"],
                "whisper_media_url": media_url,
            },
        )
    except Exception as e:
        logger.error("upload_whisper_error", phone_number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("whisper_audio_uploaded", phone_number_id=number_id, whisper_id=clip["id"], size_bytes=len(data))
    return {
        "success": True,
        "message": "Whisper audio uploaded successfully",
        "whisper_id": clip["id"],
        "media_url": media_url,
        "whisper": {"enabled": True, "type": WhisperMode.PLAY.value, "media_url": media_url},
    }
