"""
Call Lifecycle Tracker.

Applies Twilio status and recording callbacks to call records. Writes
are absolute, so replayed callbacks leave the same state behind; a
terminal status is never overwritten by a late non-terminal one.
Completed recordings are handed to billing, which charges each
recording SID once.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from callflow.db import DatabaseClient
from callflow.logging_config import bind_call, get_logger
from callflow.schemas.billing import BillingPolicy, RecordingCharge
from callflow.schemas.call import CallDirection, CallStatus, RecordingCallback, StatusCallback
from callflow.services.billing import charge_recording

logger = get_logger(__name__)


def _parse_status(value: str | None) -> CallStatus | None:
    if not value:
        return None
    try:
        return CallStatus(value)
    except ValueError:
        return None


def _event_time(event: StatusCallback) -> str:
    """Twilio stamps callbacks in RFC 2822; fall back to receipt time."""
    if event.timestamp:
        try:
            return parsedate_to_datetime(event.timestamp).isoformat()
        except (TypeError, ValueError):
            pass
    return datetime.now(timezone.utc).isoformat()


def _direction(raw: str | None) -> str | None:
    if not raw:
        return None
    return CallDirection.INBOUND.value if raw.startswith("inbound") else CallDirection.OUTBOUND.value


async def _resolve_owner(
    db: DatabaseClient,
    event: StatusCallback,
    existing: dict[str, Any] | None,
) -> dict[str, Any] | None:
    """Find ``user_id``/``phone_number_id`` for a call we may not have seen yet."""
    if existing and existing.get("user_id"):
        return {"user_id": existing["user_id"], "phone_number_id": existing.get("phone_number_id")}

    if event.parent_call_sid:
        parent = await db.get_call_log(event.parent_call_sid)
        if parent and parent.get("user_id"):
            return {"user_id": parent["user_id"], "phone_number_id": parent.get("phone_number_id")}

    for candidate in (event.to_number, event.from_number):
        if not candidate:
            continue
        number = await db.get_phone_number_by_number(candidate)
        if number:
            return {"user_id": number["user_id"], "phone_number_id": number["id"]}
    return None


async def record_status(db: DatabaseClient, event: StatusCallback) -> dict[str, Any] | None:
    """
    Upsert the call record for a status callback.

    Returns the stored row, or None when the callback was ignored.
    """
    bind_call(event.call_sid)
    if not event.call_sid:
        logger.warning("status_callback_missing_sid")
        return None

    existing = await db.get_call_log(event.call_sid)
    owner = await _resolve_owner(db, event, existing)
    if owner is None:
        logger.warning(
            "status_callback_unknown_call",
            status=event.call_status,
            to=event.to_number,
            from_number=event.from_number,
        )
        return None

    status = _parse_status(event.call_status)
    current = _parse_status(existing.get("status")) if existing else None

    payload: dict[str, Any] = {"call_sid": event.call_sid, **owner}
    if existing is None:
        payload.update(
            {
                "parent_call_sid": event.parent_call_sid,
                "from_number": event.from_number,
                "to_number": event.to_number,
                "direction": _direction(event.direction),
            }
        )

    if status is not None:
        if current is not None and current.is_terminal and not status.is_terminal:
            logger.info("status_regression_ignored", current=current.value, received=status.value)
        else:
            payload["status"] = status.value
            if status is CallStatus.IN_PROGRESS and not (existing or {}).get("start_time"):
                payload["start_time"] = _event_time(event)
            if status.is_terminal:
                payload["end_time"] = (existing or {}).get("end_time") or _event_time(event)
    elif event.call_status:
        logger.warning("status_callback_unknown_status", status=event.call_status)

    if event.duration is not None:
        payload["duration"] = event.duration
    if event.price is not None:
        payload["price"] = str(event.price)
    if event.price_unit:
        payload["price_unit"] = event.price_unit

    row = await db.upsert_call_log(payload)
    logger.info("call_status_recorded", status=payload.get("status"), duration=event.duration)
    return row


async def record_recording(
    db: DatabaseClient,
    event: RecordingCallback,
    policy: BillingPolicy,
) -> RecordingCharge | None:
    """
    Attach recording metadata to its call and bill completed recordings.

    Returns the charge when one was applied by this callback.
    """
    bind_call(event.call_sid)
    if not event.call_sid:
        logger.warning("recording_callback_missing_sid")
        return None

    existing = await db.get_call_log(event.call_sid)
    if existing is None:
        logger.warning("recording_callback_unknown_call", recording_sid=event.recording_sid)
        return None

    updates = {
        "recording_sid": event.recording_sid,
        "recording_url": event.recording_url,
        "recording_duration": event.recording_duration,
        "recording_channels": event.recording_channels,
        "recording_status": event.recording_status,
    }
    await db.update_call_log(event.call_sid, {k: v for k, v in updates.items() if v is not None})
    logger.info(
        "recording_attached",
        recording_sid=event.recording_sid,
        recording_status=event.recording_status,
        duration=event.recording_duration,
    )

    if event.recording_status != "completed" or not event.recording_sid:
        return None
    if not existing.get("user_id"):
        logger.warning("recording_without_owner", recording_sid=event.recording_sid)
        return None

    return await charge_recording(
        db,
        user_id=existing["user_id"],
        call_sid=event.call_sid,
        recording_sid=event.recording_sid,
        duration_seconds=event.recording_duration or 0,
        policy=policy,
    )
