"""
Data models for call records and Twilio lifecycle callbacks.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class CallStatus(str, Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.BUSY,
        CallStatus.NO_ANSWER,
        CallStatus.CANCELED,
    }
)


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class StatusCallback(BaseModel):
    """Fields Twilio posts to the call status callback."""
    call_sid: str
    call_status: Optional[str] = None
    parent_call_sid: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    duration: Optional[int] = None
    price: Optional[Decimal] = None
    price_unit: Optional[str] = None
    timestamp: Optional[str] = None

    @classmethod
    def from_form(cls, form: dict[str, Any]) -> "StatusCallback":
        return cls(
            call_sid=_text(form.get("CallSid")),
            call_status=_text(form.get("CallStatus")).lower() or None,
            parent_call_sid=_text(form.get("ParentCallSid")) or None,
            from_number=_text(form.get("From")) or None,
            to_number=_text(form.get("To")) or None,
            direction=_text(form.get("Direction")).lower() or None,
            duration=_int_or_none(form.get("CallDuration")),
            price=_decimal_or_none(form.get("CallPrice")),
            price_unit=_text(form.get("PriceUnit") or form.get("CallPriceUnit")) or None,
            timestamp=_text(form.get("Timestamp")) or None,
        )


class RecordingCallback(BaseModel):
    """Fields Twilio posts to the recording status callback."""
    call_sid: str
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    recording_channels: Optional[int] = None
    recording_status: Optional[str] = None

    @classmethod
    def from_form(cls, form: dict[str, Any]) -> "RecordingCallback":
        return cls(
            call_sid=_text(form.get("CallSid")),
            recording_sid=_text(form.get("RecordingSid")) or None,
            recording_url=_text(form.get("RecordingUrl")) or None,
            recording_duration=_int_or_none(form.get("RecordingDuration")),
            recording_channels=_int_or_none(form.get("RecordingChannels")),
            recording_status=_text(form.get("RecordingStatus")).lower() or None,
        )


class CallRecordResponse(BaseModel):
    id: Optional[int] = None
    call_sid: str
    user_id: int
    phone_number_id: Optional[int] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    status: Optional[str] = None
    direction: Optional[str] = None
    price: Optional[Decimal] = None
    price_unit: Optional[str] = None
    duration: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    recording_channels: Optional[int] = None
    recording_status: Optional[str] = None
    is_billed: bool = False
    billed_minutes: Optional[int] = None
    billed_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    text = _text(value)
    if not text:
        return None
    try:
        return Decimal(text)
    except ArithmeticError:
        return None
