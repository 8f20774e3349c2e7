"""
Data models for owned phone numbers and their whisper configuration.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

E164_PATTERN = r"^\+[1-9]\d{6,14}$"


class WhisperMode(str, Enum):
    SAY = "say"
    PLAY = "play"


class WhisperConfig(BaseModel):
    """Announcement played to the callee before the call is bridged."""
    enabled: bool = False
    mode: WhisperMode = WhisperMode.SAY
    text: Optional[str] = None
    voice: str = "alice"
    language: str = "en-US"
    media_url: Optional[str] = None
    active_whisper_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WhisperConfig":
        raw_mode = str(row.get("whisper_type") or "say").lower()
        return cls(
            enabled=bool(row.get("whisper_enabled")),
            mode=WhisperMode(raw_mode) if raw_mode in ("say", "play") else WhisperMode.SAY,
            text=row.get("whisper_text") or None,
            voice=row.get("whisper_voice") or "alice",
            language=row.get("whisper_language") or "en-US",
            media_url=row.get("whisper_media_url") or None,
            active_whisper_id=row.get("active_whisper_id"),
        )


class WhisperUpdate(BaseModel):
    whisper_enabled: Optional[bool] = None
    whisper_type: Optional[WhisperMode] = None
    whisper_text: Optional[str] = Field(default=None, max_length=255)
    whisper_voice: Optional[str] = Field(default=None, min_length=1, max_length=64)
    whisper_language: Optional[str] = Field(default=None, min_length=2, max_length=10)
    whisper_media_url: Optional[str] = Field(default=None, max_length=512)

    @field_validator("whisper_type", mode="before")
    @classmethod
    def lowercase_type(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class OwnedNumber(BaseModel):
    id: int
    user_id: int
    phone_number: str
    twilio_sid: str
    friendly_name: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    locality: Optional[str] = None
    is_active: bool = True
    purchase_price: Optional[Decimal] = None
    purchase_price_unit: Optional[str] = None
    monthly_cost: Optional[Decimal] = None
    capabilities: dict[str, Any] = Field(default_factory=dict)
    is_free: bool = False
    next_renewal_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def label(self) -> str:
        return self.friendly_name or self.phone_number


class PhoneNumberUpdate(BaseModel):
    friendly_name: Optional[str] = Field(default=None, max_length=255)
    is_active: Optional[bool] = None
    voice_url: Optional[str] = None
    status_callback: Optional[str] = None
    status_callback_method: Optional[str] = None


class BuyNumberRequest(BaseModel):
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", pattern=E164_PATTERN)
    area_code: Optional[str] = Field(default=None, alias="areaCode", pattern=r"^\d{3}$")
    country: str = Field(default="US", min_length=2, max_length=2)

    model_config = {"populate_by_name": True}


class AvailableNumber(BaseModel):
    phone_number: str
    friendly_name: Optional[str] = None
    locality: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    capabilities: dict[str, Any] = Field(default_factory=dict)
