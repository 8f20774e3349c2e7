"""
Data models for call forwarding rules.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from callflow.schemas.phone_number import E164_PATTERN


class ForwardingType(str, Enum):
    # Only ALWAYS changes routing; the rest are stored for the frontend.
    ALWAYS = "always"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    UNAVAILABLE = "unavailable"


class ForwardingRule(BaseModel):
    id: int
    user_id: int
    phone_number_id: int
    forward_to_number: str
    is_active: bool = True
    forwarding_type: ForwardingType = ForwardingType.ALWAYS
    ring_timeout: Optional[int] = None
    source_number: Optional[str] = None
    friendly_name: Optional[str] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ForwardingRule":
        raw_type = str(row.get("forwarding_type") or "always")
        known = {t.value for t in ForwardingType}
        return cls(**{**row, "forwarding_type": raw_type if raw_type in known else "always"})


class ForwardingCreate(BaseModel):
    phone_number_id: int
    forward_to_number: str = Field(pattern=E164_PATTERN)
    forwarding_type: ForwardingType = ForwardingType.ALWAYS
    ring_timeout: int = Field(default=20, ge=5, le=600)


class ForwardingUpdate(BaseModel):
    forward_to_number: Optional[str] = Field(default=None, pattern=E164_PATTERN)
    forwarding_type: Optional[ForwardingType] = None
    ring_timeout: Optional[int] = Field(default=None, ge=5, le=600)
    is_active: Optional[bool] = None


class ForwardingToggle(BaseModel):
    is_active: bool
