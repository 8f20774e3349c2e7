"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and typed helper methods
for every table the service touches. Routes and services only talk to
storage through these helpers, so the query shapes live in one place.

Storage errors propagate to the caller: webhook handlers turn them into
safe TwiML, management routes turn them into 500s.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from supabase import Client, create_client

from callflow.config import get_settings
from callflow.logging_config import get_logger

logger = get_logger(__name__)

PHONE_NUMBERS = "user_phone_numbers"
FORWARDING = "call_forwarding"
WHISPERS = "phone_number_whispers"
CALL_LOGS = "twilio_call_logs"
USERS = "users"
APPLY_RECORDING_CHARGE = "apply_recording_charge"


def parse_json_field(value: Any, default: Any = None) -> Any:
    """
    Normalize a JSON column that may arrive pre-parsed or as a string.

    Returns ``default`` for NULL, empty or undecodable values.
    """
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return default
        try:
            parsed = json.loads(value)
        except ValueError:
            return default
        return parsed if isinstance(parsed, (dict, list)) else default
    return default


def encode_bytea(data: bytes) -> str:
    """Encode raw bytes for a Postgres ``bytea`` column over PostgREST."""
    return "\\x" + data.hex()


def decode_bytea(value: Any) -> bytes:
    """Decode a ``bytea`` value returned by PostgREST (hex escape format)."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("\\x"):
        return bytes.fromhex(text[2:])
    return text.encode("latin-1")


def _normalize_phone_number(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {**row, "capabilities": parse_json_field(row.get("capabilities"), {})}


def _first(rows: list[dict[str, Any]] | None) -> dict[str, Any] | None:
    return rows[0] if rows else None


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Optional[Client] = None

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def client(self) -> Client:
        """
        Access the raw Supabase client, creating it on first use.

        Connection failures surface from the first query, inside the
        caller's error handling, rather than while routes resolve
        dependencies.
        """
        if self._client is None:
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Database operations will fail.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )

            try:
                self._client = create_client(
                    settings.supabase_url,
                    settings.supabase_service_key,
                )
                logger.info("Supabase client initialized", url=settings.supabase_url)
            except Exception as e:
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise

        return self._client

    # -- Owned numbers --

    async def get_phone_number(self, number_id: int) -> dict[str, Any] | None:
        result = self.client.table(PHONE_NUMBERS).select("*").eq("id", number_id).limit(1).execute()
        return _normalize_phone_number(_first(result.data))

    async def get_phone_number_by_number(self, phone_number: str) -> dict[str, Any] | None:
        result = (
            self.client.table(PHONE_NUMBERS)
            .select("*")
            .eq("phone_number", phone_number)
            .limit(1)
            .execute()
        )
        return _normalize_phone_number(_first(result.data))

    async def list_phone_numbers(self, user_id: int, active_only: bool = False) -> list[dict[str, Any]]:
        query = self.client.table(PHONE_NUMBERS).select("*").eq("user_id", user_id)
        if active_only:
            query = query.eq("is_active", True)
        result = query.order("created_at", desc=True).execute()
        return [_normalize_phone_number(row) for row in result.data or []]

    async def create_phone_number(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(PHONE_NUMBERS).insert(payload).execute()
        return _normalize_phone_number(_first(result.data))

    async def update_phone_number(self, number_id: int, updates: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(PHONE_NUMBERS).update(updates).eq("id", number_id).execute()
        return _normalize_phone_number(_first(result.data))

    async def delete_phone_number(self, number_id: int) -> bool:
        result = self.client.table(PHONE_NUMBERS).delete().eq("id", number_id).execute()
        return bool(result.data)

    # -- Forwarding rules --

    async def get_forwarding(self, forwarding_id: int) -> dict[str, Any] | None:
        result = self.client.table(FORWARDING).select("*").eq("id", forwarding_id).limit(1).execute()
        return _first(result.data)

    async def get_forwarding_for_number(self, phone_number_id: int) -> dict[str, Any] | None:
        """Return the rule for a number regardless of its active flag."""
        result = (
            self.client.table(FORWARDING)
            .select("*")
            .eq("phone_number_id", phone_number_id)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    async def list_forwarding(self, user_id: int) -> list[dict[str, Any]]:
        result = (
            self.client.table(FORWARDING)
            .select(f"*, {PHONE_NUMBERS}(phone_number, friendly_name)")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        rows = []
        for row in result.data or []:
            number = row.pop(PHONE_NUMBERS, None) or {}
            rows.append(
                {
                    **row,
                    "source_number": number.get("phone_number"),
                    "friendly_name": number.get("friendly_name"),
                }
            )
        return rows

    async def create_forwarding(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(FORWARDING).insert(payload).execute()
        return _first(result.data)

    async def update_forwarding(self, forwarding_id: int, updates: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(FORWARDING).update(updates).eq("id", forwarding_id).execute()
        return _first(result.data)

    async def delete_forwarding(self, forwarding_id: int) -> bool:
        result = self.client.table(FORWARDING).delete().eq("id", forwarding_id).execute()
        return bool(result.data)

    # -- Whisper audio --

    async def create_whisper_audio(
        self, phone_number_id: int, audio: bytes, mime: str
    ) -> dict[str, Any] | None:
        payload = {
            "phone_number_id": phone_number_id,
            "mime": mime,
            "bytes": encode_bytea(audio),
            "size_bytes": len(audio),
            "is_active": True,
        }
        result = self.client.table(WHISPERS).insert(payload).execute()
        row = _first(result.data)
        if row is None:
            return None
        return {key: value for key, value in row.items() if key != "bytes"}

    async def get_whisper_audio(self, whisper_id: int, with_bytes: bool = True) -> dict[str, Any] | None:
        """Fetch an active whisper clip; ``bytes`` is decoded when requested."""
        columns = "id, phone_number_id, mime, size_bytes, bytes" if with_bytes else "id, phone_number_id, mime, size_bytes"
        result = (
            self.client.table(WHISPERS)
            .select(columns)
            .eq("id", whisper_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        row = _first(result.data)
        if row is not None and with_bytes:
            row = {**row, "bytes": decode_bytea(row.get("bytes"))}
        return row

    # -- Call records --

    async def get_call_log(self, call_sid: str) -> dict[str, Any] | None:
        result = self.client.table(CALL_LOGS).select("*").eq("call_sid", call_sid).limit(1).execute()
        return _first(result.data)

    async def upsert_call_log(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Insert or update a call record keyed by ``call_sid``."""
        result = self.client.table(CALL_LOGS).upsert(payload, on_conflict="call_sid").execute()
        return _first(result.data)

    async def update_call_log(self, call_sid: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(CALL_LOGS).update(updates).eq("call_sid", call_sid).execute()
        return _first(result.data)

    async def list_call_logs(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
        with_recording: bool = False,
    ) -> tuple[list[dict[str, Any]], int]:
        query = (
            self.client.table(CALL_LOGS)
            .select("*", count="exact")
            .eq("user_id", user_id)
        )
        if status:
            query = query.eq("status", status)
        if with_recording:
            query = query.not_.is_("recording_sid", "null")
        result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        return result.data or [], result.count or 0

    async def find_call_by_recording(self, user_id: int, recording_sid: str) -> dict[str, Any] | None:
        result = (
            self.client.table(CALL_LOGS)
            .select("*")
            .eq("user_id", user_id)
            .eq("recording_sid", recording_sid)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    async def sum_recording_seconds_since(self, user_id: int, since_iso: str) -> int:
        result = (
            self.client.table(CALL_LOGS)
            .select("recording_duration")
            .eq("user_id", user_id)
            .gte("created_at", since_iso)
            .not_.is_("recording_duration", "null")
            .execute()
        )
        return sum(int(row.get("recording_duration") or 0) for row in result.data or [])

    async def call_stats(self, user_id: int) -> dict[str, Any]:
        result = (
            self.client.table(CALL_LOGS)
            .select("status, duration, price")
            .eq("user_id", user_id)
            .execute()
        )
        rows = result.data or []
        return {
            "total_calls": len(rows),
            "completed_calls": sum(1 for r in rows if r.get("status") == "completed"),
            "total_duration": sum(int(r.get("duration") or 0) for r in rows),
        }

    # -- Users and billing --

    async def get_user(self, user_id: int) -> dict[str, Any] | None:
        result = (
            self.client.table(USERS)
            .select("*")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    async def update_user(self, user_id: int, updates: dict[str, Any]) -> dict[str, Any] | None:
        result = self.client.table(USERS).update(updates).eq("id", user_id).execute()
        return _first(result.data)

    async def apply_recording_charge(
        self,
        recording_sid: str,
        call_sid: str,
        user_id: int,
        expected_free_minutes: int,
        charge: dict[str, Any],
    ) -> str:
        """
        Claim the recording and debit the user in one transaction.

        Runs the ``apply_recording_charge`` Postgres function, which locks
        the user row. Returns one of the ``ChargeOutcome`` values:
        ``applied``, ``duplicate``, ``stale`` or ``missing_user``.
        """
        result = self.client.rpc(
            APPLY_RECORDING_CHARGE,
            {
                "p_recording_sid": recording_sid,
                "p_call_sid": call_sid,
                "p_user_id": user_id,
                "p_expected_free_minutes": expected_free_minutes,
                "p_duration_seconds": charge["duration_seconds"],
                "p_free_seconds_applied": charge["free_seconds_applied"],
                "p_billed_minutes": charge["billed_minutes"],
                "p_billed_amount": charge["billed_amount"],
                "p_free_minutes_remaining": charge["free_minutes_remaining"],
            },
        ).execute()
        return str(result.data)


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
