import itertools
from copy import deepcopy
from datetime import datetime, timezone
from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient

from callflow.api_server import app
from callflow.config import Settings, get_settings
from callflow.db import get_db, parse_json_field
from callflow.services.twilio_client import get_twilio_client

JWT_SECRET = "test-secret"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeDatabase:
    """In-memory stand-in for ``DatabaseClient`` with the same async surface."""

    def __init__(self):
        self.users = {}
        self.numbers = {}
        self.forwarding = {}
        self.whispers = {}
        self.call_logs = {}
        self.recording_charges = {}
        self._ids = itertools.count(1)

    # -- helpers for tests --

    def add_user(self, **fields):
        user_id = fields.pop("id", None) or next(self._ids)
        self.users[user_id] = {
            "id": user_id,
            "email": f"user{user_id}@example.com",
            "balance": "0",
            "free_minutes_remaining": 0,
            "free_minutes_last_reset": _now(),
            "has_claimed_free_number": False,
            **fields,
        }
        return self.users[user_id]

    def add_number(self, user_id, phone_number, **fields):
        number_id = next(self._ids)
        self.numbers[number_id] = {
            "id": number_id,
            "user_id": user_id,
            "phone_number": phone_number,
            "twilio_sid": f"PN{number_id:032d}",
            "friendly_name": None,
            "is_active": True,
            "capabilities": '{"voice": true}',
            "whisper_enabled": False,
            "whisper_type": "say",
            "created_at": _now(),
            **fields,
        }
        return self.numbers[number_id]

    def add_rule(self, user_id, phone_number_id, forward_to_number, **fields):
        rule_id = next(self._ids)
        self.forwarding[rule_id] = {
            "id": rule_id,
            "user_id": user_id,
            "phone_number_id": phone_number_id,
            "forward_to_number": forward_to_number,
            "forwarding_type": "always",
            "ring_timeout": 20,
            "is_active": True,
            "created_at": _now(),
            **fields,
        }
        return self.forwarding[rule_id]

    def _number_out(self, row):
        if row is None:
            return None
        row = deepcopy(row)
        row["capabilities"] = parse_json_field(row.get("capabilities"), {})
        return row

    # -- owned numbers --

    async def get_phone_number(self, number_id):
        return self._number_out(self.numbers.get(number_id))

    async def get_phone_number_by_number(self, phone_number):
        for row in self.numbers.values():
            if row["phone_number"] == phone_number:
                return self._number_out(row)
        return None

    async def list_phone_numbers(self, user_id, active_only=False):
        return [
            self._number_out(row)
            for row in self.numbers.values()
            if row["user_id"] == user_id and (row.get("is_active") or not active_only)
        ]

    async def create_phone_number(self, payload):
        return self._number_out(self.add_number(payload["user_id"], payload["phone_number"], **{
            k: v for k, v in payload.items() if k not in ("user_id", "phone_number")
        }))

    async def update_phone_number(self, number_id, updates):
        if number_id not in self.numbers:
            return None
        self.numbers[number_id].update(updates)
        return self._number_out(self.numbers[number_id])

    async def delete_phone_number(self, number_id):
        return self.numbers.pop(number_id, None) is not None

    # -- forwarding --

    async def get_forwarding(self, forwarding_id):
        return deepcopy(self.forwarding.get(forwarding_id))

    async def get_forwarding_for_number(self, phone_number_id):
        for row in self.forwarding.values():
            if row["phone_number_id"] == phone_number_id:
                return deepcopy(row)
        return None

    async def list_forwarding(self, user_id):
        rows = []
        for row in self.forwarding.values():
            if row["user_id"] != user_id:
                continue
            number = self.numbers.get(row["phone_number_id"], {})
            rows.append({
                **row,
                "source_number": number.get("phone_number"),
                "friendly_name": number.get("friendly_name"),
            })
        return rows

    async def create_forwarding(self, payload):
        rule = self.add_rule(payload["user_id"], payload["phone_number_id"], payload["forward_to_number"], **{
            k: v for k, v in payload.items() if k not in ("user_id", "phone_number_id", "forward_to_number")
        })
        return deepcopy(rule)

    async def update_forwarding(self, forwarding_id, updates):
        if forwarding_id not in self.forwarding:
            return None
        self.forwarding[forwarding_id].update(updates)
        return deepcopy(self.forwarding[forwarding_id])

    async def delete_forwarding(self, forwarding_id):
        return self.forwarding.pop(forwarding_id, None) is not None

    # -- whisper audio --

    async def create_whisper_audio(self, phone_number_id, audio, mime):
        whisper_id = next(self._ids)
        self.whispers[whisper_id] = {
            "id": whisper_id,
            "phone_number_id": phone_number_id,
            "mime": mime,
            "bytes": audio,
            "size_bytes": len(audio),
            "is_active": True,
        }
        return {k: v for k, v in self.whispers[whisper_id].items() if k != "bytes"}

    async def get_whisper_audio(self, whisper_id, with_bytes=True):
        row = self.whispers.get(whisper_id)
        if not row or not row["is_active"]:
            return None
        row = dict(row)
        if not with_bytes:
            row.pop("bytes")
        return row

    # -- call records --

    async def get_call_log(self, call_sid):
        return deepcopy(self.call_logs.get(call_sid))

    async def upsert_call_log(self, payload):
        row = self.call_logs.setdefault(payload["call_sid"], {"created_at": _now(), "is_billed": False})
        row.update(payload)
        return deepcopy(row)

    async def update_call_log(self, call_sid, updates):
        if call_sid not in self.call_logs:
            return None
        self.call_logs[call_sid].update(updates)
        return deepcopy(self.call_logs[call_sid])

    async def list_call_logs(self, user_id, limit=20, offset=0, status=None, with_recording=False):
        rows = [
            deepcopy(row)
            for row in self.call_logs.values()
            if row.get("user_id") == user_id
            and (status is None or row.get("status") == status)
            and (not with_recording or row.get("recording_sid"))
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def find_call_by_recording(self, user_id, recording_sid):
        for row in self.call_logs.values():
            if row.get("user_id") == user_id and row.get("recording_sid") == recording_sid:
                return deepcopy(row)
        return None

    async def sum_recording_seconds_since(self, user_id, since_iso):
        return sum(
            int(row.get("recording_duration") or 0)
            for row in self.call_logs.values()
            if row.get("user_id") == user_id and row["created_at"] >= since_iso
        )

    async def call_stats(self, user_id):
        rows = [row for row in self.call_logs.values() if row.get("user_id") == user_id]
        return {
            "total_calls": len(rows),
            "completed_calls": sum(1 for r in rows if r.get("status") == "completed"),
            "total_duration": sum(int(r.get("duration") or 0) for r in rows),
        }

    # -- users and billing --

    async def get_user(self, user_id):
        return deepcopy(self.users.get(user_id))

    async def update_user(self, user_id, updates):
        if user_id not in self.users:
            return None
        self.users[user_id].update(updates)
        return deepcopy(self.users[user_id])

    async def apply_recording_charge(self, recording_sid, call_sid, user_id, expected_free_minutes, charge):
        """Mirrors the ``apply_recording_charge`` SQL function; nothing is written unless applied."""
        user = self.users.get(user_id)
        if user is None:
            return "missing_user"
        if recording_sid in self.recording_charges:
            return "duplicate"
        if int(user.get("free_minutes_remaining") or 0) != expected_free_minutes:
            return "stale"

        amount = Decimal(charge["billed_amount"])
        self.recording_charges[recording_sid] = {
            "recording_sid": recording_sid,
            "call_sid": call_sid,
            "user_id": user_id,
            **charge,
        }
        user["free_minutes_remaining"] = charge["free_minutes_remaining"]
        user["balance"] = str(Decimal(str(user.get("balance") or "0")) - amount)
        if call_sid in self.call_logs:
            self.call_logs[call_sid].update(
                {
                    "is_billed": True,
                    "billed_minutes": charge["billed_minutes"],
                    "billed_amount": charge["billed_amount"],
                }
            )
        return "applied"


class FakeTwilio:
    """Records gateway calls instead of hitting the Twilio API."""

    def __init__(self):
        self.available = [
            {
                "phone_number": "+14155550100",
                "friendly_name": "(415) 555-0100",
                "locality": "San Francisco",
                "region": "CA",
                "country": "US",
                "capabilities": {"voice": True, "SMS": True},
            }
        ]
        self.unavailable = set()
        self.purchased = []
        self.released = []
        self.updated = []
        self.deleted_recordings = []

    async def search_available_numbers(self, country="US", area_code=None, limit=20):
        return [n for n in self.available if n["phone_number"] not in self.purchased][:limit]

    async def purchase_number(self, phone_number):
        if phone_number in self.unavailable:
            raise RuntimeError(f"{phone_number} is not available")
        self.purchased.append(phone_number)
        return {
            "sid": f"PN{len(self.purchased):032d}",
            "phone_number": phone_number,
            "friendly_name": phone_number,
            "capabilities": {"voice": True},
        }

    async def update_number(self, sid, **fields):
        self.updated.append((sid, fields))

    async def release_number(self, sid):
        self.released.append(sid)

    async def delete_recording(self, recording_sid):
        self.deleted_recordings.append(recording_sid)

    async def fetch_recording_audio(self, recording_sid):
        return b"ID3fake-mp3", "audio/mpeg"

    def create_access_token(self, identity):
        return f"token-for-{identity}"


@pytest.fixture()
def settings():
    return Settings(
        server_url="https://calls.example.com",
        jwt_secret=JWT_SECRET,
        call_rate_per_minute=Decimal("0.0085"),
        monthly_free_minutes=10,
        min_required_balance=Decimal("5.00"),
        phone_number_monthly_price=Decimal("2.00"),
    )


@pytest.fixture()
def db():
    return FakeDatabase()


@pytest.fixture()
def twilio():
    return FakeTwilio()


@pytest.fixture()
def client(db, twilio, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_twilio_client] = lambda: twilio
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_token(user_id, secret=JWT_SECRET):
    return jwt.encode({"userId": user_id}, secret, algorithm="HS256")


def auth_headers(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture()
def headers_for():
    return auth_headers
