"""
Twilio REST gateway.

Thin async facade over the synchronous ``twilio`` SDK: searching and
purchasing numbers, releasing them, deleting recordings, proxying
recording audio and minting Voice SDK access tokens. Blocking SDK calls
run in a worker thread so the event loop is never held.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Any, Optional

import httpx
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant
from twilio.rest import Client

from callflow.config import Settings, get_settings
from callflow.logging_config import get_logger

logger = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioGateway:
    """Async wrapper around ``twilio.rest.Client``."""

    def __init__(self, settings: Settings, client: Optional[Client] = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.settings.twilio_account_sid or not self.settings.twilio_auth_token:
                logger.warning("twilio_credentials_missing")
            self._client = Client(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
            )
        return self._client

    # -- Numbers --

    async def search_available_numbers(
        self,
        country: str = "US",
        area_code: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if area_code:
            params["area_code"] = area_code

        numbers = await asyncio.to_thread(
            self.client.available_phone_numbers(country).local.list, **params
        )
        return [
            {
                "phone_number": n.phone_number,
                "friendly_name": n.friendly_name,
                "locality": n.locality,
                "region": n.region,
                "country": n.iso_country,
                "capabilities": dict(n.capabilities or {}),
            }
            for n in numbers
        ]

    async def purchase_number(self, phone_number: str) -> dict[str, Any]:
        """Buy ``phone_number`` and point its voice webhook at the router."""
        params: dict[str, Any] = {
            "phone_number": phone_number,
            "voice_url": self.settings.callback_url("/api/twilio/twiml"),
            "voice_method": "POST",
            "status_callback": self.settings.callback_url("/api/twilio/status-callback"),
            "status_callback_method": "POST",
        }
        purchased = await asyncio.to_thread(self.client.incoming_phone_numbers.create, **params)
        logger.info("twilio_number_purchased", phone_number=purchased.phone_number, sid=purchased.sid)
        return {
            "sid": purchased.sid,
            "phone_number": purchased.phone_number,
            "friendly_name": purchased.friendly_name,
            "capabilities": dict(purchased.capabilities or {}),
        }

    async def update_number(self, sid: str, **fields: Any) -> None:
        if not fields:
            return
        await asyncio.to_thread(self.client.incoming_phone_numbers(sid).update, **fields)
        logger.info("twilio_number_updated", sid=sid, fields=sorted(fields))

    async def release_number(self, sid: str) -> None:
        await asyncio.to_thread(self.client.incoming_phone_numbers(sid).delete)
        logger.info("twilio_number_released", sid=sid)

    # -- Recordings --

    async def delete_recording(self, recording_sid: str) -> None:
        await asyncio.to_thread(self.client.recordings(recording_sid).delete)
        logger.info("twilio_recording_deleted", recording_sid=recording_sid)

    async def fetch_recording_audio(self, recording_sid: str) -> tuple[bytes, str]:
        """Download a recording as MP3 using the account credentials."""
        url = (
            f"{TWILIO_API_BASE}/Accounts/{self.settings.twilio_account_sid}"
            f"/Recordings/{recording_sid}.mp3"
        )
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as http:
            response = await http.get(
                url,
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
            )
            response.raise_for_status()
        return response.content, response.headers.get("content-type", "audio/mpeg")

    # -- Voice SDK --

    def create_access_token(self, identity: str) -> str:
        token = AccessToken(
            self.settings.twilio_account_sid,
            self.settings.twilio_api_key,
            self.settings.twilio_api_secret,
            identity=identity,
        )
        token.add_grant(
            VoiceGrant(
                outgoing_application_sid=self.settings.twilio_app_sid,
                incoming_allow=True,
            )
        )
        jwt = token.to_jwt()
        return jwt.decode("utf-8") if isinstance(jwt, bytes) else str(jwt)


@lru_cache(maxsize=1)
def get_twilio_client() -> TwilioGateway:
    return TwilioGateway(get_settings())
