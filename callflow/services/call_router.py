"""
Inbound Call Router.

Turns a Twilio voice webhook into TwiML. Inbound calls to an owned
number are forwarded according to the number's forwarding rule, with an
optional whisper played privately to the callee before the legs are
bridged. Browser-originated calls are dialled out from the user's own
number once the caller can afford them.

Every path returns valid TwiML; failures degrade to a spoken message and
a hangup instead of an HTTP error.
"""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import urlencode

from twilio.twiml.voice_response import VoiceResponse

from callflow.config import Settings
from callflow.db import DatabaseClient
from callflow.logging_config import bind_call, get_logger
from callflow.schemas.call import CallDirection, CallStatus
from callflow.schemas.forwarding import ForwardingRule
from callflow.schemas.phone_number import WhisperConfig, WhisperMode
from callflow.services.billing import InsufficientBalanceError, assert_can_place_call

logger = get_logger(__name__)

NOT_IN_SERVICE = "We're sorry, the number you have called is not in service. Goodbye."
NO_ONE_AVAILABLE = "Thank you for calling. No one is available to take your call right now. Goodbye."
CALL_ERROR = "I'm sorry, there was an error processing your call. Please try again."
CONNECT_ERROR = "I'm sorry, there was an error connecting your call. Please try again."
INSUFFICIENT_BALANCE = "Insufficient balance. Please add funds to your account."
DEFAULT_WHISPER = "Incoming call on {label}. Caller {caller}."

DIAL_STATUS_EVENTS = "initiated ringing answered completed"
RECORD_MODE = "record-from-answer-dual"


def _param(params: Mapping[str, Any], key: str) -> str:
    value = params.get(key)
    return str(value).strip() if value is not None else ""


def _hangup_with(message: str) -> VoiceResponse:
    response = VoiceResponse()
    response.say(message)
    response.hangup()
    return response


def whisper_url(settings: Settings, called: str, caller: str) -> str:
    query = urlencode({"called": called, "caller": caller})
    return f"{settings.callback_url('/api/twilio/whisper')}?{query}"


def _recorded_dial(response: VoiceResponse, settings: Settings, **kwargs: Any):
    return response.dial(
        record=RECORD_MODE,
        recording_status_callback=settings.callback_url("/api/twilio/recording-callback"),
        recording_status_callback_event="completed",
        **kwargs,
    )


def _number_callbacks(settings: Settings) -> dict[str, str]:
    return {
        "status_callback": settings.callback_url("/api/twilio/status-callback"),
        "status_callback_event": DIAL_STATUS_EVENTS,
        "status_callback_method": "POST",
    }


async def route_call(
    db: DatabaseClient,
    settings: Settings,
    params: Mapping[str, Any],
) -> VoiceResponse:
    """
    Build the TwiML for a voice webhook.

    ``params`` is the raw form Twilio posted. Never raises.
    """
    call_sid = _param(params, "CallSid")
    bind_call(call_sid)

    to = _param(params, "To")
    from_ = _param(params, "From")
    direction = _param(params, "Direction").lower()
    called = _param(params, "Called") or to
    caller = _param(params, "Caller") or from_

    logger.info(
        "voice_webhook_received",
        direction=direction,
        to=to,
        from_number=from_,
        called=called,
        caller=caller,
    )

    try:
        if to.startswith("+") and (direction != "inbound" or caller.startswith("client:")):
            return await route_browser_call(db, settings, call_sid, from_, to)
        if direction == "outbound-api":
            return await route_api_call(db, settings, call_sid, from_, to)
        if direction == "inbound":
            return await route_inbound_call(db, settings, call_sid, called, caller)

        logger.warning("voice_webhook_unrecognized", direction=direction)
        response = VoiceResponse()
        response.say("Hello! This is your phone system.")
        response.pause(length=1)
        response.say("Thank you for calling. Goodbye!")
        return response
    except Exception as e:
        logger.error("voice_webhook_error", error=str(e), exc_info=True)
        return _hangup_with(CALL_ERROR)


async def route_inbound_call(
    db: DatabaseClient,
    settings: Settings,
    call_sid: str,
    called: str,
    caller: str,
) -> VoiceResponse:
    """Forward a PSTN call to an owned number according to its rule."""
    number = await db.get_phone_number_by_number(called) if called else None
    if not number or not number.get("is_active", True):
        logger.error("inbound_number_not_in_service", called=called, found=bool(number))
        return _hangup_with(NOT_IN_SERVICE)

    row = await db.get_forwarding_for_number(number["id"])
    rule = ForwardingRule.from_row(row) if row else None
    if rule is None or not rule.is_active:
        logger.info("inbound_no_active_forwarding", phone_number_id=number["id"], has_rule=rule is not None)
        return _hangup_with(NO_ONE_AVAILABLE)

    if call_sid:
        await db.upsert_call_log(
            {
                "call_sid": call_sid,
                "user_id": number["user_id"],
                "phone_number_id": number["id"],
                "from_number": caller,
                "to_number": called,
                "direction": CallDirection.INBOUND.value,
                "status": CallStatus.INITIATED.value,
            }
        )

    timeout = rule.ring_timeout or settings.default_ring_timeout
    whisper = WhisperConfig.from_row(number)

    response = VoiceResponse()
    dial = _recorded_dial(
        response,
        settings,
        caller_id=caller or None,
        answer_on_bridge=True,
        timeout=timeout,
    )
    number_kwargs = _number_callbacks(settings)
    if whisper.enabled:
        number_kwargs["url"] = whisper_url(settings, called, caller)
        number_kwargs["method"] = "GET"
    dial.number(rule.forward_to_number, **number_kwargs)

    logger.info(
        "inbound_call_forwarded",
        phone_number_id=number["id"],
        forward_to=rule.forward_to_number,
        forwarding_type=rule.forwarding_type.value,
        ring_timeout=timeout,
        whisper=whisper.enabled,
    )
    return response


async def _record_outbound(
    db: DatabaseClient,
    call_sid: str,
    number: dict[str, Any],
    from_: str,
    to: str,
) -> None:
    if not call_sid:
        return
    await db.upsert_call_log(
        {
            "call_sid": call_sid,
            "user_id": number["user_id"],
            "phone_number_id": number["id"],
            "from_number": from_,
            "to_number": to,
            "direction": CallDirection.OUTBOUND.value,
            "status": CallStatus.INITIATED.value,
        }
    )


async def route_browser_call(
    db: DatabaseClient,
    settings: Settings,
    call_sid: str,
    from_: str,
    to: str,
) -> VoiceResponse:
    """Dial a PSTN number for a Voice SDK client, using the owned number as caller ID."""
    number = await db.get_phone_number_by_number(from_) if from_ else None
    if number:
        try:
            await assert_can_place_call(db, number["user_id"], settings.billing_policy())
        except InsufficientBalanceError as e:
            logger.warning("outbound_call_blocked", user_id=number["user_id"], balance=str(e.balance))
            return _hangup_with(INSUFFICIENT_BALANCE)
        await _record_outbound(db, call_sid, number, from_, to)
    else:
        logger.warning("outbound_caller_not_owned", from_number=from_)

    response = VoiceResponse()
    dial = _recorded_dial(response, settings, caller_id=from_ or None)
    dial.number(to, **_number_callbacks(settings))
    logger.info("outbound_call_dialled", to=to, from_number=from_)
    return response


async def route_api_call(
    db: DatabaseClient,
    settings: Settings,
    call_sid: str,
    from_: str,
    to: str,
) -> VoiceResponse:
    """
    Dial a non-PSTN target for a REST-created call.

    The call is recorded against the owner of ``From`` so its recording
    can be billed; calls from numbers we do not own are dialled unrecorded.
    """
    if not to:
        return _hangup_with(CONNECT_ERROR)

    number = await db.get_phone_number_by_number(from_) if from_ else None
    if number:
        await _record_outbound(db, call_sid, number, from_, to)
    else:
        logger.warning("api_call_caller_not_owned", from_number=from_)

    response = VoiceResponse()
    dial = _recorded_dial(response, settings)
    dial.number(to, **_number_callbacks(settings))
    return response


def render_whisper_text(template: str, label: str, caller: str, max_chars: int) -> str:
    text = template.replace("{label}", label).replace("{caller}", caller)
    if len(text) > max_chars:
        text = text[: max_chars - 3] + "..."
    return text


async def build_whisper(
    db: DatabaseClient,
    settings: Settings,
    called: str,
    caller: str,
) -> VoiceResponse:
    """
    TwiML played to the callee before bridging.

    Says the configured text or plays the configured audio. Anything
    missing or failing falls back to the default announcement. Never
    returns an empty response.
    """
    caller_text = caller or "unknown caller"
    label = called or "your line"
    response = VoiceResponse()

    try:
        number = await db.get_phone_number_by_number(called) if called else None
        if number:
            label = number.get("friendly_name") or number["phone_number"]
        config = WhisperConfig.from_row(number) if number else WhisperConfig()
        voice = config.voice or settings.whisper_voice
        language = config.language or settings.whisper_language

        if config.enabled and config.mode is WhisperMode.PLAY:
            media = await _whisper_media_url(db, settings, config)
            if media:
                response.play(media)
            else:
                logger.warning("whisper_audio_unresolvable", called=called)
                response.say(
                    DEFAULT_WHISPER.format(label=label, caller=caller_text),
                    voice=voice,
                    language=language,
                )
        elif config.enabled and config.text:
            response.say(
                render_whisper_text(config.text, label, caller_text, settings.whisper_max_chars),
                voice=voice,
                language=language,
            )
        else:
            response.say(
                DEFAULT_WHISPER.format(label=label, caller=caller_text),
                voice=voice,
                language=language,
            )
    except Exception as e:
        logger.error("whisper_error", called=called, error=str(e), exc_info=True)
        response = VoiceResponse()
        response.say(
            DEFAULT_WHISPER.format(label=label, caller=caller_text),
            voice=settings.whisper_voice,
            language=settings.whisper_language,
        )

    response.pause(length=1)
    return response


async def _whisper_media_url(
    db: DatabaseClient,
    settings: Settings,
    config: WhisperConfig,
) -> str | None:
    if config.active_whisper_id:
        clip = await db.get_whisper_audio(config.active_whisper_id, with_bytes=False)
        if clip:
            return settings.callback_url(f"/api/twilio/whisper-audio/{clip['id']}")
    return config.media_url
