import xml.etree.ElementTree as ET
from urllib.parse import parse_qs, urlsplit

from callflow.db import DatabaseClient, get_db


def twiml(response):
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    return ET.fromstring(response.content)


def inbound(client, to="+15550000001", caller="+15559999999", sid="CA100"):
    return client.post(
        "/api/twilio/twiml",
        data={
            "CallSid": sid,
            "From": caller,
            "To": to,
            "Called": to,
            "Caller": caller,
            "Direction": "inbound",
        },
    )


def setup_line(db, whisper=True, **rule_fields):
    user = db.add_user(free_minutes_remaining=10)
    number = db.add_number(
        user["id"],
        "+15550000001",
        friendly_name="Main Line",
        whisper_enabled=whisper,
        whisper_type="say",
        whisper_text="Call for {label} from {caller}",
    )
    rule = db.add_rule(user["id"], number["id"], "+15550000002", **rule_fields)
    return user, number, rule


def test_forwarded_call_with_whisper_end_to_end(client, db):
    setup_line(db, ring_timeout=20)

    root = twiml(inbound(client))
    dial = root.find("Dial")
    assert dial is not None
    assert dial.get("callerId") == "+15559999999"
    assert dial.get("answerOnBridge") == "true"
    assert dial.get("timeout") == "20"
    assert dial.get("record") == "record-from-answer-dual"
    assert dial.get("recordingStatusCallback") == "https://calls.example.com/api/twilio/recording-callback"

    number = dial.find("Number")
    assert number.text == "+15550000002"
    assert number.get("method") == "GET"
    assert number.get("statusCallbackEvent") == "initiated ringing answered completed"

    url = urlsplit(number.get("url"))
    assert url.path == "/api/twilio/whisper"
    query = parse_qs(url.query)
    assert query["called"] == ["+15550000001"]
    assert query["caller"] == ["+15559999999"]

    whisper = twiml(client.get(f"{url.path}?{url.query}"))
    say = whisper.find("Say")
    assert say.text == "Call for Main Line from +15559999999"
    assert say.get("voice") == "alice"
    assert say.get("language") == "en-US"
    assert whisper.find("Pause").get("length") == "1"


def test_forwarded_call_creates_inbound_call_record(client, db):
    user, number, _ = setup_line(db)

    inbound(client, sid="CA200")

    record = db.call_logs["CA200"]
    assert record["user_id"] == user["id"]
    assert record["phone_number_id"] == number["id"]
    assert record["direction"] == "inbound"
    assert record["status"] == "initiated"
    assert record["from_number"] == "+15559999999"


def test_whisper_disabled_dials_without_url(client, db):
    setup_line(db, whisper=False)

    number = twiml(inbound(client)).find("Dial/Number")
    assert number.text == "+15550000002"
    assert number.get("url") is None


def test_ring_timeout_passes_through(client, db):
    setup_line(db, ring_timeout=45, forwarding_type="no_answer")

    assert twiml(inbound(client)).find("Dial").get("timeout") == "45"


def test_missing_ring_timeout_uses_default(client, db):
    setup_line(db, ring_timeout=None)

    assert twiml(inbound(client)).find("Dial").get("timeout") == "20"


def test_unknown_number_is_not_in_service(client, db):
    root = twiml(inbound(client, to="+15551234567"))

    assert root.find("Dial") is None
    assert "not in service" in root.find("Say").text
    assert root.find("Hangup") is not None


def test_inactive_number_is_not_in_service(client, db):
    _, number, _ = setup_line(db)
    db.numbers[number["id"]]["is_active"] = False

    root = twiml(inbound(client))
    assert root.find("Dial") is None
    assert "not in service" in root.find("Say").text


def test_disabled_rule_plays_unavailable_message(client, db):
    setup_line(db, is_active=False)

    root = twiml(inbound(client))
    assert root.find("Dial") is None
    assert "No one is available" in root.find("Say").text
    assert root.find("Hangup") is not None
    assert db.call_logs == {}


def test_number_without_rule_plays_unavailable_message(client, db):
    user = db.add_user()
    db.add_number(user["id"], "+15550000001")

    root = twiml(inbound(client))
    assert root.find("Dial") is None
    assert "No one is available" in root.find("Say").text


def test_storage_failure_degrades_to_apology(client, db, monkeypatch):
    async def boom(phone_number):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(db, "get_phone_number_by_number", boom)

    root = twiml(inbound(client))
    assert "error processing your call" in root.find("Say").text
    assert root.find("Hangup") is not None


def test_browser_call_dials_from_owned_number(client, db):
    user = db.add_user(free_minutes_remaining=5)
    db.add_number(user["id"], "+15550000001")

    root = twiml(
        client.post(
            "/api/twilio/twiml",
            data={
                "CallSid": "CA300",
                "From": "+15550000001",
                "To": "+15557654321",
                "Caller": "client:user_1",
                "Direction": "inbound",
            },
        )
    )

    dial = root.find("Dial")
    assert dial.get("callerId") == "+15550000001"
    assert dial.find("Number").text == "+15557654321"
    assert db.call_logs["CA300"]["direction"] == "outbound"


def test_browser_call_blocked_without_balance(client, db):
    user = db.add_user(free_minutes_remaining=0, balance="1.00")
    db.add_number(user["id"], "+15550000001")

    root = twiml(
        client.post(
            "/api/twilio/twiml",
            data={"CallSid": "CA301", "From": "+15550000001", "To": "+15557654321", "Direction": "outbound"},
        )
    )

    assert root.find("Dial") is None
    assert "Insufficient balance" in root.find("Say").text
    assert "CA301" not in db.call_logs


def test_unreachable_database_still_answers_with_twiml(client, monkeypatch):
    def refuse(url, key):
        raise RuntimeError("Invalid URL")

    monkeypatch.setattr("callflow.db.create_client", refuse)
    monkeypatch.setattr(DatabaseClient, "_instance", None)
    client.app.dependency_overrides.pop(get_db)

    root = twiml(inbound(client))
    assert "error processing your call" in root.find("Say").text
    assert root.find("Hangup") is not None

    whisper = twiml(client.get("/api/twilio/whisper", params={"called": "+15550000001", "caller": "+15559999999"}))
    assert whisper.find("Say").text == "Incoming call on +15550000001. Caller +15559999999."

    status = client.post("/api/twilio/status-callback", data={"CallSid": "CA100", "CallStatus": "ringing"})
    assert status.json() == {"status": "received"}


def test_rest_created_calls_are_recorded_for_billing(client, db):
    user = db.add_user(free_minutes_remaining=0, balance="10.00")
    db.add_number(user["id"], "+15550000001")

    pstn = {"CallSid": "CA400", "From": "+15550000001", "To": "+15557654321", "Direction": "outbound-api"}
    sip = {"CallSid": "CA401", "From": "+15550000001", "To": "sip:desk@pbx.example.com", "Direction": "outbound-api"}

    assert twiml(client.post("/api/twilio/twiml", data=pstn)).find("Dial") is not None
    assert twiml(client.post("/api/twilio/twiml", data=sip)).find("Dial") is not None
    assert db.call_logs["CA400"]["direction"] == "outbound"
    assert db.call_logs["CA401"]["user_id"] == user["id"]

    client.post(
        "/api/twilio/recording-callback",
        data={"CallSid": "CA401", "RecordingSid": "RE401", "RecordingDuration": "60", "RecordingStatus": "completed"},
    )
    assert db.call_logs["CA401"]["is_billed"] is True
    assert db.users[user["id"]]["balance"] == "9.9915"


def test_rest_created_call_from_unowned_number_is_not_recorded(client, db):
    data = {"CallSid": "CA402", "From": "+15553334444", "To": "sip:desk@pbx.example.com", "Direction": "outbound-api"}

    assert twiml(client.post("/api/twilio/twiml", data=data)).find("Dial/Number").text == "sip:desk@pbx.example.com"
    assert db.call_logs == {}
