from decimal import Decimal


def seed_call(db, free_minutes=10, balance="10.00", sid="CA100"):
    user = db.add_user(free_minutes_remaining=free_minutes, balance=balance)
    number = db.add_number(user["id"], "+15550000001")
    db.call_logs[sid] = {
        "call_sid": sid,
        "user_id": user["id"],
        "phone_number_id": number["id"],
        "direction": "inbound",
        "status": "initiated",
        "is_billed": False,
        "created_at": "2026-10-01T00:00:00+00:00",
    }
    return user, number


def status(client, **fields):
    return client.post("/api/twilio/status-callback", data=fields)


def recording(client, sid="CA100", rec="RE100", duration="900", state="completed"):
    return client.post(
        "/api/twilio/recording-callback",
        data={
            "CallSid": sid,
            "RecordingSid": rec,
            "RecordingUrl": f"https://api.twilio.com/Recordings/{rec}",
            "RecordingDuration": duration,
            "RecordingChannels": "2",
            "RecordingStatus": state,
        },
    )


def test_status_progression_and_terminal_fields(client, db):
    seed_call(db)

    assert status(client, CallSid="CA100", CallStatus="ringing").json() == {"status": "received"}
    assert db.call_logs["CA100"]["status"] == "ringing"

    status(client, CallSid="CA100", CallStatus="in-progress")
    assert db.call_logs["CA100"]["start_time"]

    status(client, CallSid="CA100", CallStatus="completed", CallDuration="42", CallPrice="-0.0085", PriceUnit="USD")
    record = db.call_logs["CA100"]
    assert record["status"] == "completed"
    assert record["duration"] == 42
    assert Decimal(record["price"]) == Decimal("-0.0085")
    assert record["price_unit"] == "USD"
    assert record["end_time"]


def test_late_ringing_does_not_regress_terminal_status(client, db):
    seed_call(db)

    status(client, CallSid="CA100", CallStatus="completed", CallDuration="30")
    status(client, CallSid="CA100", CallStatus="ringing")

    assert db.call_logs["CA100"]["status"] == "completed"
    assert db.call_logs["CA100"]["duration"] == 30


def test_replayed_status_callback_is_idempotent(client, db):
    seed_call(db)

    status(client, CallSid="CA100", CallStatus="completed", CallDuration="30")
    first = dict(db.call_logs["CA100"])
    status(client, CallSid="CA100", CallStatus="completed", CallDuration="30")

    assert db.call_logs["CA100"] == first


def test_child_leg_inherits_owner_from_parent(client, db):
    user, number = seed_call(db)

    status(client, CallSid="CA101", ParentCallSid="CA100", CallStatus="ringing", To="+15550000002")

    child = db.call_logs["CA101"]
    assert child["user_id"] == user["id"]
    assert child["phone_number_id"] == number["id"]
    assert child["parent_call_sid"] == "CA100"


def test_unknown_call_is_ignored(client, db):
    response = status(client, CallSid="CA999", CallStatus="ringing", To="+15558888888")

    assert response.status_code == 200
    assert db.call_logs == {}


def test_recording_attached_and_billed_once(client, db):
    user, _ = seed_call(db, free_minutes=10, balance="10.00")

    assert recording(client).status_code == 200
    assert recording(client).status_code == 200

    record = db.call_logs["CA100"]
    assert record["recording_sid"] == "RE100"
    assert record["recording_duration"] == 900
    assert record["recording_channels"] == 2
    assert record["is_billed"] is True
    assert Decimal(record["billed_amount"]) == Decimal("0.0425")

    counters = db.users[user["id"]]
    assert counters["free_minutes_remaining"] == 0
    assert Decimal(counters["balance"]) == Decimal("9.9575")
    assert list(db.recording_charges) == ["RE100"]


def test_in_progress_recording_is_not_billed(client, db):
    user, _ = seed_call(db)

    recording(client, state="in-progress")

    assert db.recording_charges == {}
    assert db.users[user["id"]]["free_minutes_remaining"] == 10


def test_recording_for_unknown_call_is_ignored(client, db):
    response = recording(client, sid="CA404")

    assert response.status_code == 200
    assert db.recording_charges == {}


def test_recording_billed_on_replay_after_storage_failure(client, db, monkeypatch):
    user, _ = seed_call(db, free_minutes=10, balance="10.00")
    apply_charge = db.apply_recording_charge
    failures = []

    async def flaky_apply(*args, **kwargs):
        if not failures:
            failures.append(True)
            raise RuntimeError("connection reset")
        return await apply_charge(*args, **kwargs)

    monkeypatch.setattr(db, "apply_recording_charge", flaky_apply)

    assert recording(client).json() == {"status": "received"}
    assert db.recording_charges == {}
    assert Decimal(db.users[user["id"]]["balance"]) == Decimal("10.00")

    assert recording(client).status_code == 200
    assert list(db.recording_charges) == ["RE100"]
    assert Decimal(db.users[user["id"]]["balance"]) == Decimal("9.9575")
    assert db.call_logs["CA100"]["is_billed"] is True
