"""Tests for message normalization and timestamp helpers."""
from datetime import datetime, timedelta, timezone

import pytest

from lifestream.core.chat.models import (
    LOCAL_ID_PREFIX,
    ChatSnapshot,
    SessionStatus,
    client_message_id_of,
    conversation_id_for,
    format_timestamp,
    message_from_payload,
    new_local_id,
    parse_timestamp,
)


def test_conversation_id_for_request():
    assert conversation_id_for("42") == "request_42"


def test_local_ids_are_prefixed_and_unique():
    a, b = new_local_id(), new_local_id()
    assert a.startswith(LOCAL_ID_PREFIX)
    assert a != b


def test_camel_case_payload_is_normalized():
    msg = message_from_payload({
        "id": 17,
        "requestId": 42,
        "text": "Thank you!",
        "senderId": 7,
        "senderType": "requester",
        "senderName": "Bea",
        "timestamp": "2026-03-01T10:00:00.250Z",
        "readStatus": True,
    }, conversation_id="request_42")
    assert msg.id == "17"
    assert msg.request_id == "42"
    assert msg.sender_id == "7"
    assert msg.sender_role == "requester"
    assert msg.sender_name == "Bea"
    assert msg.conversation_id == "request_42"
    assert msg.read is True
    assert msg.local is False
    assert msg.timestamp == datetime(2026, 3, 1, 10, 0, 0, 250000, tzinfo=timezone.utc)


def test_snake_case_history_row_is_normalized():
    msg = message_from_payload({
        "id": "m1",
        "request_id": "42",
        "message": "See you soon",
        "sender_id": "u2",
        "sender_type": "donor",
        "created_at": "2026-03-01 10:00:00",
        "read_status": 0,
    })
    assert msg.text == "See you soon"
    assert msg.sender_role == "donor"
    assert msg.read is False
    assert msg.timestamp.tzinfo is not None


def test_payload_without_id_is_rejected():
    with pytest.raises(ValueError):
        message_from_payload({"text": "no id"})


def test_payload_with_bad_timestamp_is_rejected():
    with pytest.raises(ValueError):
        message_from_payload({"id": "m1", "timestamp": "yesterday"})


@pytest.mark.parametrize("value", [
    "2026-03-01T10:00:00Z",
    "2026-03-01T12:00:00+02:00",
    "2026-03-01T10:00:00",
    1772359200000,
    "1772359200000",
])
def test_parse_timestamp_formats(value):
    assert parse_timestamp(value) == datetime(2026, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def test_format_timestamp_uses_z_suffix_and_milliseconds():
    dt = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(dt) == "2026-03-01T10:00:00.123Z"


def test_client_message_id_of():
    assert client_message_id_of({"clientMessageId": "local-1"}) == "local-1"
    assert client_message_id_of({"id": "m1"}) is None


def test_default_snapshot_is_idle_and_empty():
    snapshot = ChatSnapshot()
    assert snapshot.status == SessionStatus.IDLE
    assert snapshot.messages == ()
    assert snapshot.error is None


def test_sender_blood_type_is_kept():
    camel = message_from_payload({"id": "m1", "senderBloodType": "O-"})
    snake = message_from_payload({"id": "m2", "sender_blood_type": "AB+"})
    assert camel.sender_blood_type == "O-"
    assert snake.sender_blood_type == "AB+"
    assert message_from_payload({"id": "m3"}).sender_blood_type is None
