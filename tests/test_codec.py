import json

import pytest

from pushlink import codec
from pushlink.codec import DownstreamMessage, UpstreamMessage
from pushlink.errors import ProtocolError


def test_downstream_omits_unset_fields_and_false_flags():
    message = DownstreamMessage(
        to="tok",
        message_id="m1",
        data={"k": "v"},
        time_to_live=0,
        content_available=False,
        dry_run=True,
    )
    assert message.to_dict() == {
        "to": "tok",
        "message_id": "m1",
        "data": {"k": "v"},
        "time_to_live": 0,
        "dry_run": True,
    }


def test_upstream_from_attrs_stringifies_data():
    message = UpstreamMessage.from_attrs(
        {"from": "u1", "category": "com.example", "message_id": "up-1", "data": {"n": 1}}
    )
    assert message.sender == "u1"
    assert message.category == "com.example"
    assert message.data == {"n": "1"}


def test_upstream_rejects_non_object_data():
    with pytest.raises(ProtocolError):
        UpstreamMessage.from_attrs({"from": "u1", "data": "nope"})


def test_parse_frame_reads_message_type():
    frame = codec.parse_frame('{"message_type": "ack", "message_id": "m1"}')
    assert frame.message_type == "ack"
    assert frame.message_id == "m1"


def test_parse_frame_rejects_garbage():
    with pytest.raises(ProtocolError) as exc_info:
        codec.parse_frame("<xml/>")
    assert exc_info.value.payload_preview == "<xml/>"


def test_reply_to_defaults_to_sender():
    upstream = UpstreamMessage(sender="u1", category=None, message_id="up-1", data={"a": "b"})
    assert json.loads(codec.reply_to(upstream, "m2")) == {
        "to": "u1",
        "message_id": "m2",
        "data": {"a": "b"},
    }
