"""Tests for the RPC envelope codec."""

import json

import pytest

from taskrelay.application.rpc.envelope import (
    SCHEMA_VERSION,
    Direction,
    Envelope,
    RpcErrorBody,
    decode_envelope,
    encode_envelope,
)
from taskrelay.domain.errors import ConflictError, InvalidRequestError


class TestEnvelopeCodec:
    """Encoding, decoding and malformed frames"""

    def test_request_round_trip(self):
        envelope = Envelope.request("c-1", "task.start", {"prompt": "hi", "metadata": {"n": [1, 2]}})

        decoded = decode_envelope(encode_envelope(envelope))

        assert decoded == envelope
        assert decoded.version == SCHEMA_VERSION
        assert decoded.direction == Direction.REQUEST

    def test_stream_item_carries_its_sequence(self):
        frame = json.loads(encode_envelope(Envelope.stream_item("c-2", 3, {"i": 3})))

        assert frame["direction"] == "stream_item"
        assert frame["seq"] == 3
        assert frame["payload"] == {"i": 3}

    def test_error_body_from_exceptions(self):
        known = RpcErrorBody.from_exception(ConflictError("busy", {"task_id": "t1"}))
        assert known.code == "conflict"
        assert known.data == {"task_id": "t1"}

        unknown = RpcErrorBody.from_exception(RuntimeError("boom"))
        assert unknown.code == "internal"
        assert "boom" in unknown.message

    def test_terminal_directions(self):
        assert {d for d in Direction if d.is_terminal} == {
            Direction.UNARY_RESPONSE, Direction.STREAM_END, Direction.ERROR
        }

    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"direction": "request", "method": "x"}),
        json.dumps({"call_id": "", "direction": "request", "method": "x"}),
        json.dumps({"call_id": "c", "direction": "sideways"}),
        json.dumps({"call_id": "c", "direction": "request"}),
        json.dumps({"version": 99, "call_id": "c", "direction": "request", "method": "x"}),
    ])
    def test_malformed_frames(self, raw):
        with pytest.raises(InvalidRequestError):
            decode_envelope(raw)
