"""
MOQT codec and origin model tests
Level 1 -- Unit tests: varint codec, control-message framing, the messages
                       the scenarios exchange, origin/broadcast semantics

Run with:
    python -m pytest moqt_interop/test_protocol.py -v
"""

import asyncio

import pytest

from moqt_interop.origin import Broadcast, Origin, Track, TrackError, split_path
from moqt_interop.protocol import (
    MOQT_VERSION,
    Announce,
    ClientSetup,
    MsgType,
    ServerSetup,
    Subscribe,
    SubscribeDone,
    SubscribeDoneStatus,
    SubscribeError,
    SubscribeErrorCode,
    Unannounce,
    decode_varint,
    encode_varint,
    frame_message,
    namespace_prefix_match,
    parse_control_message,
)


# ===========================================================================
# Wire format
# ===========================================================================

@pytest.mark.parametrize(
    "value, encoded",
    [
        (0, b"\x00"),
        (63, b"\x3f"),
        (64, b"\x40\x40"),
        (16383, b"\x7f\xff"),
        (16384, b"\x80\x00\x40\x00"),
        (1073741824, b"\xc0\x00\x00\x00\x40\x00\x00\x00"),
    ],
)
def test_varint_codec(value, encoded):
    assert encode_varint(value) == encoded
    assert decode_varint(encoded) == (value, len(encoded))


def test_varint_rejects_oversized_values():
    with pytest.raises(ValueError):
        encode_varint(0x4000000000000000)


def test_partial_message_raises_buffer_error():
    framed = Announce(namespace=["moq-test", "interop"]).encode()
    with pytest.raises(BufferError):
        parse_control_message(framed[:-1])


def test_two_messages_in_one_buffer():
    buf = ServerSetup(selected_version=MOQT_VERSION).encode() + Announce(namespace=["a"]).encode()
    first, _, offset = parse_control_message(buf)
    second, payload, end = parse_control_message(buf, offset)
    assert first == MsgType.SERVER_SETUP
    assert second == MsgType.ANNOUNCE
    assert Announce.decode(payload).namespace == ["a"]
    assert end == len(buf)


def test_unknown_message_type_is_a_value_error():
    with pytest.raises(ValueError):
        parse_control_message(frame_message(0x3F, b""))


def test_client_setup_offers_draft_version():
    msg_type, payload, _ = parse_control_message(ClientSetup(supported_versions=[MOQT_VERSION]).encode())
    assert msg_type == MsgType.CLIENT_SETUP
    setup = ClientSetup.decode(payload)
    assert setup.supported_versions == [MOQT_VERSION]
    assert setup.role == 3


def test_subscribe_carries_track_priority():
    sub = Subscribe(
        subscribe_id=4,
        track_alias=4,
        namespace=["moq-test", "interop"],
        track_name="test-track",
        subscriber_priority=0,
    )
    _, payload, _ = parse_control_message(sub.encode())
    decoded = Subscribe.decode(payload)
    assert decoded.namespace == ["moq-test", "interop"]
    assert decoded.track_name == "test-track"
    assert decoded.subscriber_priority == 0


def test_subscribe_error_and_done():
    _, payload, _ = parse_control_message(SubscribeError(
        subscribe_id=2,
        error_code=SubscribeErrorCode.TRACK_DOES_NOT_EXIST,
        reason="track not found",
    ).encode())
    err = SubscribeError.decode(payload)
    assert (err.subscribe_id, err.error_code, err.reason) == (2, 4, "track not found")

    _, payload, _ = parse_control_message(SubscribeDone(
        subscribe_id=2, status_code=SubscribeDoneStatus.TRACK_ENDED, reason="broadcast closed",
    ).encode())
    done = SubscribeDone.decode(payload)
    assert done.status_code == SubscribeDoneStatus.TRACK_ENDED
    assert done.reason == "broadcast closed"


def test_unannounce_type():
    msg_type, payload, _ = parse_control_message(Unannounce(namespace=["moq-test", "interop"]).encode())
    assert msg_type == MsgType.UNANNOUNCE
    assert Unannounce.decode(payload).namespace == ["moq-test", "interop"]


def test_namespace_prefix_match():
    assert namespace_prefix_match((), ("moq-test", "interop"))
    assert namespace_prefix_match(("moq-test",), ("moq-test", "interop"))
    assert not namespace_prefix_match(("moq-test", "interop"), ("moq-test",))
    assert not namespace_prefix_match(("other",), ("moq-test",))


# ===========================================================================
# Origin / Broadcast / Track
# ===========================================================================

def test_split_path_ignores_empty_segments():
    assert split_path("moq-test/interop") == ("moq-test", "interop")
    assert split_path("/moq-test//interop/") == ("moq-test", "interop")


def test_consumer_replays_then_follows_live_changes():
    async def scenario():
        origin = Origin()
        first = Broadcast()
        origin.publish_broadcast("moq-test/interop", first)

        consumer = origin.consume()
        second = Broadcast()
        origin.publish_broadcast("other", second)
        first.close()

        return [await consumer.announced() for _ in range(3)], first, second

    events, first, second = asyncio.run(scenario())
    assert [(e.path, e.broadcast) for e in events] == [
        ("moq-test/interop", first),
        ("other", second),
        ("moq-test/interop", None),
    ]
    assert not events[2].announced


def test_each_consumer_restarts_from_current_state():
    async def scenario():
        origin = Origin()
        broadcast = Broadcast()
        origin.publish_broadcast("moq-test/interop", broadcast)
        a = await origin.consume().announced()
        b = await origin.consume().announced()
        return a, b

    a, b = asyncio.run(scenario())
    assert a == b
    assert a.announced


def test_closed_origin_ends_consumers():
    async def scenario():
        origin = Origin()
        consumer = origin.consume()
        origin.close()
        return await consumer.announced(), await consumer.announced()

    assert asyncio.run(scenario()) == (None, None)


def test_broadcast_close_is_idempotent():
    origin = Origin()
    broadcast = Broadcast()
    calls = []
    broadcast.on_close(lambda: calls.append(1))
    origin.publish_broadcast("moq-test/interop", broadcast)

    broadcast.close()
    broadcast.close()
    origin.unpublish("moq-test/interop")

    assert calls == [1]
    assert origin.get("moq-test/interop") is None


def test_subscribe_to_known_track_stays_open_until_broadcast_closes():
    async def scenario():
        broadcast = Broadcast()
        track = broadcast.create_track(Track("test-track", 0))
        sub = broadcast.subscribe_track(track)
        assert sub.accepted
        assert not sub.is_closed
        broadcast.close()
        await sub.closed()  # clean close does not raise
        return sub

    assert asyncio.run(scenario()).is_closed


def test_subscribe_to_unknown_track_fails():
    async def scenario():
        sub = Broadcast().subscribe_track(Track("test-track", 0))
        await sub.closed()

    with pytest.raises(TrackError, match="track not found: test-track"):
        asyncio.run(scenario())


def test_track_identity_includes_priority():
    broadcast = Broadcast()
    broadcast.create_track(Track("test-track", 0))
    assert broadcast.subscribe_track(Track("test-track", 5)).is_closed
