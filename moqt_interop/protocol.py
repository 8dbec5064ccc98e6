"""
MOQT control-plane wire format
Based on draft-ietf-moq-transport-14

Wire format: QUIC variable-length integers (RFC 9000 §16)
Control messages: type (varint) + length (varint) + payload

Only the control messages the interop scenarios exchange are modelled here:
session setup, namespace announcement and track subscription.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MOQT_ALPN = "moq-00"
MOQT_VERSION = 0xFF00000E  # draft-14


class MsgType(IntEnum):
    SUBSCRIBE = 0x03
    SUBSCRIBE_OK = 0x04
    SUBSCRIBE_ERROR = 0x05
    ANNOUNCE = 0x06
    ANNOUNCE_OK = 0x07
    ANNOUNCE_ERROR = 0x08
    UNANNOUNCE = 0x09
    UNSUBSCRIBE = 0x0A
    SUBSCRIBE_DONE = 0x0B
    SUBSCRIBE_NAMESPACE = 0x16
    SUBSCRIBE_NAMESPACE_OK = 0x17
    CLIENT_SETUP = 0x40
    SERVER_SETUP = 0x41


class FilterType(IntEnum):
    LATEST_GROUP = 0x01
    LATEST_OBJECT = 0x02
    ABSOLUTE_START = 0x03
    ABSOLUTE_RANGE = 0x04


class GroupOrder(IntEnum):
    DEFAULT = 0x00
    ASCENDING = 0x01
    DESCENDING = 0x02


class SubscribeErrorCode(IntEnum):
    INTERNAL_ERROR = 0x00
    UNAUTHORIZED = 0x01
    TIMEOUT = 0x02
    NOT_SUPPORTED = 0x03
    TRACK_DOES_NOT_EXIST = 0x04


class SubscribeDoneStatus(IntEnum):
    UNSUBSCRIBED = 0x00
    INTERNAL_ERROR = 0x01
    UNAUTHORIZED = 0x02
    TRACK_ENDED = 0x03
    SUBSCRIPTION_ENDED = 0x04
    GOING_AWAY = 0x05
    EXPIRED = 0x06


# SUBSCRIBE_DONE statuses that end a subscription without an error
CLEAN_DONE_STATUSES = frozenset({
    SubscribeDoneStatus.UNSUBSCRIBED,
    SubscribeDoneStatus.TRACK_ENDED,
    SubscribeDoneStatus.SUBSCRIPTION_ENDED,
})


# ---------------------------------------------------------------------------
# Varint encoding/decoding (RFC 9000 §16)
# ---------------------------------------------------------------------------

def encode_varint(value: int) -> bytes:
    if value < 0x40:
        return bytes([value])
    elif value < 0x4000:
        return struct.pack(">H", value | 0x4000)
    elif value < 0x40000000:
        return struct.pack(">I", value | 0x80000000)
    elif value < 0x4000000000000000:
        return struct.pack(">Q", value | 0xC000000000000000)
    else:
        raise ValueError(f"Varint value too large: {value}")


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    if offset >= len(data):
        raise BufferError("Not enough data for varint")
    b = data[offset]
    prefix = b >> 6
    if prefix == 0:
        return b & 0x3F, offset + 1
    elif prefix == 1:
        if offset + 2 > len(data):
            raise BufferError("Need 2 bytes for varint")
        return struct.unpack_from(">H", data, offset)[0] & 0x3FFF, offset + 2
    elif prefix == 2:
        if offset + 4 > len(data):
            raise BufferError("Need 4 bytes for varint")
        return struct.unpack_from(">I", data, offset)[0] & 0x3FFFFFFF, offset + 4
    else:
        if offset + 8 > len(data):
            raise BufferError("Need 8 bytes for varint")
        return struct.unpack_from(">Q", data, offset)[0] & 0x3FFFFFFFFFFFFFFF, offset + 8


# ---------------------------------------------------------------------------
# String / tuple helpers
# ---------------------------------------------------------------------------

def encode_string(s: str) -> bytes:
    raw = s.encode("utf-8")
    return encode_varint(len(raw)) + raw


def decode_string(data: bytes, offset: int) -> tuple[str, int]:
    length, offset = decode_varint(data, offset)
    if offset + length > len(data):
        raise BufferError("Truncated string field")
    return bytes(data[offset: offset + length]).decode("utf-8"), offset + length


def encode_tuple(parts: list[str]) -> bytes:
    """Encode a MOQT Tuple (§ 2 of draft-14): count + length-prefixed strings."""
    out = encode_varint(len(parts))
    for p in parts:
        out += encode_string(p)
    return out


def decode_tuple(data: bytes, offset: int) -> tuple[list[str], int]:
    count, offset = decode_varint(data, offset)
    parts = []
    for _ in range(count):
        s, offset = decode_string(data, offset)
        parts.append(s)
    return parts, offset


def namespace_prefix_match(prefix: tuple[str, ...], namespace: tuple[str, ...]) -> bool:
    """True if ``namespace`` equals ``prefix`` or extends it element-wise."""
    return namespace[: len(prefix)] == prefix


# ---------------------------------------------------------------------------
# Control-message framing
# ---------------------------------------------------------------------------

def frame_message(msg_type: MsgType, payload: bytes) -> bytes:
    """Wrap payload in MOQT control-message framing: type + length + payload."""
    return encode_varint(msg_type) + encode_varint(len(payload)) + payload


def parse_control_message(data: bytes, offset: int = 0) -> tuple[MsgType, bytes, int]:
    """
    Parse one MOQT control message from a byte buffer.
    Returns (msg_type, payload_bytes, new_offset).
    Raises BufferError if the buffer is incomplete.
    """
    msg_type_val, offset = decode_varint(data, offset)
    length, offset = decode_varint(data, offset)
    if offset + length > len(data):
        raise BufferError("Incomplete MOQT message payload")
    payload = bytes(data[offset: offset + length])
    return MsgType(msg_type_val), payload, offset + length


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def _encode_role_param(role: int) -> bytes:
    # One parameter: ROLE (key=0x00), varint value
    return encode_varint(1) + encode_varint(0x00) + encode_varint(1) + encode_varint(role)


def _decode_role_param(payload: bytes, offset: int) -> int:
    role = 3
    param_count, offset = decode_varint(payload, offset)
    for _ in range(param_count):
        key, offset = decode_varint(payload, offset)
        length, offset = decode_varint(payload, offset)
        if key == 0x00:
            role, _ = decode_varint(payload, offset)
        offset += length
    return role


@dataclass
class ClientSetup:
    supported_versions: list[int]
    role: int = 3  # 0x01=publisher 0x02=subscriber 0x03=pub+sub

    def encode(self) -> bytes:
        payload = encode_varint(len(self.supported_versions))
        for v in self.supported_versions:
            payload += encode_varint(v)
        payload += _encode_role_param(self.role)
        return frame_message(MsgType.CLIENT_SETUP, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "ClientSetup":
        offset = 0
        count, offset = decode_varint(payload, offset)
        versions = []
        for _ in range(count):
            v, offset = decode_varint(payload, offset)
            versions.append(v)
        return cls(supported_versions=versions, role=_decode_role_param(payload, offset))


@dataclass
class ServerSetup:
    selected_version: int
    role: int = 3

    def encode(self) -> bytes:
        payload = encode_varint(self.selected_version) + _encode_role_param(self.role)
        return frame_message(MsgType.SERVER_SETUP, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "ServerSetup":
        version, offset = decode_varint(payload, 0)
        return cls(selected_version=version, role=_decode_role_param(payload, offset))


# ---------------------------------------------------------------------------
# Announcement
# ---------------------------------------------------------------------------

@dataclass
class Announce:
    namespace: list[str]

    def encode(self) -> bytes:
        payload = encode_tuple(self.namespace) + encode_varint(0)  # 0 params
        return frame_message(MsgType.ANNOUNCE, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "Announce":
        ns, _ = decode_tuple(payload, 0)
        return cls(namespace=ns)


@dataclass
class AnnounceOk:
    namespace: list[str]

    def encode(self) -> bytes:
        return frame_message(MsgType.ANNOUNCE_OK, encode_tuple(self.namespace))

    @classmethod
    def decode(cls, payload: bytes) -> "AnnounceOk":
        ns, _ = decode_tuple(payload, 0)
        return cls(namespace=ns)


@dataclass
class AnnounceError:
    namespace: list[str]
    error_code: int = 0
    reason: str = ""

    def encode(self) -> bytes:
        payload = (
            encode_tuple(self.namespace)
            + encode_varint(self.error_code)
            + encode_string(self.reason)
        )
        return frame_message(MsgType.ANNOUNCE_ERROR, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "AnnounceError":
        ns, offset = decode_tuple(payload, 0)
        code, offset = decode_varint(payload, offset)
        reason, _ = decode_string(payload, offset)
        return cls(namespace=ns, error_code=code, reason=reason)


@dataclass
class Unannounce:
    namespace: list[str]

    def encode(self) -> bytes:
        return frame_message(MsgType.UNANNOUNCE, encode_tuple(self.namespace))

    @classmethod
    def decode(cls, payload: bytes) -> "Unannounce":
        ns, _ = decode_tuple(payload, 0)
        return cls(namespace=ns)


@dataclass
class SubscribeNamespace:
    namespace_prefix: list[str]

    def encode(self) -> bytes:
        payload = encode_tuple(self.namespace_prefix) + encode_varint(0)
        return frame_message(MsgType.SUBSCRIBE_NAMESPACE, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "SubscribeNamespace":
        ns, _ = decode_tuple(payload, 0)
        return cls(namespace_prefix=ns)


@dataclass
class SubscribeNamespaceOk:
    namespace_prefix: list[str]

    def encode(self) -> bytes:
        return frame_message(MsgType.SUBSCRIBE_NAMESPACE_OK, encode_tuple(self.namespace_prefix))

    @classmethod
    def decode(cls, payload: bytes) -> "SubscribeNamespaceOk":
        ns, _ = decode_tuple(payload, 0)
        return cls(namespace_prefix=ns)


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

@dataclass
class Subscribe:
    subscribe_id: int
    track_alias: int
    namespace: list[str]
    track_name: str
    subscriber_priority: int = 128
    group_order: GroupOrder = GroupOrder.ASCENDING
    filter_type: FilterType = FilterType.LATEST_OBJECT

    def encode(self) -> bytes:
        payload = (
            encode_varint(self.subscribe_id)
            + encode_varint(self.track_alias)
            + encode_tuple(self.namespace)
            + encode_string(self.track_name)
            + encode_varint(self.subscriber_priority)
            + encode_varint(self.group_order)
            + encode_varint(self.filter_type)
            + encode_varint(0)  # 0 params
        )
        return frame_message(MsgType.SUBSCRIBE, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "Subscribe":
        offset = 0
        sub_id, offset = decode_varint(payload, offset)
        alias, offset = decode_varint(payload, offset)
        ns, offset = decode_tuple(payload, offset)
        name, offset = decode_string(payload, offset)
        priority, offset = decode_varint(payload, offset)
        order, offset = decode_varint(payload, offset)
        ftype, offset = decode_varint(payload, offset)
        return cls(
            subscribe_id=sub_id,
            track_alias=alias,
            namespace=ns,
            track_name=name,
            subscriber_priority=priority,
            group_order=GroupOrder(order),
            filter_type=FilterType(ftype),
        )


@dataclass
class SubscribeOk:
    subscribe_id: int
    expires: int = 0
    group_order: GroupOrder = GroupOrder.ASCENDING
    content_exists: bool = False

    def encode(self) -> bytes:
        payload = (
            encode_varint(self.subscribe_id)
            + encode_varint(self.expires)
            + encode_varint(self.group_order)
            + bytes([0x01 if self.content_exists else 0x00])
            + encode_varint(0)  # 0 params
        )
        return frame_message(MsgType.SUBSCRIBE_OK, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "SubscribeOk":
        offset = 0
        sub_id, offset = decode_varint(payload, offset)
        expires, offset = decode_varint(payload, offset)
        order, offset = decode_varint(payload, offset)
        content_exists = payload[offset] == 0x01
        return cls(
            subscribe_id=sub_id,
            expires=expires,
            group_order=GroupOrder(order),
            content_exists=content_exists,
        )


@dataclass
class SubscribeError:
    subscribe_id: int
    error_code: int = SubscribeErrorCode.INTERNAL_ERROR
    reason: str = ""
    track_alias: int = 0

    def encode(self) -> bytes:
        payload = (
            encode_varint(self.subscribe_id)
            + encode_varint(self.error_code)
            + encode_string(self.reason)
            + encode_varint(self.track_alias)
        )
        return frame_message(MsgType.SUBSCRIBE_ERROR, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "SubscribeError":
        sub_id, offset = decode_varint(payload, 0)
        code, offset = decode_varint(payload, offset)
        reason, offset = decode_string(payload, offset)
        alias, _ = decode_varint(payload, offset)
        return cls(subscribe_id=sub_id, error_code=code, reason=reason, track_alias=alias)


@dataclass
class Unsubscribe:
    subscribe_id: int

    def encode(self) -> bytes:
        return frame_message(MsgType.UNSUBSCRIBE, encode_varint(self.subscribe_id))

    @classmethod
    def decode(cls, payload: bytes) -> "Unsubscribe":
        sub_id, _ = decode_varint(payload, 0)
        return cls(subscribe_id=sub_id)


@dataclass
class SubscribeDone:
    subscribe_id: int
    status_code: int = SubscribeDoneStatus.UNSUBSCRIBED
    reason: str = ""

    def encode(self) -> bytes:
        payload = (
            encode_varint(self.subscribe_id)
            + encode_varint(self.status_code)
            + encode_string(self.reason)
        )
        return frame_message(MsgType.SUBSCRIBE_DONE, payload)

    @classmethod
    def decode(cls, payload: bytes) -> "SubscribeDone":
        sub_id, offset = decode_varint(payload, 0)
        status, offset = decode_varint(payload, offset)
        reason, _ = decode_string(payload, offset)
        return cls(subscribe_id=sub_id, status_code=status, reason=reason)
