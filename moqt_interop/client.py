"""
MOQT session client
The session capability the interop scenarios drive.

    client  = Client(ClientConfig(tls_disable_verify=True))
    session = await client.connect("moqt://localhost:4443", publish=origin)
    ...
    await session.close(CloseCode.CANCEL)

Flow for a publishing session:
  1. QUIC connect (ALPN "moq-00") -> CLIENT_SETUP / SERVER_SETUP
  2. ANNOUNCE every broadcast in the publish origin, UNANNOUNCE when a
     broadcast is closed
  3. Answer relay SUBSCRIBEs with SUBSCRIBE_OK for known tracks,
     SUBSCRIBE_ERROR otherwise

Flow for a consuming session:
  1. QUIC connect -> CLIENT_SETUP / SERVER_SETUP
  2. SUBSCRIBE_NAMESPACE [] so the relay forwards every ANNOUNCE
  3. Each ANNOUNCE publishes a RemoteBroadcast into the consume origin;
     subscribing to one of its tracks sends SUBSCRIBE through this session
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from enum import IntEnum
from functools import partial
from typing import Optional
from urllib.parse import urlsplit

from aioquic.asyncio import connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import (
    ConnectionTerminated,
    HandshakeCompleted,
    QuicEvent,
    StreamDataReceived,
)

from .origin import (
    Broadcast,
    Origin,
    OriginConsumer,
    Track,
    TrackError,
    TrackSubscription,
    join_path,
    split_path,
)
from .protocol import (
    CLEAN_DONE_STATUSES,
    MOQT_ALPN,
    MOQT_VERSION,
    MsgType,
    Announce,
    AnnounceError,
    AnnounceOk,
    ClientSetup,
    ServerSetup,
    Subscribe,
    SubscribeDone,
    SubscribeDoneStatus,
    SubscribeError,
    SubscribeErrorCode,
    SubscribeNamespace,
    SubscribeNamespaceOk,
    SubscribeOk,
    Unannounce,
    parse_control_message,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4443
# How long close() waits for the peer to acknowledge CONNECTION_CLOSE
CLOSE_GRACE = 0.2

# Connection teardown tasks that outlive Session.close()
_background: set[asyncio.Task] = set()


class ConnectFailure(Exception):
    """The transport or MOQT handshake could not be established."""


class CloseCode(IntEnum):
    CANCEL = 0x0
    INTERNAL_ERROR = 0x1
    UNAUTHORIZED = 0x2
    PROTOCOL_VIOLATION = 0x3


def parse_relay_url(url: str) -> tuple[str, int]:
    """
    'moqt://relay:4443' -> ('relay', 4443).  https:// and http:// are accepted
    and dialled the same way; a missing port means 443 for https, 4443 otherwise.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("moqt", "https", "http") or not parts.hostname:
        raise ValueError(f"unsupported relay URL: {url!r}")
    port = parts.port
    if port is None:
        port = 443 if parts.scheme == "https" else DEFAULT_PORT
    return parts.hostname, port


@dataclass(frozen=True)
class ClientConfig:
    tls_disable_verify: bool = False
    ca_cert: Optional[str] = None
    alpn: str = MOQT_ALPN

    def quic_configuration(self, server_name: str) -> QuicConfiguration:
        config = QuicConfiguration(
            alpn_protocols=[self.alpn],
            is_client=True,
            server_name=server_name,
        )
        if self.tls_disable_verify:
            # ⚠️ Only for relays with self-signed test certificates
            config.verify_mode = ssl.CERT_NONE
        elif self.ca_cert:
            # Trust only the given CA, e.g. a relay's self-signed dev cert
            config.cafile = self.ca_cert
        return config


# ---------------------------------------------------------------------------
# Low-level QUIC / MOQT protocol
# ---------------------------------------------------------------------------

class RemoteBroadcast(Broadcast):
    """A broadcast announced by the relay; tracks are fetched on subscribe."""

    def __init__(self, protocol: "MOQTClientProtocol", namespace: tuple[str, ...]):
        super().__init__()
        self._protocol = protocol
        self._namespace = namespace

    def subscribe_track(self, track: Track) -> TrackSubscription:
        if self.closed:
            sub = TrackSubscription(track)
            sub.finish(TrackError("broadcast closed"))
            return sub
        return self._protocol.subscribe(self._namespace, track)


class MOQTClientProtocol(QuicConnectionProtocol):
    """
    MOQT client-side protocol running over a single QUIC connection.

    Control messages travel on the first client-initiated bidirectional
    stream (id 0).
    """

    def __init__(
        self,
        quic,
        stream_handler=None,
        *,
        publish: Optional[Origin] = None,
        consume: Optional[Origin] = None,
    ):
        super().__init__(quic, stream_handler)
        self._publish = publish
        self._consume = consume

        self._setup_event: asyncio.Event = asyncio.Event()
        self._setup_error: Optional[Exception] = None
        self._ctrl_stream: int = 0
        self._ctrl_buf: bytes = b""

        # Broadcasts this session announces: namespace -> Broadcast
        self._announced: dict[tuple[str, ...], Broadcast] = {}
        # Relay subscriptions we serve: subscribe_id -> namespace
        self._served: dict[int, tuple[str, ...]] = {}
        # Our outgoing subscriptions: subscribe_id -> handle
        self._subs: dict[int, TrackSubscription] = {}
        self._next_sub_id: int = 0

        self._announce_task: Optional[asyncio.Task] = None

    @property
    def connection_id(self) -> str:
        return self._quic.host_cid.hex()

    # ------------------------------------------------------------------
    # aioquic event dispatch
    # ------------------------------------------------------------------

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, HandshakeCompleted):
            self._ctrl_stream = self._quic.get_next_available_stream_id()
            self._send(ClientSetup(supported_versions=[MOQT_VERSION]).encode())

        elif isinstance(event, StreamDataReceived):
            if event.stream_id == self._ctrl_stream:
                self._on_control_data(event.data)

        elif isinstance(event, ConnectionTerminated):
            logger.debug(
                "MOQT client: connection terminated (code=0x%X, reason=%r)",
                event.error_code, event.reason_phrase,
            )
            self._on_terminated(event)

    def _send(self, data: bytes) -> None:
        self._quic.send_stream_data(self._ctrl_stream, data)
        self.transmit()

    # ------------------------------------------------------------------
    # Control stream
    # ------------------------------------------------------------------

    def _on_control_data(self, data: bytes) -> None:
        self._ctrl_buf += data
        while self._ctrl_buf:
            try:
                msg_type, payload, consumed = parse_control_message(self._ctrl_buf)
            except BufferError:
                break  # wait for more bytes
            except ValueError as exc:
                logger.error("MOQT client: unknown control message: %s", exc)
                self._ctrl_buf = b""
                break
            self._ctrl_buf = self._ctrl_buf[consumed:]
            try:
                self._handle_control(msg_type, payload)
            except (BufferError, ValueError) as exc:
                logger.error("MOQT client: malformed %s: %s", msg_type.name, exc)

    def _handle_control(self, msg_type: MsgType, payload: bytes) -> None:
        logger.debug("MOQT client <- %s", msg_type.name)

        if msg_type == MsgType.SERVER_SETUP:
            ss = ServerSetup.decode(payload)
            logger.debug("MOQT client: setup complete (version=0x%X)", ss.selected_version)
            self._setup_event.set()
            self._after_setup()

        elif msg_type == MsgType.ANNOUNCE:
            ann = Announce.decode(payload)
            self._send(AnnounceOk(namespace=ann.namespace).encode())
            if self._consume is not None:
                namespace = tuple(ann.namespace)
                self._consume.publish_broadcast(
                    join_path(namespace), RemoteBroadcast(self, namespace),
                )

        elif msg_type == MsgType.UNANNOUNCE:
            ua = Unannounce.decode(payload)
            if self._consume is not None:
                self._consume.unpublish(join_path(ua.namespace))

        elif msg_type == MsgType.ANNOUNCE_OK:
            ack = AnnounceOk.decode(payload)
            logger.debug("MOQT client: ANNOUNCE_OK for %s", ack.namespace)

        elif msg_type == MsgType.ANNOUNCE_ERROR:
            err = AnnounceError.decode(payload)
            logger.warning(
                "MOQT client: ANNOUNCE_ERROR for %s code=%d reason=%r",
                err.namespace, err.error_code, err.reason,
            )

        elif msg_type == MsgType.SUBSCRIBE:
            self._handle_subscribe(Subscribe.decode(payload))

        elif msg_type == MsgType.SUBSCRIBE_OK:
            sok = SubscribeOk.decode(payload)
            sub = self._subs.get(sok.subscribe_id)
            if sub:
                sub.accept()

        elif msg_type == MsgType.SUBSCRIBE_ERROR:
            serr = SubscribeError.decode(payload)
            sub = self._subs.pop(serr.subscribe_id, None)
            if sub:
                sub.finish(TrackError(serr.reason or "subscribe rejected", serr.error_code))

        elif msg_type == MsgType.SUBSCRIBE_DONE:
            sd = SubscribeDone.decode(payload)
            sub = self._subs.pop(sd.subscribe_id, None)
            if sub:
                if sd.status_code in CLEAN_DONE_STATUSES:
                    sub.finish()
                else:
                    sub.finish(TrackError(sd.reason or "subscription ended", sd.status_code))

        elif msg_type == MsgType.SUBSCRIBE_NAMESPACE_OK:
            snok = SubscribeNamespaceOk.decode(payload)
            logger.debug("MOQT client: SUBSCRIBE_NAMESPACE_OK %s", snok.namespace_prefix)

    def _after_setup(self) -> None:
        if self._publish is not None:
            self._announce_task = asyncio.ensure_future(
                self._announce_loop(self._publish.consume())
            )
        if self._consume is not None:
            self._send(SubscribeNamespace(namespace_prefix=[]).encode())

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _announce_loop(self, consumer: OriginConsumer) -> None:
        try:
            while True:
                announcement = await consumer.announced()
                if announcement is None:
                    return
                namespace = split_path(announcement.path)
                if announcement.broadcast is not None:
                    self._announced[namespace] = announcement.broadcast
                    self._send(Announce(namespace=list(namespace)).encode())
                    logger.debug("MOQT client: ANNOUNCE %s", announcement.path)
                elif self._announced.pop(namespace, None) is not None:
                    self._end_served(namespace)
                    self._send(Unannounce(namespace=list(namespace)).encode())
                    logger.debug("MOQT client: UNANNOUNCE %s", announcement.path)
        finally:
            consumer.close()

    def _handle_subscribe(self, sub: Subscribe) -> None:
        namespace = tuple(sub.namespace)
        broadcast = self._announced.get(namespace)
        if broadcast is None or broadcast.get_track(sub.track_name) is None:
            self._send(SubscribeError(
                subscribe_id=sub.subscribe_id,
                error_code=SubscribeErrorCode.TRACK_DOES_NOT_EXIST,
                reason="track not found",
                track_alias=sub.track_alias,
            ).encode())
            logger.debug(
                "MOQT client: rejected SUBSCRIBE %s/%s", sub.namespace, sub.track_name,
            )
            return
        self._served[sub.subscribe_id] = namespace
        self._send(SubscribeOk(subscribe_id=sub.subscribe_id).encode())
        logger.debug(
            "MOQT client: accepted SUBSCRIBE sub_id=%d for %s/%s",
            sub.subscribe_id, sub.namespace, sub.track_name,
        )

    def _end_served(self, namespace: tuple[str, ...]) -> None:
        for sub_id, ns in list(self._served.items()):
            if ns == namespace:
                del self._served[sub_id]
                self._send(SubscribeDone(
                    subscribe_id=sub_id,
                    status_code=SubscribeDoneStatus.TRACK_ENDED,
                    reason="broadcast closed",
                ).encode())

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def subscribe(self, namespace: tuple[str, ...], track: Track) -> TrackSubscription:
        handle = TrackSubscription(track)
        if self._setup_error is not None:
            handle.finish(TrackError("session closed"))
            return handle
        sub_id = self._next_sub_id
        self._next_sub_id += 1
        self._subs[sub_id] = handle
        self._send(Subscribe(
            subscribe_id=sub_id,
            track_alias=sub_id,
            namespace=list(namespace),
            track_name=track.name,
            subscriber_priority=track.priority,
        ).encode())
        logger.debug("MOQT client: SUBSCRIBE %s/%s sub_id=%d", namespace, track.name, sub_id)
        return handle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_setup(self) -> None:
        await self._setup_event.wait()
        if self._setup_error is not None:
            raise self._setup_error

    def _on_terminated(self, event: ConnectionTerminated) -> None:
        reason = event.reason_phrase or f"code 0x{event.error_code:X}"
        if self._setup_error is None:
            self._setup_error = ConnectFailure(f"connection closed: {reason}")
        self._setup_event.set()

        if self._announce_task is not None:
            self._announce_task.cancel()
        subs, self._subs = self._subs, {}
        for sub in subs.values():
            sub.finish(TrackError(f"session closed: {reason}"))
        if self._consume is not None:
            for path in list(self._consume.broadcasts()):
                broadcast = self._consume.get(path)
                if isinstance(broadcast, RemoteBroadcast) and broadcast._protocol is self:
                    broadcast.close()


# ---------------------------------------------------------------------------
# High-level session / client
# ---------------------------------------------------------------------------

class Session:
    """An established MOQT session.  Close it explicitly when done."""

    def __init__(self, connection_ctx, protocol: MOQTClientProtocol):
        self._connection_ctx = connection_ctx
        self._protocol = protocol
        self._closed = False

    @property
    def connection_id(self) -> str:
        return self._protocol.connection_id

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self, code: CloseCode = CloseCode.CANCEL) -> None:
        """
        Send CONNECTION_CLOSE with ``code`` and give the peer CLOSE_GRACE
        seconds to acknowledge.  Teardown finishes in the background after
        that.  The wait counts against the calling scenario's deadline, so
        announce-subscribe, which closes two sessions, spends up to 0.4s here.
        """
        if self._closed:
            return
        self._closed = True
        self._protocol.close(error_code=int(code), reason_phrase=code.name.lower())
        task = asyncio.ensure_future(self._connection_ctx.__aexit__(None, None, None))
        _background.add(task)
        task.add_done_callback(_background.discard)
        try:
            await asyncio.wait_for(asyncio.shield(task), CLOSE_GRACE)
        except asyncio.TimeoutError:
            logger.debug("MOQT client: close not acknowledged within %.0fms", CLOSE_GRACE * 1000)


class Client:
    """
    Session factory.  Holds only immutable configuration, so one instance can
    be shared by every scenario.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        self.config = config or ClientConfig()

    async def connect(
        self,
        url: str,
        *,
        publish: Optional[Origin] = None,
        consume: Optional[Origin] = None,
    ) -> Session:
        try:
            host, port = parse_relay_url(url)
        except ValueError as exc:
            raise ConnectFailure(str(exc)) from exc

        connection_ctx = connect(
            host,
            port,
            configuration=self.config.quic_configuration(host),
            create_protocol=partial(MOQTClientProtocol, publish=publish, consume=consume),
        )
        try:
            protocol = await connection_ctx.__aenter__()
        except (ConnectionError, OSError) as exc:
            raise ConnectFailure(str(exc) or type(exc).__name__) from exc

        try:
            await protocol.wait_setup()
        except ConnectFailure:
            await connection_ctx.__aexit__(None, None, None)
            raise
        logger.info("MOQT client: connected to %s:%d (cid=%s)", host, port, protocol.connection_id)
        return Session(connection_ctx, protocol)
