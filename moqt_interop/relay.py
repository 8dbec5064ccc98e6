"""
Loopback MoQT relay -- enough of a relay to run the interop scenarios locally.

The relay terminates every session, remembers which session announced which
namespace, forwards ANNOUNCE / UNANNOUNCE to sessions that sent a matching
SUBSCRIBE_NAMESPACE, and proxies SUBSCRIBE to the announcing publisher,
relaying its SUBSCRIBE_OK / SUBSCRIBE_ERROR back.  It carries no media.

Architecture
    QUIC listener (TLS 1.3, ALPN "moq-00")
        |
        +-- per-connection RelaySession  (control stream only)
        |
        +-- shared RelayState
              +-- namespace registry   (who announced what)
              +-- namespace watchers   (who wants ANNOUNCEs)
              +-- pending upstream subscriptions

Usage:
    moqt-interop-relay --host localhost --port 4443 --cert-dir ./certs
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from aioquic.asyncio import serve
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import (
    ConnectionTerminated,
    QuicEvent,
    StreamDataReceived,
)

from .certs import ensure_dev_certs
from .protocol import (
    MOQT_ALPN,
    MOQT_VERSION,
    MsgType,
    Announce,
    AnnounceOk,
    ClientSetup,
    ServerSetup,
    Subscribe,
    SubscribeDone,
    SubscribeError,
    SubscribeErrorCode,
    SubscribeNamespace,
    SubscribeNamespaceOk,
    SubscribeOk,
    Unannounce,
    Unsubscribe,
    namespace_prefix_match,
    parse_control_message,
)

logger = logging.getLogger(__name__)

Namespace = tuple[str, ...]


@dataclass
class Upstream:
    """A SUBSCRIBE the relay forwarded to a publisher on behalf of a subscriber."""

    publisher: "RelaySession"
    subscriber: "RelaySession"
    downstream_id: int


@dataclass
class RelayState:
    # namespace -> announcing session
    publishers: dict[Namespace, "RelaySession"] = field(default_factory=dict)
    # session -> namespace prefixes it watches
    watchers: dict["RelaySession", set[Namespace]] = field(default_factory=dict)
    # relay-assigned subscribe_id -> forwarded subscription
    upstream: dict[int, Upstream] = field(default_factory=dict)
    next_upstream_id: int = 0

    def allocate_id(self) -> int:
        sub_id = self.next_upstream_id
        self.next_upstream_id += 1
        return sub_id

    def watchers_of(self, namespace: Namespace) -> list["RelaySession"]:
        return [
            session for session, prefixes in self.watchers.items()
            if any(namespace_prefix_match(p, namespace) for p in prefixes)
        ]

    def remove_session(self, session: "RelaySession") -> list[Namespace]:
        """Forget ``session``; returns the namespaces it had announced."""
        self.watchers.pop(session, None)
        gone = [ns for ns, pub in self.publishers.items() if pub is session]
        for ns in gone:
            del self.publishers[ns]
        for sub_id, up in list(self.upstream.items()):
            if up.publisher is session or up.subscriber is session:
                del self.upstream[sub_id]
                if up.publisher is session and up.subscriber is not session:
                    up.subscriber.send(SubscribeError(
                        subscribe_id=up.downstream_id,
                        error_code=SubscribeErrorCode.INTERNAL_ERROR,
                        reason="publisher went away",
                    ).encode())
        return gone


class RelaySession(QuicConnectionProtocol):
    """One relay-side MOQT session.  Control messages arrive on stream 0."""

    def __init__(self, quic, stream_handler=None, *, state: RelayState):
        super().__init__(quic, stream_handler)
        self._state = state
        self._ctrl_stream: Optional[int] = None
        self._ctrl_buf: bytes = b""

    @property
    def session_id(self) -> str:
        return self._quic.host_cid.hex()

    # ------------------------------------------------------------------
    # aioquic event dispatch
    # ------------------------------------------------------------------

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, StreamDataReceived):
            if self._ctrl_stream is None and event.stream_id % 4 == 0:
                self._ctrl_stream = event.stream_id
            if event.stream_id == self._ctrl_stream:
                self._on_control_data(event.data)

        elif isinstance(event, ConnectionTerminated):
            logger.info("Relay %s: connection terminated", self.session_id)
            for ns in self._state.remove_session(self):
                self._broadcast_to_watchers(ns, Unannounce(namespace=list(ns)).encode())

    def send(self, data: bytes) -> None:
        if self._ctrl_stream is None:
            return
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
                break
            except ValueError as exc:
                logger.error("Relay %s: unknown control message: %s", self.session_id, exc)
                self._ctrl_buf = b""
                break
            self._ctrl_buf = self._ctrl_buf[consumed:]
            try:
                self._handle_control(msg_type, payload)
            except (BufferError, ValueError) as exc:
                logger.error("Relay %s: malformed %s: %s", self.session_id, msg_type.name, exc)

    def _handle_control(self, msg_type: MsgType, payload: bytes) -> None:
        logger.debug("Relay %s <- %s", self.session_id, msg_type.name)

        if msg_type == MsgType.CLIENT_SETUP:
            cs = ClientSetup.decode(payload)
            ver = MOQT_VERSION if MOQT_VERSION in cs.supported_versions else cs.supported_versions[0]
            self.send(ServerSetup(selected_version=ver).encode())
            logger.info("Relay %s: setup complete (version=0x%X)", self.session_id, ver)

        elif msg_type == MsgType.ANNOUNCE:
            ann = Announce.decode(payload)
            ns = tuple(ann.namespace)
            self._state.publishers[ns] = self
            self.send(AnnounceOk(namespace=ann.namespace).encode())
            logger.info("Relay %s: ANNOUNCE %s", self.session_id, ann.namespace)
            self._broadcast_to_watchers(ns, Announce(namespace=ann.namespace).encode())

        elif msg_type == MsgType.UNANNOUNCE:
            ua = Unannounce.decode(payload)
            ns = tuple(ua.namespace)
            if self._state.publishers.get(ns) is self:
                del self._state.publishers[ns]
                logger.info("Relay %s: UNANNOUNCE %s", self.session_id, ua.namespace)
                self._broadcast_to_watchers(ns, Unannounce(namespace=ua.namespace).encode())

        elif msg_type == MsgType.SUBSCRIBE_NAMESPACE:
            sns = SubscribeNamespace.decode(payload)
            prefix = tuple(sns.namespace_prefix)
            self._state.watchers.setdefault(self, set()).add(prefix)
            self.send(SubscribeNamespaceOk(namespace_prefix=sns.namespace_prefix).encode())
            for ns, publisher in self._state.publishers.items():
                if publisher is not self and namespace_prefix_match(prefix, ns):
                    self.send(Announce(namespace=list(ns)).encode())

        elif msg_type == MsgType.SUBSCRIBE:
            self._handle_subscribe(Subscribe.decode(payload))

        elif msg_type == MsgType.SUBSCRIBE_OK:
            sok = SubscribeOk.decode(payload)
            up = self._state.upstream.get(sok.subscribe_id)
            if up:
                up.subscriber.send(SubscribeOk(subscribe_id=up.downstream_id).encode())

        elif msg_type == MsgType.SUBSCRIBE_ERROR:
            serr = SubscribeError.decode(payload)
            up = self._state.upstream.pop(serr.subscribe_id, None)
            if up:
                up.subscriber.send(SubscribeError(
                    subscribe_id=up.downstream_id,
                    error_code=serr.error_code,
                    reason=serr.reason,
                ).encode())

        elif msg_type == MsgType.SUBSCRIBE_DONE:
            sd = SubscribeDone.decode(payload)
            up = self._state.upstream.pop(sd.subscribe_id, None)
            if up:
                up.subscriber.send(SubscribeDone(
                    subscribe_id=up.downstream_id,
                    status_code=sd.status_code,
                    reason=sd.reason,
                ).encode())

        elif msg_type == MsgType.UNSUBSCRIBE:
            unsub = Unsubscribe.decode(payload)
            for sub_id, up in list(self._state.upstream.items()):
                if up.subscriber is self and up.downstream_id == unsub.subscribe_id:
                    del self._state.upstream[sub_id]
                    up.publisher.send(Unsubscribe(subscribe_id=sub_id).encode())

    def _handle_subscribe(self, sub: Subscribe) -> None:
        ns = tuple(sub.namespace)
        publisher = self._state.publishers.get(ns)
        logger.info(
            "Relay %s: SUBSCRIBE %s/%s sub_id=%d",
            self.session_id, sub.namespace, sub.track_name, sub.subscribe_id,
        )
        if publisher is None:
            self.send(SubscribeError(
                subscribe_id=sub.subscribe_id,
                error_code=SubscribeErrorCode.TRACK_DOES_NOT_EXIST,
                reason="namespace not announced",
                track_alias=sub.track_alias,
            ).encode())
            return

        upstream_id = self._state.allocate_id()
        self._state.upstream[upstream_id] = Upstream(
            publisher=publisher, subscriber=self, downstream_id=sub.subscribe_id,
        )
        publisher.send(Subscribe(
            subscribe_id=upstream_id,
            track_alias=upstream_id,
            namespace=sub.namespace,
            track_name=sub.track_name,
            subscriber_priority=sub.subscriber_priority,
            group_order=sub.group_order,
            filter_type=sub.filter_type,
        ).encode())

    def _broadcast_to_watchers(self, ns: Namespace, data: bytes) -> None:
        for session in self._state.watchers_of(ns):
            if session is not self:
                session.send(data)


# ---------------------------------------------------------------------------
# Relay server
# ---------------------------------------------------------------------------

class MOQTRelay:
    """
    Usage
    -----
        relay = MOQTRelay(cert_file="certs/cert.pem", key_file="certs/priv.key")
        await relay.start("localhost", 4443)
        ...
        relay.close()
    """

    def __init__(self, cert_file: str, key_file: str):
        self._cert_file = cert_file
        self._key_file = key_file
        self._state = RelayState()
        self._server = None

    def _make_protocol(self, quic, stream_handler=None):
        return RelaySession(quic, stream_handler, state=self._state)

    async def start(self, host: str, port: int) -> None:
        config = QuicConfiguration(
            alpn_protocols=[MOQT_ALPN],
            is_client=False,
        )
        config.load_cert_chain(self._cert_file, self._key_file)

        self._server = await serve(
            host,
            port,
            configuration=config,
            create_protocol=self._make_protocol,
        )
        logger.info("MoQT relay listening on %s:%d (QUIC/MOQT)", host, port)

    def close(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None

    async def serve(self, host: str, port: int) -> None:
        """Run until cancelled."""
        await self.start(host, port)
        try:
            await asyncio.Event().wait()
        finally:
            self.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="moqt-interop-relay",
        description="Loopback MoQT relay for running the interop scenarios locally",
    )
    parser.add_argument("--host", default="localhost", help="Bind address (default: localhost)")
    parser.add_argument("--port", type=int, default=4443, help="Listen port (default: 4443)")
    parser.add_argument("--cert-dir", default="certs", help="Directory holding cert.pem / priv.key")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    cert_file, key_file = ensure_dev_certs(args.cert_dir)
    relay = MOQTRelay(cert_file=cert_file, key_file=key_file)

    print(f"MoQT relay starting on {args.host}:{args.port}")
    print(f"  Clients connect via: moqt://{args.host}:{args.port}")
    print(f"  TLS cert: {cert_file}")

    try:
        asyncio.run(relay.serve(args.host, args.port))
    except KeyboardInterrupt:
        print("\nRelay stopped.")
    return 0
