"""
Loopback tests
Level 3 -- Real QUIC sessions through the bundled relay on 127.0.0.1

Run with:
    python -m pytest moqt_interop/test_loopback.py -v
"""

import asyncio
import io
import socket

import pytest

from moqt_interop.certs import generate_dev_cert
from moqt_interop.client import Client, ClientConfig, ConnectFailure
from moqt_interop.origin import Broadcast, Origin, Track, TrackError
from moqt_interop.relay import MOQTRelay
from moqt_interop.report import TapReporter
from moqt_interop.runner import run_scenarios
from moqt_interop.scenarios import REGISTRY, TEST_NAMESPACE, TEST_TRACK, ScenarioContext


def _free_udp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def relay_files(tmp_path):
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "priv.key"
    generate_dev_cert(str(cert_path), str(key_path))
    return str(cert_path), str(key_path)


def with_relay(relay_files, body):
    """Start a relay, run ``body(client, url)``, stop the relay."""
    port = _free_udp_port()
    url = f"moqt://127.0.0.1:{port}"

    async def main():
        relay = MOQTRelay(*relay_files)
        await relay.start("127.0.0.1", port)
        try:
            client = Client(ClientConfig(tls_disable_verify=True))
            return await body(client, url)
        finally:
            relay.close()

    return asyncio.run(main())


# ===========================================================================
# Full scenario run
# ===========================================================================

def test_all_scenarios_pass_against_loopback_relay(relay_files):
    out = io.StringIO()

    async def body(client, url):
        ctx = ScenarioContext(client=client, relay_url=url)
        return await run_scenarios(list(REGISTRY), ctx, TapReporter(out))

    all_passed = with_relay(relay_files, body)
    lines = out.getvalue().splitlines()
    assert all_passed, "\n".join(lines)
    assert "1..6" in lines
    assert "ok 1 - setup-only" in lines
    assert "ok 5 - announce-subscribe" in lines
    assert sum(1 for line in lines if line.startswith("  connection_id: ")) == 3
    assert any(line.startswith("  subscriber_connection_id: ") for line in lines)


# ===========================================================================
# Session behaviour
# ===========================================================================

def test_connection_id_is_hex(relay_files):
    async def body(client, url):
        session = await client.connect(url)
        try:
            return session.connection_id
        finally:
            await session.close()

    cid = with_relay(relay_files, body)
    assert cid
    int(cid, 16)


def test_bad_url_is_a_connect_failure(relay_files):
    async def body(client, url):
        with pytest.raises(ConnectFailure, match="unsupported relay URL"):
            await client.connect("ftp://127.0.0.1:1")

    with_relay(relay_files, body)


def test_unknown_track_is_rejected_by_publisher(relay_files):
    async def body(client, url):
        pub_origin = Origin()
        broadcast = Broadcast()
        broadcast.create_track(TEST_TRACK)
        pub_origin.publish_broadcast(TEST_NAMESPACE, broadcast)
        publisher = await client.connect(url, publish=pub_origin)

        sub_origin = Origin()
        announcements = sub_origin.consume()
        subscriber = await client.connect(url, consume=sub_origin)
        try:
            announcement = await asyncio.wait_for(announcements.announced(), 2.0)
            sub = announcement.broadcast.subscribe_track(Track("missing-track", 0))
            with pytest.raises(TrackError):
                await asyncio.wait_for(sub.closed(), 2.0)
        finally:
            await publisher.close()
            await subscriber.close()

    with_relay(relay_files, body)


def test_unannounce_reaches_subscriber(relay_files):
    async def body(client, url):
        pub_origin = Origin()
        broadcast = Broadcast()
        pub_origin.publish_broadcast(TEST_NAMESPACE, broadcast)
        publisher = await client.connect(url, publish=pub_origin)

        sub_origin = Origin()
        announcements = sub_origin.consume()
        subscriber = await client.connect(url, consume=sub_origin)
        try:
            first = await asyncio.wait_for(announcements.announced(), 2.0)
            broadcast.close()
            second = await asyncio.wait_for(announcements.announced(), 2.0)
            return first, second
        finally:
            await publisher.close()
            await subscriber.close()

    first, second = with_relay(relay_files, body)
    assert first.path == TEST_NAMESPACE and first.announced
    assert second.path == TEST_NAMESPACE and not second.announced
