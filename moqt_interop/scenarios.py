"""
Interop scenarios.

Each scenario is a short protocol script against the session client.  The
registry fixes their order and deadlines; the skip policy names the ones the
client API cannot express.

    setup-only                 connect, close
    announce-only              connect publishing a broadcast, wait, close
    publish-namespace-done     as announce-only, then unpublish before close
    subscribe-error            (skipped)
    announce-subscribe         publisher + subscriber, subscribe to the track
    subscribe-before-announce  (skipped)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .client import Client, CloseCode, ConnectFailure, Session
from .origin import Broadcast, Origin, Track, TrackError
from .report import Diagnostics
from .supervisor import race

logger = logging.getLogger(__name__)

TEST_NAMESPACE = "moq-test/interop"
TEST_TRACK = Track(name="test-track", priority=0)

# Grace periods and waits, in seconds
ANNOUNCE_GRACE = 0.5
DONE_GRACE = 0.2
PUBLISHER_GRACE = 0.3
ANNOUNCEMENT_WAIT = 1.5
SUBSCRIBE_WAIT = 1.0

SKIP_REASON_ANNOUNCE_FIRST = "API requires announcement before subscribe"


class UnknownScenario(Exception):
    """The requested scenario name is not in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown test: {name}")


class ProtocolFailure(Exception):
    """An announcement or subscription event signalled an unexpected condition."""


@dataclass(frozen=True)
class ScenarioContext:
    """What every scenario body receives: the shared client and the relay URL."""

    client: Client
    relay_url: str


ScenarioBody = Callable[[ScenarioContext], Awaitable[Diagnostics]]


@dataclass(frozen=True)
class ScenarioSpec:
    name: str
    timeout: float
    body: Optional[ScenarioBody] = None


@dataclass(frozen=True)
class SkipEntry:
    name: str
    reason: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _connect(
    ctx: ScenarioContext,
    what: str = "failed to connect",
    *,
    publish: Optional[Origin] = None,
    consume: Optional[Origin] = None,
) -> Session:
    try:
        return await ctx.client.connect(ctx.relay_url, publish=publish, consume=consume)
    except ConnectFailure as exc:
        raise ConnectFailure(what) from exc


async def _close_quietly(session: Session) -> None:
    try:
        await session.close(CloseCode.CANCEL)
    except Exception as exc:
        logger.debug("ignoring close failure: %s", exc)


# ---------------------------------------------------------------------------
# Scenario bodies
# ---------------------------------------------------------------------------

async def setup_only(ctx: ScenarioContext) -> Diagnostics:
    """Handshake, then close with CANCEL."""
    session = await _connect(ctx)
    diag = Diagnostics(connection_id=session.connection_id)
    await _close_quietly(session)
    return diag


async def announce_only(ctx: ScenarioContext) -> Diagnostics:
    """Announce a broadcast and give the relay time to process it."""
    origin = Origin()
    broadcast = Broadcast()
    origin.publish_broadcast(TEST_NAMESPACE, broadcast)

    session = await _connect(ctx, publish=origin)
    diag = Diagnostics(connection_id=session.connection_id)
    try:
        await asyncio.sleep(ANNOUNCE_GRACE)
    finally:
        await _close_quietly(session)
        broadcast.close()
    return diag


async def publish_namespace_done(ctx: ScenarioContext) -> Diagnostics:
    """Announce a broadcast, then unpublish it before closing the session."""
    origin = Origin()
    broadcast = Broadcast()
    origin.publish_broadcast(TEST_NAMESPACE, broadcast)

    session = await _connect(ctx, publish=origin)
    diag = Diagnostics(connection_id=session.connection_id)
    try:
        await asyncio.sleep(ANNOUNCE_GRACE)
        broadcast.close()
        # let the UNANNOUNCE reach the relay
        await asyncio.sleep(DONE_GRACE)
    finally:
        await _close_quietly(session)
        broadcast.close()
    return diag


async def announce_subscribe(ctx: ScenarioContext) -> Diagnostics:
    """
    Publisher announces a broadcast with one track; an independent subscriber
    waits for the relay to forward the announcement and subscribes to the
    track.  No error within SUBSCRIBE_WAIT counts as an accepted
    subscription, since the session API exposes no positive acknowledgement.
    """
    diag = Diagnostics()
    sessions: list[Session] = []

    pub_origin = Origin()
    broadcast = Broadcast()
    broadcast.create_track(TEST_TRACK)
    pub_origin.publish_broadcast(TEST_NAMESPACE, broadcast)

    try:
        publisher = await _connect(ctx, "publisher failed to connect", publish=pub_origin)
        sessions.append(publisher)
        diag["publisher_connection_id"] = publisher.connection_id

        await asyncio.sleep(PUBLISHER_GRACE)

        sub_origin = Origin()
        announcements = sub_origin.consume()
        subscriber = await _connect(ctx, "subscriber failed to connect", consume=sub_origin)
        sessions.append(subscriber)
        diag["subscriber_connection_id"] = subscriber.connection_id

        winner, announcement = await race(
            announcements.announced(), asyncio.sleep(ANNOUNCEMENT_WAIT),
        )
        if winner == 1:
            raise ProtocolFailure("timeout waiting for announcement")
        if announcement is None:
            raise ProtocolFailure("consumer closed")
        if announcement.broadcast is None:
            raise ProtocolFailure(f"unexpected unannouncement: {announcement.path}")
        logger.debug("announce-subscribe: %s announced", announcement.path)

        track = announcement.broadcast.subscribe_track(TEST_TRACK)
        try:
            await race(track.closed(), asyncio.sleep(SUBSCRIBE_WAIT))
        except TrackError as exc:
            raise ProtocolFailure("track closed") from exc
    finally:
        for session in sessions:
            await _close_quietly(session)
        broadcast.close()

    return diag


# ---------------------------------------------------------------------------
# Registry and skip policy
# ---------------------------------------------------------------------------

REGISTRY: tuple[ScenarioSpec, ...] = (
    ScenarioSpec("setup-only", 2.0, setup_only),
    ScenarioSpec("announce-only", 2.0, announce_only),
    ScenarioSpec("publish-namespace-done", 2.0, publish_namespace_done),
    ScenarioSpec("subscribe-error", 2.0),
    ScenarioSpec("announce-subscribe", 3.0, announce_subscribe),
    ScenarioSpec("subscribe-before-announce", 3.5),
)

# The session API only subscribes to tracks of an already-announced
# broadcast, so speculative subscribes cannot be expressed.
SKIP_POLICY: tuple[SkipEntry, ...] = (
    SkipEntry("subscribe-error", SKIP_REASON_ANNOUNCE_FIRST),
    SkipEntry("subscribe-before-announce", SKIP_REASON_ANNOUNCE_FIRST),
)


def scenario_names(registry=REGISTRY) -> list[str]:
    return [spec.name for spec in registry]


def select_scenarios(name: Optional[str] = None, registry=REGISTRY) -> list[ScenarioSpec]:
    """All scenarios in registry order, or just ``name``."""
    if name is None:
        return list(registry)
    for spec in registry:
        if spec.name == name:
            return [spec]
    raise UnknownScenario(name)


def skip_reason(name: str, policy=SKIP_POLICY) -> Optional[str]:
    for entry in policy:
        if entry.name == name:
            return entry.reason
    return None
