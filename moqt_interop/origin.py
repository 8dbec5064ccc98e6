"""
Origins, broadcasts and tracks.

An Origin maps namespace paths ("moq-test/interop") to Broadcasts.  A session
configured to publish an origin announces every broadcast in it; a session
configured to consume an origin fills it with the broadcasts the relay
announces.  ``Origin.consume()`` hands out an independent reader that first
replays what is currently published and then follows live changes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def split_path(path: str) -> tuple[str, ...]:
    """'moq-test/interop' -> ('moq-test', 'interop')"""
    return tuple(part for part in path.split("/") if part)


def join_path(namespace) -> str:
    return "/".join(namespace)


@dataclass(frozen=True)
class Track:
    name: str
    priority: int = 0


class TrackError(Exception):
    """A track subscription was closed with an error."""

    def __init__(self, reason: str, code: int = 0):
        super().__init__(reason)
        self.code = code
        self.reason = reason


class TrackSubscription:
    """
    Subscriber-side handle for one track.

    ``closed()`` completes when the subscription ends: it returns normally on a
    clean close and raises TrackError when the publisher or relay rejected or
    aborted it.  An accepted, still-open subscription never completes.
    """

    def __init__(self, track: Track):
        self.track = track
        self.accepted = False
        self._error: Optional[Exception] = None
        self._done = asyncio.Event()

    @property
    def is_closed(self) -> bool:
        return self._done.is_set()

    def accept(self) -> None:
        self.accepted = True

    def finish(self, error: Optional[Exception] = None) -> None:
        if self._done.is_set():
            return
        self._error = error
        self._done.set()

    async def closed(self) -> None:
        await self._done.wait()
        if self._error is not None:
            raise self._error


class Broadcast:
    """A named collection of tracks, published under a namespace path."""

    def __init__(self):
        self._tracks: dict[str, Track] = {}
        self._close_callbacks: list[Callable[[], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def create_track(self, track: Track) -> Track:
        self._tracks[track.name] = track
        return track

    def get_track(self, name: str) -> Optional[Track]:
        return self._tracks.get(name)

    def subscribe_track(self, track: Track) -> TrackSubscription:
        sub = TrackSubscription(track)
        if self._closed:
            sub.finish(TrackError("broadcast closed"))
        elif self._tracks.get(track.name) != track:
            sub.finish(TrackError(f"track not found: {track.name}"))
        else:
            sub.accept()
            self.on_close(sub.finish)
        return sub

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._closed:
            callback()
        else:
            self._close_callbacks.append(callback)

    def close(self) -> None:
        """Unpublish the broadcast.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()


@dataclass(frozen=True)
class Announcement:
    path: str
    broadcast: Optional[Broadcast] = None

    @property
    def announced(self) -> bool:
        return self.broadcast is not None


class OriginConsumer:
    """Reader over an origin's announcement events."""

    def __init__(self, origin: "Origin", initial: list[Announcement]):
        self._origin = origin
        self._queue: asyncio.Queue[Optional[Announcement]] = asyncio.Queue()
        for announcement in initial:
            self._queue.put_nowait(announcement)

    def _push(self, announcement: Optional[Announcement]) -> None:
        self._queue.put_nowait(announcement)

    async def announced(self) -> Optional[Announcement]:
        """Next announcement event, or None once the origin is closed."""
        announcement = await self._queue.get()
        if announcement is None:
            # Keep returning None to later callers too
            self._queue.put_nowait(None)
        return announcement

    def close(self) -> None:
        self._origin._detach(self)
        self._push(None)


class Origin:
    """Namespace registry a session publishes into or observes."""

    def __init__(self):
        self._broadcasts: dict[tuple[str, ...], Broadcast] = {}
        self._consumers: list[OriginConsumer] = []
        self._closed = False

    def publish_broadcast(self, path: str, broadcast: Broadcast) -> None:
        namespace = split_path(path)
        previous = self._broadcasts.get(namespace)
        if previous is broadcast:
            return
        self._broadcasts[namespace] = broadcast
        logger.debug("origin: published %s", path)
        self._notify(Announcement(join_path(namespace), broadcast))
        broadcast.on_close(lambda: self._remove(namespace, broadcast))

    def unpublish(self, path: str) -> None:
        broadcast = self._broadcasts.get(split_path(path))
        if broadcast is not None:
            broadcast.close()

    def get(self, path: str) -> Optional[Broadcast]:
        return self._broadcasts.get(split_path(path))

    def broadcasts(self) -> dict[str, Broadcast]:
        return {join_path(ns): b for ns, b in self._broadcasts.items()}

    def consume(self) -> OriginConsumer:
        consumer = OriginConsumer(
            self, [Announcement(join_path(ns), b) for ns, b in self._broadcasts.items()],
        )
        if self._closed:
            consumer._push(None)
        else:
            self._consumers.append(consumer)
        return consumer

    def close(self) -> None:
        """Close every broadcast and end all consumers."""
        if self._closed:
            return
        for broadcast in list(self._broadcasts.values()):
            broadcast.close()
        self._closed = True
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            consumer._push(None)

    def _remove(self, namespace: tuple[str, ...], broadcast: Broadcast) -> None:
        if self._broadcasts.get(namespace) is not broadcast:
            return
        del self._broadcasts[namespace]
        logger.debug("origin: unpublished %s", join_path(namespace))
        self._notify(Announcement(join_path(namespace), None))

    def _notify(self, announcement: Announcement) -> None:
        for consumer in self._consumers:
            consumer._push(announcement)

    def _detach(self, consumer: OriginConsumer) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)
