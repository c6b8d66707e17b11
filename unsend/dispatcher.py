"""Fan-out of room events to every transport.

One published event is a single dict stamped with the room's next ``seq``. It
is handed, in order, to three independent sinks:

* live websocket members (their outbound queues),
* push-stream subscribers (bounded queues, one per open event stream),
* the room's bounded buffer, read by pull-based polling.

A failure in one sink is logged and never stops the others.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from unsend.rooms import Member, RoomRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """Who a targeted event is for.

    Matching uses the client id when both sides have one and falls back to
    the network identity otherwise. With ``either`` set, a client-id match or
    an identity match is enough, which is how artifact ownership is decided.
    ``exclude`` inverts the match.
    """

    identity: Optional[str] = None
    client_id: Optional[str] = None
    exclude: bool = False
    either: bool = False

    def matches(self, identity: Optional[str], client_id: Optional[str] = None) -> bool:
        same_identity = self.identity is not None and identity == self.identity
        if self.either:
            hit = same_identity or (self.client_id is not None and client_id == self.client_id)
        elif self.client_id is not None and client_id is not None:
            hit = client_id == self.client_id
        else:
            hit = same_identity
        return hit != self.exclude


@dataclass(eq=False)
class Subscriber:
    room: str
    identity: str
    queue: asyncio.Queue
    dropped: bool = False


@dataclass
class _Buffered:
    seq: int
    event: dict
    target: Optional[Target] = None


@dataclass
class RoomChannel:
    seq: int = 0
    buffer: deque = field(default_factory=deque)
    subscribers: list[Subscriber] = field(default_factory=list)
    last_active: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_active = time.monotonic()


class Dispatcher:
    def __init__(
        self,
        rooms: RoomRegistry,
        buffer_size: int = 1000,
        stream_queue_size: int = 256,
        idle_seconds: float = 600.0,
    ):
        self.rooms = rooms
        self.buffer_size = buffer_size
        self.stream_queue_size = stream_queue_size
        self.idle_seconds = idle_seconds
        self._channels: dict[str, RoomChannel] = {}
        # Last seq of every released room, so a new channel continues from it.
        self._high_water: dict[str, int] = {}

    def _channel(self, room: str) -> RoomChannel:
        channel = self._channels.get(room)
        if channel is None:
            channel = RoomChannel(seq=self._high_water.get(room, 0), buffer=deque(maxlen=self.buffer_size))
            self._channels[room] = channel
        return channel

    def current_seq(self, room: str) -> int:
        channel = self._channels.get(room)
        return channel.seq if channel else self._high_water.get(room, 0)

    def is_buffered(self, room: str) -> bool:
        return room in self._channels

    def publish(self, room: str, event: dict, target: Optional[Target] = None) -> dict:
        """Stamp ``event`` with the next sequence number and fan it out.

        Synchronous: every sink only enqueues, so concurrent publishers on the
        event loop cannot interleave within one event.
        """
        self.sweep(exclude=room)
        channel = self._channel(room)
        channel.touch()
        channel.seq += 1
        event = dict(event, seq=channel.seq)

        sinks: list[tuple[str, Callable[[], None]]] = [
            ("socket", lambda: self._to_sockets(room, event, target)),
            ("stream", lambda: self._to_streams(channel, event, target)),
            ("buffer", lambda: channel.buffer.append(_Buffered(event["seq"], event, target))),
        ]
        for name, sink in sinks:
            try:
                sink()
            except Exception:
                logger.exception("Sink %s failed for room %s seq %d", name, room, event["seq"])
        return event

    def send_direct(self, member: Member, event: dict) -> None:
        """Deliver to one socket only, outside the room sequence."""
        member.deliver(event)

    def _to_sockets(self, room: str, event: dict, target: Optional[Target]) -> None:
        for member in self.rooms.members(room):
            if target is not None and not target.matches(member.identity, member.client_id):
                continue
            try:
                member.deliver(event)
            except Exception as e:
                logger.info("Dropping event for %s: %s", member.client_id, e)

    def _to_streams(self, channel: RoomChannel, event: dict, target: Optional[Target]) -> None:
        for sub in list(channel.subscribers):
            if target is not None and not target.matches(sub.identity):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Stream subscriber in %s fell behind, dropping it", sub.room)
                sub.dropped = True
                channel.subscribers.remove(sub)
                # Wake the stream so it notices it was dropped.
                _force_put(sub.queue, None)

    # ---- pull-based polling --------------------------------------------------

    def poll(self, room: str, since: int, identity: str) -> tuple[list[dict], int]:
        """Events after cursor ``since`` visible to ``identity``, and the next cursor.

        Sequence numbers keep counting across a release, so an old cursor
        stays valid. A cursor this process never handed out (negative, or
        past the current sequence) is treated as 0.
        """
        channel = self._channels.get(room)
        if channel is None:
            return [], self._high_water.get(room, 0)
        channel.touch()
        if since > channel.seq or since < 0:
            since = 0
        events = [
            b.event
            for b in channel.buffer
            if b.seq > since and (b.target is None or b.target.matches(identity))
        ]
        return events, channel.seq

    def redact(self, room: str, artifact_id: str) -> int:
        """Blank out buffered chat text for a recalled message."""
        channel = self._channels.get(room)
        if channel is None:
            return 0
        n = 0
        for b in channel.buffer:
            if b.event.get("kind") == "chat" and b.event.get("id") == artifact_id:
                b.event = dict(b.event, text="", recalled=True)
                n += 1
        return n

    # ---- push streams ----------------------------------------------------------

    def subscribe(self, room: str, identity: str, last_seq: Optional[int] = None) -> Subscriber:
        """Register a push-stream subscriber, replaying buffered events after ``last_seq``."""
        channel = self._channel(room)
        sub = Subscriber(room=room, identity=identity, queue=asyncio.Queue(maxsize=self.stream_queue_size))
        if last_seq is not None:
            events, _ = self.poll(room, last_seq, identity)
            for event in events[-self.stream_queue_size:]:
                sub.queue.put_nowait(event)
        channel.subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        channel = self._channels.get(sub.room)
        if channel and sub in channel.subscribers:
            channel.subscribers.remove(sub)

    def release(self, room: str) -> None:
        """Free a room's buffer once nobody is connected to it any more."""
        channel = self._channels.get(room)
        if channel is None or channel.subscribers or self.rooms.has_room(room):
            return
        self._high_water[room] = channel.seq
        del self._channels[room]
        logger.debug("Released event buffer for room %s at seq %d", room, channel.seq)

    def sweep(self, exclude: Optional[str] = None) -> int:
        """Release buffers of empty rooms nobody has published to or polled lately.

        Events published after everyone left (an expiry, an HTTP upload or
        recall) recreate a channel that no leave would release again.
        """
        cutoff = time.monotonic() - self.idle_seconds
        stale = [
            room
            for room, channel in self._channels.items()
            if room != exclude
            and channel.last_active <= cutoff
            and not channel.subscribers
            and not self.rooms.has_room(room)
        ]
        for room in stale:
            self.release(room)
        return len(stale)


def _force_put(queue: asyncio.Queue, item) -> None:
    try:
        queue.get_nowait()
    except asyncio.QueueEmpty:
        pass
    queue.put_nowait(item)
