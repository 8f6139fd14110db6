"""Per-session fan-out of versioned changes to bounded subscriber queues."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque

from ..poker.events import Change
from .metrics import log_metric

log = logging.getLogger("planning_poker")

_DEFAULT_QUEUE_SIZE = 100
_DEFAULT_HISTORY_SIZE = 50


class Subscription:
    """One physical client connection's view of a session.

    The queue is bounded; when full the oldest pending change is discarded so
    the newest state always gets through and the publisher never waits.
    """

    def __init__(self, session_id: str, participant_id: str, maxlen: int) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.session_id = session_id
        self.participant_id = participant_id
        self.dropped = 0
        self.closed = False
        self._queue: deque[Change] = deque(maxlen=maxlen)
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._queue)

    def put(self, change: Change) -> bool:
        """Enqueue a change. Returns True if an older change was dropped."""
        if self.closed:
            return False
        overflow = len(self._queue) == self._queue.maxlen
        if overflow:
            self.dropped += 1
        self._queue.append(change)
        self._ready.set()
        return overflow

    def drain(self) -> list[Change]:
        pending = list(self._queue)
        self._queue.clear()
        if not self.closed:
            self._ready.clear()
        return pending

    async def next_batch(self, timeout: float | None = None) -> list[Change]:
        """Wait until something is queued (or the subscription closes) and drain it."""
        if not self._queue and not self.closed:
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return []
        return self.drain()

    def close(self) -> None:
        self.closed = True
        self._ready.set()


class EventBroadcaster:
    def __init__(
        self,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
        history_size: int = _DEFAULT_HISTORY_SIZE,
    ) -> None:
        self.queue_size = queue_size
        self.history_size = history_size
        self._subscribers: dict[str, dict[str, Subscription]] = {}
        self._history: dict[str, deque[Change]] = {}
        self.dropped_total = 0

    def subscribe(self, session_id: str, participant_id: str) -> Subscription:
        sub = Subscription(session_id, participant_id, self.queue_size)
        self._subscribers.setdefault(session_id, {})[sub.id] = sub
        log.debug("subscribed %s to session %s as %s", sub.id, session_id, participant_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.session_id)
        if subs:
            subs.pop(sub.id, None)
            if not subs:
                self._subscribers.pop(sub.session_id, None)
        sub.close()

    def get_subscription(self, session_id: str, sub_id: str) -> Subscription | None:
        return self._subscribers.get(session_id, {}).get(sub_id)

    def subscriptions_for(self, session_id: str, participant_id: str) -> list[Subscription]:
        return [
            s for s in self._subscribers.get(session_id, {}).values()
            if s.participant_id == participant_id and not s.closed
        ]

    def close_participant(self, session_id: str, participant_id: str) -> int:
        """Close a participant's open subscriptions.

        They stay registered so already queued changes can still be drained;
        the owner unsubscribes once it has read them.
        """
        subs = self.subscriptions_for(session_id, participant_id)
        for sub in subs:
            sub.close()
        return len(subs)

    def subscriber_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, {}))
        return sum(len(subs) for subs in self._subscribers.values())

    def publish(self, change: Change) -> int:
        """Record a session change and fan it out. Callers hold the session lock."""
        if change.session_id is None:
            return self.publish_all(change)
        history = self._history.get(change.session_id)
        if history is None:
            history = self._history[change.session_id] = deque(maxlen=self.history_size)
        history.append(change)
        return self._fan_out(list(self._subscribers.get(change.session_id, {}).values()), change)

    def publish_all(self, change: Change) -> int:
        """Process-wide notice to every subscriber; not retained."""
        subs = [s for session_subs in self._subscribers.values() for s in session_subs.values()]
        return self._fan_out(subs, change)

    def _fan_out(self, subs: list[Subscription], change: Change) -> int:
        if not subs:
            log.debug("broadcast dropped (no subscribers): %s", change.session_id)
            return 0
        for sub in subs:
            if sub.put(change):
                self.dropped_total += 1
                log.warning(
                    "subscriber queue full session=%s subscriber=%s; dropped oldest change",
                    sub.session_id, sub.id,
                )
                log_metric("broadcast_dropped", session_id=sub.session_id, subscriber=sub.id)
        return len(subs)

    def history_since(self, session_id: str, version: int) -> list[Change] | None:
        """Changes newer than ``version``, or None when the retained history has a gap."""
        history = self._history.get(session_id)
        if not history:
            return None
        newer = [c for c in history if c.version is not None and c.version > version]
        if not newer or newer[0].version != version + 1:
            return None
        return newer

    def close_session(self, session_id: str) -> None:
        """Close every subscription of a removed session and forget its history."""
        subs = self._subscribers.pop(session_id, {})
        for sub in subs.values():
            sub.close()
        self._history.pop(session_id, None)
