from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..poker.events import Change
from ..poker.results import ErrorKind, Result
from .broadcaster import EventBroadcaster, Subscription
from .capacity import CapacityGuard
from .grace import GracePeriodSupervisor
from .membership import MembershipManager
from .protocol import snapshot
from .reconcile import ReconciliationService
from .registry import SessionRegistry
from .settings import CoordinatorConfig
from .voting import VotingCoordinator

log = logging.getLogger("planning_poker")


class SessionCoordinator:
    """Wires the registry and its services together and owns background tasks."""

    def __init__(
        self,
        config: CoordinatorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CoordinatorConfig()
        self.broadcaster = EventBroadcaster(
            queue_size=self.config.queue_size,
            history_size=self.config.history_size,
        )
        self.capacity = CapacityGuard(self.config.max_sessions)
        self.registry = SessionRegistry(
            self.broadcaster,
            self.capacity,
            idle_timeout=self.config.idle_timeout,
            max_participants=self.config.max_participants,
            clock=clock,
        )
        self.grace = GracePeriodSupervisor(
            self.registry,
            duration=self.config.grace_duration,
            warning_lead=self.config.grace_warning_lead,
        )
        self.membership = MembershipManager(self.registry, self.grace)
        self.voting = VotingCoordinator(self.registry)
        self.reconciliation = ReconciliationService(
            self.registry, self.broadcaster, max_delta=self.config.max_delta,
        )
        self._sweeper: asyncio.Task | None = None

    # -- background sweep ---------------------------------------------------

    def start(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="session-sweeper")

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.grace.shutdown()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.registry.sweep_expired()
            except Exception:
                log.exception("expiry sweep failed")

    # -- subscription surface -----------------------------------------------

    async def attach(self, session_id: str, participant_id: str, track_presence: bool = True) -> Result[Subscription]:
        """Subscribe a client connection; with presence, also marks the participant connected."""
        known = await self.registry.read(
            session_id,
            lambda s: Result.success() if participant_id in s.participants
            else Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND),
        )
        if not known.ok:
            return Result.failure(known.error, known.message)
        sub = self.broadcaster.subscribe(session_id, participant_id)
        if track_presence:
            result = await self.membership.mark_reconnected(session_id, participant_id)
            if not result.ok:
                self.broadcaster.unsubscribe(sub)
                return Result.failure(result.error, result.message)
        return Result.success(sub)

    async def detach(self, sub: Subscription, track_presence: bool = True) -> None:
        """Drop a client connection; the participant goes offline once their last one is gone."""
        self.broadcaster.unsubscribe(sub)
        if not track_presence:
            return
        if self.broadcaster.subscriptions_for(sub.session_id, sub.participant_id):
            return
        result = await self.membership.mark_disconnected(sub.session_id, sub.participant_id)
        if not result.ok:
            log.debug("disconnect of %s in %s ignored: %s", sub.participant_id, sub.session_id, result.message)

    def drain(self, session_id: str, sub_id: str) -> Result[list[Change]]:
        sub = self.broadcaster.get_subscription(session_id, sub_id)
        if sub is None:
            return Result.failure(ErrorKind.SESSION_NOT_FOUND, "Unknown subscription")
        pending = sub.drain()
        if sub.closed:
            self.broadcaster.unsubscribe(sub)
        return Result.success(pending)

    # -- read-only queries --------------------------------------------------

    async def view(self, session_id: str, viewer_id: str | None = None) -> Result[dict]:
        return await self.registry.read(session_id, lambda s: Result.success(snapshot(s, viewer_id)))

    def health(self) -> dict:
        return {
            "capacity": self.registry.capacity_status().to_dict(),
            "sessions": len(self.registry),
            "subscribers": self.broadcaster.subscriber_count(),
            "dropped_events": self.broadcaster.dropped_total,
            "sweeper_running": self._sweeper is not None and not self._sweeper.done(),
        }
