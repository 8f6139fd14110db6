from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..poker.events import Change
from ..poker.models import Session
from ..poker.results import ErrorKind, Result
from .broadcaster import EventBroadcaster
from .protocol import snapshot, state_checksum
from .registry import SessionRegistry

log = logging.getLogger("planning_poker")

_DEFAULT_MAX_DELTA = 5

NO_CHANGE = "no_change"
DELTA = "delta"
FULL_SNAPSHOT = "snapshot"


@dataclass
class Reconciliation:
    kind: str  # NO_CHANGE | DELTA | FULL_SNAPSHOT
    version: int
    changes: list[Change] = field(default_factory=list)
    snapshot: dict | None = None


class ReconciliationService:
    """Brings a reconnecting client back in sync. Never mutates the session."""

    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: EventBroadcaster,
        max_delta: int = _DEFAULT_MAX_DELTA,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.max_delta = max_delta

    async def reconcile(
        self,
        session_id: str,
        participant_id: str,
        client_version: int,
        client_checksum: str | None = None,
    ) -> Result[Reconciliation]:
        return await self.registry.read(
            session_id,
            lambda session: self._reconcile(session, participant_id, client_version, client_checksum),
        )

    def _reconcile(
        self,
        session: Session,
        participant_id: str,
        client_version: int,
        client_checksum: str | None,
    ) -> Result[Reconciliation]:
        if participant_id not in session.participants:
            return Result.failure(ErrorKind.PARTICIPANT_NOT_FOUND)
        server_version = session.version

        if client_version == server_version:
            if client_checksum and client_checksum != state_checksum(session, participant_id):
                log.info("session %s: checksum mismatch for %s at v%d", session.id, participant_id, server_version)
                return Result.success(self._full(session, participant_id))
            return Result.success(Reconciliation(kind=NO_CHANGE, version=server_version))

        gap = server_version - client_version
        if 0 < gap <= self.max_delta:
            changes = self.broadcaster.history_since(session.id, client_version)
            if changes is not None and changes[-1].version == server_version:
                return Result.success(Reconciliation(kind=DELTA, version=server_version, changes=changes))

        log.debug("session %s: full snapshot for %s (client v%d, server v%d)",
                  session.id, participant_id, client_version, server_version)
        return Result.success(self._full(session, participant_id))

    @staticmethod
    def _full(session: Session, participant_id: str) -> Reconciliation:
        return Reconciliation(
            kind=FULL_SNAPSHOT,
            version=session.version,
            snapshot=snapshot(session, participant_id),
        )
