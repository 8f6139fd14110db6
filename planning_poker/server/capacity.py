from __future__ import annotations

import logging

from ..poker.models import CapacityStatus
from ..poker.results import ErrorKind, Result

log = logging.getLogger("planning_poker")


class CapacityGuard:
    """Global ceiling on simultaneously open sessions.

    Not self-locking: callers hold the registry table lock around
    ``try_admit`` + insert and around ``release`` + delete.
    """

    def __init__(self, ceiling: int = 3) -> None:
        if ceiling < 1:
            raise ValueError("capacity ceiling must be at least 1")
        self.ceiling = ceiling
        self._active = 0

    def try_admit(self) -> Result[CapacityStatus]:
        if self._active >= self.ceiling:
            return Result.failure(
                ErrorKind.CAPACITY_EXCEEDED,
                f"Maximum of {self.ceiling} active sessions reached",
            )
        self._active += 1
        return Result.success(self.status())

    def release(self) -> None:
        if self._active == 0:
            log.error("capacity release with no active sessions")
            return
        self._active -= 1

    def status(self) -> CapacityStatus:
        return CapacityStatus(active=self._active, max=self.ceiling)
