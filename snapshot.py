"""Snapshot selection and one-shot resolution of the snapshot root object."""

import enum
import logging
import threading
import time
from typing import Callable

from backend import CancelledError, SnapshotNotFoundError
from context import Context
from kopia_api import KopiaClient, Snapshot

logger = logging.getLogger(__name__)

LATEST = "latest"
PIN = "pin"
INCOMPLETE = "incomplete"

COOLDOWN = 3.0
_WAIT_POLL = 0.1


def select_snapshot(snapshots: list[Snapshot], spec: str) -> Snapshot | None:
    """Pick the snapshot named by spec from a list ordered oldest first.

    The list is scanned newest first. A snapshot whose id (or root object id)
    equals spec wins outright, whatever its retention. Otherwise the first
    snapshot not tagged "incomplete" is taken when spec is "" or "latest",
    or when spec is "pin" and the snapshot has a pin.
    """
    for snapshot in reversed(snapshots):
        if spec and spec in (snapshot.id, snapshot.root_id):
            return snapshot
        if INCOMPLETE not in snapshot.retention:
            if (spec == PIN and snapshot.pins) or spec in ("", LATEST):
                return snapshot
    return None


class RootState(enum.Enum):
    UNRESOLVED = "unresolved"
    IN_FLIGHT = "in-flight"
    RESOLVED = "resolved"
    FAILED_COOLING_DOWN = "failed-cooling-down"


class SnapshotResolver:
    """Resolves the configured snapshot to its root object id, once.

    Concurrent callers share a single in-flight snapshot-list request. Once
    resolved, the root id never changes. After a failed resolution every call
    fails fast until ``cooldown`` seconds have passed; the next call after
    that tries again, so a snapshot that appears later is picked up.
    """

    def __init__(
        self,
        client: KopiaClient,
        user: str,
        host: str,
        path: str,
        snapshot: str,
        *,
        describe: Callable[[], str] | None = None,
        cooldown: float = COOLDOWN,
        clock=time.monotonic,
    ):
        self._client = client
        self.user = user
        self.host = host
        self.path = path
        self.snapshot = snapshot
        self.cooldown = cooldown
        self._describe = describe or (lambda: f"kopia snapshot {snapshot or LATEST}")
        self._clock = clock
        self._cond = threading.Condition()
        self._state = RootState.UNRESOLVED
        self._root_id = ""
        self._failed_at = 0.0

    @property
    def state(self) -> RootState:
        return self._state

    @property
    def root_id(self) -> str:
        return self._root_id

    def _not_found(self) -> SnapshotNotFoundError:
        return SnapshotNotFoundError(f"{self._describe()} not found")

    def resolve_root(self, ctx: Context) -> str:
        """Return the root object id, resolving it first if needed.

        Raises SnapshotNotFoundError when no snapshot matches, and
        CancelledError if ctx ends while this call is waiting or fetching.
        """
        if self._state is RootState.RESOLVED:
            return self._root_id

        with self._cond:
            while True:
                if self._state is RootState.RESOLVED:
                    return self._root_id
                if self._state is RootState.FAILED_COOLING_DOWN:
                    if self._clock() - self._failed_at < self.cooldown:
                        raise self._not_found()
                    self._state = RootState.UNRESOLVED
                if self._state is RootState.UNRESOLVED:
                    self._state = RootState.IN_FLIGHT
                    break
                remaining = ctx.remaining()
                self._cond.wait(_WAIT_POLL if remaining is None else min(remaining, _WAIT_POLL))
                ctx.check()

        return self._resolve(ctx)

    def _settle(self, state: RootState, root_id: str = ""):
        with self._cond:
            if state is RootState.FAILED_COOLING_DOWN:
                self._failed_at = self._clock()
            self._root_id = root_id
            self._state = state
            self._cond.notify_all()

    def _resolve(self, ctx: Context) -> str:
        try:
            snapshots = self._client.list_snapshots(ctx, self.user, self.host, self.path)
        except CancelledError:
            # Let a waiting caller with a live context take over.
            self._settle(RootState.UNRESOLVED)
            raise
        except Exception as e:
            logger.error("kopia snapshot: listing snapshots for %s failed: %s", self._describe(), e)
            self._settle(RootState.FAILED_COOLING_DOWN)
            raise self._not_found() from e

        snapshot = select_snapshot(snapshots, self.snapshot)
        if snapshot is None or not snapshot.root_id:
            logger.error("kopia snapshot: %s not found", self.snapshot or LATEST)
            self._settle(RootState.FAILED_COOLING_DOWN)
            raise self._not_found()

        self._settle(RootState.RESOLVED, snapshot.root_id)
        logger.info("kopia load snapshot: %s (root %s)", snapshot.id, snapshot.root_id)
        return snapshot.root_id
