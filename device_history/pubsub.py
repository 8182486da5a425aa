from __future__ import annotations

import threading
from typing import Optional

from .models import Snapshot


class SnapshotChannel:
    """
    Latest-value broadcast of snapshots.

    Subscribers are not queued: a slow subscriber skips straight to the
    newest snapshot and never sees the ones published in between.
    """

    def __init__(self, initial: Optional[Snapshot] = None):
        self._cond = threading.Condition()
        self._latest = initial or Snapshot()
        self._version = 0
        self._closed = False

    @property
    def version(self) -> int:
        return self._version

    def latest(self) -> Snapshot:
        return self._latest

    def publish(self, snapshot: Snapshot) -> None:
        with self._cond:
            self._latest = snapshot
            self._version += 1
            self._cond.notify_all()

    def subscribe(self, from_start: bool = False) -> "Subscription":
        return Subscription(self, from_start=from_start)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def _wait_newer(self, seen: int, timeout: Optional[float]) -> tuple[int, Optional[Snapshot]]:
        with self._cond:
            self._cond.wait_for(lambda: self._version > seen or self._closed, timeout=timeout)
            if self._version > seen:
                return self._version, self._latest
            return seen, None


class Subscription:
    def __init__(self, channel: SnapshotChannel, from_start: bool = False):
        self._channel = channel
        self._seen = 0 if from_start else channel.version

    def get(self, timeout: Optional[float] = None) -> Optional[Snapshot]:
        """
        Block until a snapshot newer than the last one returned is published.
        Returns None on timeout or when the channel is closed.
        """
        self._seen, snapshot = self._channel._wait_newer(self._seen, timeout)
        return snapshot
