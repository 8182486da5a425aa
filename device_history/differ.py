from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, List, Mapping

from .models import ObservedDevice


@dataclass(frozen=True)
class Diff:
    connected: List[ObservedDevice] = field(default_factory=list)
    disconnected: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.connected or self.disconnected)


def diff(previous: AbstractSet[str], current: Mapping[str, ObservedDevice]) -> Diff:
    """
    Presence transitions between two polls, keyed by device id.

    Devices seen in both polls produce nothing, even when their metadata
    changed. Both lists are sorted by device id.
    """
    connected = [current[device_id] for device_id in sorted(i for i in current if i not in previous)]
    disconnected = sorted(i for i in previous if i not in current)
    return Diff(connected=connected, disconnected=disconnected)
