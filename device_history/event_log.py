from __future__ import annotations

import csv
import io
from typing import Iterable, List, Optional, Tuple

from .models import DeviceEvent

CSV_COLUMNS = ["timestamp", "kind", "name", "vid_pid", "manufacturer", "class", "device_id"]
DEVICE_HISTORY_WINDOW = 30


class EventLog:
    """
    Ordered connect/disconnect history. Grows without limit until cleared.
    """

    def __init__(self, events: Optional[Iterable[DeviceEvent]] = None):
        self._events: List[DeviceEvent] = list(events or [])

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: DeviceEvent) -> None:
        self._events.append(event)

    def extend(self, events: Iterable[DeviceEvent]) -> None:
        self._events.extend(events)

    def clear(self) -> None:
        self._events.clear()

    def events(self) -> Tuple[DeviceEvent, ...]:
        return tuple(self._events)

    def for_device(self, device_id: str, limit: int = DEVICE_HISTORY_WINDOW) -> List[DeviceEvent]:
        """Most recent `limit` events for one device, oldest first."""
        matching = [e for e in self._events if e.device_id == device_id]
        if limit <= 0:
            return []
        return matching[-limit:]


def events_to_csv(events: Iterable[DeviceEvent]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for event in events:
        writer.writerow(
            [
                event.timestamp.isoformat(),
                event.kind.value,
                event.name,
                event.vid_pid or "",
                event.manufacturer or "",
                event.device_class,
                event.device_id,
            ]
        )
    return buffer.getvalue()
