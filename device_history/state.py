from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from .classify import category_for
from .differ import Diff
from .errors import ValidationError
from .event_log import DEVICE_HISTORY_WINDOW, EventLog
from .ledger import KnownDeviceLedger
from .models import DeviceEvent, EventKind, KnownDevice, ObservedDevice, Prefs, Snapshot, StorageInfo
from .pubsub import SnapshotChannel
from .storage import WriteBehind
from .utils import now

logger = logging.getLogger(__name__)


class MonitorState:
    """
    Everything shared between the poll thread and request handlers.

    One lock covers the ledger, the event log, the attached-device map and
    the live storage cache. Every mutation ends by publishing a fresh frozen
    Snapshot, so readers never take the lock.
    """

    def __init__(
        self,
        ledger: Optional[KnownDeviceLedger] = None,
        events: Optional[EventLog] = None,
        channel: Optional[SnapshotChannel] = None,
        writer: Optional[WriteBehind] = None,
        prefs: Optional[Prefs] = None,
        clock: Callable[[], datetime] = now,
    ):
        self.ledger = ledger or KnownDeviceLedger()
        self.events = events or EventLog()
        self.channel = channel or SnapshotChannel()
        self.writer = writer
        self.clock = clock
        self._prefs = prefs or Prefs()
        self._lock = threading.Lock()
        self._current: Dict[str, ObservedDevice] = {}
        self._storage: Dict[str, StorageInfo] = {}
        self._error: Optional[str] = None
        self._sequence = 0
        with self._lock:
            # nothing has been enumerated yet, so nothing loaded can be attached
            self.ledger.mark_all_disconnected()
            self._publish()

    # Poll-thread side

    def attached(self) -> Dict[str, ObservedDevice]:
        with self._lock:
            return dict(self._current)

    def apply_baseline(self, current: Mapping[str, ObservedDevice], storage: Mapping[str, StorageInfo]) -> None:
        """
        First successful poll. Anything the ledger thought was attached from
        the last run is marked detached, then whatever is attached now is
        merged without producing events.
        """
        with self._lock:
            at = self.clock()
            self.ledger.mark_all_disconnected()
            for device_id in sorted(current):
                self.ledger.refresh(current[device_id], storage.get(device_id), at)
            self._current = dict(current)
            self._storage = {k: v for k, v in storage.items() if k in current}
            self._error = None
            self._save_ledger()
            self._publish()
        logger.info("Started monitoring, %d devices attached", len(current))

    def apply_cycle(
        self,
        current: Mapping[str, ObservedDevice],
        changes: Diff,
        storage: Mapping[str, StorageInfo],
        enrichments: Optional[Mapping[str, StorageInfo]] = None,
    ) -> List[DeviceEvent]:
        """
        Apply one poll's transitions and late storage details, then publish
        once. Returns the new events, all stamped with the same time.
        """
        with self._lock:
            at = self.clock()
            new_events: List[DeviceEvent] = []
            for device_id in changes.disconnected:
                previous = self._current.get(device_id)
                if previous is None:
                    continue
                self.ledger.mark_disconnected(device_id)
                self._storage.pop(device_id, None)
                new_events.append(DeviceEvent.from_device(EventKind.DISCONNECT, previous, at))
            for device in changes.connected:
                info = storage.get(device.device_id)
                self.ledger.upsert(device, info, at)
                if info is not None:
                    self._storage[device.device_id] = info
                new_events.append(DeviceEvent.from_device(EventKind.CONNECT, device, at))

            attached_changed = dict(current) != self._current
            error_cleared = self._error is not None
            self._current = dict(current)
            self._error = None
            enriched = [
                (device_id, info)
                for device_id, info in sorted((enrichments or {}).items())
                if self._enrich(device_id, info)
            ]
            if new_events:
                self.events.extend(new_events)
                if self.writer is not None:
                    self.writer.append_events(new_events)
            if new_events or enriched:
                self._save_ledger()
            if new_events or enriched or attached_changed or error_cleared:
                self._publish()

        for event in new_events:
            logger.info(
                "%s: %s [%s] | %s",
                event.kind.value.upper(),
                event.name,
                event.vid_pid or "?",
                event.device_id,
            )
        for device_id, info in enriched:
            logger.info(
                "Enriched %s: %s [%s]",
                device_id,
                info.model or "?",
                ", ".join(v.drive_letter for v in info.volumes),
            )
        return new_events

    def record_error(self, message: str) -> None:
        with self._lock:
            if message == self._error:
                return
            self._error = message
            self._publish()

    # Request side

    def snapshot(self) -> Snapshot:
        return self.channel.latest()

    def set_nickname(self, device_id: str, text: Optional[str]) -> KnownDevice:
        with self._lock:
            entry = self.ledger.set_nickname(device_id, text)
            self._save_ledger()
            self._publish()
        return entry

    def forget_device(self, device_id: str) -> KnownDevice:
        with self._lock:
            entry = self.ledger.forget(device_id)
            self._storage.pop(device_id, None)
            self._save_ledger()
            self._publish()
        logger.info("Forgot device %s", device_id)
        return entry

    def clear_events(self) -> int:
        with self._lock:
            count = len(self.events)
            self.events.clear()
            if self.writer is not None:
                self.writer.clear_events()
            self._publish()
        return count

    def device_events(self, device_id: str, limit: int = DEVICE_HISTORY_WINDOW) -> List[DeviceEvent]:
        with self._lock:
            return self.events.for_device(device_id, limit)

    def prefs(self) -> Prefs:
        with self._lock:
            return self._prefs.model_copy()

    def set_theme(self, theme: str) -> Prefs:
        return self._set_pref("theme", theme)

    def set_tab(self, tab: str) -> Prefs:
        return self._set_pref("active_tab", tab)

    def _set_pref(self, key: str, value: Optional[str]) -> Prefs:
        value = (value or "").strip()
        if not value:
            raise ValidationError(key, "must not be empty")
        with self._lock:
            self._prefs = self._prefs.model_copy(update={key: value})
            prefs = self._prefs.model_copy()
            if self.writer is not None:
                self.writer.save_prefs(prefs)
        return prefs

    # Callers hold self._lock.

    def _enrich(self, device_id: str, info: StorageInfo) -> bool:
        # the device may have left or been forgotten since the query was scheduled
        if device_id not in self._current or device_id not in self.ledger:
            return False
        if self._storage.get(device_id) == info:
            return False
        self._storage[device_id] = info
        self.ledger.set_storage(device_id, info)
        return True

    def _save_ledger(self) -> None:
        if self.writer is not None:
            self.writer.save_ledger(self.ledger.entries())

    def _publish(self) -> None:
        self._sequence += 1
        known = self.ledger.entries()
        snapshot = Snapshot(
            sequence=self._sequence,
            taken_at=self.clock(),
            devices=sorted(self._current.values(), key=lambda d: (d.name.lower(), d.device_id)),
            events=self.events.events(),
            known_devices=known,
            storage_info=dict(self._storage),
            stale_storage=sorted(
                device_id
                for device_id, entry in known.items()
                if entry.storage_info is not None and device_id not in self._storage
            ),
            categories={device_id: category_for(device) for device_id, device in self._current.items()},
            error=self._error,
            warning=self.writer.last_error if self.writer is not None else None,
        )
        self.channel.publish(snapshot)
