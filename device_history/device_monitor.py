from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .classify import STORAGE_CLASSIFIER, DeviceClassifier
from .config import Settings
from .differ import diff
from .errors import ProviderError
from .event_log import EventLog
from .ledger import KnownDeviceLedger
from .models import DeviceEvent, ObservedDevice, StorageInfo
from .providers import EnumerationProvider, select_provider
from .state import MonitorState
from .storage import EVENTS_FILE, LEDGER_FILE, PREFS_FILE, EventJournal, LedgerStore, PrefsStore, WriteBehind

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.5
ENRICH_DELAY_SECONDS = 2.0
STOP_TIMEOUT_SECONDS = 5.0


class PollerStatus(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RECONCILING = "reconciling"
    STOPPED = "stopped"


class DeviceMonitor:
    """
    Background poller that turns device enumerations into connect and
    disconnect events.

    Each cycle enumerates, diffs against the devices attached after the
    previous cycle, fetches storage details for new storage devices and
    hands everything to MonitorState in one step. Platform queries run
    outside the state lock. Cycles never overlap; a slow enumeration just
    stretches the period. A failed enumeration only records the error, the
    attached set stays as it was.
    """

    def __init__(
        self,
        provider: EnumerationProvider,
        state: Optional[MonitorState] = None,
        interval: float = POLL_SECONDS,
        enrich_delay: float = ENRICH_DELAY_SECONDS,
        classifier: DeviceClassifier = STORAGE_CLASSIFIER,
        writer: Optional[WriteBehind] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.state = state or MonitorState(writer=writer)
        self.interval = interval
        self.enrich_delay = enrich_delay
        self.classifier = classifier
        self.writer = writer or self.state.writer
        self.monotonic = monotonic
        self.status = PollerStatus.IDLE
        self._baseline_done = False
        self._pending: Dict[str, float] = {}
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="device-monitor", daemon=True)

    def start(self) -> None:
        if self.writer is not None:
            self.writer.start()
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=STOP_TIMEOUT_SECONDS)
        self.status = PollerStatus.STOPPED
        self.state.channel.close()
        if self.writer is not None:
            self.writer.close()

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def poll_once(self) -> List[DeviceEvent]:
        """One reconciliation cycle. Returns the events it produced."""
        self.status = PollerStatus.POLLING
        try:
            try:
                current = self.provider.enumerate()
            except ProviderError as exc:
                logger.warning("Device enumeration failed: %s", exc)
                self.state.record_error(str(exc))
                return []

            if not self._baseline_done:
                storage = self._storage_for(d for d in current.values() if self.classifier.matches(d))
                self.status = PollerStatus.RECONCILING
                self.state.apply_baseline(current, storage)
                self._baseline_done = True
                return []

            previous = self.state.attached()
            changes = diff(previous.keys(), current)
            for device_id in changes.disconnected:
                self._pending.pop(device_id, None)

            storage_devices = [d for d in changes.connected if self.classifier.matches(d)]
            storage = self._storage_for(storage_devices)
            due_at = self.monotonic() + self.enrich_delay
            for device in storage_devices:
                info = storage.get(device.device_id)
                # volumes usually show up a moment after the USB node
                if info is None or not info.volumes:
                    self._pending[device.device_id] = due_at
            enrichments = self._due_enrichments(current)

            self.status = PollerStatus.RECONCILING
            return self.state.apply_cycle(current, changes, storage, enrichments)
        finally:
            self.status = PollerStatus.IDLE

    def _storage_for(self, devices) -> Dict[str, StorageInfo]:
        found: Dict[str, StorageInfo] = {}
        for device in devices:
            info = self._query_storage(device.device_id)
            if info is not None:
                found[device.device_id] = info
        return found

    def _query_storage(self, device_id: str) -> Optional[StorageInfo]:
        try:
            return self.provider.storage_for(device_id)
        except ProviderError as exc:
            logger.warning("Storage query for %s failed: %s", device_id, exc)
            return None

    def _due_enrichments(self, current: Mapping[str, ObservedDevice]) -> Dict[str, StorageInfo]:
        now = self.monotonic()
        due = [device_id for device_id, at in self._pending.items() if at <= now]
        found: Dict[str, StorageInfo] = {}
        for device_id in due:
            del self._pending[device_id]
            if device_id not in current:
                continue
            info = self._query_storage(device_id)
            if info is not None:
                found[device_id] = info
            else:
                logger.info("No storage details for %s after mount delay", device_id)
        return found

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Unexpected error in poll cycle")
                self.state.record_error("internal error in poll cycle, see log")
            if self._stop.wait(self.interval):
                break
        self.status = PollerStatus.STOPPED


def create_monitor(settings: Optional[Settings] = None, provider: Optional[EnumerationProvider] = None) -> DeviceMonitor:
    """Wire stores, state and poller from settings. Loads persisted state."""
    settings = settings or Settings()
    data_dir = Path(settings.storage.data_dir).expanduser()
    data_dir.mkdir(parents=True, exist_ok=True)

    ledger_store = LedgerStore(data_dir / LEDGER_FILE)
    journal = EventJournal(data_dir / EVENTS_FILE)
    prefs_store = PrefsStore(data_dir / PREFS_FILE)
    writer = WriteBehind(ledger_store, journal if settings.storage.keep_events else None, prefs_store)

    events = journal.load() if settings.storage.keep_events else []
    state = MonitorState(
        ledger=KnownDeviceLedger(ledger_store.load()),
        events=EventLog(events),
        writer=writer,
        prefs=prefs_store.load(),
    )
    return DeviceMonitor(
        provider or select_provider(settings.monitor.provider),
        state,
        interval=settings.monitor.poll_ms / 1000.0,
        enrich_delay=settings.monitor.enrich_delay_ms / 1000.0,
        writer=writer,
    )
