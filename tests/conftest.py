from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from device_history.device_monitor import DeviceMonitor
from device_history.errors import ProviderError
from device_history.event_log import EventLog
from device_history.ledger import KnownDeviceLedger
from device_history.models import ObservedDevice, StorageInfo, VolumeInfo
from device_history.providers import EnumerationProvider
from device_history.state import MonitorState
from device_history.storage import EventJournal, LedgerStore, PrefsStore, WriteBehind


def make_device(device_id: str, name: Optional[str] = None, device_class: str = "USB", **fields) -> ObservedDevice:
    return ObservedDevice(device_id=device_id, name=name or f"Device {device_id}", device_class=device_class, **fields)


def make_storage(model: str = "Ultra Fit", letter: str = "E:", total: int = 64 * 1024**3) -> StorageInfo:
    return StorageInfo(
        model=model,
        serial_number="4C530001",
        total_bytes=total,
        interface_type="USB",
        media_type="Removable Media",
        partition_count=1,
        status="OK",
        volumes=(VolumeInfo(drive_letter=letter, volume_name="BACKUP", total_bytes=total - 1024**2, free_bytes=1024**3, file_system="exFAT"),),
    )


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 1.0) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class FakeProvider(EnumerationProvider):
    name = "fake"

    def __init__(self):
        self.devices: Dict[str, ObservedDevice] = {}
        self.storage: Dict[str, StorageInfo] = {}
        self.fail: Optional[str] = None
        self.storage_calls = []

    def attach(self, device: ObservedDevice, storage: Optional[StorageInfo] = None) -> None:
        self.devices[device.device_id] = device
        if storage is not None:
            self.storage[device.device_id] = storage

    def detach(self, device_id: str) -> None:
        self.devices.pop(device_id, None)

    def enumerate(self) -> Dict[str, ObservedDevice]:
        if self.fail:
            raise ProviderError(self.fail)
        return dict(self.devices)

    def storage_for(self, device_id: str) -> Optional[StorageInfo]:
        self.storage_calls.append(device_id)
        return self.storage.get(device_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def state(clock):
    return MonitorState(clock=clock)


@pytest.fixture
def monitor(provider, state, monotonic):
    return DeviceMonitor(provider, state, interval=0.01, enrich_delay=2.0, monotonic=monotonic)


@pytest.fixture
def writer(tmp_path):
    return WriteBehind(
        LedgerStore(tmp_path / "ledger.json"),
        EventJournal(tmp_path / "events.jsonl"),
        PrefsStore(tmp_path / "prefs.json"),
    )


@pytest.fixture
def persisted_state(tmp_path, clock, writer):
    return MonitorState(
        ledger=KnownDeviceLedger(writer.ledger.load()),
        events=EventLog(writer.journal.load()),
        writer=writer,
        prefs=writer.prefs.load(),
        clock=clock,
    )
