from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterator, Optional

from .errors import NotFoundError
from .models import KnownDevice, ObservedDevice, StorageInfo


def _descriptive(device: ObservedDevice) -> Dict:
    return {
        "name": device.name,
        "vid_pid": device.vid_pid or "",
        "device_class": device.device_class,
        "manufacturer": device.manufacturer or "",
        "description": device.description or "",
    }


class KnownDeviceLedger:
    """
    Every device ever observed, keyed by device id.

    Entries are frozen models; each mutation swaps in a new copy so handing
    out `entries()` to readers is safe. Not thread-safe on its own, the owner
    serializes access.
    """

    def __init__(self, devices: Optional[Dict[str, KnownDevice]] = None):
        self._devices: Dict[str, KnownDevice] = dict(devices or {})

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[str]:
        return iter(self._devices)

    def get(self, device_id: str) -> Optional[KnownDevice]:
        return self._devices.get(device_id)

    def require(self, device_id: str) -> KnownDevice:
        entry = self._devices.get(device_id)
        if entry is None:
            raise NotFoundError(device_id)
        return entry

    def entries(self) -> Dict[str, KnownDevice]:
        return dict(self._devices)

    def upsert(self, device: ObservedDevice, storage: Optional[StorageInfo], at: datetime) -> KnownDevice:
        """
        Record a transition into the connected state.

        A new device starts at times_seen=1. A returning device gets the
        latest descriptive fields and one more sighting; its nickname and
        first_seen never change. Calling this for an entry that is already
        connected refreshes it without counting another sighting.
        """
        entry = self._devices.get(device.device_id)
        if entry is None:
            entry = KnownDevice(
                device_id=device.device_id,
                first_seen=at,
                last_seen=at,
                times_seen=1,
                currently_connected=True,
                storage_info=storage,
                **_descriptive(device),
            )
        else:
            times_seen = entry.times_seen if entry.currently_connected else entry.times_seen + 1
            entry = entry.model_copy(
                update={
                    **_descriptive(device),
                    "last_seen": max(at, entry.first_seen),
                    "times_seen": times_seen,
                    "currently_connected": True,
                    "storage_info": storage or entry.storage_info,
                }
            )
        self._devices[device.device_id] = entry
        return entry

    def refresh(self, device: ObservedDevice, storage: Optional[StorageInfo], at: datetime) -> KnownDevice:
        """
        Merge a device found already attached when monitoring starts.

        Known devices are marked connected without counting a new sighting,
        since the attach happened while nobody was watching.
        """
        entry = self._devices.get(device.device_id)
        if entry is None:
            return self.upsert(device, storage, at)
        entry = entry.model_copy(
            update={
                **_descriptive(device),
                "last_seen": max(at, entry.first_seen),
                "currently_connected": True,
                "storage_info": storage or entry.storage_info,
            }
        )
        self._devices[device.device_id] = entry
        return entry

    def mark_disconnected(self, device_id: str) -> bool:
        entry = self._devices.get(device_id)
        if entry is None:
            return False
        if entry.currently_connected:
            self._devices[device_id] = entry.model_copy(update={"currently_connected": False})
        return True

    def mark_all_disconnected(self) -> None:
        for device_id in list(self._devices):
            self.mark_disconnected(device_id)

    def set_storage(self, device_id: str, storage: StorageInfo) -> bool:
        entry = self._devices.get(device_id)
        if entry is None:
            return False
        self._devices[device_id] = entry.model_copy(update={"storage_info": storage})
        return True

    def set_nickname(self, device_id: str, text: Optional[str]) -> KnownDevice:
        entry = self.require(device_id)
        nickname = (text or "").strip() or None
        entry = entry.model_copy(update={"nickname": nickname})
        self._devices[device_id] = entry
        return entry

    def forget(self, device_id: str) -> KnownDevice:
        entry = self.require(device_id)
        del self._devices[device_id]
        return entry
