from __future__ import annotations

__version__ = "0.4.0"

from .device_monitor import DeviceMonitor, create_monitor
from .errors import DeviceHistoryError, NotFoundError, PersistenceError, ProviderError, ValidationError
from .models import DeviceEvent, KnownDevice, ObservedDevice, Snapshot, StorageInfo, VolumeInfo
from .state import MonitorState

__all__ = [
    "DeviceMonitor",
    "create_monitor",
    "MonitorState",
    "DeviceHistoryError",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "ValidationError",
    "DeviceEvent",
    "KnownDevice",
    "ObservedDevice",
    "Snapshot",
    "StorageInfo",
    "VolumeInfo",
]
