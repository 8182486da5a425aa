from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import now

DEFAULT_THEME = "neon"
DEFAULT_TAB = "monitor"


def _aware(value: datetime) -> datetime:
    # Older ledger files carry local wall-clock times without an offset.
    if value.tzinfo is None:
        return value.astimezone()
    return value


class Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ObservedDevice(Frozen):
    device_id: str
    name: str = Field(..., description="Display name, falls back to description")
    vid_pid: Optional[str] = Field(default=None, description="vvvv:pppp when known")
    device_class: str = Field(default="?", validation_alias=AliasChoices("device_class", "class"))
    manufacturer: Optional[str] = None
    description: Optional[str] = None


class VolumeInfo(Frozen):
    drive_letter: str = Field(..., description="Drive letter (E:) or mount point")
    volume_name: str = ""
    total_bytes: int = 0
    free_bytes: int = 0
    file_system: str = ""
    volume_serial: str = ""


class StorageInfo(Frozen):
    model: str = ""
    serial_number: str = ""
    total_bytes: int = 0
    interface_type: str = ""
    media_type: str = ""
    firmware: str = ""
    partition_count: int = 0
    status: str = ""
    volumes: Tuple[VolumeInfo, ...] = ()

    def used_bytes(self) -> int:
        return sum(v.total_bytes - v.free_bytes for v in self.volumes)


class EventKind(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"


class DeviceEvent(Frozen):
    timestamp: datetime
    kind: EventKind
    name: str
    vid_pid: Optional[str] = None
    manufacturer: Optional[str] = None
    device_class: str = Field(default="?", validation_alias=AliasChoices("device_class", "class"))
    device_id: str

    @field_validator("timestamp")
    @classmethod
    def timestamp_aware(cls, value: datetime) -> datetime:
        return _aware(value)

    @classmethod
    def from_device(cls, kind: EventKind, device: ObservedDevice, at: datetime) -> "DeviceEvent":
        return cls(
            timestamp=at,
            kind=kind,
            name=device.name,
            vid_pid=device.vid_pid,
            manufacturer=device.manufacturer,
            device_class=device.device_class,
            device_id=device.device_id,
        )


class KnownDevice(Frozen):
    device_id: str
    name: str
    vid_pid: str = ""
    device_class: str = Field(default="?", validation_alias=AliasChoices("device_class", "class"))
    manufacturer: str = ""
    description: str = ""
    first_seen: datetime
    last_seen: datetime
    times_seen: int = Field(default=1, ge=1)
    currently_connected: bool = False
    nickname: Optional[str] = None
    storage_info: Optional[StorageInfo] = None

    @field_validator("first_seen", "last_seen")
    @classmethod
    def seen_aware(cls, value: datetime) -> datetime:
        return _aware(value)

    def label(self) -> str:
        return self.nickname or self.name


class Prefs(BaseModel):
    theme: str = DEFAULT_THEME
    active_tab: str = DEFAULT_TAB


class Snapshot(Frozen):
    """
    Point-in-time view published once per reconciliation cycle.

    `storage_info` only holds devices that are attached right now; storage
    details of detached devices live on their ledger entry and are listed in
    `stale_storage`.
    """

    sequence: int = 0
    taken_at: datetime = Field(default_factory=now)
    devices: Tuple[ObservedDevice, ...] = ()
    events: Tuple[DeviceEvent, ...] = ()
    known_devices: Dict[str, KnownDevice] = Field(default_factory=dict)
    storage_info: Dict[str, StorageInfo] = Field(default_factory=dict)
    stale_storage: Tuple[str, ...] = ()
    categories: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    warning: Optional[str] = None


class NicknameUpdate(BaseModel):
    nickname: str = Field(default="", description="Blank clears the nickname")


class PrefUpdate(BaseModel):
    value: str

