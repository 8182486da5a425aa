from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from .errors import ProviderError
from .models import StorageInfo, VolumeInfo
from .shell import json_records, run_command, run_powershell

logger = logging.getLogger(__name__)

DISK_DRIVE_SCRIPT = (
    "Get-CimInstance Win32_DiskDrive "
    "| Select-Object DeviceID, PNPDeviceID, Model, SerialNumber, Size, InterfaceType, "
    "MediaType, Partitions, FirmwareRevision, Status "
    "| ConvertTo-Json -Depth 2"
)

VOLUME_SCRIPT = (
    "$ErrorActionPreference='SilentlyContinue'; "
    "Get-Partition -DiskNumber {index} | Where-Object {{ $_.DriveLetter }} | ForEach-Object {{ "
    "$v = $_ | Get-Volume; "
    "$ld = Get-CimInstance Win32_LogicalDisk -Filter \"DeviceID='$($_.DriveLetter):'\"; "
    "[PSCustomObject]@{{ "
    "DriveLetter=[string]$_.DriveLetter; "
    "Label=if($v.FileSystemLabel){{$v.FileSystemLabel}}else{{''}}; "
    "Size=if($v.Size){{$v.Size}}else{{0}}; "
    "FreeSpace=if($v.SizeRemaining){{$v.SizeRemaining}}else{{0}}; "
    "FileSystem=if($v.FileSystem){{$v.FileSystem}}else{{''}}; "
    "Serial=if($ld.VolumeSerialNumber){{$ld.VolumeSerialNumber}}else{{''}} "
    "}} }} | ConvertTo-Json -Compress"
)

LSBLK_COLUMNS = "NAME,SIZE,TYPE,MODEL,SERIAL,TRAN,REV,STATE,RM,MOUNTPOINT,FSTYPE,LABEL,UUID"

_PHYSICAL_DRIVE_RE = re.compile(r"PHYSICALDRIVE(\d+)$", re.IGNORECASE)


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


# Windows


def usb_serial_from_id(device_id: str) -> str:
    """Instance id USB\\VID_0781&PID_5583\\4C530001 -> 4C530001."""
    return device_id.rsplit("\\", 1)[-1].strip().upper()


def match_disk_drive(drives: List[dict], usb_serial: str) -> Optional[dict]:
    if not usb_serial:
        return None
    for drive in drives:
        serial = _str(drive.get("SerialNumber")).replace(" ", "").upper()
        if serial and (serial in usb_serial or usb_serial in serial):
            return drive
        if usb_serial in _str(drive.get("PNPDeviceID")).upper():
            return drive
    return None


def disk_index(drive: dict) -> Optional[int]:
    match = _PHYSICAL_DRIVE_RE.search(_str(drive.get("DeviceID")))
    return int(match.group(1)) if match else None


def parse_windows_volumes(records: List[dict]) -> List[VolumeInfo]:
    volumes = []
    for record in records:
        letter = _str(record.get("DriveLetter"))
        if not letter:
            continue
        volumes.append(
            VolumeInfo(
                drive_letter=f"{letter}:",
                volume_name=_str(record.get("Label")),
                total_bytes=_int(record.get("Size")),
                free_bytes=_int(record.get("FreeSpace")),
                file_system=_str(record.get("FileSystem")),
                volume_serial=_str(record.get("Serial")),
            )
        )
    return volumes


def storage_from_drive(drive: dict, volumes: List[VolumeInfo]) -> StorageInfo:
    return StorageInfo(
        model=_str(drive.get("Model")),
        serial_number=_str(drive.get("SerialNumber")),
        total_bytes=_int(drive.get("Size")),
        interface_type=_str(drive.get("InterfaceType")),
        media_type=_str(drive.get("MediaType")),
        firmware=_str(drive.get("FirmwareRevision")),
        partition_count=_int(drive.get("Partitions")),
        status=_str(drive.get("Status")),
        volumes=tuple(volumes),
    )


class WindowsStorageProbe:
    """Disk and volume details for a USB instance id via CIM and the Storage module."""

    def __init__(self, powershell: Callable[[str], str] = run_powershell):
        self.powershell = powershell

    def storage_for(self, device_id: str) -> Optional[StorageInfo]:
        usb_serial = usb_serial_from_id(device_id)
        if not usb_serial:
            return None
        try:
            drives = json_records(self.powershell(DISK_DRIVE_SCRIPT))
        except ProviderError as exc:
            logger.warning("Disk drive query failed: %s", exc)
            return None

        matched = match_disk_drive(drives, usb_serial)
        if matched is None:
            logger.debug("No disk drive matched usb serial %s among %d drives", usb_serial, len(drives))
            return None
        return storage_from_drive(matched, self._volumes(matched))

    def _volumes(self, drive: dict) -> List[VolumeInfo]:
        index = disk_index(drive)
        if index is None:
            logger.debug("Cannot extract disk index from %s", drive.get("DeviceID"))
            return []
        try:
            records = json_records(self.powershell(VOLUME_SCRIPT.format(index=index)))
        except ProviderError as exc:
            logger.warning("Volume query for disk %d failed: %s", index, exc)
            return []
        return parse_windows_volumes(records)


# Linux


def parse_lsblk(data: Dict[str, Any], usage: Callable[[str], Any] = psutil.disk_usage) -> Optional[StorageInfo]:
    """
    Build StorageInfo from `lsblk -J -b` output for one disk. Mounted
    partitions (or the bare disk when it has no partition table) become
    volumes; free space comes from the mounted filesystem.
    """
    devices = data.get("blockdevices") or []
    disk = next((d for d in devices if d.get("type") == "disk"), None)
    if disk is None:
        return None

    children = disk.get("children") or []
    partitions = [c for c in children if c.get("type") == "part"]
    candidates = partitions or [disk]
    volumes = []
    for part in candidates:
        mountpoint = _str(part.get("mountpoint"))
        if not mountpoint:
            continue
        total = _int(part.get("size"))
        free = 0
        try:
            stats = usage(mountpoint)
            total, free = int(stats.total), int(stats.free)
        except OSError as exc:
            logger.debug("disk_usage(%s) failed: %s", mountpoint, exc)
        volumes.append(
            VolumeInfo(
                drive_letter=mountpoint,
                volume_name=_str(part.get("label")),
                total_bytes=total,
                free_bytes=free,
                file_system=_str(part.get("fstype")),
                volume_serial=_str(part.get("uuid")),
            )
        )

    return StorageInfo(
        model=_str(disk.get("model")),
        serial_number=_str(disk.get("serial")),
        total_bytes=_int(disk.get("size")),
        interface_type=_str(disk.get("tran")).upper(),
        media_type="Removable Media" if _flag(disk.get("rm")) else "Fixed hard disk media",
        firmware=_str(disk.get("rev")),
        partition_count=len(partitions),
        status=_str(disk.get("state")) or "unknown",
        volumes=tuple(volumes),
    )


class LinuxStorageProbe:
    """
    Maps a USB device directory under /sys/bus/usb/devices to the block
    devices it exposes, then reads them with lsblk.
    """

    def __init__(
        self,
        sys_root: Path = Path("/sys"),
        runner: Callable[[List[str]], str] = run_command,
        usage: Callable[[str], Any] = psutil.disk_usage,
    ):
        self.sys_root = Path(sys_root)
        self.runner = runner
        self.usage = usage

    def block_devices_for(self, usb_dir: Path) -> List[str]:
        block_root = self.sys_root / "block"
        if not block_root.is_dir():
            return []
        usb_real = os.path.realpath(usb_dir) + os.sep
        names = []
        for entry in sorted(block_root.iterdir()):
            if os.path.realpath(entry).startswith(usb_real):
                names.append(entry.name)
        return names

    def storage_for(self, usb_dir: Path) -> Optional[StorageInfo]:
        names = self.block_devices_for(usb_dir)
        if not names:
            return None
        try:
            output = self.runner(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, f"/dev/{names[0]}"])
            data = json.loads(output or "{}")
        except (ProviderError, ValueError) as exc:
            logger.warning("lsblk for /dev/%s failed: %s", names[0], exc)
            return None
        return parse_lsblk(data, self.usage)
