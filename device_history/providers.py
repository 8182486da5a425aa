from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional

from serial.tools import list_ports

from .errors import ProviderError, ValidationError
from .models import ObservedDevice, StorageInfo
from .shell import json_records, run_powershell
from .storage_probe import LinuxStorageProbe, WindowsStorageProbe
from .utils import clean, display_name, format_vid_pid, vid_pid_from_id

logger = logging.getLogger(__name__)

SYSFS_USB_ROOT = Path("/sys/bus/usb/devices")

PNP_SCRIPT = (
    "@(Get-CimInstance Win32_PnPEntity -Filter \"DeviceID LIKE 'USB%'\" "
    "| Select-Object Name, DeviceID, Description, Manufacturer, PNPClass) "
    "| ConvertTo-Json -Depth 2"
)

# USB base class codes mapped onto the PnP class names Windows reports, so
# the classification rules work the same on every platform.
USB_CLASS_NAMES = {
    "01": "MEDIA",
    "02": "Ports",
    "03": "HIDClass",
    "06": "Image",
    "07": "Printer",
    "08": "DiskDrive",
    "09": "USB",
    "0a": "Ports",
    "0e": "Camera",
    "e0": "Bluetooth",
    "ff": "USB",
}


class EnumerationProvider(ABC):
    """
    Read-only view of the devices attached to this host. Called once per
    poll, so implementations should be cheap.
    """

    name = "base"

    @abstractmethod
    def enumerate(self) -> Dict[str, ObservedDevice]:
        """Attached devices keyed by device id. Raises ProviderError."""

    def storage_for(self, device_id: str) -> Optional[StorageInfo]:
        return None


class SerialPortProvider(EnumerationProvider):
    """
    Serial ports via pyserial. Works everywhere pyserial does; USB serial
    adapters get an instance-style id so they keep their identity across
    port renumbering.
    """

    name = "serial"

    def __init__(self, comports: Callable[[], List] = list_ports.comports):
        self.comports = comports

    def enumerate(self) -> Dict[str, ObservedDevice]:
        try:
            infos = self.comports()
        except OSError as exc:
            raise ProviderError(f"serial port listing failed: {exc}") from exc

        devices: Dict[str, ObservedDevice] = {}
        for info in infos:
            if not info.device:
                continue
            if info.vid is not None and info.pid is not None:
                tail = info.serial_number or info.location or info.device
                device_id = f"USB\\VID_{info.vid:04X}&PID_{info.pid:04X}\\{tail}"
            else:
                device_id = info.device
            description = info.description if info.description not in (None, "", "n/a") else None
            devices[device_id] = ObservedDevice(
                device_id=device_id,
                name=display_name(description, info.device),
                vid_pid=format_vid_pid(info.vid, info.pid),
                device_class="Ports",
                manufacturer=clean(info.manufacturer),
                description=clean(info.product),
            )
        return devices


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""


class SysfsUsbProvider(EnumerationProvider):
    """USB devices from the Linux sysfs tree."""

    name = "sysfs"

    def __init__(self, root: Path = SYSFS_USB_ROOT, probe: Optional[LinuxStorageProbe] = None):
        self.root = Path(root)
        self.probe = probe or LinuxStorageProbe()
        self._paths: Dict[str, Path] = {}

    def enumerate(self) -> Dict[str, ObservedDevice]:
        if not self.root.is_dir():
            raise ProviderError(f"{self.root} is not available")
        try:
            entries = sorted(self.root.iterdir())
        except OSError as exc:
            raise ProviderError(f"cannot list {self.root}: {exc}") from exc

        devices: Dict[str, ObservedDevice] = {}
        paths: Dict[str, Path] = {}
        for entry in entries:
            # 1-1.2:1.0 style names are interfaces, not devices
            if ":" in entry.name:
                continue
            vid = _read(entry / "idVendor").upper()
            pid = _read(entry / "idProduct").upper()
            if not vid or not pid:
                continue
            serial = _read(entry / "serial")
            device_id = f"USB\\VID_{vid}&PID_{pid}\\{serial or entry.name}"
            if device_id in devices:
                device_id = f"{device_id}&{entry.name}"
            product = _read(entry / "product")
            devices[device_id] = ObservedDevice(
                device_id=device_id,
                name=display_name(product, None),
                vid_pid=f"{vid}:{pid}",
                device_class=self._device_class(entry),
                manufacturer=clean(_read(entry / "manufacturer")),
                description=clean(product),
            )
            paths[device_id] = entry
        self._paths = paths
        return devices

    def storage_for(self, device_id: str) -> Optional[StorageInfo]:
        path = self._paths.get(device_id)
        if path is None:
            return None
        return self.probe.storage_for(path)

    def _device_class(self, entry: Path) -> str:
        code = _read(entry / "bDeviceClass").lower()
        if code in ("", "00", "ef"):
            # class is defined per interface; the first known one wins
            for interface in sorted(entry.glob(f"{entry.name}:*")):
                iface_code = _read(interface / "bInterfaceClass").lower()
                if iface_code in USB_CLASS_NAMES:
                    return USB_CLASS_NAMES[iface_code]
        return USB_CLASS_NAMES.get(code, "USB")


def parse_pnp_records(records: List[dict]) -> Dict[str, ObservedDevice]:
    devices: Dict[str, ObservedDevice] = {}
    for item in records:
        device_id = clean(item.get("DeviceID"))
        if not device_id:
            continue
        description = clean(item.get("Description"))
        devices[device_id] = ObservedDevice(
            device_id=device_id,
            name=display_name(item.get("Name"), description),
            vid_pid=vid_pid_from_id(device_id),
            device_class=clean(item.get("PNPClass")) or "?",
            manufacturer=clean(item.get("Manufacturer")),
            description=description,
        )
    return devices


class PnpDeviceProvider(EnumerationProvider):
    """USB PnP entities on Windows, queried through PowerShell CIM."""

    name = "pnp"

    def __init__(
        self,
        powershell: Callable[[str], str] = run_powershell,
        probe: Optional[WindowsStorageProbe] = None,
    ):
        self.powershell = powershell
        self.probe = probe or WindowsStorageProbe(powershell)

    def enumerate(self) -> Dict[str, ObservedDevice]:
        return parse_pnp_records(json_records(self.powershell(PNP_SCRIPT)))

    def storage_for(self, device_id: str) -> Optional[StorageInfo]:
        return self.probe.storage_for(device_id)


PROVIDERS = {
    SerialPortProvider.name: SerialPortProvider,
    SysfsUsbProvider.name: SysfsUsbProvider,
    PnpDeviceProvider.name: PnpDeviceProvider,
}


def select_provider(name: str = "auto") -> EnumerationProvider:
    name = (name or "auto").strip().lower()
    if name == "auto":
        if sys.platform == "win32":
            name = PnpDeviceProvider.name
        elif SYSFS_USB_ROOT.is_dir():
            name = SysfsUsbProvider.name
        else:
            name = SerialPortProvider.name
    factory = PROVIDERS.get(name)
    if factory is None:
        raise ValidationError("provider", f"unknown provider {name!r}, expected one of {sorted(PROVIDERS)}")
    logger.info("Using %s device provider", name)
    return factory()
