import json
import os
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import pytest

from device_history.errors import ProviderError, ValidationError
from device_history.providers import (
    PnpDeviceProvider,
    SerialPortProvider,
    SysfsUsbProvider,
    parse_pnp_records,
    select_provider,
)
from device_history.shell import json_records, run_command
from device_history.storage_probe import (
    LinuxStorageProbe,
    WindowsStorageProbe,
    disk_index,
    match_disk_drive,
    parse_lsblk,
    parse_windows_volumes,
    usb_serial_from_id,
)

from .conftest import make_storage

PNP_RECORDS = [
    {
        "Name": "USB Mass Storage Device",
        "DeviceID": "USB\\VID_0781&PID_5583\\4C530001",
        "Description": "USB Mass Storage Device",
        "Manufacturer": "Compatible USB storage device",
        "PNPClass": "USB",
    },
    {
        "Name": None,
        "DeviceID": "USB\\ROOT_HUB30\\4&2A1B&0&0",
        "Description": "USB Root Hub (USB 3.0)",
        "Manufacturer": "(Standard USB HUBs)",
        "PNPClass": None,
    },
    {"Name": "ghost", "DeviceID": None},
]

DISK_DRIVES = [
    {
        "DeviceID": "\\\\.\\PHYSICALDRIVE0",
        "PNPDeviceID": "SCSI\\DISK&VEN_NVME\\5&1",
        "Model": "Samsung SSD 980",
        "SerialNumber": "0025_3852_1190_0001.",
        "Size": 1000202273280,
    },
    {
        "DeviceID": "\\\\.\\PHYSICALDRIVE2",
        "PNPDeviceID": "USBSTOR\\DISK&VEN_SANDISK&PROD_ULTRA_FIT\\4C530001&0",
        "Model": "SanDisk Ultra Fit USB Device",
        "SerialNumber": "4C530001",
        "Size": "61524148224",
        "InterfaceType": "USB",
        "MediaType": "Removable Media",
        "Partitions": 1,
        "FirmwareRevision": "1.00",
        "Status": "OK",
    },
]

VOLUMES = [
    {"DriveLetter": "E", "Label": "BACKUP", "Size": 61522051072, "FreeSpace": 40000000000, "FileSystem": "exFAT", "Serial": "A1B2C3D4"},
    {"DriveLetter": "", "Label": "EFI"},
]


def test_parse_pnp_records():
    devices = parse_pnp_records(PNP_RECORDS)

    assert len(devices) == 2
    stick = devices["USB\\VID_0781&PID_5583\\4C530001"]
    assert stick.vid_pid == "0781:5583"
    assert stick.device_class == "USB"
    assert stick.name == "USB Mass Storage Device"
    hub = devices["USB\\ROOT_HUB30\\4&2A1B&0&0"]
    assert hub.name == "USB Root Hub (USB 3.0)"
    assert hub.vid_pid is None
    assert hub.device_class == "?"


def test_pnp_provider_accepts_single_object():
    powershell = mock.Mock(return_value=json.dumps(PNP_RECORDS[0]))
    provider = PnpDeviceProvider(powershell=powershell, probe=mock.Mock())

    assert list(provider.enumerate()) == ["USB\\VID_0781&PID_5583\\4C530001"]


def test_pnp_provider_propagates_failures():
    provider = PnpDeviceProvider(powershell=mock.Mock(side_effect=ProviderError("powershell missing")), probe=mock.Mock())

    with pytest.raises(ProviderError):
        provider.enumerate()


def test_pnp_provider_storage_delegates_to_probe():
    probe = mock.Mock()
    probe.storage_for.return_value = make_storage()
    provider = PnpDeviceProvider(powershell=mock.Mock(), probe=probe)

    assert provider.storage_for("USB\\VID_0781&PID_5583\\4C530001") == make_storage()
    probe.storage_for.assert_called_once_with("USB\\VID_0781&PID_5583\\4C530001")


def test_json_records():
    assert json_records("") == []
    assert json_records('{"a": 1}') == [{"a": 1}]
    assert json_records('[{"a": 1}, 2]') == [{"a": 1}]
    with pytest.raises(ProviderError):
        json_records("<xml/>")


def test_run_command_errors():
    failed = SimpleNamespace(returncode=1, stdout=b"", stderr="Zugriff verweigert".encode("utf-8"))
    with mock.patch("device_history.shell.subprocess.run", return_value=failed):
        with pytest.raises(ProviderError, match="Zugriff verweigert"):
            run_command(["powershell", "-Command", "x"])

    with mock.patch("device_history.shell.subprocess.run", side_effect=FileNotFoundError("powershell")):
        with pytest.raises(ProviderError):
            run_command(["powershell", "-Command", "x"])


def test_run_command_decodes_bad_bytes():
    result = SimpleNamespace(returncode=0, stdout=b"ok \xff\n", stderr=b"")
    with mock.patch("device_history.shell.subprocess.run", return_value=result):
        assert run_command(["lsblk"]) == "ok \ufffd"


def _port(**fields):
    defaults = dict(
        device="/dev/ttyACM0",
        vid=0x2341,
        pid=0x0043,
        serial_number="75830333238351E0B1A1",
        location="1-1.2:1.0",
        description="Arduino Uno",
        manufacturer="Arduino (www.arduino.cc)",
        product="Arduino Uno",
    )
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_serial_provider_builds_usb_ids():
    provider = SerialPortProvider(comports=lambda: [_port(), _port(device="COM3", vid=None, pid=None, description="n/a")])

    devices = provider.enumerate()

    usb = devices["USB\\VID_2341&PID_0043\\75830333238351E0B1A1"]
    assert usb.vid_pid == "2341:0043"
    assert usb.device_class == "Ports"
    assert usb.name == "Arduino Uno"
    plain = devices["COM3"]
    assert plain.vid_pid is None
    assert plain.name == "COM3"


def test_serial_provider_falls_back_to_location():
    provider = SerialPortProvider(comports=lambda: [_port(serial_number=None)])

    assert list(provider.enumerate()) == ["USB\\VID_2341&PID_0043\\1-1.2:1.0"]


def test_serial_provider_wraps_os_errors():
    provider = SerialPortProvider(comports=mock.Mock(side_effect=OSError("no /dev")))

    with pytest.raises(ProviderError):
        provider.enumerate()


def _write(directory: Path, **files):
    directory.mkdir(parents=True, exist_ok=True)
    for name, value in files.items():
        (directory / name).write_text(value + "\n", encoding="utf-8")


@pytest.fixture
def sysfs(tmp_path):
    root = tmp_path / "usb"
    _write(root / "usb1", idVendor="1d6b", idProduct="0002", bDeviceClass="09", product="xHCI Host Controller")
    _write(
        root / "1-1",
        idVendor="0781",
        idProduct="5583",
        bDeviceClass="00",
        serial="4C530001",
        product="Ultra Fit",
        manufacturer="SanDisk",
    )
    _write(root / "1-1" / "1-1:1.0", bInterfaceClass="08")
    _write(root / "1-1:1.0", bInterfaceClass="08")
    _write(root / "1-2", idVendor="046d", idProduct="c077", bDeviceClass="00")
    _write(root / "1-2" / "1-2:1.0", bInterfaceClass="03")
    _write(root / "1-3", product="half written")
    return root


def test_sysfs_provider_enumerates_devices(sysfs):
    devices = SysfsUsbProvider(sysfs, probe=mock.Mock()).enumerate()

    assert sorted(devices) == [
        "USB\\VID_046D&PID_C077\\1-2",
        "USB\\VID_0781&PID_5583\\4C530001",
        "USB\\VID_1D6B&PID_0002\\usb1",
    ]
    stick = devices["USB\\VID_0781&PID_5583\\4C530001"]
    assert stick.device_class == "DiskDrive"
    assert stick.manufacturer == "SanDisk"
    assert stick.vid_pid == "0781:5583"
    mouse = devices["USB\\VID_046D&PID_C077\\1-2"]
    assert mouse.device_class == "HIDClass"
    assert mouse.name == "Unknown Device"
    assert devices["USB\\VID_1D6B&PID_0002\\usb1"].device_class == "USB"


def test_sysfs_storage_uses_device_directory(sysfs):
    probe = mock.Mock()
    probe.storage_for.return_value = make_storage()
    provider = SysfsUsbProvider(sysfs, probe=probe)
    provider.enumerate()

    assert provider.storage_for("USB\\VID_0781&PID_5583\\4C530001") == make_storage()
    probe.storage_for.assert_called_once_with(sysfs / "1-1")
    assert provider.storage_for("USB\\unknown") is None


def test_sysfs_missing_root(tmp_path):
    with pytest.raises(ProviderError):
        SysfsUsbProvider(tmp_path / "absent", probe=mock.Mock()).enumerate()


LSBLK = {
    "blockdevices": [
        {
            "name": "sdb",
            "size": 61524148224,
            "type": "disk",
            "model": "Ultra Fit",
            "serial": "4C530001",
            "tran": "usb",
            "rev": "1.00",
            "state": "running",
            "rm": True,
            "children": [
                {"name": "sdb1", "size": 61522051072, "type": "part", "mountpoint": "/media/user/BACKUP", "fstype": "exfat", "label": "BACKUP", "uuid": "A1B2-C3D4"},
                {"name": "sdb2", "size": 1048576, "type": "part", "mountpoint": None},
            ],
        }
    ]
}


def _usage(path):
    return SimpleNamespace(total=61000000000, free=40000000000)


def test_parse_lsblk():
    info = parse_lsblk(LSBLK, usage=_usage)

    assert info.model == "Ultra Fit"
    assert info.interface_type == "USB"
    assert info.media_type == "Removable Media"
    assert info.partition_count == 2
    assert [v.drive_letter for v in info.volumes] == ["/media/user/BACKUP"]
    volume = info.volumes[0]
    assert (volume.total_bytes, volume.free_bytes) == (61000000000, 40000000000)
    assert volume.file_system == "exfat"
    assert info.used_bytes() == 21000000000


def test_parse_lsblk_usage_failure_keeps_size():
    info = parse_lsblk(LSBLK, usage=mock.Mock(side_effect=PermissionError("denied")))

    assert info.volumes[0].total_bytes == 61522051072
    assert info.volumes[0].free_bytes == 0


def test_parse_lsblk_without_disk():
    assert parse_lsblk({"blockdevices": []}) is None


def test_linux_probe_follows_block_links(tmp_path):
    sys_root = tmp_path / "sys"
    usb_dir = sys_root / "devices" / "pci0000:00" / "usb1" / "1-1"
    disk_dir = usb_dir / "1-1:1.0" / "host0" / "target0:0:0" / "0:0:0:0" / "block" / "sdb"
    disk_dir.mkdir(parents=True)
    other = sys_root / "devices" / "pci0000:00" / "ata1" / "block" / "sda"
    other.mkdir(parents=True)
    (sys_root / "block").mkdir()
    os.symlink(disk_dir, sys_root / "block" / "sdb")
    os.symlink(other, sys_root / "block" / "sda")
    runner = mock.Mock(return_value=json.dumps(LSBLK))
    probe = LinuxStorageProbe(sys_root, runner=runner, usage=_usage)

    assert probe.block_devices_for(usb_dir) == ["sdb"]
    info = probe.storage_for(usb_dir)

    assert info.serial_number == "4C530001"
    assert runner.call_args[0][0][-1] == "/dev/sdb"


def test_linux_probe_without_block_devices(tmp_path):
    runner = mock.Mock()
    probe = LinuxStorageProbe(tmp_path, runner=runner)

    assert probe.storage_for(tmp_path / "1-1") is None
    runner.assert_not_called()


def test_usb_serial_and_disk_matching():
    serial = usb_serial_from_id("USB\\VID_0781&PID_5583\\4c530001")

    assert serial == "4C530001"
    assert match_disk_drive(DISK_DRIVES, serial)["Model"] == "SanDisk Ultra Fit USB Device"
    assert match_disk_drive(DISK_DRIVES, "FFFF9999") is None
    assert match_disk_drive(DISK_DRIVES, "") is None


def test_disk_matching_by_pnp_device_id():
    drives = [dict(DISK_DRIVES[1], SerialNumber="")]

    assert match_disk_drive(drives, "4C530001") is drives[0]


def test_disk_index():
    assert disk_index(DISK_DRIVES[1]) == 2
    assert disk_index({"DeviceID": "something else"}) is None


def test_parse_windows_volumes_skips_unlettered():
    volumes = parse_windows_volumes(VOLUMES)

    assert len(volumes) == 1
    assert volumes[0].drive_letter == "E:"
    assert volumes[0].volume_serial == "A1B2C3D4"


def test_windows_probe():
    def powershell(script):
        if "Win32_DiskDrive" in script:
            return json.dumps(DISK_DRIVES)
        assert "-DiskNumber 2" in script
        return json.dumps(VOLUMES[0])

    info = WindowsStorageProbe(powershell).storage_for("USB\\VID_0781&PID_5583\\4C530001")

    assert info.model == "SanDisk Ultra Fit USB Device"
    assert info.total_bytes == 61524148224
    assert info.partition_count == 1
    assert [v.drive_letter for v in info.volumes] == ["E:"]


def test_windows_probe_volume_failure_keeps_drive():
    def powershell(script):
        if "Win32_DiskDrive" in script:
            return json.dumps(DISK_DRIVES)
        raise ProviderError("Get-Partition not available")

    info = WindowsStorageProbe(powershell).storage_for("USB\\VID_0781&PID_5583\\4C530001")

    assert info.model == "SanDisk Ultra Fit USB Device"
    assert info.volumes == ()


def test_select_provider():
    assert isinstance(select_provider("serial"), SerialPortProvider)
    assert isinstance(select_provider(" PNP "), PnpDeviceProvider)
    with pytest.raises(ValidationError):
        select_provider("bluetooth")
