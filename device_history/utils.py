from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

KB = 1024
MB = 1024 * KB
GB = 1024 * MB
TB = 1024 * GB

_VID_RE = re.compile(r"VID_([0-9A-Fa-f]{4})")
_PID_RE = re.compile(r"PID_([0-9A-Fa-f]{4})")


def now() -> datetime:
    return datetime.now().astimezone()


def format_bytes(size: int) -> str:
    if size >= TB:
        return f"{size / TB:.2f} TB"
    if size >= GB:
        return f"{size / GB:.2f} GB"
    if size >= MB:
        return f"{size / MB:.1f} MB"
    if size >= KB:
        return f"{size / KB:.0f} KB"
    return f"{size} B"


def vid_pid_from_id(device_id: str) -> Optional[str]:
    """
    Pull "vvvv:pppp" out of a PnP style instance id such as
    USB\\VID_0781&PID_5583\\4C530001.
    """
    vid = _VID_RE.search(device_id.upper())
    pid = _PID_RE.search(device_id.upper())
    if not vid or not pid:
        return None
    return f"{vid.group(1)}:{pid.group(1)}"


def format_vid_pid(vid: Optional[int], pid: Optional[int]) -> Optional[str]:
    if vid is None or pid is None:
        return None
    return f"{vid:04X}:{pid:04X}"


def display_name(name: Optional[str], description: Optional[str]) -> str:
    for value in (name, description):
        if value and value.strip():
            return value.strip()
    return "Unknown Device"


def clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None
