from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from .models import ObservedDevice


@dataclass(frozen=True)
class ClassRule:
    """
    Substring rule over a device's reported class and name.

    Every pattern that is set must appear; a rule with neither set never
    matches.
    """

    label: str
    class_contains: Optional[str] = None
    name_contains: Optional[str] = None

    def matches(self, device_class: str, name: str) -> bool:
        if self.class_contains is None and self.name_contains is None:
            return False
        if self.class_contains is not None and self.class_contains not in device_class:
            return False
        if self.name_contains is not None and self.name_contains not in name:
            return False
        return True


class DeviceClassifier:
    """First matching rule wins, so order the rules from specific to generic."""

    def __init__(self, rules: Sequence[ClassRule]):
        self.rules = tuple(rules)

    def classify(self, device: ObservedDevice) -> Optional[str]:
        for rule in self.rules:
            if rule.matches(device.device_class, device.name):
                return rule.label
        return None

    def matches(self, device: ObservedDevice) -> bool:
        return self.classify(device) is not None

    def extend(self, rules: Sequence[ClassRule]) -> "DeviceClassifier":
        return DeviceClassifier(self.rules + tuple(rules))


STORAGE_RULES = (
    ClassRule("storage", class_contains="SCSIAdapter"),
    ClassRule("storage", class_contains="DiskDrive"),
    ClassRule("storage", class_contains="USB", name_contains="Storage"),
    ClassRule("storage", name_contains="Mass Storage"),
)

CATEGORY_RULES = STORAGE_RULES + (
    ClassRule("hub", class_contains="USB", name_contains="Hub"),
    ClassRule("input", class_contains="HIDClass"),
    ClassRule("input", class_contains="Keyboard"),
    ClassRule("input", class_contains="Mouse"),
    ClassRule("audio", class_contains="MEDIA"),
    ClassRule("audio", class_contains="AudioEndpoint"),
    ClassRule("camera", class_contains="Camera"),
    ClassRule("camera", class_contains="Image"),
    ClassRule("network", class_contains="Net"),
    ClassRule("network", class_contains="Bluetooth"),
    ClassRule("serial", class_contains="Ports"),
    ClassRule("phone", class_contains="WPD"),
    ClassRule("printer", class_contains="Printer"),
    ClassRule("usb", class_contains="USB"),
)

STORAGE_CLASSIFIER = DeviceClassifier(STORAGE_RULES)
CATEGORY_CLASSIFIER = DeviceClassifier(CATEGORY_RULES)


def is_storage_device(device: ObservedDevice) -> bool:
    return STORAGE_CLASSIFIER.matches(device)


def category_for(device: ObservedDevice) -> str:
    return CATEGORY_CLASSIFIER.classify(device) or "other"
