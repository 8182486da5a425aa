from __future__ import annotations


class DeviceHistoryError(Exception):
    """
    Base error for the device history core.

    `recoverable` errors are handled where they happen (the poll loop keeps
    running); the others propagate to whoever made the request.
    """

    def __init__(self, code: str, hint: str = "", recoverable: bool = False) -> None:
        super().__init__(f"{code}: {hint}" if hint else code)
        self.code = code
        self.hint = hint
        self.recoverable = recoverable


class ProviderError(DeviceHistoryError):
    """The platform device query failed."""

    def __init__(self, hint: str = "") -> None:
        super().__init__("PROVIDER_FAILED", hint, recoverable=True)


class PersistenceError(DeviceHistoryError):
    """A state file could not be read or written."""

    def __init__(self, hint: str = "") -> None:
        super().__init__("PERSISTENCE_FAILED", hint, recoverable=True)


class NotFoundError(DeviceHistoryError):
    def __init__(self, device_id: str) -> None:
        super().__init__("NOT_FOUND", f"unknown device {device_id}")
        self.device_id = device_id


class ValidationError(DeviceHistoryError):
    def __init__(self, field: str, hint: str = "") -> None:
        super().__init__("INVALID_VALUE", f"{field}: {hint}" if hint else field)
        self.field = field
