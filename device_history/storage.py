from __future__ import annotations

import json
import logging
import os
import queue
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import PersistenceError
from .models import DEFAULT_TAB, DEFAULT_THEME, DeviceEvent, KnownDevice, Prefs

logger = logging.getLogger(__name__)

LEDGER_VERSION = 2
LEDGER_FILE = "device-history-cache.json"
PREFS_FILE = "device-history-prefs.json"
EVENTS_FILE = "device-history-events.jsonl"


def atomic_write(path: Path, text: str) -> None:
    """
    Write through a temp file in the same directory and swap it in, so a
    reader sees either the old file or the new one.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise PersistenceError(f"{path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(text)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise PersistenceError(f"{path}: {exc}") from exc


class LedgerStore:
    """Known-device ledger as one JSON document: {"version": 2, "devices": {...}}."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, KnownDevice]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable ledger %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict) or not isinstance(data.get("devices"), dict):
            logger.warning("Ignoring ledger %s with unexpected layout", self.path)
            return {}

        devices: Dict[str, KnownDevice] = {}
        for device_id, item in data["devices"].items():
            if not isinstance(item, dict):
                continue
            try:
                devices[device_id] = KnownDevice.model_validate({**item, "device_id": device_id})
            except PydanticValidationError as exc:
                logger.warning("Skipping ledger entry %s: %s", device_id, exc.errors()[0].get("msg"))
        logger.info("Loaded %d known devices from %s", len(devices), self.path)
        return devices

    def save(self, devices: Dict[str, KnownDevice]) -> None:
        payload = {
            "version": LEDGER_VERSION,
            "devices": {device_id: entry.model_dump(mode="json") for device_id, entry in devices.items()},
        }
        atomic_write(self.path, json.dumps(payload, indent=2, sort_keys=True))


class PrefsStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Prefs:
        if not self.path.exists():
            return Prefs()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Ignoring unreadable prefs %s: %s", self.path, exc)
            return Prefs()
        try:
            data = json.loads(text)
        except ValueError:
            data = _parse_key_values(text)
        if not isinstance(data, dict):
            return Prefs()
        return Prefs(
            theme=_non_blank(data.get("theme"), DEFAULT_THEME),
            active_tab=_non_blank(data.get("active_tab"), DEFAULT_TAB),
        )

    def save(self, prefs: Prefs) -> None:
        atomic_write(self.path, json.dumps(prefs.model_dump(), indent=2))


def _parse_key_values(text: str) -> Dict[str, str]:
    # theme=neon / active_tab=monitor, one per line
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def _non_blank(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


class EventJournal:
    """
    Append-only JSON-lines file backing the event log across restarts.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[DeviceEvent]:
        if not self.path.exists():
            return []
        events: List[DeviceEvent] = []
        try:
            with self.path.open("r", encoding="utf-8") as fp:
                for number, line in enumerate(fp, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        events.append(DeviceEvent.model_validate_json(line))
                    except PydanticValidationError:
                        logger.warning("Skipping malformed event on line %d of %s", number, self.path)
        except OSError as exc:
            logger.warning("Ignoring unreadable event journal %s: %s", self.path, exc)
            return []
        return events

    def append(self, events: Iterable[DeviceEvent]) -> None:
        lines = [event.model_dump_json() + "\n" for event in events]
        if not lines:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fp:
                fp.writelines(lines)
                fp.flush()
        except OSError as exc:
            raise PersistenceError(f"{self.path}: {exc}") from exc

    def clear(self) -> None:
        atomic_write(self.path, "")


class WriteBehind:
    """
    Background writer for state files.

    Callers enqueue and return immediately; the worker applies writes in
    order. Ledger saves are coalesced so only the newest pending copy hits
    the disk. A failed write is logged and kept in `last_error` until the
    next write to the same file succeeds. `close()` drains the queue before
    returning.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        journal: Optional[EventJournal] = None,
        prefs: Optional[PrefsStore] = None,
    ):
        self.ledger = ledger
        self.journal = journal
        self.prefs = prefs
        self._failures: Dict[str, str] = {}
        self._failures_lock = threading.Lock()
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._generation = 0
        self._generation_lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="state-writer", daemon=True)

    @property
    def last_error(self) -> Optional[str]:
        """Message of the most recent failed write per file that has not succeeded since."""
        with self._failures_lock:
            if not self._failures:
                return None
            return "; ".join(self._failures.values())

    def start(self) -> None:
        if not self._thread.is_alive() and not self._closed:
            self._thread.start()

    def save_ledger(self, devices: Dict[str, KnownDevice]) -> None:
        with self._generation_lock:
            self._generation += 1
            generation = self._generation
        self._submit(("ledger", generation, devices))

    def append_events(self, events: List[DeviceEvent]) -> None:
        if self.journal is not None and events:
            self._submit(("events", list(events)))

    def clear_events(self) -> None:
        if self.journal is not None:
            self._submit(("clear",))

    def save_prefs(self, prefs: Prefs) -> None:
        if self.prefs is not None:
            self._submit(("prefs", prefs.model_copy()))

    def flush(self) -> None:
        if self._thread.is_alive():
            self._queue.join()
        else:
            self._drain()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread.is_alive():
            self._queue.put(None)
            self._thread.join()
        self._drain()

    def _submit(self, item: tuple) -> None:
        if self._closed:
            self._apply(item)
            return
        self._queue.put(item)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self._apply(item)
            finally:
                self._queue.task_done()

    def _drain(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if item is not None:
                    self._apply(item)
            finally:
                self._queue.task_done()

    def _apply(self, item: tuple) -> None:
        kind = item[0]
        target = "events" if kind == "clear" else kind
        try:
            if kind == "ledger":
                _, generation, devices = item
                with self._generation_lock:
                    stale = generation < self._generation
                if stale:
                    return
                self.ledger.save(devices)
            elif kind == "events":
                self.journal.append(item[1])
            elif kind == "clear":
                self.journal.clear()
            elif kind == "prefs":
                self.prefs.save(item[1])
        except PersistenceError as exc:
            with self._failures_lock:
                self._failures[target] = str(exc)
            logger.warning("State write failed (%s): %s", kind, exc)
        else:
            with self._failures_lock:
                self._failures.pop(target, None)
