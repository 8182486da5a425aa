from __future__ import annotations

import argparse
import sys
from typing import List, Optional, TextIO

import uvicorn

from . import __version__
from .config import Settings
from .device_monitor import create_monitor
from .log_config import configure_logging
from .main import create_app
from .models import DeviceEvent, EventKind, ObservedDevice, Snapshot
from .utils import format_bytes

TAGLINE = "WTF just disconnected?"
BANNER_WIDTH = 39


def banner() -> str:
    title = f"Device History v{__version__}"
    rule = "═" * BANNER_WIDTH
    return "\n".join(
        [
            f"╔{rule}╗",
            f"║{title:^{BANNER_WIDTH}}║",
            f"║{TAGLINE:^{BANNER_WIDTH}}║",
            f"╚{rule}╝",
        ]
    )


def device_line(device: ObservedDevice, snapshot: Snapshot) -> str:
    extra = ""
    if device.vid_pid:
        extra += f" [{device.vid_pid}]"
    if device.manufacturer:
        extra += f" ({device.manufacturer})"
    storage = snapshot.storage_info.get(device.device_id)
    if storage is not None and storage.total_bytes:
        extra += f" {format_bytes(storage.total_bytes)}"
    return f"  | {device.device_class} {device.name}{extra}"


def event_line(event: DeviceEvent) -> str:
    marker = "▲ CONNECT   " if event.kind == EventKind.CONNECT else "▼ DISCONNECT"
    vid_pid = f" [{event.vid_pid}]" if event.vid_pid else ""
    return f"[{event.timestamp.strftime('%H:%M:%S')}] {marker} {event.name}{vid_pid}"


def run_terminal(settings: Settings, out: TextIO = sys.stdout) -> int:
    """Print attached devices once, then one line per event until Ctrl+C."""
    monitor = create_monitor(settings)
    subscription = monitor.state.channel.subscribe()
    print(banner(), file=out)
    print(file=out)
    printed = len(monitor.state.snapshot().events)
    baseline_shown = False
    monitor.start()
    try:
        while True:
            snapshot = subscription.get(timeout=1.0)
            if snapshot is None:
                continue
            if snapshot.error:
                print(f"! {snapshot.error}", file=out)
                if not baseline_shown:
                    continue
            if not baseline_shown:
                # the first snapshot after start is the baseline
                print(f"* {len(snapshot.devices)} devices currently connected:\n", file=out)
                for device in snapshot.devices:
                    print(device_line(device, snapshot), file=out)
                print("\nWatching for changes... (Ctrl+C to quit)", file=out)
                print("─" * 60 + "\n", file=out, flush=True)
                baseline_shown = True
            if len(snapshot.events) < printed:
                printed = 0
            for event in snapshot.events[printed:]:
                print(event_line(event), file=out, flush=True)
            printed = len(snapshot.events)
    except KeyboardInterrupt:
        print("\nStopped.", file=out)
    finally:
        monitor.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="device-history", description="Track device connects and disconnects.")
    parser.add_argument("--cli", action="store_true", help="print events to the terminal instead of serving the API")
    parser.add_argument("--provider", help="device provider: auto, pnp, sysfs or serial")
    parser.add_argument("--data-dir", help="directory for the ledger, history and prefs files")
    parser.add_argument("--poll-ms", type=int, help="poll period in milliseconds")
    parser.add_argument("--host", help="API bind address")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("--log-file", help="also log to this file")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings()
    if args.provider:
        settings.monitor.provider = args.provider
    if args.poll_ms:
        settings.monitor.poll_ms = args.poll_ms
    if args.data_dir:
        settings.storage.data_dir = args.data_dir
    if args.host:
        settings.server.host = args.host
    if args.port:
        settings.server.port = args.port
    if args.log_file:
        settings.logging.log_file = args.log_file
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    configure_logging(settings.logging)
    if args.cli:
        return run_terminal(settings)

    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
