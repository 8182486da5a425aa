from __future__ import annotations

import json
import subprocess
from typing import Any, List, Sequence

from .errors import ProviderError

POWERSHELL_TIMEOUT = 15.0


def run_command(cmd: Sequence[str], timeout: float = POWERSHELL_TIMEOUT) -> str:
    """
    Run a command and return stdout. Output is decoded by hand so localized
    consoles cannot raise UnicodeDecodeError.
    """
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=False, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ProviderError(f"{cmd[0]} failed: {exc}") from exc

    if result.returncode != 0:
        stderr_text = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        raise ProviderError(stderr_text or f"{cmd[0]} exited with {result.returncode}")
    return (result.stdout or b"").decode("utf-8", errors="replace").strip()


def run_powershell(script: str, timeout: float = POWERSHELL_TIMEOUT) -> str:
    command = "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8; " + script
    return run_command(["powershell", "-NoLogo", "-NoProfile", "-Command", command], timeout=timeout)


def json_records(output: str) -> List[dict]:
    """ConvertTo-Json emits a bare object for one result and nothing for none."""
    if not output:
        return []
    try:
        data: Any = json.loads(output)
    except ValueError as exc:
        raise ProviderError(f"unparseable JSON output: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]
