from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Console logging plus an optional rotating file (device-history.log by
    convention). Safe to call more than once.
    """
    config = config or LoggingConfig()
    root = logging.getLogger("device_history")
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if config.log_file:
        path = Path(config.log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    root.propagate = False
