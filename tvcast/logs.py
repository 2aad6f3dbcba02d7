"""
Logging setup for tvcast.

Besides the console handler, logs go to a small rotating file set so the
descriptor server can hand them out over ``/debug/log`` and ``/debug/old``.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

LOG_FILE_NAME = "tvcast.log"
LOG_MAX_BYTES = 1024 * 1024
LOG_BACKUP_COUNT = 3

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False, log_dir: Path | None = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_dir / LOG_FILE_NAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("zeroconf").setLevel(logging.WARNING)


def log_files(log_dir: Path) -> list[Path]:
    """Existing log files, newest first (tvcast.log, tvcast.log.1, ...)."""
    candidates = [log_dir / LOG_FILE_NAME]
    candidates += [log_dir / f"{LOG_FILE_NAME}.{i}" for i in range(1, LOG_BACKUP_COUNT + 1)]
    return [p for p in candidates if p.is_file()]


def latest_log_path(log_dir: Path) -> Path | None:
    files = log_files(log_dir)
    return files[0] if files else None


def oldest_log_path(log_dir: Path) -> Path | None:
    files = log_files(log_dir)
    return files[-1] if files else None
