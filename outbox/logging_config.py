"""Logging for outbox worker processes and the operator CLI."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

DEFAULT_LOG_FILE = "logs/outbox.log"


def _rotating_file(log_path: Path, cfg: dict[str, Any]) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Route every `outbox.*` logger through the root logger of this worker process.

    Workers usually run under a process supervisor that collects stderr, so
    console output is on unless `logging.log_to_console` is false. A rotating
    file under `project_root` is added when `logging.file` is set; with no
    file configured the console stays on regardless, so claim, retry and
    dead-letter lines are never silently dropped.
    """
    cfg = settings.get("logging") or {}
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = cfg.get("file", DEFAULT_LOG_FILE)

    handlers: list[logging.Handler] = []
    if log_file:
        handlers.append(_rotating_file(project_root / log_file, cfg))
    if cfg.get("log_to_console", True) or not log_file:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
        root.addHandler(h)
