from __future__ import annotations

import logging
from datetime import datetime, timezone

from mongokeeper.config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def configure_logging(settings: Settings) -> None:
    """Attach console and file handlers to the root logger once per process."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = settings.resolved_log_file
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError:
            root.warning("Cannot open log file %s, logging to console only", log_file)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    _configured = True


class AttemptLog:
    """Log lines captured for one backup attempt.

    Each call goes to the wrapped logger as usual and is also kept in a
    buffer that ends up in the attempt's ``log_text``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._lines: list[str] = []

    def _record(self, level: str, message: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        self._lines.append(f"[{level}] {stamp}: {message}")

    def info(self, message: str, *args: object) -> None:
        self._logger.info(message, *args)
        self._record("INFO", message % args if args else message)

    def warning(self, message: str, *args: object) -> None:
        self._logger.warning(message, *args)
        self._record("WARN", message % args if args else message)

    def error(self, message: str, *args: object) -> None:
        self._logger.error(message, *args)
        self._record("ERROR", message % args if args else message)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)
