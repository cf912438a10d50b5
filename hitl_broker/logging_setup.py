"""Logging configuration shared by the service and the operator CLI.

Terminal output is ANSI-coloured; an optional rotating plain-text file log
receives the same records.  The access logger gets its own handlers so the
METRIC lines can be filtered out of a busy terminal with ``LOG_LEVEL``.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


class ColorFormatter(logging.Formatter):
    """ANSI-coloured formatter for terminal output."""

    _COLORS = {
        logging.DEBUG: "\033[36m",      # cyan
        logging.INFO: "\033[32m",       # green
        logging.WARNING: "\033[33m",    # yellow
        logging.ERROR: "\033[31m",      # red
        logging.CRITICAL: "\033[1;31m", # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        line = (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>20s}]{self._RESET} "
            f"{color}{msg}{self._RESET}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class PlainFormatter(logging.Formatter):
    """Plain-text formatter for file logs (no ANSI codes)."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        line = f"{ts} {record.levelname:<8s} [{name:>20s}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", log_file: str = "", *, color: bool | None = None) -> None:
    """Install stderr (and optionally file) handlers on the root logger.

    Safe to call more than once; later calls replace earlier handlers.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if color is None:
        color = sys.stderr.isatty()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(ColorFormatter() if color else PlainFormatter())
    handlers: list[logging.Handler] = [stream_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    access = logging.getLogger("hitl_broker.access")
    access.handlers = list(handlers)
    access.propagate = False

    # uvicorn's own access log duplicates the METRIC lines.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
