"""
Logging configuration for chatrelay.

- One timestamped log file per server start
- Keeps the last N files (logging.keep)
- Fixed-width, grep-friendly line format
- Colour console output in dev mode
- StreamTrace: optional per-conversation JSONL record of what a CLI agent
  was sent and what it printed, for debugging backends
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import Config

NAMESPACE = "chatrelay"


class RelayFormatter(logging.Formatter):
    """timestamp  LEVEL  [area]  message"""

    FMT = "%(asctime)s  %(levelname)-6s [%(name)-10s] %(message)s"
    DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def format(self, record: logging.LogRecord) -> str:
        prefix = NAMESPACE + "."
        if record.name.startswith(prefix):
            record.name = record.name[len(prefix):]
        return super().format(record)


class ColorFormatter(RelayFormatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _prune(log_dir: Path, keep: int) -> None:
    existing = sorted(log_dir.glob("*.log"))
    for old in existing[: max(0, len(existing) - keep + 1)]:
        try:
            old.unlink()
        except OSError as e:
            logging.getLogger(f"{NAMESPACE}.server").warning("Could not remove old log %s: %s", old.name, e)


def configure_logging(config: "Config") -> Path:
    """
    Set up logging for this server run.
    Returns the path of the new log file.
    """
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    _prune(log_dir, config.log_keep)

    log_file = log_dir / (datetime.now().strftime("%Y-%m-%d_%H%M%S") + ".log")
    level = getattr(logging, config.log_level, logging.INFO)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(RelayFormatter(fmt=RelayFormatter.FMT, datefmt=RelayFormatter.DATE_FMT))
    file_handler.setLevel(level)
    handlers: list[logging.Handler] = [file_handler]

    if config.dev_mode:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter(fmt=RelayFormatter.FMT, datefmt=RelayFormatter.DATE_FMT))
        console_handler.setLevel(level)
        handlers.append(console_handler)

    relay_logger = logging.getLogger(NAMESPACE)
    relay_logger.setLevel(level)
    for h in list(relay_logger.handlers):
        relay_logger.removeHandler(h)
        h.close()
    for h in handlers:
        relay_logger.addHandler(h)
    relay_logger.propagate = False

    logging.getLogger().setLevel(logging.WARNING)

    return log_file


class StreamTrace:
    """
    Append-only JSONL trace for one conversation: <trace_dir>/<conversation_id>.jsonl

    Each line is {"ts", "dir", "type", "data"} where dir is "meta" (command,
    error, complete), "in" (stdin) or "out" (stream, stderr). Traces are a
    debugging aid: a failed write is logged, never raised.
    """

    def __init__(self, trace_dir: Path, conversation_id: str) -> None:
        self.path = trace_dir / f"{conversation_id}.jsonl"

    @classmethod
    def open(cls, trace_dir: Path, conversation_id: str) -> "StreamTrace":
        trace_dir.mkdir(parents=True, exist_ok=True)
        return cls(trace_dir, conversation_id)

    def command(self, argv: list[str]) -> None:
        self._write("meta", "command", argv)

    def stdin(self, content: str) -> None:
        self._write("in", "stdin", content)

    def stream(self, data: Any) -> None:
        self._write("out", "stream", data)

    def stderr(self, content: str) -> None:
        self._write("out", "stderr", content)

    def error(self, message: str) -> None:
        self._write("meta", "error", message)

    def complete(self, summary: dict[str, Any]) -> None:
        self._write("meta", "complete", summary)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def _write(self, direction: str, kind: str, data: Any) -> None:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "dir": direction,
            "type": kind,
            "data": data,
        }
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logging.getLogger(f"{NAMESPACE}.provider").warning("Could not write stream trace %s: %s", self.path.name, e)
