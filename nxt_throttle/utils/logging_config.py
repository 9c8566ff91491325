"""Logging setup for the bridge entry points.

Library modules only ever call ``logging.getLogger(__name__)``; handlers
are installed here, once, by the scripts.

Line formats::

    human  2026-10-19T13:45:12.345Z | INFO     | brick-session | port=COM3 | Session started
    json   {"ts": "...", "level": "INFO", "logger": "...", "thread": "...", "port": "COM3", "msg": "..."}

The thread name is part of every line because the session loop, the
heartbeat and the serial reader each log from their own thread.

Context fields (``push_context``) live in a ``ContextVar``.  Worker
threads start with an empty context, so anything that must appear on
their lines is pushed through ``setup_logging(context=...)`` before the
threads are spawned.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from nxt_throttle.utils.fs import ensure_dir

_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "nxt_throttle_log_context", default={}
)

# Handlers installed by setup_logging(); replaced on every call.
_installed: List[logging.Handler] = []

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


class ContextFormatter(logging.Formatter):
    """Render records with the current context fields.

    Parameters
    ----------
    json_lines : bool
        Emit one JSON object per record instead of the human format.
    color : bool
        Colour the level name.  Ignored for JSON and when stderr is not
        a terminal.
    """

    def __init__(self, json_lines: bool = False, color: bool = False):
        super().__init__()
        self.json_lines = json_lines
        self.color = color and not json_lines and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        fields = _context.get()

        if self.json_lines:
            entry: Dict[str, Any] = {
                "ts": stamp,
                "level": record.levelname,
                "logger": record.name,
                "thread": record.threadName,
            }
            entry.update(fields)
            entry["msg"] = record.getMessage()
            if record.exc_info:
                entry["exc"] = self.formatException(record.exc_info)
            return json.dumps(entry, default=str)

        level = f"{record.levelname:8s}"
        if self.color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"
        parts = [stamp, level, record.threadName]
        if fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        parts.append(record.getMessage())
        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    max_bytes: int = 0,
    backup_count: int = 3,
    quiet_libs: Optional[Iterable[str]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Install console and file handlers on the root logger.

    Calling it again replaces the handlers from the previous call and
    leaves foreign handlers alone.

    Parameters
    ----------
    log_level : str
        Root level name, e.g. ``"DEBUG"``.
    log_file : str, optional
        Also log to this file; parent directories are created.
    json : bool
        JSON lines in the file handler.  The console stays human.
    color : bool
        Coloured level names on the console.
    to_stderr : bool
        Install the console handler.
    max_bytes : int
        Rotate the log file at this size; ``0`` disables rotation.
    backup_count : int
        Rotated files kept.
    quiet_libs : iterable of str, optional
        Loggers capped at WARNING (``["serial"]`` for pyserial).
    context : dict, optional
        Fields pushed onto every line, e.g. ``{"app": "bridge"}``.

    Returns
    -------
    list[logging.Handler]
        The handlers installed by this call.
    """
    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    root.setLevel(getattr(logging, log_level.upper()))

    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter(color=color))
        _installed.append(console)

    if log_file:
        ensure_dir(Path(log_file).resolve().parent)
        if max_bytes > 0:
            file_handler: logging.Handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(ContextFormatter(json_lines=json))
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)

    for lib in quiet_libs or ():
        logging.getLogger(lib).setLevel(logging.WARNING)

    if context:
        push_context(**context)

    logging.captureWarnings(True)
    return list(_installed)


def push_context(**fields: Any) -> None:
    """Add fields to every following line of the current context."""
    _context.set({**_context.get(), **fields})


def pop_context(keys: Optional[Iterable[str]] = None) -> None:
    """Drop *keys* from the context, or every field when ``None``."""
    if keys is None:
        _context.set({})
        return
    fields = dict(_context.get())
    for key in keys:
        fields.pop(key, None)
    _context.set(fields)


def install_excepthook() -> None:
    """Send uncaught exceptions (Ctrl+C excepted) through logging."""
    def _hook(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logging.getLogger("nxt_throttle").critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _hook
