"""Logging setup shared by the CLI scripts and the orchestrator.

One root configuration for render_pattern.py, gpu_status.py and the job
worker threads:
    - stderr handler (colored when attached to a TTY) and optional log file
    - JSON lines on the file handler for log shippers
    - Job fields (app, job_id, backend, stage) attached to every record
    - Python warnings and uncaught exceptions routed into logging

Public API:
    setup_logging(log_level="INFO", context={"app": "render"})
    get_logger(name)
    push_context(job_id="radial-demo") / pop_context(["job_id"])
    job_context(job_id="radial-demo", backend="gpu")   # scoped
    install_excepthook()

Format examples:
    Human: 2026-03-02T09:14:07.118Z | INFO     | app=render job_id=demo | Job complete in 0.41s
    JSON:  {"t": "2026-03-02T09:14:07.118000+00:00", "lvl": "INFO", "job_id": "demo", "msg": "..."}

Job fields live in a contextvar. Each pool thread running a job sets its own
fields through job_context(), and ContextFilter copies them onto the record
in the emitting thread, so concurrent jobs never see each other's ids.
Calling setup_logging() again replaces the handlers it installed.
"""

import contextlib
import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


_context_var: contextvars.ContextVar = contextvars.ContextVar('cnidaria_log_context', default={})

# Libraries that log per-chunk detail at DEBUG (PIL logs every PNG chunk)
NOISY_LIBRARIES = ("PIL",)

_LEVEL_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
}
_RESET = '\033[0m'

_installed: List[logging.Handler] = []


class ContextFilter(logging.Filter):
    """Attach the current job fields to each record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = dict(_context_var.get())
        return True


class ContextFormatter(logging.Formatter):
    """Human or JSON line formatter that prints ``record.context``.

    Timestamps are always UTC.
    """

    def __init__(self, fmt_mode: str = "human", use_color: bool = False):
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"Unknown log format: {fmt_mode!r}")
        self.fmt_mode = fmt_mode
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        context = getattr(record, "context", None)
        if context is None:
            context = dict(_context_var.get())
        if self.fmt_mode == "json":
            return self._format_json(record, ts, context)
        return self._format_human(record, ts, context)

    def _format_json(self, record: logging.LogRecord, ts: datetime, context: Dict[str, Any]) -> str:
        entry = {
            't': ts.isoformat(),
            'lvl': record.levelname,
            'name': record.name,
            'pid': os.getpid(),
            'thread': record.threadName,
            'msg': record.getMessage(),
        }
        entry.update(context)
        if record.exc_info:
            entry['exc'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)

    def _format_human(self, record: logging.LogRecord, ts: datetime, context: Dict[str, Any]) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"

        parts = [ts.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z', '|', level, '|']
        if context:
            parts.extend([' '.join(f"{k}={v}" for k, v in context.items()), '|'])
        parts.append(record.getMessage())
        line = ' '.join(parts)

        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    capture_warnings: bool = True,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Configure the root logger.

    Parameters
    ----------
    log_level : str
        "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
    log_file : str, optional
        Append log lines to this file (parent directories are created)
    json : bool
        JSON lines on the file handler instead of the human format
    color : bool
        ANSI level colors on stderr when it is a TTY
    to_stderr : bool
        Log to stderr
    capture_warnings : bool
        Route ``warnings.warn`` through the ``py.warnings`` logger
    context : dict, optional
        Fields pushed for the rest of the process (e.g. {"app": "render"})

    Returns
    -------
    dict
        {"handlers": [...]} in installation order (stderr first)

    Notes
    -----
    Handlers from an earlier call are removed and closed; handlers added by
    other code (pytest's caplog, for one) are left alone. ``NOISY_LIBRARIES``
    are held at WARNING so ``-v`` runs stay readable.
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")

    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    context_filter = ContextFilter()
    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter("human", use_color=color and sys.stderr.isatty()))
        console.addFilter(context_filter)
        _installed.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(ContextFormatter("json" if json else "human"))
        file_handler.addFilter(context_filter)
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    if context:
        push_context(**context)

    if capture_warnings:
        logging.captureWarnings(True)

    return {'handlers': list(_installed)}


def get_logger(name: str) -> logging.Logger:
    """Get logger by name (typically __name__)."""
    return logging.getLogger(name)


def push_context(**kwargs) -> None:
    """Add fields to every later record from this context.

    Examples
    --------
    >>> push_context(app="render", job_id="demo")
    >>> logger.info("Started")  # → "... | app=render job_id=demo | Started"
    """
    _context_var.set({**_context_var.get(), **kwargs})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Remove ``keys`` from the fields, or all fields when None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get())
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def get_context() -> Dict[str, Any]:
    return dict(_context_var.get())


@contextlib.contextmanager
def job_context(**kwargs) -> Iterator[None]:
    """Push fields for the duration of a block, restoring the previous ones.

    Examples
    --------
    >>> with job_context(job_id="demo", stage="sort"):
    ...     logger.info("Sorting")  # → "... | job_id=demo stage=sort | Sorting"
    """
    token = _context_var.set({**_context_var.get(), **kwargs})
    try:
        yield
    finally:
        _context_var.reset(token)


def install_excepthook() -> None:
    """Log uncaught exceptions at CRITICAL before the process exits."""
    def log_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger(__name__).critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = log_exception
