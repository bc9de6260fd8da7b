"""
Process-wide logging, configured once by the CLI entry point or the web
server. Modules just call ``logging.getLogger(__name__)``.

Console level, highest precedence first:
    --debug, --verbose, --quiet, $PIPEWRIGHT_LOG_LEVEL, WARNING

A second, file-backed handler is added when $PIPEWRIGHT_LOG_FILE is set;
its level comes from $PIPEWRIGHT_LOG_FILE_LEVEL (else the console level).
Console output goes to stderr so ``--json`` output on stdout stays clean.
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LOG_LEVEL = "PIPEWRIGHT_LOG_LEVEL"
ENV_LOG_FILE = "PIPEWRIGHT_LOG_FILE"
ENV_LOG_FILE_LEVEL = "PIPEWRIGHT_LOG_FILE_LEVEL"

_DETAILED = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d: %(message)s"

# (highest level, format, datefmt), checked in order
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, _DETAILED, "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_FILE_FORMAT = (_DETAILED, "%Y-%m-%d %H:%M:%S")

_CHATTY = ("werkzeug", "urllib3")


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    for flag, name in ((debug, "DEBUG"), (verbose, "INFO"), (quiet, "ERROR")):
        if flag:
            return name
    return os.environ.get(ENV_LOG_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers.

    Args:
        level: Console level name; unknown names mean WARNING.
        log_file: Log file path, defaulting to $PIPEWRIGHT_LOG_FILE.
        log_file_level: File handler level, defaulting to
            $PIPEWRIGHT_LOG_FILE_LEVEL and then ``level``.
        quiet_third_party: Hold werkzeug and urllib3 at WARNING unless the
            console is at DEBUG.
    """
    console_level = _to_number(level)
    fmt, datefmt = _console_format(console_level)

    handlers = [_handler(logging.StreamHandler(sys.stderr), console_level, fmt, datefmt)]

    path = log_file or os.environ.get(ENV_LOG_FILE)
    if path:
        file_level_name = log_file_level or os.environ.get(ENV_LOG_FILE_LEVEL)
        file_level = _to_number(file_level_name) if file_level_name else console_level
        handlers.append(
            _handler(logging.FileHandler(path, encoding="utf-8"), file_level, *_FILE_FORMAT)
        )

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _CHATTY:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _console_format(level: int) -> tuple[str, str | None]:
    for bound, fmt, datefmt in _CONSOLE_FORMATS:
        if level <= bound:
            return fmt, datefmt
    return _CONSOLE_FORMATS[-1][1:]


def _handler(handler: logging.Handler, level: int, fmt: str, datefmt: str | None) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _to_number(name: str | None) -> int:
    value = logging.getLevelName(name.upper()) if name else None
    return value if isinstance(value, int) else logging.WARNING
