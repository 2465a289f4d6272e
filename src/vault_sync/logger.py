"""Logging setup for hosts embedding the sync engine.

Library modules only call ``logging.getLogger(__name__)``; the host decides
where records go by calling ``setup_logging()`` (or ``configure_logging()``
with the ``logging`` section of a ``UnifiedConfig``) once at start-up.
"""

import json
import logging
import os
import sys

from vault_sync.config_schema import LoggingConfig

DEFAULT_LOG_FILE = "/tmp/vault-sync.log"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_LEVELS = {"host": "WARNING", "console": "INFO"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``.

    A traceback, when attached to the record, goes into ``exc``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(debug_format: str, with_name: bool = False) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt=_DATEFMT)
    name = " %(name)s" if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s]{name} %(message)s", datefmt=_DATEFMT
    )


def _file_handler(path: str, debug_format: str) -> logging.Handler:
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(_formatter(debug_format, with_name=True))
    return handler


def setup_logging(
    mode: str = "console",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Route log records for the given embedding mode.

    Args:
        mode: "host" when a host application owns the console (records go
              to a file only); "console" for stderr, optionally mirrored
              to *log_file*.
        debug: Force DEBUG regardless of any other setting.
        log_file: Log file path.  In host mode falls back to LOG_FILE, then
                  /tmp/vault-sync.log.
        debug_format: "text" (default) or "json".
        level: Level name, e.g. from the config file; beats LOG_LEVEL.

    Environment variables:
        LOG_LEVEL: Level name used when *level* is not given.
                   Default: WARNING in host mode, INFO in console mode.
        LOG_FILE: Host-mode log file when *log_file* is not given.
    """
    if mode not in _DEFAULT_LEVELS:
        raise ValueError(f"Unknown logging mode: {mode!r}")

    if debug:
        log_level = logging.DEBUG
    else:
        name = (level or os.getenv("LOG_LEVEL") or _DEFAULT_LEVELS[mode]).upper()
        log_level = getattr(logging, name, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "host":
        path = log_file or os.getenv("LOG_FILE") or DEFAULT_LOG_FILE
        handlers.append(_file_handler(path, debug_format))
    else:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(debug_format))
        handlers.append(console)
        if log_file:
            handlers.append(_file_handler(log_file, debug_format))

    logging.basicConfig(level=log_level, handlers=handlers)

    # Event-loop debug chatter only at DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("asyncio").setLevel(logging.WARNING)


def configure_logging(
    config: LoggingConfig, mode: str = "console", debug: bool = False
) -> None:
    """Apply the ``logging`` section of a ``UnifiedConfig``."""
    setup_logging(
        mode=mode,
        debug=debug,
        log_file=config.file,
        debug_format=config.format,
        level=config.level,
    )
