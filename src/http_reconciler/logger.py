import json
import logging
import os
import sys

_DATEFMT = "%Y-%m-%d %H:%M:%S"
_TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for log shipping.

    Produces one JSON object per log record with fields: ts, level, logger, msg.
    Exception info is included as an "exc" field when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=_DATEFMT)
    return logging.Formatter(_TEXT_FORMAT, datefmt=_DATEFMT)


def resolve_level(debug: bool = False, level: str | None = None) -> int:
    """Return the numeric log level.

    ``debug`` wins, then *level*, then the ``LOG_LEVEL`` environment
    variable, then INFO.  Unknown names fall back to INFO.
    """
    if debug:
        return logging.DEBUG
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure root logging for the CLI and the reconcile loop.

    Logs always go to stderr so stdout stays clean for reports.  When
    *log_file* is given, records are also appended to that file.

    Args:
        debug: If True, overrides the level to DEBUG.
        log_file: Optional log file path (overrides LOG_FILE env var).
        log_format: "text" (default) or "json" for one JSON object per line.
        level: Level name from the config file, used when LOG_LEVEL is unset.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
        LOG_FILE: Log file path used when *log_file* is not given.
    """
    log_level = resolve_level(debug, os.getenv("LOG_LEVEL") or level)

    handlers: list[logging.Handler] = []
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(log_format))
    handlers.append(stderr_handler)

    final_log_file = log_file or os.getenv("LOG_FILE")
    if final_log_file:
        file_handler = logging.FileHandler(final_log_file, mode="a")
        file_handler.setFormatter(_formatter(log_format))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Silence third-party libs unless DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
