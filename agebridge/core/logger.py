from datetime import datetime
import os
import re
import sys
import json
import logging
import traceback

from agebridge.core.logging_context import ContextFilter, LoggingContext

SUCCESS_LEVEL = 25
LOG_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "SUCCESS",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL"
}

LOG_COLORS = {
    "DEBUG": "\033[36m",      # Cyan
    "INFO": "\033[37m",       # White
    "SUCCESS": "\033[32m",    # Green
    "WARNING": "\033[33m",    # Yellow
    "ERROR": "\033[31m",      # Red
    "CRITICAL": "\033[35m"    # Magenta
}
RESET_COLOR = "\033[0m"

_RESERVED_RECORD_KEYS = {
    "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "scope", "name", "taskName"
}

logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


class CustomLogger(logging.Logger):
    def success(self, message, *args, **kwargs):
        if self.isEnabledFor(SUCCESS_LEVEL):
            self.log(SUCCESS_LEVEL, message, *args, **kwargs, stacklevel=2)


def stringify_extra(value):
    if isinstance(value, (list, dict)):
        return str(value)
    else:
        return value


class CustomFormatter(logging.Formatter):

    def __init__(self, fmt="%(message)s", include_location=False, with_color=False):
        super().__init__(fmt)
        self.include_location = include_location
        self.with_color = with_color

    def format(self, record):
        level_name = LOG_SEVERITY.get(record.levelname, record.levelname)
        scope = getattr(record, "scope", "")
        location = ""
        if self.include_location:
            location = f"({record.module}:{record.funcName}:{record.lineno})"

        if self.with_color:
            level_color = LOG_COLORS.get(record.levelname, "")
            if scope:
                scope = f"\033[32m{scope}{RESET_COLOR}"
            if location:
                location = f"\033[1;33m{location}{RESET_COLOR}"
            metadata_line = f"{level_color}[{level_name}]{RESET_COLOR} {scope} {location}"
        else:
            metadata_line = f"{datetime.now().isoformat()} [{level_name}] {record.name} {scope} {location}"
        metadata_line = " ".join(metadata_line.split())

        message = record.getMessage()
        message_split = message.splitlines()
        if len(message_split) > 1:
            message_line = f"     Message: {message_split[0]}"
            for line in message_split[1:]:
                message_line += f"\n             {line}"
        else:
            message_line = f"     Message: {message}"

        extra_items = [
            f"{key}: {stringify_extra(value)}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS and key != "message"
        ]
        extra_info = ""
        if extra_items:
            extra_info = f"\n     {' '.join(extra_items)}"
        formatted_log = f"{metadata_line}\n{message_line}{extra_info}"
        if record.exc_info:
            # clickable "path:line" locations in editors
            format_exception = traceback.format_exception(*record.exc_info)
            format_exception = [
                re.sub(r'File "([^"]+)", line (\d+),', r'File "\1:\2"', line)
                for line in format_exception
            ]
            formatted_log += "\n" + "".join(format_exception)
        return formatted_log


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_dict = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
        }
        if hasattr(record, "scope"):
            log_dict["scope"] = record.scope
        log_dict["location"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        extra = {
            key: stringify_extra(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS and key != "message"
        }
        if extra:
            log_dict["context"] = extra
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_dict, ensure_ascii=False, default=str)


def _resolve_level() -> int:
    raw = os.getenv("AGEBRIDGE_LOG_LEVEL", "INFO").strip().upper()
    if raw == "SUCCESS":
        return SUCCESS_LEVEL
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str, include_location=False, use_json=None):
    """
    Build (or reuse) a module logger writing to stdout.

    JSON output is selected with ``use_json=True`` or ``AGEBRIDGE_LOG_JSON=true``.
    """
    if use_json is None:
        use_json = os.getenv("AGEBRIDGE_LOG_JSON", "").strip().lower() in {"1", "true", "yes", "on"}

    logging.setLoggerClass(CustomLogger)
    logger = logging.getLogger(name)
    if not any(isinstance(f, ContextFilter) for f in logger.filters):
        logger.addFilter(ContextFilter())

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.DEBUG)
        if use_json:
            stream_handler.setFormatter(JSONFormatter())
        else:
            stream_handler.setFormatter(CustomFormatter(include_location=include_location))
        logger.addHandler(stream_handler)
    logger.setLevel(_resolve_level())
    logger.propagate = False
    return logger


__all__ = [
    "CustomLogger",
    "CustomFormatter",
    "JSONFormatter",
    "LoggingContext",
    "SUCCESS_LEVEL",
    "setup_logger",
]
