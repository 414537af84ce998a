"""
pocket-lm :: Structured Logging

Every module logs through get_logger("pocket_lm.<area>"), so one
setup_logging() call configures the whole runtime:

    console  → human lines (coloured on a tty) or JSON lines
    log_file → always JSON lines

Request-scoped lines carry request_id / model_id plus free-form
fields (tokens=..., max_tokens=...), attached by RequestLogger.

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Any, Dict, Optional

ROOT_LOGGER = "pocket_lm"

# Record attributes copied into every rendered line when present
CONTEXT_FIELDS = ("request_id", "model_id")

# Keyword arguments logging.Logger._log accepts itself
_LOG_KWARGS = frozenset(["exc_info", "stack_info", "stacklevel", "extra"])


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """request_id / model_id and any RequestLogger fields on a record."""
    context = {k: getattr(record, k) for k in CONTEXT_FIELDS if hasattr(record, k)}
    context.update(getattr(record, "fields", None) or {})
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context keys sit next to the message."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """
    12:04:31 INFO  worker   Generated 8 tokens in 41.2ms (length)  request_id=gen-1 model_id=m
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<5}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"
        area = record.name.rpartition(".")[2] if record.name != ROOT_LOGGER else "-"
        line = f"{self.formatTime(record, '%H:%M:%S')} {level} {area:<8} {record.getMessage()}"
        context = record_context(record)
        if context:
            line += "  " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "pocket_lm" logger tree. Calling it again replaces
    (and closes) the handlers installed by the previous call.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines on the console instead of human lines
        log_file: extra JSON-lines file sink
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter(use_color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        sink = logging.FileHandler(log_file)
        sink.setFormatter(JSONFormatter())
        logger.addHandler(sink)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger(logging.LoggerAdapter):
    """
    Adapter for one request: stamps request_id / model_id on each line
    and turns extra keyword arguments into structured fields.

        rlog = RequestLogger("gen-7", model_id="m")
        rlog.info("Generated", tokens=12)
    """

    def __init__(
        self,
        request_id: str,
        model_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        context = {"request_id": request_id}
        if model_id is not None:
            context["model_id"] = model_id
        super().__init__(logger or get_logger("pocket_lm.requests"), context)
        self.request_id = request_id
        self.model_id = model_id
        self.start_time = time.perf_counter()

    def process(self, msg, kwargs):
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOG_KWARGS}
        extra = dict(self.extra)
        extra.update(kwargs.pop("extra", None) or {})
        extra["fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
