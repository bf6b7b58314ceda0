"""
Shared logging infrastructure for the voice agent.

One setup for the agent runtime, the HTTP API and the console demo.

Features:
- JSON-formatted structured logs
- Configurable log levels
- Session and turn ID correlation across all logs
- Component and severity tagging
- PII-aware logging helpers (transcripts and agent replies)
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Component(str, Enum):
    """System components for log tagging."""
    VOICE_AGENT = "voice_agent"
    EVENT_BUS = "event_bus"
    CAPTURE = "capture"
    REASONING = "reasoning"
    SYNTHESIS = "synthesis"
    RETRIEVAL = "retrieval"
    ORCHESTRATOR = "orchestrator"
    TELEMETRY = "telemetry"
    AGENT_API = "agent_api"


# Attributes every LogRecord carries; anything else was passed as a field.
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "component", "session_id", "turn_id", "message",
})

_LATENCY_PATTERN = re.compile(r'("latency_ms"\s*:\s*)(\d+(?:\.\d+)?)')


def use_color() -> bool:
    """Colour is on unless NO_COLOR is set."""
    if os.environ.get("NO_COLOR", "").lower() in ("1", "true", "yes"):
        return False
    return True


def decorate_latency(json_output: str, orange: str, reset: str) -> str:
    """Append an ``ms`` unit (and colour) to a serialized latency_ms value."""
    if use_color():
        replacement = rf'\1{orange}\2 ms{reset}'
    else:
        replacement = r'\1\2 ms'
    return _LATENCY_PATTERN.sub(replacement, json_output)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each record becomes one line with:
    - ISO8601 timestamp
    - Severity level
    - Component identifier
    - Session / turn IDs (if present in extra)
    - Message and additional fields

    Latency values (latency_ms) are highlighted in orange in console output.
    """

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            log_data["session_id"] = record.session_id
        if hasattr(record, "turn_id"):
            log_data["turn_id"] = record.turn_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        json_output = json.dumps(log_data, ensure_ascii=False, default=str)

        if log_data.get("latency_ms") is not None:
            json_output = decorate_latency(json_output, self.ORANGE, self.RESET)

        return json_output


class StructuredLogger:
    """
    Wrapper around Python's logging with structured JSON output.

    Usage:
        logger = StructuredLogger("orchestrator", session_id="conv_123")
        logger.info("Turn completed", latency_ms=820)
        logger.info_pii("Transcript received", transcript="what time is it")
        logger.with_turn("turn_1").warning("Transcript dropped")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None,
        turn_id: Optional[str] = None,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.turn_id = turn_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(
        self,
        level: int,
        message: str,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {
            "component": self.component,
            **kwargs
        }

        if self.session_id:
            extra.setdefault("session_id", self.session_id)
        if self.turn_id:
            extra.setdefault("turn_id", self.turn_id)

        if pii:
            # PII stays in its own field so it can be filtered downstream
            extra["pii"] = pii

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with the active exception's traceback."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Log debug with PII fields explicitly marked.

        Example:
            logger.debug_pii("Partial transcript", text="my account number is")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        """Log info with PII fields explicitly marked."""
        self._log(logging.INFO, message, pii=pii_fields)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Create a new logger instance with a session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name,
            turn_id=self.turn_id,
        )

    def with_turn(self, turn_id: Optional[str]) -> "StructuredLogger":
        """Create a new logger instance correlated to one conversation turn."""
        return StructuredLogger(
            self.component,
            session_id=self.session_id,
            logger_name=self.logger.name,
            turn_id=turn_id,
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure root logger for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in text logs

    Call once at startup (console demo, API server).
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str, defaults={"component": "unknown"})

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None,
    turn_id: Optional[str] = None,
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.CAPTURE, session_id="conv_123")
        logger.info("Capture stream restarted")
    """
    return StructuredLogger(component, session_id=session_id, turn_id=turn_id)
