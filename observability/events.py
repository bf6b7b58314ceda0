"""
Structured JSON event emission.

Every telemetry event shares one envelope:
    ts, session_id, component, event_type, severity, correlation_id, pii
plus event-specific fields. Events go to stdout (one JSON object per line)
and into the in-memory event store for the read API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO

from logging_setup import decorate_latency
from .event_store import EventStore, event_store as default_store


class Component(str, Enum):
    """Components that emit telemetry events."""

    VOICE_AGENT = "voice_agent"
    RETRIEVAL = "retrieval"
    AGENT_API = "agent_api"


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


def pii_marker(fields: List[str]) -> Optional[Dict[str, Any]]:
    """PII envelope for events that carry user or agent text."""
    if not fields:
        return None
    return {"contains_pii": True, "fields": fields, "handling": "none"}


class EventEmitter:
    """Emits enveloped JSON events for one component."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(
        self,
        component: Component,
        *,
        store: Optional[EventStore] = None,
        stream: Optional[TextIO] = None,
    ):
        self.component = component
        self._store = store if store is not None else default_store
        self._stream = stream

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update({k: v for k, v in kwargs.items() if v is not None})

        json_output = json.dumps(event, ensure_ascii=False, default=str)
        if event.get("latency_ms") is not None:
            json_output = decorate_latency(json_output, self.ORANGE, self.RESET)

        # Resolved per call so that redirected/captured stdout is honoured
        stream = self._stream or sys.stdout
        stream.write(json_output)
        stream.write("\n")
        stream.flush()

        # The store keeps the undecorated dict
        self._store.store(event)
        return event
