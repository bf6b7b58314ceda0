"""
Turn telemetry.

Listens on the event bus and emits structured observability events:
- turn.started, stt.final, llm.request, llm.response
- tts.started, tts.stopped
- turn.completed, turn.error, turn.abandoned, capture.error
- document.indexed, index.cleared

The turn id is the correlation_id of every turn-scoped event. Transcript
and reply text are included and flagged as PII.

Attach before the orchestrator subscribes so that tts.stopped is emitted
ahead of the turn.completed it causes.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity, pii_marker
from .errors import describe_error
from .event_bus import BusEvent, EventBus, EventType


class TurnTelemetry:
    def __init__(
        self,
        session_id: str,
        bus: EventBus,
        *,
        emitter: Optional[EventEmitter] = None,
        retrieval_emitter: Optional[EventEmitter] = None,
        now: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.bus = bus
        self.emitter = emitter or EventEmitter(ObsComponent.VOICE_AGENT)
        self.retrieval_emitter = retrieval_emitter or EventEmitter(ObsComponent.RETRIEVAL)
        self.logger = get_logger(LogComponent.TELEMETRY, session_id=session_id)
        self._now = now

        self.current_turn_id: Optional[str] = None
        self._tts_turn_id: Optional[str] = None
        self._tts_started_ts: Optional[float] = None
        self._attached = False

        self._subscriptions: List[Tuple[EventType, Callable[[BusEvent], Any]]] = [
            (EventType.TURN_INPUT_STARTED, self._on_turn_input_started),
            (EventType.REASONING_STARTED, self._on_reasoning_started),
            (EventType.REASONING_COMPLETED, self._on_reasoning_completed),
            (EventType.SYNTHESIS_STARTED, self._on_synthesis_started),
            (EventType.SYNTHESIS_ENDED, self._on_synthesis_ended),
            (EventType.SYNTHESIS_ERROR, self._on_synthesis_error),
            (EventType.TURN_COMPLETED, self._on_turn_completed),
            (EventType.TURN_ERROR, self._on_turn_error),
            (EventType.TURN_ABANDONED, self._on_turn_abandoned),
            (EventType.CAPTURE_ERROR, self._on_capture_error),
            (EventType.DOCUMENT_INDEXED, self._on_document_indexed),
            (EventType.INDEX_CLEARED, self._on_index_cleared),
        ]

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        if self._attached:
            return
        for event_type, handler in self._subscriptions:
            self.bus.subscribe(event_type, handler)
        self._attached = True
        self.logger.debug("Telemetry attached to event bus")

    def detach(self) -> None:
        if not self._attached:
            return
        for event_type, handler in self._subscriptions:
            self.bus.unsubscribe(event_type, handler)
        self._attached = False
        self.logger.debug("Telemetry detached from event bus")

    def _emit(self, event_type: str, *, correlation_id: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        return self.emitter.emit(
            event_type,
            session_id=self.session_id,
            correlation_id=correlation_id or self.current_turn_id or self.session_id,
            **kwargs,
        )

    # --- Turn lifecycle ---

    def _on_turn_input_started(self, event: BusEvent) -> None:
        self.current_turn_id = event.get("turn_id")
        self._emit("turn.started", correlation_id=self.current_turn_id)

    def _on_reasoning_started(self, event: BusEvent) -> None:
        turn_id = event.get("turn_id") or self.current_turn_id
        text = event.get("text") or ""
        self.current_turn_id = turn_id

        self._emit(
            "stt.final",
            correlation_id=turn_id,
            pii=pii_marker(["transcript_text"] if text else []),
            transcript_length=len(text),
            transcript_text=text or None,
        )
        self._emit(
            "llm.request",
            correlation_id=turn_id,
            pii=pii_marker(["input_text"] if text else []),
            input_text=text or None,
        )

    def _on_reasoning_completed(self, event: BusEvent) -> None:
        text = event.get("text") or ""
        self._emit(
            "llm.response",
            correlation_id=event.get("turn_id"),
            pii=pii_marker(["output_text"] if text else []),
            output_text=text or None,
            output_length=len(text),
            latency_ms=event.get("latency_ms"),
        )

    def _on_synthesis_started(self, event: BusEvent) -> None:
        self._tts_turn_id = self.current_turn_id
        self._tts_started_ts = self._now()
        self._emit("tts.started", correlation_id=self._tts_turn_id)

    def _tts_stopped(self, cause: str, severity: Severity, **extra: Any) -> None:
        latency_ms = None
        if self._tts_started_ts is not None:
            latency_ms = int((self._now() - self._tts_started_ts) * 1000)
        self._emit(
            "tts.stopped",
            correlation_id=self._tts_turn_id,
            severity=severity,
            cause=cause,
            latency_ms=latency_ms,
            **extra,
        )
        self._tts_turn_id = None
        self._tts_started_ts = None

    def _on_synthesis_ended(self, event: BusEvent) -> None:
        self._tts_stopped("completed", Severity.INFO)

    def _on_synthesis_error(self, event: BusEvent) -> None:
        error = event.get("error")
        self._tts_stopped(
            "error",
            Severity.WARN,
            error=describe_error(error) if error is not None else None,
        )

    def _on_turn_completed(self, event: BusEvent) -> None:
        turn = event.get("turn")
        if turn is None:
            return
        latency = turn.latency
        self._emit(
            "turn.completed",
            correlation_id=turn.turn_id,
            latency_ms=latency.total_ms,
            capture_ms=latency.capture_ms,
            reasoning_ms=latency.reasoning_ms,
            synthesis_ms=latency.synthesis_ms,
        )
        self.current_turn_id = None

    def _on_turn_error(self, event: BusEvent) -> None:
        error = event.get("error")
        stage = event.get("stage")
        self._emit(
            "turn.error",
            correlation_id=event.get("turn_id"),
            severity=Severity.ERROR,
            stage=getattr(stage, "value", stage),
            category=event.get("category"),
            error=describe_error(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
        )

    def _on_turn_abandoned(self, event: BusEvent) -> None:
        self._emit(
            "turn.abandoned",
            correlation_id=event.get("turn_id"),
            severity=Severity.WARN,
            reason=event.get("reason"),
            from_state=event.get("from_state"),
        )
        if event.get("turn_id") == self.current_turn_id:
            self.current_turn_id = None

    def _on_capture_error(self, event: BusEvent) -> None:
        error = event.get("error")
        fatal = bool(event.get("fatal"))
        self._emit(
            "capture.error",
            severity=Severity.ERROR if fatal else Severity.WARN,
            fatal=fatal,
            error=describe_error(error) if error is not None else None,
        )

    # --- Retrieval ---

    def _on_document_indexed(self, event: BusEvent) -> None:
        self.retrieval_emitter.emit(
            "document.indexed",
            session_id=self.session_id,
            document_id=event.get("document_id"),
            fragment_count=event.get("fragments"),
        )

    def _on_index_cleared(self, event: BusEvent) -> None:
        self.retrieval_emitter.emit("index.cleared", session_id=self.session_id)
