"""
Turn orchestrator: the capture → reasoning → synthesis state machine.

States: IDLE → AWAITING_INPUT → REASONING → SYNTHESIZING → IDLE, plus
STALLED when a reasoning or synthesis failure leaves a turn unfinished.

Rules:
- At most one turn is in progress; a stalled turn may be superseded by a
  fresh capture start or transcript, or dropped with reset_turn()
- Stage order within a turn is strict: capture, reasoning, synthesis
- The turn record is appended to history only when synthesis ends
- Reasoning failures are published as TURN_ERROR and never retried
- A reasoning call that completes after shutdown or after its turn was
  abandoned is ignored

All transitions run on the event loop thread via synchronous bus dispatch;
the reasoning call is the only task the orchestrator creates.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from logging_setup import get_logger, Component
from .capture import CaptureStreamController
from .errors import (
    CaptureError,
    EmptyResponseError,
    SynthesisError,
    TurnStage,
    classify_error,
    describe_error,
)
from .event_bus import BusEvent, EventBus, EventType
from .providers import SynthesisProvider


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    REASONING = "reasoning"
    SYNTHESIZING = "synthesizing"
    STALLED = "stalled"


@dataclass(frozen=True)
class LatencyBreakdown:
    """Per-stage latency of one turn, in milliseconds."""

    capture_ms: int
    reasoning_ms: int
    synthesis_ms: int
    total_ms: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "capture_ms": self.capture_ms,
            "reasoning_ms": self.reasoning_ms,
            "synthesis_ms": self.synthesis_ms,
            "total_ms": self.total_ms,
        }


@dataclass(frozen=True)
class ConversationTurn:
    turn_id: str
    timestamp: datetime
    user_input: str
    agent_response: str
    latency: LatencyBreakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "timestamp": self.timestamp.isoformat(),
            "user_input": self.user_input,
            "agent_response": self.agent_response,
            "latency": self.latency.to_dict(),
        }


# (user_text, history) -> agent_text, sync or async
Responder = Callable[[str, Sequence[ConversationTurn]], Union[str, Awaitable[str]]]


@dataclass
class _TurnSlot:
    """Mutable state of the turn in progress."""

    turn_id: str
    started_at: float
    started_wall: datetime
    capture_ms: Optional[int] = None
    reasoning_ms: Optional[int] = None
    synthesis_started_at: Optional[float] = None
    user_input: str = ""
    agent_response: str = ""


def new_turn_id() -> str:
    return f"turn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TurnOrchestrator:
    def __init__(
        self,
        bus: EventBus,
        capture: CaptureStreamController,
        synthesis: SynthesisProvider,
        responder: Responder,
        *,
        now: Callable[[], float] = time.monotonic,
        session_id: Optional[str] = None,
    ):
        self._bus = bus
        self._capture = capture
        self._synthesis = synthesis
        self._responder = responder
        self._now = now
        self.session_id = session_id
        self.logger = get_logger(Component.ORCHESTRATOR, session_id=session_id)

        self._state = TurnState.IDLE
        self._slot: Optional[_TurnSlot] = None
        self._history: List[ConversationTurn] = []
        self._reasoning_task: Optional[asyncio.Task] = None
        self._reasoning_tasks: Set[asyncio.Task] = set()
        self._closed = False

        self._subscriptions: List[Tuple[EventType, Callable[[BusEvent], Any]]] = [
            (EventType.CAPTURE_STARTED, self._on_capture_started),
            (EventType.CAPTURE_ENDED, self._on_capture_ended),
            (EventType.FINAL_TRANSCRIPT, self._on_final_transcript),
            (EventType.CAPTURE_ERROR, self._on_capture_error),
            (EventType.SYNTHESIS_ENDED, self._on_synthesis_ended),
            (EventType.SYNTHESIS_ERROR, self._on_synthesis_error),
        ]
        for event_type, handler in self._subscriptions:
            bus.subscribe(event_type, handler)

    # --- Introspection ---

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def current_turn_id(self) -> Optional[str]:
        return self._slot.turn_id if self._slot else None

    @property
    def reasoning_task(self) -> Optional[asyncio.Task]:
        """The outstanding reasoning call, if any."""
        return self._reasoning_task

    def outstanding_reasoning(self) -> List[asyncio.Task]:
        """Reasoning calls not yet finished, including those of abandoned turns."""
        return [task for task in self._reasoning_tasks if not task.done()]

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Public operations ---

    def start_listening(self) -> None:
        self._capture.start()

    def stop_listening(self) -> None:
        self._capture.stop()

    def get_history(self) -> List[ConversationTurn]:
        return list(self._history)

    def get_average_latencies(self) -> Dict[str, float]:
        """Mean latency per stage across completed turns; {} when there are none."""
        if not self._history:
            return {}
        count = len(self._history)
        return {
            "capture_ms": sum(t.latency.capture_ms for t in self._history) / count,
            "reasoning_ms": sum(t.latency.reasoning_ms for t in self._history) / count,
            "synthesis_ms": sum(t.latency.synthesis_ms for t in self._history) / count,
            "total_ms": sum(t.latency.total_ms for t in self._history) / count,
        }

    def clear_history(self) -> None:
        self._history = []
        self.logger.info("Conversation history cleared")
        self._bus.publish(EventType.HISTORY_CLEARED)

    def reset_turn(self) -> Optional[str]:
        """Abandon the turn in progress. Returns its id, or None if there was none."""
        if self._slot is None:
            return None
        return self._abandon(reason="reset")

    def shutdown(self) -> None:
        """Stop capture and synthesis and detach from the bus. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        try:
            self._capture.stop()
        except Exception as e:
            self.logger.warning("Capture stop failed during shutdown", error=describe_error(e))
        try:
            self._synthesis.cancel()
        except Exception as e:
            self.logger.warning("Synthesis cancel failed during shutdown", error=describe_error(e))

        for event_type, handler in self._subscriptions:
            self._bus.unsubscribe(event_type, handler)

        self.logger.info("Orchestrator shut down", state=self._state.value)

    # --- Turn slot helpers ---

    def _elapsed_ms(self, since: float) -> int:
        return max(0, int((self._now() - since) * 1000))

    def _begin_turn(self) -> _TurnSlot:
        if self._state == TurnState.STALLED:
            self._abandon(reason="superseded")
        self._slot = _TurnSlot(
            turn_id=new_turn_id(),
            started_at=self._now(),
            started_wall=datetime.now(timezone.utc),
        )
        self._state = TurnState.AWAITING_INPUT
        self.logger.with_turn(self._slot.turn_id).debug("Turn started")
        self._bus.publish(EventType.TURN_INPUT_STARTED, turn_id=self._slot.turn_id)
        return self._slot

    def _clear_slot(self) -> None:
        self._slot = None
        self._state = TurnState.IDLE

    def _abandon(self, *, reason: str) -> str:
        slot = self._slot
        previous = self._state
        self._clear_slot()
        self.logger.with_turn(slot.turn_id).warning(
            "Turn abandoned", reason=reason, from_state=previous.value
        )
        self._bus.publish(
            EventType.TURN_ABANDONED,
            turn_id=slot.turn_id,
            reason=reason,
            from_state=previous.value,
        )
        return slot.turn_id

    def _stall(self, stage: TurnStage, error: BaseException) -> None:
        turn_id = self._slot.turn_id if self._slot else None
        self._state = TurnState.STALLED
        self._publish_error(turn_id, stage, error)

    def _publish_error(self, turn_id: Optional[str], stage: TurnStage, error: BaseException) -> None:
        category = classify_error(error)
        self.logger.with_turn(turn_id).error(
            "Turn stage failed",
            stage=stage.value,
            category=category,
            error=describe_error(error),
            error_type=type(error).__name__,
        )
        self._bus.publish(
            EventType.TURN_ERROR,
            turn_id=turn_id,
            stage=stage,
            category=category,
            error=error,
        )

    def _turn_is_open(self) -> bool:
        return self._slot is not None and self._state != TurnState.STALLED

    # --- Capture events ---

    def _on_capture_started(self, event: BusEvent) -> None:
        if self._turn_is_open():
            return
        self._begin_turn()

    def _on_capture_ended(self, event: BusEvent) -> None:
        slot = self._slot
        if slot is None or slot.capture_ms is not None:
            return
        if self._state not in (TurnState.AWAITING_INPUT, TurnState.REASONING):
            return
        slot.capture_ms = self._elapsed_ms(slot.started_at)

    def _on_capture_error(self, event: BusEvent) -> None:
        error = event.get("error") or CaptureError("capture failed")
        self._publish_error(self.current_turn_id, TurnStage.CAPTURE, error)

    def _on_final_transcript(self, event: BusEvent) -> None:
        text = (event.get("text") or "").strip()
        if not text:
            return

        if self._state in (TurnState.REASONING, TurnState.SYNTHESIZING):
            self.logger.with_turn(self.current_turn_id).warning(
                "Transcript dropped while a turn is in flight",
                state=self._state.value,
                transcript_length=len(text),
            )
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.error("No running event loop; transcript not processed")
            return

        slot = self._slot if self._turn_is_open() else self._begin_turn()
        slot.user_input = text
        self._state = TurnState.REASONING
        self.logger.with_turn(slot.turn_id).info_pii("Reasoning started", user_input=text)
        self._bus.publish(EventType.REASONING_STARTED, turn_id=slot.turn_id, text=text)

        history = self.get_history()
        task = loop.create_task(self._run_reasoning(slot, text, history))
        self._reasoning_task = task
        self._reasoning_tasks.add(task)
        task.add_done_callback(self._reasoning_tasks.discard)

    # --- Reasoning stage ---

    async def _run_reasoning(
        self,
        slot: _TurnSlot,
        text: str,
        history: List[ConversationTurn],
    ) -> None:
        started = self._now()
        try:
            result = self._responder(text, history)
            if inspect.isawaitable(result):
                result = await result
            reply = (result or "").strip() if isinstance(result, str) else ""
            if not reply:
                raise EmptyResponseError("Responder returned an empty reply")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_stale(slot):
                self.logger.debug("Late reasoning failure ignored", turn_id=slot.turn_id)
                return
            self._stall(TurnStage.REASONING, e)
            return
        finally:
            if self._reasoning_task is asyncio.current_task():
                self._reasoning_task = None

        if self._is_stale(slot):
            self.logger.debug("Late reasoning result ignored", turn_id=slot.turn_id)
            return

        slot.reasoning_ms = self._elapsed_ms(started)
        slot.agent_response = reply
        turn_logger = self.logger.with_turn(slot.turn_id)
        turn_logger.info("Reasoning completed", latency_ms=slot.reasoning_ms, reply_length=len(reply))
        self._bus.publish(
            EventType.REASONING_COMPLETED,
            turn_id=slot.turn_id,
            text=reply,
            latency_ms=slot.reasoning_ms,
        )

        if self._is_stale(slot):
            return

        self._state = TurnState.SYNTHESIZING
        slot.synthesis_started_at = self._now()
        try:
            self._synthesis.speak(reply)
        except Exception as e:
            error = e if isinstance(e, SynthesisError) else SynthesisError(str(e))
            self._stall(TurnStage.SYNTHESIS, error)

    def _is_stale(self, slot: _TurnSlot) -> bool:
        return self._closed or self._slot is not slot

    # --- Synthesis events ---

    def _on_synthesis_ended(self, event: BusEvent) -> None:
        slot = self._slot
        if slot is None or self._state != TurnState.SYNTHESIZING:
            self.logger.debug("Synthesis ended outside a turn", state=self._state.value)
            return

        now = self._now()
        synthesis_started = slot.synthesis_started_at if slot.synthesis_started_at is not None else now
        turn = ConversationTurn(
            turn_id=slot.turn_id,
            timestamp=slot.started_wall,
            user_input=slot.user_input,
            agent_response=slot.agent_response,
            latency=LatencyBreakdown(
                capture_ms=slot.capture_ms or 0,
                reasoning_ms=slot.reasoning_ms or 0,
                synthesis_ms=max(0, int((now - synthesis_started) * 1000)),
                total_ms=max(0, int((now - slot.started_at) * 1000)),
            ),
        )
        self._history.append(turn)
        self._clear_slot()

        self.logger.with_turn(turn.turn_id).info(
            "Turn completed",
            latency_ms=turn.latency.total_ms,
            capture_ms=turn.latency.capture_ms,
            reasoning_ms=turn.latency.reasoning_ms,
            synthesis_ms=turn.latency.synthesis_ms,
        )
        self._bus.publish(EventType.TURN_COMPLETED, turn=turn)

    def _on_synthesis_error(self, event: BusEvent) -> None:
        if self._slot is None or self._state != TurnState.SYNTHESIZING:
            return
        error = event.get("error") or SynthesisError("synthesis failed")
        self._stall(TurnStage.SYNTHESIS, error)
