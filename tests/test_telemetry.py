"""
Tests for turn telemetry.

Verifies:
- Event sequence for a completed turn
- Turn id as correlation_id; transcript and reply flagged as PII
- Error, abandon and capture events
- Retrieval events go out under the retrieval component
"""
import asyncio
import io

import pytest

from observability.event_store import EventStore
from observability.events import Component, EventEmitter
from voice_agent.capture import CaptureStreamController
from voice_agent.errors import CaptureError
from voice_agent.event_bus import EventBus, EventType
from voice_agent.orchestrator import TurnOrchestrator
from voice_agent.providers import ScriptedCaptureProvider, ScriptedSynthesisProvider
from voice_agent.retrieval import RetrievalIndex
from voice_agent.telemetry import TurnTelemetry


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


async def no_sleep(seconds):
    return None


async def drain(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_telemetry(bus, clock=None):
    store = EventStore()
    stream = io.StringIO()
    telemetry = TurnTelemetry(
        "sess_123",
        bus,
        emitter=EventEmitter(Component.VOICE_AGENT, store=store, stream=stream),
        retrieval_emitter=EventEmitter(Component.RETRIEVAL, store=store, stream=stream),
        now=clock or FakeClock(),
    )
    telemetry.attach()
    return telemetry, store, stream


def make_agent(responder):
    bus = EventBus()
    clock = FakeClock()
    telemetry, store, stream = make_telemetry(bus, clock)
    provider = ScriptedCaptureProvider()
    capture = CaptureStreamController(provider, bus, sleep=no_sleep)
    synthesis = ScriptedSynthesisProvider(bus)
    orchestrator = TurnOrchestrator(bus, capture, synthesis, responder, now=clock, session_id="sess_123")
    return bus, clock, telemetry, store, provider, synthesis, orchestrator


def types_of(events):
    return [e["event_type"] for e in events]


@pytest.mark.asyncio
async def test_completed_turn_event_sequence():
    """Test the event sequence of a completed turn."""
    bus, clock, telemetry, store, provider, synthesis, orchestrator = make_agent(
        lambda text, history: "Blue."
    )

    provider.push_final("What color is the sky?")
    await drain()
    clock.t = 0.4
    synthesis.finish()

    events = store.query(session_id="sess_123")
    assert types_of(events) == [
        "turn.started",
        "stt.final",
        "llm.request",
        "llm.response",
        "tts.started",
        "tts.stopped",
        "turn.completed",
    ]
    turn_id = orchestrator.get_history()[0].turn_id
    assert {e["correlation_id"] for e in events} == {turn_id}
    assert telemetry.current_turn_id is None

    stt = events[1]
    assert stt["transcript_text"] == "What color is the sky?"
    assert stt["transcript_length"] == 22
    assert stt["pii"]["contains_pii"] is True
    assert stt["pii"]["fields"] == ["transcript_text"]

    response = events[3]
    assert response["output_text"] == "Blue."
    assert response["pii"]["fields"] == ["output_text"]

    stopped = events[5]
    assert stopped["cause"] == "completed"
    assert stopped["latency_ms"] == 400

    completed = events[6]
    assert completed["latency_ms"] == 400
    assert completed["synthesis_ms"] == 400
    assert completed["pii"]["contains_pii"] is False


@pytest.mark.asyncio
async def test_reasoning_error_event():
    """Test the event emitted for a reasoning error."""
    def responder(text, history):
        raise RuntimeError("connection reset")

    bus, clock, telemetry, store, provider, synthesis, orchestrator = make_agent(responder)
    provider.push_final("hello")
    await drain()

    errors = store.query(event_type="turn.error")
    assert len(errors) == 1
    assert errors[0]["severity"] == "error"
    assert errors[0]["stage"] == "reasoning"
    assert errors[0]["category"] == "reasoning.network_error"
    assert errors[0]["error_type"] == "RuntimeError"
    assert errors[0]["correlation_id"] == orchestrator.current_turn_id


@pytest.mark.asyncio
async def test_synthesis_error_and_abandon_events():
    """Test synthesis error and abandon events."""
    bus, clock, telemetry, store, provider, synthesis, orchestrator = make_agent(
        lambda text, history: "Reply."
    )
    provider.push_final("hello")
    await drain()
    turn_id = orchestrator.current_turn_id

    synthesis.fail("device lost")
    orchestrator.reset_turn()

    stopped = store.query(event_type="tts.stopped")[0]
    assert stopped["cause"] == "error"
    assert stopped["severity"] == "warn"
    assert stopped["error"] == "device lost"
    assert stopped["correlation_id"] == turn_id

    abandoned = store.query(event_type="turn.abandoned")[0]
    assert abandoned["reason"] == "reset"
    assert abandoned["from_state"] == "stalled"
    assert telemetry.current_turn_id is None


def test_capture_error_severity():
    """Test capture.error severity for fatal and non-fatal errors."""
    bus = EventBus()
    telemetry, store, _ = make_telemetry(bus)

    bus.publish(EventType.CAPTURE_ERROR, error=CaptureError("busy"), fatal=False)
    bus.publish(EventType.CAPTURE_ERROR, error=CaptureError("gone", fatal=True), fatal=True)

    events = store.query(event_type="capture.error")
    assert [e["severity"] for e in events] == ["warn", "error"]
    assert [e["fatal"] for e in events] == [False, True]
    # No turn in progress: correlated with the session
    assert events[0]["correlation_id"] == "sess_123"


def test_retrieval_events_use_retrieval_component():
    """Test that retrieval events use the retrieval component."""
    bus = EventBus()
    telemetry, store, _ = make_telemetry(bus)
    index = RetrievalIndex(bus=bus)

    document_id = index.ingest("The sky is blue. Water is wet.")
    index.clear()

    events = store.query(component="retrieval")
    assert types_of(events) == ["document.indexed", "index.cleared"]
    assert events[0]["document_id"] == document_id
    assert events[0]["fragment_count"] == 1


def test_detach_stops_emission():
    """Test that detach() stops emission."""
    bus = EventBus()
    telemetry, store, _ = make_telemetry(bus)
    telemetry.attach()

    bus.publish(EventType.TURN_INPUT_STARTED, turn_id="turn_1")
    telemetry.detach()
    telemetry.detach()
    bus.publish(EventType.TURN_INPUT_STARTED, turn_id="turn_2")

    assert telemetry.attached is False
    assert len(store.query(event_type="turn.started")) == 1


def test_events_written_to_stdout(capsys):
    """Test that events are written to stdout."""
    bus = EventBus()
    telemetry = TurnTelemetry(
        "sess_out",
        bus,
        emitter=EventEmitter(Component.VOICE_AGENT, store=EventStore()),
    )
    telemetry.attach()

    bus.publish(EventType.TURN_INPUT_STARTED, turn_id="turn_9")

    out = capsys.readouterr().out
    assert '"event_type": "turn.started"' in out
    assert '"correlation_id": "turn_9"' in out
    assert '"component": "voice_agent"' in out
