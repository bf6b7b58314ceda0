"""
Tests for the console demo's turn listener.

Verifies:
- Completed turns release the console wait
- Reasoning failures reset the turn and release the wait
- Capture failures are reported without touching the turn in flight
"""
import asyncio

import pytest

from observability.event_store import event_store
from voice_agent.__main__ import turn_listener
from voice_agent.config import AgentConfig
from voice_agent.event_bus import EventType
from voice_agent.orchestrator import TurnState
from voice_agent.runtime import build_runtime


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


async def no_sleep(seconds):
    return None


async def drain(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_console(responder):
    runtime = build_runtime(
        AgentConfig(reasoning_api_key="test-key"),
        session_id="sess_console",
        responder=responder,
        sleep=no_sleep,
    )
    turn_done = asyncio.Event()
    listener = turn_listener(runtime, turn_done)
    runtime.bus.subscribe(EventType.TURN_COMPLETED, listener)
    runtime.bus.subscribe(EventType.TURN_ERROR, listener)
    return runtime, turn_done


@pytest.mark.asyncio
async def test_completed_turn_releases_wait():
    """Test that a completed turn sets the console's turn_done event."""
    runtime, turn_done = make_console(lambda text, history: "Hi.")

    runtime.submit_utterance("hello")
    await drain()

    assert turn_done.is_set()
    assert runtime.orchestrator.state == TurnState.IDLE
    await runtime.aclose()


@pytest.mark.asyncio
async def test_capture_failure_keeps_turn_in_flight(capsys):
    """Test that a capture failure mid-turn neither resets the turn nor ends the wait."""
    gate = asyncio.Event()

    async def responder(text, history):
        await gate.wait()
        return "Eventually."

    runtime, turn_done = make_console(responder)
    turn_id = runtime.submit_utterance("hello")
    await drain()

    runtime.capture_provider.fail("microphone unplugged")

    assert "[error] capture.failed" in capsys.readouterr().out
    assert runtime.orchestrator.state == TurnState.REASONING
    assert runtime.orchestrator.current_turn_id == turn_id
    assert not turn_done.is_set()

    gate.set()
    await drain()

    assert turn_done.is_set()
    assert [t.agent_response for t in runtime.orchestrator.get_history()] == ["Eventually."]
    await runtime.aclose()


@pytest.mark.asyncio
async def test_reasoning_failure_resets_turn(capsys):
    """Test that a reasoning failure is printed, resets the stalled turn and ends the wait."""
    def responder(text, history):
        raise RuntimeError("boom")

    runtime, turn_done = make_console(responder)
    runtime.submit_utterance("hello")
    await drain()

    assert "[error] " in capsys.readouterr().out
    assert turn_done.is_set()
    assert runtime.orchestrator.current_turn_id is None
    assert runtime.orchestrator.state != TurnState.STALLED
    await runtime.aclose()
