"""
Tests for profile and retrieval-augmented responders.
"""
from datetime import datetime, timezone

import pytest

from voice_agent.instructions import AgentProfile
from voice_agent.orchestrator import ConversationTurn, LatencyBreakdown
from voice_agent.reasoning import CompletionResult
from voice_agent.responders import ProfileResponder, RetrievalAugmentedResponder
from voice_agent.retrieval import RetrievalIndex


PROFILE = AgentProfile(
    name="test",
    description="",
    system_prompt="Be brief.",
    model="some/model",
    temperature=0.3,
    max_tokens=60,
)


class FakeClient:
    """Stands in for ReasoningClient; records every call."""

    def __init__(self, reply="Blue.", deltas=("Bl", "ue.", "  ")):
        self.reply = reply
        self.deltas = deltas
        self.calls = []

    async def complete(self, messages, model=None, options=None):
        self.calls.append(("complete", list(messages), model, options))
        return CompletionResult(content=self.reply)

    async def stream_complete(self, messages, model=None, options=None):
        self.calls.append(("stream", list(messages), model, options))
        for delta in self.deltas:
            yield delta


def turn(n):
    return ConversationTurn(
        turn_id=f"turn_{n}",
        timestamp=datetime.now(timezone.utc),
        user_input=f"question {n}",
        agent_response=f"answer {n}",
        latency=LatencyBreakdown(0, 0, 0, 0),
    )


def roles_and_content(messages):
    return [(m.role, m.content) for m in messages]


def test_messages_without_history():
    """Test message assembly with no history."""
    responder = ProfileResponder(FakeClient(), PROFILE)
    messages = responder.build_messages("hello", [])
    assert roles_and_content(messages) == [("system", "Be brief."), ("user", "hello")]


def test_history_window_keeps_most_recent_turns():
    """Test that the history window keeps the most recent turns."""
    responder = ProfileResponder(FakeClient(), PROFILE, history_window=2)
    messages = responder.build_messages("now", [turn(1), turn(2), turn(3)])

    assert roles_and_content(messages) == [
        ("system", "Be brief."),
        ("user", "question 2"),
        ("assistant", "answer 2"),
        ("user", "question 3"),
        ("assistant", "answer 3"),
        ("user", "now"),
    ]


def test_zero_history_window():
    """Test a history window of zero."""
    responder = ProfileResponder(FakeClient(), PROFILE, history_window=0)
    messages = responder.build_messages("now", [turn(1)])
    assert len(messages) == 2


@pytest.mark.asyncio
async def test_call_uses_profile_settings():
    """Test that the responder passes profile settings to the client."""
    client = FakeClient()
    responder = ProfileResponder(client, PROFILE, top_p=0.5)

    reply = await responder("What color is the sky?", [])

    assert reply == "Blue."
    kind, messages, model, options = client.calls[0]
    assert kind == "complete"
    assert model == "some/model"
    assert options.max_tokens == 60
    assert options.temperature == 0.3
    assert options.top_p == 0.5


@pytest.mark.asyncio
async def test_streaming_joins_deltas():
    """Test that streamed deltas are joined into one reply."""
    client = FakeClient()
    responder = ProfileResponder(client, PROFILE, stream=True)

    assert await responder("hi", []) == "Blue."
    assert client.calls[0][0] == "stream"


@pytest.mark.asyncio
async def test_client_errors_propagate():
    """Test that client errors propagate."""
    class FailingClient(FakeClient):
        async def complete(self, messages, model=None, options=None):
            raise RuntimeError("provider unavailable")

    responder = ProfileResponder(FailingClient(), PROFILE)
    with pytest.raises(RuntimeError):
        await responder("hi", [])


@pytest.mark.asyncio
async def test_retrieval_context_is_appended():
    """Test that retrieved context is added to the prompt."""
    index = RetrievalIndex(chunk_size=1000)
    index.ingest("The sky is blue. Water is wet.")
    client = FakeClient()
    responder = RetrievalAugmentedResponder(client, PROFILE, index, max_results=2)

    await responder("What color is the sky?", [turn(1)])

    messages = client.calls[0][1]
    assert messages[-2].role == "user"
    assert messages[-2].content == "What color is the sky?"
    assert messages[-1].role == "system"
    assert messages[-1].content.startswith("DOCUMENT CONTEXT:")
    assert "The sky is blue" in messages[-1].content
    assert responder.last_query is not None
    assert len(responder.last_query.fragments) == 1


def test_no_context_message_without_matches():
    """Test the prompt when nothing matches."""
    index = RetrievalIndex()
    index.ingest("Water is wet.")
    responder = RetrievalAugmentedResponder(FakeClient(), PROFILE, index)

    messages = responder.build_messages("zebra", [])

    assert [m.role for m in messages] == ["system", "user"]
    assert responder.last_query.fragments == []
