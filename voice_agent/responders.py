"""
Responders: implementations of the orchestrator's response contract.

A responder turns (user_text, history) into the agent's reply. Both classes
here call the reasoning client with a profile's system prompt and recent
history; the retrieval-augmented variant also injects matching document
fragments. Errors are not caught: the orchestrator treats them as a failed
reasoning stage.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from logging_setup import get_logger, Component
from .instructions import AgentProfile
from .orchestrator import ConversationTurn
from .reasoning import ChatMessage, CompletionOptions, ReasoningClient
from .retrieval import QueryResult, RetrievalIndex


logger = get_logger(Component.REASONING)


class ProfileResponder:
    """Replies using one agent profile and the last `history_window` turns."""

    def __init__(
        self,
        client: ReasoningClient,
        profile: AgentProfile,
        *,
        history_window: int = 10,
        stream: bool = False,
        top_p: float = 0.9,
    ):
        self.client = client
        self.profile = profile
        self.history_window = max(0, history_window)
        self.stream = stream
        self.options = CompletionOptions(
            max_tokens=profile.max_tokens,
            temperature=profile.temperature,
            top_p=top_p,
        )

    def build_messages(self, user_text: str, history: Sequence[ConversationTurn]) -> List[ChatMessage]:
        messages = [ChatMessage(role="system", content=self.profile.system_prompt)]

        recent = list(history)[-self.history_window:] if self.history_window else []
        for turn in recent:
            messages.append(ChatMessage(role="user", content=turn.user_input))
            messages.append(ChatMessage(role="assistant", content=turn.agent_response))

        messages.append(ChatMessage(role="user", content=user_text))
        return messages

    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        if self.stream:
            parts = []
            async for delta in self.client.stream_complete(messages, self.profile.model, self.options):
                parts.append(delta)
            return "".join(parts).strip()

        result = await self.client.complete(messages, self.profile.model, self.options)
        return result.content

    async def __call__(self, user_text: str, history: Sequence[ConversationTurn]) -> str:
        messages = self.build_messages(user_text, history)
        reply = await self.generate(messages)
        logger.debug(
            "Reply generated",
            profile=self.profile.name,
            history_turns=min(len(history), self.history_window),
            reply_length=len(reply),
        )
        return reply


class RetrievalAugmentedResponder(ProfileResponder):
    """ProfileResponder that adds matching document fragments as context."""

    def __init__(
        self,
        client: ReasoningClient,
        profile: AgentProfile,
        index: RetrievalIndex,
        *,
        max_results: int = 3,
        history_window: int = 10,
        stream: bool = False,
        top_p: float = 0.9,
    ):
        super().__init__(client, profile, history_window=history_window, stream=stream, top_p=top_p)
        self.index = index
        self.max_results = max_results
        self.last_query: Optional[QueryResult] = None

    def build_messages(self, user_text: str, history: Sequence[ConversationTurn]) -> List[ChatMessage]:
        messages = super().build_messages(user_text, history)

        result = self.index.query(user_text, self.max_results)
        self.last_query = result
        logger.debug("Retrieved context", fragment_count=len(result.fragments))

        if result.fragments:
            messages.append(ChatMessage(role="system", content=document_context_prompt(result)))
        return messages


def document_context_prompt(result: QueryResult) -> str:
    return (
        "DOCUMENT CONTEXT:\n"
        "The user has loaded documents. Relevant excerpts:\n"
        f"{result.context}\n\n"
        "Use this information to give an accurate, grounded answer."
    )
