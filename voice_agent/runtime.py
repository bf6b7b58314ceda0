"""
Runtime wiring.

build_runtime() assembles one agent from configuration:
bus, telemetry, retrieval index, reasoning client, responder, capture
controller with its provider, synthesis provider and the orchestrator.
The same runtime backs the HTTP API and the console demo.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from logging_setup import get_logger, Component
from .capture import CaptureStreamController, RestartPolicy
from .config import AgentConfig
from .documents import LoadedDocument, load_document
from .event_bus import EventBus
from .instructions import FALLBACK_PROFILE, AgentProfile, load_profile
from .orchestrator import Responder, TurnOrchestrator, TurnState
from .providers import ScriptedCaptureProvider, SynthesisProvider, TimedSynthesisProvider
from .reasoning import ReasoningClient
from .responders import ProfileResponder, RetrievalAugmentedResponder
from .retrieval import RetrievalIndex
from .telemetry import TurnTelemetry


logger = get_logger(Component.VOICE_AGENT)


@dataclass
class AgentRuntime:
    config: AgentConfig
    session_id: str
    bus: EventBus
    telemetry: TurnTelemetry
    index: RetrievalIndex
    client: ReasoningClient
    profile: AgentProfile
    responder: Responder
    capture_provider: ScriptedCaptureProvider
    capture: CaptureStreamController
    synthesis: SynthesisProvider
    orchestrator: TurnOrchestrator

    def submit_utterance(self, text: str) -> Optional[str]:
        """
        Feed a final transcript into the capture stream.

        Returns the id of the turn now reasoning over it, or None when a turn
        was already in flight and the transcript was dropped.
        """
        busy = self.orchestrator.state in (TurnState.REASONING, TurnState.SYNTHESIZING)
        self.capture_provider.push_final(text)
        if busy:
            return None
        return self.orchestrator.current_turn_id

    def ingest_text(self, content: str, metadata: Optional[Mapping[str, Any]] = None) -> str:
        return self.index.ingest(content, metadata)

    def ingest_file(self, path: Union[str, Path]) -> Tuple[str, LoadedDocument]:
        document = load_document(path)
        document_id = self.index.ingest(document.content, document.index_metadata())
        logger.info(
            "Document ingested",
            document_id=document_id,
            source=document.name,
            kind=document.kind,
            word_count=document.metadata.get("word_count"),
        )
        return document_id, document

    def describe(self) -> Dict[str, Any]:
        capture = self.capture.status()
        return {
            "session_id": self.session_id,
            "profile": self.profile.name,
            "use_retrieval": self.profile.use_retrieval,
            "turn_state": self.orchestrator.state.value,
            "current_turn_id": self.orchestrator.current_turn_id,
            "capture_state": capture.state.value,
        }

    async def aclose(self) -> None:
        """Shut the agent down and release the HTTP session. Safe to call twice."""
        self.orchestrator.shutdown()
        self.telemetry.detach()

        tasks = self.orchestrator.outstanding_reasoning()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.client.close()
        logger.info("Agent runtime closed", session_id=self.session_id)


def resolve_profile(config: AgentConfig) -> AgentProfile:
    """Profile named by the config; the built-in fallback takes the config's model settings."""
    profile = load_profile(config.agent_profile)
    if profile is FALLBACK_PROFILE:
        profile = replace(
            profile,
            model=config.reasoning_model,
            temperature=config.reasoning_temperature,
            max_tokens=config.reasoning_max_tokens,
        )
    return profile


def build_responder(
    config: AgentConfig,
    client: ReasoningClient,
    profile: AgentProfile,
    index: RetrievalIndex,
) -> ProfileResponder:
    common = dict(
        history_window=config.history_window_turns,
        stream=config.reasoning_stream,
        top_p=config.reasoning_top_p,
    )
    if profile.use_retrieval:
        return RetrievalAugmentedResponder(
            client, profile, index, max_results=config.retrieval_max_results, **common
        )
    return ProfileResponder(client, profile, **common)


def build_runtime(
    config: AgentConfig,
    *,
    session_id: Optional[str] = None,
    profile: Optional[AgentProfile] = None,
    client: Optional[ReasoningClient] = None,
    responder: Optional[Responder] = None,
    synthesis: Optional[SynthesisProvider] = None,
    on_spoken: Optional[Callable[[str], Any]] = None,
    now: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> AgentRuntime:
    session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
    bus = EventBus()

    # Subscribed ahead of the orchestrator
    telemetry = TurnTelemetry(session_id, bus, now=now)
    telemetry.attach()

    index = RetrievalIndex(chunk_size=config.retrieval_chunk_size, bus=bus)
    client = client or ReasoningClient(
        config.reasoning_api_key,
        base_url=config.reasoning_base_url,
        default_model=config.reasoning_model,
        timeout_seconds=config.reasoning_timeout_seconds,
        app_title=config.app_title,
        referer=config.app_referer,
    )
    profile = profile or resolve_profile(config)
    responder = responder or build_responder(config, client, profile, index)

    capture_provider = ScriptedCaptureProvider()
    capture = CaptureStreamController(
        capture_provider,
        bus,
        policy=RestartPolicy(
            start_retry_ms=config.capture_start_retry_ms,
            restart_delay_ms=config.capture_restart_delay_ms,
            restart_retry_ms=config.capture_restart_retry_ms,
        ),
        sleep=sleep,
        session_id=session_id,
    )
    synthesis = synthesis or TimedSynthesisProvider(
        bus,
        chars_per_second=config.synthesis_chars_per_second,
        on_spoken=on_spoken,
        sleep=sleep,
    )
    orchestrator = TurnOrchestrator(
        bus, capture, synthesis, responder, now=now, session_id=session_id
    )

    logger.info(
        "Agent runtime built",
        session_id=session_id,
        profile=profile.name,
        use_retrieval=profile.use_retrieval,
        model=profile.model or config.reasoning_model,
    )
    return AgentRuntime(
        config=config,
        session_id=session_id,
        bus=bus,
        telemetry=telemetry,
        index=index,
        client=client,
        profile=profile,
        responder=responder,
        capture_provider=capture_provider,
        capture=capture,
        synthesis=synthesis,
        orchestrator=orchestrator,
    )
