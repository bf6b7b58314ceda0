"""
Agent HTTP API.

This module exposes:
- Turn API: submit utterances, read history and latency, reset/clear
- Capture API: start/stop listening, capture status
- Document API: ingest, query, stats, clear
- Read API: telemetry events for the running session

Every route works against the installed AgentRuntime; without one the API
answers 503. Commands are audited as agent_api events.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store
from voice_agent.runtime import AgentRuntime


router = APIRouter(prefix="/agent", tags=["agent"])
emitter = EventEmitter(ObsComponent.AGENT_API)
logger = get_logger(LogComponent.AGENT_API)

_runtime: Optional[AgentRuntime] = None


def install_runtime(runtime: Optional[AgentRuntime]) -> None:
    """Install (or, with None, remove) the runtime the routes operate on."""
    global _runtime
    _runtime = runtime


def get_runtime() -> AgentRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="agent_not_ready")
    return _runtime


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _audit(runtime: AgentRuntime, command: str, **fields: Any) -> None:
    emitter.emit(
        "api.command_applied",
        session_id=runtime.session_id,
        severity=Severity.INFO,
        correlation_id=_new_correlation_id(),
        command=command,
        **fields,
    )


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # "+" in a query string may arrive as a space
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in cleaned and "-" not in cleaned[-6:]:
            cleaned += "+00:00"
        return datetime.fromisoformat(cleaned)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


# --- Turns ---


class UtteranceRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Final transcript to answer")


class UtteranceResponse(BaseModel):
    accepted: bool
    turn_id: Optional[str] = None
    state: str


class LatencyModel(BaseModel):
    capture_ms: int
    reasoning_ms: int
    synthesis_ms: int
    total_ms: int


class TurnModel(BaseModel):
    turn_id: str
    timestamp: str
    user_input: str
    agent_response: str
    latency: LatencyModel


@router.post("/utterances", response_model=UtteranceResponse, status_code=202)
async def submit_utterance(req: UtteranceRequest) -> UtteranceResponse:
    runtime = get_runtime()
    text = req.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Empty utterance")

    turn_id = runtime.submit_utterance(text)
    if turn_id is None:
        logger.warning("Utterance dropped, turn in flight", state=runtime.orchestrator.state.value)
    return UtteranceResponse(
        accepted=turn_id is not None,
        turn_id=turn_id,
        state=runtime.orchestrator.state.value,
    )


@router.get("/turns", response_model=List[TurnModel])
async def list_turns() -> List[TurnModel]:
    runtime = get_runtime()
    return [TurnModel(**turn.to_dict()) for turn in runtime.orchestrator.get_history()]


@router.get("/turns/latency")
async def turn_latency() -> dict:
    runtime = get_runtime()
    return {
        "turn_count": len(runtime.orchestrator.get_history()),
        "averages": runtime.orchestrator.get_average_latencies(),
    }


@router.delete("/turns")
async def clear_turns() -> dict:
    runtime = get_runtime()
    runtime.orchestrator.clear_history()
    _audit(runtime, "turns.clear")
    return {"status": "ok"}


@router.post("/turns/reset")
async def reset_turn() -> dict:
    runtime = get_runtime()
    turn_id = runtime.orchestrator.reset_turn()
    _audit(runtime, "turns.reset", turn_id=turn_id)
    return {"status": "ok", "abandoned_turn_id": turn_id}


# --- Capture ---


class CaptureStatusModel(BaseModel):
    state: str
    keep_capturing: bool
    active: bool
    restart_in_flight: bool
    turn_state: str


def _capture_status(runtime: AgentRuntime) -> CaptureStatusModel:
    status = runtime.capture.status()
    return CaptureStatusModel(
        state=status.state.value,
        keep_capturing=status.keep_capturing,
        active=status.active,
        restart_in_flight=status.restart_in_flight,
        turn_state=runtime.orchestrator.state.value,
    )


@router.post("/capture/start", response_model=CaptureStatusModel)
async def start_capture() -> CaptureStatusModel:
    runtime = get_runtime()
    runtime.orchestrator.start_listening()
    _audit(runtime, "capture.start")
    return _capture_status(runtime)


@router.post("/capture/stop", response_model=CaptureStatusModel)
async def stop_capture() -> CaptureStatusModel:
    runtime = get_runtime()
    runtime.orchestrator.stop_listening()
    _audit(runtime, "capture.stop")
    return _capture_status(runtime)


@router.get("/capture", response_model=CaptureStatusModel)
async def capture_status() -> CaptureStatusModel:
    return _capture_status(get_runtime())


# --- Documents ---


class DocumentRequest(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentResponse(BaseModel):
    document_id: str
    fragment_count: int


class QueryRequest(BaseModel):
    text: str = Field(..., min_length=1)
    max_results: int = Field(5, ge=1, le=50)


class FragmentModel(BaseModel):
    fragment_id: str
    content: str
    metadata: Dict[str, Any]
    score: float


class QueryResponse(BaseModel):
    fragments: List[FragmentModel]
    context: str


@router.post("/documents", response_model=DocumentResponse, status_code=201)
async def ingest_document(req: DocumentRequest) -> DocumentResponse:
    runtime = get_runtime()
    try:
        document_id = runtime.ingest_text(req.content, req.metadata)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    fragments = runtime.index.fragments_for(document_id)
    _audit(runtime, "documents.ingest", document_id=document_id)
    return DocumentResponse(document_id=document_id, fragment_count=len(fragments))


@router.post("/documents/query", response_model=QueryResponse)
async def query_documents(req: QueryRequest) -> QueryResponse:
    runtime = get_runtime()
    result = runtime.index.query(req.text, req.max_results)
    return QueryResponse(
        fragments=[
            FragmentModel(
                fragment_id=fragment.fragment_id,
                content=fragment.content,
                metadata=dict(fragment.metadata),
                score=score,
            )
            for fragment, score in zip(result.fragments, result.scores)
        ],
        context=result.context,
    )


@router.get("/documents/stats")
async def document_stats() -> dict:
    stats = get_runtime().index.stats()
    return {"document_count": stats.document_count, "fragment_count": stats.fragment_count}


@router.delete("/documents")
async def clear_documents() -> dict:
    runtime = get_runtime()
    runtime.index.clear()
    _audit(runtime, "documents.clear")
    return {"status": "ok"}


# --- Read API ---


@router.get("/events")
async def get_events(
    turn_id: Optional[str] = Query(None, description="Filter by turn (correlation_id)"),
    event_type: Optional[str] = Query(None, description="Exact event_type or prefix ending in '.' / '*'"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    runtime = get_runtime()
    events = event_store.query(
        session_id=runtime.session_id,
        correlation_id=turn_id,
        event_type=event_type,
        component=component,
        since=_parse_ts(since, "since"),
        until=_parse_ts(until, "until"),
        limit=limit,
    )
    return {
        "session_id": runtime.session_id,
        "events": events,
        "count": len(events),
    }
