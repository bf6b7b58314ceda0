"""
HTTP server for the voice agent.

The runtime is built from environment configuration when the app starts
and closed when it stops.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from logging_setup import get_logger, Component
from voice_agent.config import get_config
from voice_agent.runtime import build_runtime
from .routes import install_runtime, router as agent_router

logger = get_logger(Component.AGENT_API)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = build_runtime(get_config())
    install_runtime(runtime)
    logger.info("Agent API ready", session_id=runtime.session_id, profile=runtime.profile.name)
    try:
        yield
    finally:
        install_runtime(None)
        await runtime.aclose()


app = FastAPI(title="Voice Agent API", lifespan=lifespan)
app.include_router(agent_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "agent_api"}
