"""
Entry point for running the agent HTTP API.

Usage:
    python -m agent_api

This starts the FastAPI server on http://0.0.0.0:8000
"""
import uvicorn
from logging_setup import setup_logging
from voice_agent.config import get_config

if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=True)

    uvicorn.run(
        "agent_api.server:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
