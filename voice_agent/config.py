"""
Voice agent configuration.

Loads provider and runtime settings from environment variables.
`.env_local` / `.env.local` in the project root are read first (local dev
convenience) without overriding variables already set.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


ENV_FILES = (".env_local", ".env.local")


def load_env_files(root: Optional[Path] = None) -> None:
    root = root or Path(__file__).parent.parent
    for name in ENV_FILES:
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """
    Raw env value with trailing comments and whitespace stripped.

    "300  # comment" -> "300"; missing or blank -> None
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class AgentConfig:
    """Voice agent configuration."""

    # Reasoning endpoint (OpenRouter-compatible)
    reasoning_api_key: str
    reasoning_base_url: str = "https://openrouter.ai/api/v1"
    reasoning_model: str = "anthropic/claude-3.5-sonnet"
    reasoning_timeout_seconds: float = 30.0
    reasoning_max_tokens: int = 1000
    reasoning_temperature: float = 0.7
    reasoning_top_p: float = 0.9
    reasoning_stream: bool = False

    # Agent behaviour
    agent_profile: str = "general"
    history_window_turns: int = 10

    # Retrieval
    retrieval_chunk_size: int = 500
    retrieval_max_results: int = 3

    # Capture restart timings (milliseconds)
    capture_start_retry_ms: int = 100
    capture_restart_delay_ms: int = 100
    capture_restart_retry_ms: int = 200

    # Simulated synthesis speed
    synthesis_chars_per_second: float = 15.0

    # Request attribution headers
    app_title: str = "Voice Agent Framework"
    app_referer: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load configuration from environment variables."""
        return cls(
            reasoning_api_key=os.environ["REASONING_API_KEY"],
            reasoning_base_url=os.environ.get("REASONING_BASE_URL", "https://openrouter.ai/api/v1"),
            reasoning_model=os.environ.get("REASONING_MODEL", "anthropic/claude-3.5-sonnet"),
            reasoning_timeout_seconds=_parse_float_env("REASONING_TIMEOUT_SECONDS", default=30.0),
            reasoning_max_tokens=_parse_int_env("REASONING_MAX_TOKENS", default=1000),
            reasoning_temperature=_parse_float_env("REASONING_TEMPERATURE", default=0.7),
            reasoning_top_p=_parse_float_env("REASONING_TOP_P", default=0.9),
            reasoning_stream=_parse_bool_env("REASONING_STREAM", default=False),
            agent_profile=os.environ.get("AGENT_PROFILE", "general"),
            history_window_turns=_parse_int_env("HISTORY_WINDOW_TURNS", default=10),
            retrieval_chunk_size=_parse_int_env("RETRIEVAL_CHUNK_SIZE", default=500),
            retrieval_max_results=_parse_int_env("RETRIEVAL_MAX_RESULTS", default=3),
            capture_start_retry_ms=_parse_int_env("CAPTURE_START_RETRY_MS", default=100),
            capture_restart_delay_ms=_parse_int_env("CAPTURE_RESTART_DELAY_MS", default=100),
            capture_restart_retry_ms=_parse_int_env("CAPTURE_RESTART_RETRY_MS", default=200),
            synthesis_chars_per_second=_parse_float_env("SYNTHESIS_CHARS_PER_SECOND", default=15.0),
            app_title=os.environ.get("APP_TITLE", "Voice Agent Framework"),
            app_referer=os.environ.get("APP_REFERER") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def get_config() -> AgentConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = AgentConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[AgentConfig] = None
