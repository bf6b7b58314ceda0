"""
Agent profiles: system prompt and model settings per use case.

Each profile defines:
- name / description
- system_prompt: instructions for the reasoning call
- model, temperature, max_tokens: completion settings
- use_retrieval: whether replies are augmented with indexed documents

Profiles are stored as YAML (preferred) or JSON under voice_agent/profiles/.
PyYAML's safe_load parses both, so there is a single code path.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_PROFILE = "general"

FALLBACK_PROMPT = """
You are a helpful assistant in a voice conversation.
Keep answers short, natural and free of formatting; they are read aloud.
If something is unclear, ask a short clarifying question.
""".strip()


@dataclass(frozen=True)
class AgentProfile:
    name: str
    description: str
    system_prompt: str
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 150
    use_retrieval: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentProfile":
        return cls(
            name=str(data.get("name", DEFAULT_PROFILE)),
            description=str(data.get("description", "")),
            system_prompt=str(data.get("system_prompt") or FALLBACK_PROMPT).strip(),
            model=data.get("model"),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(data.get("max_tokens", 150)),
            use_retrieval=bool(data.get("use_retrieval", False)),
        )


FALLBACK_PROFILE = AgentProfile(
    name=DEFAULT_PROFILE,
    description="Built-in fallback assistant",
    system_prompt=FALLBACK_PROMPT,
)


def _get_profiles_dir() -> Path:
    return Path(__file__).parent / "profiles"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Profile file {path} must contain a mapping at top-level")
        return data


def _candidates(name: str, profiles_dir: Path) -> List[Path]:
    return [
        profiles_dir / f"{name}.yaml",
        profiles_dir / f"{name}.yml",
        profiles_dir / f"{name}.json",
    ]


def load_profile(name: Optional[str] = None, profiles_dir: Optional[Path] = None) -> AgentProfile:
    """
    Load a profile by name.

    Resolution order:
    1) <name>.yaml / <name>.yml / <name>.json
    2) the default profile file
    3) built-in fallback
    """
    profiles_dir = profiles_dir or _get_profiles_dir()

    for candidate in _candidates(name or DEFAULT_PROFILE, profiles_dir):
        if candidate.exists():
            return AgentProfile.from_dict(_load_file(candidate))

    for candidate in _candidates(DEFAULT_PROFILE, profiles_dir):
        if candidate.exists():
            return AgentProfile.from_dict(_load_file(candidate))

    return FALLBACK_PROFILE


def list_profiles(profiles_dir: Optional[Path] = None) -> List[str]:
    """Names of the profiles available on disk, sorted."""
    profiles_dir = profiles_dir or _get_profiles_dir()
    if not profiles_dir.is_dir():
        return []
    names = {
        p.stem for p in profiles_dir.iterdir()
        if p.suffix in (".yaml", ".yml", ".json") and p.is_file()
    }
    return sorted(names)
