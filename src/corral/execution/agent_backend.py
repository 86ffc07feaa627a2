"""Agent backends: which model SDK runs inside the container.

The set is closed and chosen once at startup. A backend decides which
secrets are handed to the container over stdin and which extra fields the
agent process receives.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from corral.infrastructure.config import AGENT_BACKEND, LLM_BASE_URL, LLM_MODEL, read_env_file


@dataclass(frozen=True)
class AgentBackend:
    name: str
    secret_keys: tuple[str, ...]
    supports_resume: bool = True
    model: str = ""
    base_url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def read_secrets(self) -> dict[str, str]:
        """Secrets from .env only; they never enter os.environ or container env args."""
        return read_env_file(list(self.secret_keys))

    def input_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"provider": self.name}
        if self.model:
            fields["model"] = self.model
        if self.base_url:
            fields["baseUrl"] = self.base_url
        return {**fields, **self.extra}


def _claude() -> AgentBackend:
    return AgentBackend(
        name="claude",
        secret_keys=("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN"),
        supports_resume=True,
        model=LLM_MODEL,
    )


def _langchain() -> AgentBackend:
    # Sessions live in the agent's memory only; there is nothing to resume
    return AgentBackend(
        name="langchain",
        secret_keys=("LLM_API_KEY", "GOOGLE_API_KEY", "OPENAI_API_KEY"),
        supports_resume=False,
        model=LLM_MODEL,
        base_url=LLM_BASE_URL,
    )


_BACKENDS = {"claude": _claude, "langchain": _langchain}


def create_agent_backend(name: str = AGENT_BACKEND) -> AgentBackend:
    """Unknown names raise ValueError so a typo fails at startup, not mid-run."""
    try:
        return _BACKENDS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown agent backend: {name!r} (expected one of {sorted(_BACKENDS)})") from None
