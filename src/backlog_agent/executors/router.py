"""Mapping from agent identities to execution backends."""

import logging
from typing import Dict, Optional

from ..core.config import OrchestratorConfig
from ..core.models import Provider
from ..sessions.store import SessionStore
from .api_executor import ApiToolExecutor
from .base import Executor
from .terminal import ClaudeTerminalExecutor

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = Provider.CLAUDE

# Checked in order; first substring hit wins
_IDENTITY_PATTERNS = (
    (("claude",), Provider.CLAUDE),
    (("openai", "gpt", "codex"), Provider.OPENAI),
    (("gemini", "google"), Provider.GEMINI),
)


def route_provider(identity: Optional[str]) -> Provider:
    """Pick the provider for an agent identity such as ``claude@astrid.cc``."""
    text = (identity or "").lower()
    for needles, provider in _IDENTITY_PATTERNS:
        if any(needle in text for needle in needles):
            return provider
    return DEFAULT_PROVIDER


class ExecutorRouter:
    """Holds exactly one executor per provider."""

    def __init__(self, executors: Dict[Provider, Executor]):
        missing = [p.value for p in Provider if p not in executors]
        if missing:
            raise ValueError(f"No executor registered for: {', '.join(missing)}")
        self._executors = dict(executors)

    def resolve(self, identity: Optional[str]) -> Executor:
        provider = route_provider(identity)
        executor = self._executors[provider]
        logger.debug(f"Routed '{identity}' to {provider.value} ({type(executor).__name__})")
        return executor

    def get(self, provider: Provider) -> Executor:
        return self._executors[Provider(provider)]

    @classmethod
    def from_config(cls, config: OrchestratorConfig, session_store: SessionStore) -> "ExecutorRouter":
        """
        Build the standard router.

        In terminal mode Claude runs through the local CLI; every other
        provider, and Claude in API mode, runs the litellm tool loop.
        """
        ex = config.executor
        executors = {
            Provider.CLAUDE: ApiToolExecutor(
                Provider.CLAUDE, ex.model or ex.claude_api_model, ex, config.workflow, ex.anthropic_api_key,
            ),
            Provider.OPENAI: ApiToolExecutor(
                Provider.OPENAI, ex.model or ex.openai_api_model, ex, config.workflow, ex.openai_api_key,
            ),
            Provider.GEMINI: ApiToolExecutor(
                Provider.GEMINI, ex.model or ex.gemini_api_model, ex, config.workflow, ex.gemini_api_key,
            ),
        }
        if ex.mode == "terminal":
            executors[Provider.CLAUDE] = ClaudeTerminalExecutor(ex, config.workflow, session_store)
        logger.info(
            "Executors: " + ", ".join(f"{p.value}={type(e).__name__}" for p, e in executors.items())
        )
        return cls(executors)
