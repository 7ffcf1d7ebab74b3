"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_AGENT_IDENTITIES = [
    "claude@astrid.cc",
    "openai@astrid.cc",
    "gemini@astrid.cc",
]


class ConfigurationError(Exception):
    """Missing or invalid configuration; fatal at startup."""


class TrackerConfig(BaseModel):
    """Task tracker API access."""
    api_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    list_id: Optional[str] = None  # Restrict polling to one list
    request_timeout: float = 30.0

    # Assignee identities this worker picks up tasks for
    agent_identities: List[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_IDENTITIES))
    # Identity -> tracker user id, used to post comments as the agent
    agent_user_ids: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"api_url must start with http:// or https://, got '{v}'")
        return v.rstrip("/") if v else v


class GitHubConfig(BaseModel):
    """Git hosting credentials."""
    token: Optional[str] = None
    # "owner/repo" -> installation token; falls back to ``token``
    installation_tokens: Dict[str, str] = Field(default_factory=dict)
    default_base: str = "main"
    delete_branch_on_merge: bool = True


class ExecutorConfig(BaseModel):
    """AI execution backends."""
    mode: Literal["api", "terminal"] = "api"
    model: Optional[str] = None  # Overrides the per-provider model when set

    # Terminal (Claude CLI) settings
    claude_cli_executable: str = "claude"
    claude_cli_model: str = "sonnet"

    # API models, in litellm naming
    claude_api_model: str = "claude-sonnet-4-5-20250929"
    openai_api_model: str = "gpt-4.1"
    gemini_api_model: str = "gemini/gemini-2.5-pro"
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    api_call_timeout: int = 120

    max_turns: int = 50
    initial_output_timeout: int = 180
    stall_timeout: int = 300
    max_timeout: int = 900
    heartbeat_interval: int = 30
    max_attempts: int = 3
    prompt_max_chars: int = 50000

    # API agents explore read-only and post a plan before editing
    plan_first: bool = True
    max_planning_turns: int = 20
    planning_timeout: int = 900
    max_plan_files: int = 8

    logs_dir: Path = Field(default=Path("logs"))

    @field_validator("max_attempts", "max_turns", "max_planning_turns")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class WorktreeConfig(BaseModel):
    """Isolated checkout per task."""
    enabled: bool = True
    root: Path = Field(default=Path("/tmp/backlog-agent-worktrees"))
    cleanup: bool = True

    @field_validator("root")
    @classmethod
    def expand_root(cls, v: Path) -> Path:
        return Path(v).expanduser()


class WorkflowConfig(BaseModel):
    """What the agent does after implementing a task."""
    create_pr: bool = True
    branch_prefix: str = "task/"
    run_tests: bool = False
    test_command: str = "npm run test"
    # Build/typecheck run by the worker after execution; None skips verification
    verify_command: Optional[str] = None
    verify_timeout: int = 600


class DeployConfig(BaseModel):
    """Optional Vercel deployment of previews and shipped PRs."""
    enabled: bool = False
    cli_executable: str = "vercel"
    token: Optional[str] = None
    project_name: Optional[str] = None
    team_id: Optional[str] = None
    preview_domain: Optional[str] = None
    timeout: int = 600


class WorkerConfig(BaseModel):
    """Poll loop behaviour and on-disk state."""
    poll_interval: int = 30
    cooldown_seconds: int = 300
    stale_marker_seconds: int = 300
    repository_path: Path = Field(default=Path("."))
    default_repository: Optional[str] = None
    session_store_path: Path = Field(
        default=Path("~/.backlog-agent/terminal-sessions.json")
    )
    sessions_path: Path = Field(default=Path("~/.backlog-agent/sessions.json"))

    @field_validator("session_store_path", "sessions_path", "repository_path")
    @classmethod
    def expand_paths(cls, v: Path) -> Path:
        return Path(v).expanduser()


class WebhookConfig(BaseModel):
    """Inbound webhook listener."""
    secret: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3001
    max_age_seconds: int = 300


class OrchestratorConfig(BaseSettings):
    """Main orchestrator configuration."""
    workspace: Path = Field(default=Path("."))

    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    class Config:
        env_prefix = "BACKLOG_AGENT_"
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"

    def validate_for_polling(self) -> None:
        """Fail fast when the tracker can't be reached at all."""
        missing = [
            name for name, value in (
                ("tracker.api_url", self.tracker.api_url),
                ("tracker.client_id", self.tracker.client_id),
                ("tracker.client_secret", self.tracker.client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing tracker configuration: {', '.join(missing)}. "
                "Set them in the config file or via BACKLOG_AGENT_TRACKER__* env vars."
            )
        if not self.github.token and not self.github.installation_tokens:
            logger.warning("No GitHub credentials configured; PR creation and ship-it merges will fail")

    def validate_for_webhooks(self) -> None:
        if not self.webhook.secret:
            raise ConfigurationError("BACKLOG_AGENT_WEBHOOK__SECRET not configured")


# path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return the cached config if the file mtime is unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> OrchestratorConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    data = _expand_env_vars(data)
    return OrchestratorConfig(**data)


def load_config(config_path: Path = Path("backlog-agent.yaml")) -> OrchestratorConfig:
    """Load orchestrator configuration from a YAML file.

    Missing file means defaults plus environment overrides.
    """
    if not config_path.exists():
        logger.info(f"Config file not found: {config_path}. Using defaults and environment.")
        return OrchestratorConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else OrchestratorConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively replace ``"${VAR}"`` string values with the environment value."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'})"
            )
            return None
        return value
    return data
