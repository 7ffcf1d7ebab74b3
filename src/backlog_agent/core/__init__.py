"""Core models, configuration and task-state classification."""

from .classifier import StateClassifier
from .config import ConfigurationError, OrchestratorConfig, load_config
from .models import Comment, ProcessingAction, ProcessingStatus, Provider, Session, SessionStatus, Task
from .state import OrchestratorState

__all__ = [
    "StateClassifier",
    "ConfigurationError",
    "OrchestratorConfig",
    "load_config",
    "Comment",
    "ProcessingAction",
    "ProcessingStatus",
    "Provider",
    "Session",
    "SessionStatus",
    "Task",
    "OrchestratorState",
]
