"""AI execution backends and provider routing."""

from .base import ExecutionContext, ExecutionResult, Executor, ExecutorCallbacks, ParsedOutput
from .router import ExecutorRouter, route_provider

__all__ = [
    "ExecutionContext",
    "ExecutionResult",
    "Executor",
    "ExecutorCallbacks",
    "ParsedOutput",
    "ExecutorRouter",
    "route_provider",
]
