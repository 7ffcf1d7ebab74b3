"""Shared utility functions for the orchestrator."""

from .atomic_io import atomic_write_json, atomic_write_text
from .process_utils import kill_process_tree
from .subprocess_utils import (
    SubprocessError,
    check_command_exists,
    git_output,
    run_command,
    run_git_command,
)
from .validators import (
    split_owner_repo,
    validate_branch_name,
    validate_owner_repo,
    validate_task_id,
)

__all__ = [
    # Atomic I/O
    "atomic_write_json",
    "atomic_write_text",
    # Process management
    "kill_process_tree",
    # Subprocess utilities
    "SubprocessError",
    "check_command_exists",
    "git_output",
    "run_command",
    "run_git_command",
    # Validators
    "split_owner_repo",
    "validate_branch_name",
    "validate_owner_repo",
    "validate_task_id",
]
