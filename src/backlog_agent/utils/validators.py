"""Validation for branch names, task identifiers and repository names."""

import re

_OWNER_REPO_RE = re.compile(r"^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+$")


def validate_branch_name(branch_name: str) -> str:
    """
    Validate a git branch name against a strict whitelist.

    Raises:
        ValueError: If the branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    if not re.match(r"^[a-zA-Z0-9/_.-]+$", branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith("/") or branch_name.endswith("/"):
        raise ValueError("Branch name cannot start or end with /")

    if ".." in branch_name or "@{" in branch_name or branch_name.endswith(".lock"):
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def validate_task_id(task_id: str) -> str:
    """
    Validate a tracker task id before it is used in paths or branch names.

    Raises:
        ValueError: If the id is empty or contains path characters
    """
    if not task_id:
        raise ValueError("task_id cannot be empty")

    if not re.match(r"^[a-zA-Z0-9_-]+$", task_id):
        raise ValueError(f"Invalid task_id: {task_id}")

    if len(task_id) > 128:
        raise ValueError("task_id too long")

    return task_id


def validate_owner_repo(owner_repo: str) -> str:
    """
    Validate an ``owner/repo`` repository name.

    Raises:
        ValueError: If the format is invalid
    """
    if not owner_repo:
        raise ValueError("Repository name cannot be empty")

    if not _OWNER_REPO_RE.match(owner_repo) or ".." in owner_repo:
        raise ValueError(
            f"Invalid repository format: {owner_repo}. Must be 'owner/repo'"
        )

    return owner_repo


def split_owner_repo(owner_repo: str) -> tuple:
    """Return ``(owner, repo)`` for a validated repository name."""
    owner, repo = validate_owner_repo(owner_repo).split("/")
    return owner, repo
