"""Translate technical errors into actionable task comments."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.prompts import RETRY_PHRASE, SHIP_PHRASE, WORKER_ERROR_TITLE


@dataclass
class FriendlyFailure:
    """User-facing description of a failure."""
    original_error: BaseException
    title: str
    explanation: str
    actions: List[str] = field(default_factory=list)
    show_technical: bool = False


class FailureTranslator:
    """Map exceptions to a title, explanation and suggested actions."""

    ERROR_PATTERNS = {
        # Git hosting
        r"Bad credentials|GitHub credential|RepositoryError.*401": {
            "title": "GitHub authentication failed",
            "explanation": "The GitHub token is invalid, expired or missing for this repository.",
            "actions": [
                "Check the GitHub token or app installation for this repository",
                "Make sure the token has 'repo' scope",
            ],
        },
        r"Permission denied\. The GitHub App|not accessible": {
            "title": "Repository not accessible",
            "explanation": "The agent cannot write to the repository linked to this task's list.",
            "actions": [
                "Check the GitHub App installation permissions",
                "Verify the list's repository setting is correct",
            ],
        },
        r"Failed to merge PR": {
            "title": "Pull request could not be merged",
            "explanation": "GitHub refused the merge. The PR may have conflicts or failing checks.",
            "actions": [
                "Resolve conflicts or failing checks on the PR",
                "Merge manually if the PR is ready",
            ],
        },
        r"No commits between": {
            "title": "Nothing to open a PR for",
            "explanation": "The branch has no commits beyond the base branch.",
            "actions": ["Add more detail to the task so the agent knows what to change"],
        },

        # Verification
        r"VerificationError": {
            "title": "Build or typecheck failed",
            "explanation": "The agent's changes did not pass the verification command.",
            "actions": [
                "Review the verification output below",
                "Comment with hints about the failure",
            ],
            "show_technical": True,
        },

        # Providers
        r"rate.?limit|429|too many requests|overloaded": {
            "title": "AI provider rate limit exceeded",
            "explanation": "The AI provider is throttling requests. Limits reset after a short wait.",
            "actions": ["Wait a few minutes before retrying"],
        },
        r"No output received|timed out|Timeout|exceeded \d+s": {
            "title": "Agent timed out",
            "explanation": "The coding agent stopped producing output or ran past its time limit.",
            "actions": [
                "Split the task into smaller pieces",
                "Retry; transient provider stalls usually clear up",
            ],
        },
        r"api[_ ]?key|authentication_error|AuthenticationError|invalid x-api-key": {
            "title": "AI provider authentication failed",
            "explanation": "The API key for this agent's provider is missing or invalid.",
            "actions": ["Check the provider API key in the worker configuration"],
        },

        # Workspace / tracker
        r"WorkspaceError|worktree": {
            "title": "Workspace setup failed",
            "explanation": "The worker could not prepare or publish the git checkout for this task.",
            "actions": ["Check the worker's repository checkout and git remote access"],
            "show_technical": True,
        },
        r"connection.*refused|connection.*timeout|network.*unreachable|ConnectError": {
            "title": "Cannot connect to service",
            "explanation": "A network call from the worker failed. This could be a network issue or service outage.",
            "actions": ["Try again in a few minutes"],
        },
    }

    def translate(self, error: BaseException) -> FriendlyFailure:
        """Convert an exception to a user-friendly failure."""
        full_error = f"{type(error).__name__}: {error}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return FriendlyFailure(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=list(translation["actions"]),
                    show_technical=translation.get("show_technical", False),
                )

        return FriendlyFailure(
            original_error=error,
            title="Unexpected error",
            explanation=str(error) or type(error).__name__,
            actions=["Check the worker logs for details"],
            show_technical=False,
        )

    def format_comment(
        self,
        error: BaseException,
        marker_title: str = WORKER_ERROR_TITLE,
        pr_url: Optional[str] = None,
    ) -> str:
        """
        Failure comment for a task.

        The bold ``marker_title`` is what the classifier reads back as a
        failed run. The closing line always names the retry phrase, and the
        ship phrase when a PR already exists.
        """
        friendly = self.translate(error)
        output = f"❌ **{marker_title}**\n\n**{friendly.title}**\n\n{friendly.explanation}\n"

        if friendly.actions:
            output += "\n**How to fix:**\n"
            for i, action in enumerate(friendly.actions, 1):
                output += f"{i}. {action}\n"

        if friendly.show_technical:
            output += f"\n<details><summary>Technical details</summary>\n\n```\n{str(error)[:2000]}\n```\n</details>\n"

        if pr_url:
            output += f"\n🔗 Existing PR: {pr_url}\n"
        output += f"\n---\n*Reply **{RETRY_PHRASE}** to run the agent again"
        if pr_url:
            output += f", or **{SHIP_PHRASE}** to merge the existing PR"
        output += ".*"
        return output
