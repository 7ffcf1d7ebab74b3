"""Agent prompts and the comment templates the worker posts.

The bold titles in these templates double as state markers: the classifier
reads them back from comment history on the next poll.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .config import WorkflowConfig
from .models import Comment, Provider, Task

RETRY_PHRASE = "retry"
SHIP_PHRASE = "ship it"

# Marker titles
STARTING_TITLE = "Starting"
PLAN_TITLE = "Plan"
IMPLEMENTATION_COMPLETE_TITLE = "Implementation Complete"
IMPLEMENTATION_FAILED_TITLE = "Implementation Failed"
VERIFICATION_FAILED_TITLE = "Verification Failed"
NO_CHANGES_TITLE = "No Changes Made"
WORKER_ERROR_TITLE = "Worker Error"
PR_CREATED_TITLE = "Pull Request Created"
PREVIEW_READY_TITLE = "Preview Ready"
SHIPPED_TITLE = "Shipped"
DEPLOYMENT_COMPLETE_TITLE = "Deployment Complete"
SHIP_FAILED_TITLE = "Ship It Failed"

MAX_PROMPT_CHARS = 50000
COMMENT_HISTORY_LIMIT = 10

_PROVIDER_NAMES = {
    Provider.CLAUDE: "Claude",
    Provider.OPENAI: "OpenAI",
    Provider.GEMINI: "Gemini",
}


def agent_display_name(provider: Provider) -> str:
    return f"{_PROVIDER_NAMES.get(Provider(provider), 'AI')} Agent"


def truncate_prompt(prompt: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[:max_chars] + "\n\n[... prompt truncated ...]"


def generate_branch_name(task_id: str, prefix: str = "task/") -> str:
    return f"{prefix}{task_id[:8]}"


def commit_prefix(title: str) -> str:
    return "fix" if "fix" in title.lower() else "feat"


def format_comment_history(
    comments: Optional[Sequence[Comment]],
    limit: int = COMMENT_HISTORY_LIMIT,
) -> str:
    """Render the latest ``limit`` comments, oldest first, for a prompt."""
    if not comments:
        return ""
    ordered = sorted(comments, key=lambda c: c.created_at)[-limit:]
    formatted = "\n\n---\n\n".join(
        f"**{c.author_name or ('Agent' if c.is_agent else 'User')}** "
        f"({c.created_at.strftime('%Y-%m-%d %H:%M')}):\n{c.content}"
        for c in ordered
    )
    return f"\n\n## Previous Discussion\n\n{formatted}"


def build_workflow_instructions(task: Task, workflow: WorkflowConfig) -> str:
    """Numbered git/PR steps the agent follows, driven by workflow config."""
    branch_name = generate_branch_name(task.id, workflow.branch_prefix)
    short_title = task.title[:50].replace('"', "'")

    steps: List[str] = [
        f"Work on the feature branch `{branch_name}` (create it if it doesn't exist)",
        "Implement the task - make all necessary code changes",
    ]
    if workflow.run_tests:
        steps.append(f"Run tests: `{workflow.test_command}` - fix any failures")
    steps.append(f'Commit: `git add -A && git commit -m "{commit_prefix(task.title)}: {short_title}"`')
    steps.append(f"Push: `git push -u origin {branch_name}`")
    if workflow.create_pr:
        steps.append('Create PR: `gh pr create --title "..." --body "..."`')

    rules = [
        "- Do NOT commit to the default branch - use the feature branch",
        "- Make ONLY the requested changes",
    ]
    if workflow.create_pr:
        rules.append("- Output the PR URL so it can be extracted")

    numbered = "\n".join(f"{i}. {step}" for i, step in enumerate(steps, start=1))
    return f"## Workflow\n\n{numbered}\n\n## Rules\n\n" + "\n".join(rules)


def build_task_prompt(
    task: Task,
    comments: Optional[Sequence[Comment]],
    workflow: WorkflowConfig,
    max_chars: int = MAX_PROMPT_CHARS,
) -> str:
    """Default prompt for a fresh session."""
    return truncate_prompt(
        f"# Task: {task.title}\n\n"
        f"{task.description}\n"
        f"{format_comment_history(comments)}\n\n"
        f"{build_workflow_instructions(task, workflow)}\n\n"
        "## Output Requirements\n\n"
        "Your response MUST include:\n"
        "1. Task understanding: what was requested\n"
        "2. Changes made: what you changed and why\n"
        "3. Files modified: list each file path\n"
        "4. Test results, if tests were run\n"
        "5. PR URL, if a pull request was created\n\n"
        "Begin by analyzing the task.",
        max_chars,
    )


def build_resume_prompt(latest_input: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    return truncate_prompt(
        f"## Follow-up Request\n\n{latest_input}\n\n"
        "Continue from where you left off and address this feedback.",
        max_chars,
    )


def build_context_rebuild_prompt(
    comments: Optional[Sequence[Comment]],
    latest_input: str,
    max_chars: int = MAX_PROMPT_CHARS,
) -> str:
    """Prompt for backends that can't resume natively."""
    return truncate_prompt(
        f"{format_comment_history(comments)}\n\n---\n\n{build_resume_prompt(latest_input, max_chars)}",
        max_chars,
    )


def latest_human_comment(comments: Iterable[Comment]) -> Optional[Comment]:
    humans = [c for c in comments if not c.is_agent]
    return max(humans, key=lambda c: c.created_at) if humans else None


# --- Comment templates ---


def starting_comment(
    provider: Provider,
    task: Task,
    repository: Optional[str],
    resumed: bool = False,
    latest_feedback: Optional[str] = None,
) -> str:
    name = agent_display_name(provider)
    lines = [f"🤖 **{name} {STARTING_TITLE}**", "", f"**Task:** {task.title}"]
    if repository:
        lines.append(f"**Repository:** `{repository}`")
    if resumed:
        lines += ["", "📚 **Continuing from previous session**"]
    if latest_feedback:
        lines += ["", f"**Latest feedback:** {latest_feedback[:300]}"]
    lines += ["", "---", f"*Started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}*"]
    return "\n".join(lines)


def implementation_complete_comment(files: Sequence[str], summary: Optional[str] = None) -> str:
    file_list = "\n".join(f"- `{f}`" for f in files[:30]) or "- (no files reported)"
    body = f"✅ **{IMPLEMENTATION_COMPLETE_TITLE}**\n\n**Files modified:**\n{file_list}"
    if len(files) > 30:
        body += f"\n- ... and {len(files) - 30} more"
    if summary:
        body += f"\n\n**Summary:** {summary}"
    body += f"\n\n---\n*Reply **{SHIP_PHRASE}** to push and deploy these changes.*"
    return body


def pr_created_comment(pr_url: str, provider: Provider, title: Optional[str] = None) -> str:
    body = f"🎉 **{PR_CREATED_TITLE}!**\n\n🔗 **[{pr_url}]({pr_url})**"
    if title:
        body += f"\n\n**Title:** {title}"
    body += (
        f"\n\n**What's next:**\n1. Review the changes in the PR\n"
        f"2. Comment \"{SHIP_PHRASE}\" to merge and deploy\n\n"
        f"---\n*Generated by {agent_display_name(provider)}*"
    )
    return body


def preview_ready_comment(preview_url: str) -> str:
    return (
        f"🚀 **{PREVIEW_READY_TITLE}**\n\n🔗 **Preview URL:** [{preview_url}]({preview_url})\n\n"
        f"Comment \"{SHIP_PHRASE}\" when ready to deploy."
    )


def no_changes_comment(summary: Optional[str] = None) -> str:
    body = f"⚠️ **{NO_CHANGES_TITLE}**\n\nThe agent finished without modifying any files."
    if summary:
        body += f"\n\n**Agent summary:** {summary}"
    body += f"\n\n---\n*Reply **{RETRY_PHRASE}** (with more detail in the task) to run it again.*"
    return body


def shipped_comment(pr_url: str, deploy_url: Optional[str] = None) -> str:
    body = f"🎉 **{SHIPPED_TITLE}!**\n\n✅ [{pr_url}]({pr_url}) merged"
    if deploy_url:
        body += f"\n\n📦 **{DEPLOYMENT_COMPLETE_TITLE}:** [{deploy_url}]({deploy_url})"
    return body
