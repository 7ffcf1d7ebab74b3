"""GitHub client for branch, commit and pull-request operations."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional

from github import Auth, Github, GithubException, InputGitTreeElement
from github.PullRequest import PullRequest
from github.Repository import Repository

from ...core.config import GitHubConfig
from ...utils.validators import split_owner_repo, validate_owner_repo

logger = logging.getLogger(__name__)

DEFAULT_STATUS_CONTEXT = "backlog-agent"


class RepositoryError(Exception):
    """A git-hosting API call failed; the message names the cause."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class FileChange:
    path: str
    content: Optional[str] = None  # None with action="delete"
    action: Literal["upsert", "delete"] = "upsert"
    encoding: Literal["utf-8", "base64"] = "utf-8"


@dataclass
class CommitInfo:
    sha: str
    url: str
    message: str


@dataclass
class PullRequestInfo:
    number: int
    url: str
    title: str
    head_ref: str
    base_ref: str
    state: str = "open"
    merged: bool = False


@dataclass
class RepoEntry:
    path: str
    type: str  # "file" | "dir"
    size: int = 0
    sha: Optional[str] = None


def _error_message(e: GithubException) -> str:
    data = e.data if isinstance(e.data, dict) else {}
    return str(data.get("message") or e)


def _error_details(e: GithubException) -> str:
    data = e.data if isinstance(e.data, dict) else {}
    errors = data.get("errors") or []
    return ", ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)


def _pr_info(pr: PullRequest) -> PullRequestInfo:
    return PullRequestInfo(
        number=pr.number,
        url=pr.html_url,
        title=pr.title,
        head_ref=pr.head.ref,
        base_ref=pr.base.ref,
        state=pr.state,
        merged=bool(pr.merged),
    )


class RepositoryClient:
    """
    PyGithub wrapper with one credential per repository.

    ``installation_tokens`` maps "owner/repo" to the token of the app
    installation that covers it; anything else uses the default token.
    """

    def __init__(
        self,
        config: GitHubConfig,
        github_factory: Optional[Callable[[str], Github]] = None,
    ):
        self.config = config
        self._github_factory = github_factory or (lambda token: Github(auth=Auth.Token(token)))
        self._clients: Dict[str, Github] = {}
        self._repos: Dict[str, Repository] = {}

    def _token_for(self, repo_full_name: str) -> str:
        token = self.config.installation_tokens.get(repo_full_name) or self.config.token
        if not token:
            raise RepositoryError(f"No GitHub credential configured for {repo_full_name}")
        return token

    def _repo(self, repo_full_name: str) -> Repository:
        try:
            validate_owner_repo(repo_full_name)
        except ValueError as e:
            raise RepositoryError(str(e)) from e
        if repo_full_name not in self._repos:
            token = self._token_for(repo_full_name)
            if token not in self._clients:
                self._clients[token] = self._github_factory(token)
            try:
                self._repos[repo_full_name] = self._clients[token].get_repo(repo_full_name)
            except GithubException as e:
                raise RepositoryError(
                    f"Repository {repo_full_name} is not accessible: {_error_message(e)}", e.status
                ) from e
        return self._repos[repo_full_name]

    # --- Branches ---

    def branch_exists(self, repo_full_name: str, branch: str) -> bool:
        try:
            self._repo(repo_full_name).get_branch(branch)
            return True
        except GithubException as e:
            if e.status == 404:
                return False
            raise RepositoryError(f"Failed to check branch {branch}: {_error_message(e)}", e.status) from e

    def create_branch(self, repo_full_name: str, new_branch: str, base_branch: Optional[str] = None) -> str:
        """Create ``new_branch`` at the tip of ``base_branch``; returns the sha."""
        repo = self._repo(repo_full_name)
        base_branch = base_branch or self.config.default_base
        try:
            sha = repo.get_branch(base_branch).commit.sha
            repo.create_git_ref(ref=f"refs/heads/{new_branch}", sha=sha)
        except GithubException as e:
            raise RepositoryError(
                f"Failed to create branch {new_branch} from {base_branch}: {_error_message(e)}", e.status
            ) from e
        logger.info(f"🌱 Created branch {new_branch} from {base_branch} in {repo_full_name}")
        return sha

    def delete_branch(self, repo_full_name: str, branch: str) -> None:
        try:
            self._repo(repo_full_name).get_git_ref(f"heads/{branch}").delete()
        except GithubException as e:
            raise RepositoryError(f"Failed to delete branch {branch}: {_error_message(e)}", e.status) from e

    # --- Commits ---

    def commit_changes(
        self,
        repo_full_name: str,
        branch: str,
        changes: List[FileChange],
        message: str,
    ) -> CommitInfo:
        """
        Land ``changes`` on ``branch`` as a single commit.

        Goes through the git data API: branch tip -> its tree -> one blob per
        file -> a new tree layered on the old one -> a commit whose only
        parent is the old tip -> move the ref. Files outside ``changes`` keep
        their entries from the base tree; deletions are entries with a null
        sha. Nothing is visible on the branch until the final ref update.
        """
        if not changes:
            raise RepositoryError("No changes to commit")

        repo = self._repo(repo_full_name)
        try:
            ref = repo.get_git_ref(f"heads/{branch}")
            parent = repo.get_git_commit(ref.object.sha)
            base_tree = repo.get_git_tree(parent.tree.sha)

            elements = []
            for change in changes:
                if change.action == "delete":
                    elements.append(InputGitTreeElement(change.path, "100644", "blob", sha=None))
                    continue
                blob = repo.create_git_blob(change.content or "", change.encoding)
                elements.append(InputGitTreeElement(change.path, "100644", "blob", sha=blob.sha))

            new_tree = repo.create_git_tree(elements, base_tree)
            commit = repo.create_git_commit(message, new_tree, [parent])
            ref.edit(sha=commit.sha)
        except GithubException as e:
            raise RepositoryError(f"Failed to commit changes to {branch}: {_error_message(e)}", e.status) from e

        logger.info(f"📝 Committed {len(changes)} changes to {repo_full_name}@{branch} ({commit.sha[:7]})")
        return CommitInfo(sha=commit.sha, url=commit.html_url, message=message)

    def set_commit_status(
        self,
        repo_full_name: str,
        sha: str,
        state: Literal["pending", "success", "error", "failure"],
        description: Optional[str] = None,
        target_url: Optional[str] = None,
        context: str = DEFAULT_STATUS_CONTEXT,
    ) -> None:
        kwargs = {"state": state, "context": context}
        if description:
            kwargs["description"] = description[:140]
        if target_url:
            kwargs["target_url"] = target_url
        try:
            self._repo(repo_full_name).get_commit(sha).create_status(**kwargs)
        except GithubException as e:
            raise RepositoryError(f"Failed to set commit status: {_error_message(e)}", e.status) from e

    # --- Pull requests ---

    def create_pull_request(
        self,
        repo_full_name: str,
        head_branch: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PullRequestInfo:
        repo = self._repo(repo_full_name)
        try:
            pr = repo.create_pull(title=title, body=body, head=head_branch, base=base_branch)
        except GithubException as e:
            message = _error_message(e)
            details = _error_details(e)
            combined = f"{message} {details}".lower()
            if "already exists" in combined:
                text = (
                    f'A pull request from branch "{head_branch}" to "{base_branch}" already exists. '
                    "Please use the existing PR or create a new branch."
                )
            elif "no commits between" in combined:
                text = (
                    f'No commits between "{base_branch}" and "{head_branch}". '
                    "Make sure you've committed changes to the branch before creating a PR."
                )
            elif "not found" in combined or e.status == 404:
                text = (
                    f'Branch "{head_branch}" not found in repository. '
                    "Make sure the branch exists and has been pushed to GitHub."
                )
            elif "permission" in combined or e.status == 403:
                text = (
                    f'Permission denied. The GitHub App may not have write access to repository '
                    f'"{repo_full_name}". Please check the App installation permissions.'
                )
            else:
                text = f"Failed to create pull request: {message}" + (f" ({details})" if details else "")
            logger.error(f"PR creation failed for {repo_full_name} {head_branch}->{base_branch}: {message}")
            raise RepositoryError(text, e.status) from e

        logger.info(f"🎉 Created PR #{pr.number} in {repo_full_name}: {pr.html_url}")
        return _pr_info(pr)

    def find_pull_request(self, repo_full_name: str, head_branch: str) -> Optional[PullRequestInfo]:
        """Open PR whose head is ``head_branch``, if any."""
        owner, _ = split_owner_repo(repo_full_name)
        pulls = self._repo(repo_full_name).get_pulls(state="open", head=f"{owner}:{head_branch}")
        for pr in pulls:
            return _pr_info(pr)
        return None

    def get_pull_request(self, repo_full_name: str, number: int) -> PullRequestInfo:
        try:
            return _pr_info(self._repo(repo_full_name).get_pull(number))
        except GithubException as e:
            raise RepositoryError(f"Failed to load PR #{number}: {_error_message(e)}", e.status) from e

    def add_pr_comment(self, repo_full_name: str, number: int, body: str) -> None:
        try:
            self._repo(repo_full_name).get_pull(number).create_issue_comment(body)
        except GithubException as e:
            raise RepositoryError(f"Failed to comment on PR #{number}: {_error_message(e)}", e.status) from e

    def get_pr_comments(self, repo_full_name: str, number: int) -> List[Dict[str, Any]]:
        """Conversation comments on PR ``number``, oldest first."""
        try:
            comments = self._repo(repo_full_name).get_pull(number).get_issue_comments()
            return [
                {
                    "id": str(c.id),
                    "author": c.user.login if c.user else "",
                    "body": c.body or "",
                    "created_at": c.created_at,
                }
                for c in comments
            ]
        except GithubException as e:
            raise RepositoryError(f"Failed to read comments on PR #{number}: {_error_message(e)}", e.status) from e

    def merge_pull_request(
        self,
        repo_full_name: str,
        number: int,
        merge_method: Literal["merge", "squash", "rebase"] = "squash",
    ) -> str:
        """Merge PR ``number``; returns the merge commit sha."""
        try:
            status = self._repo(repo_full_name).get_pull(number).merge(merge_method=merge_method)
        except GithubException as e:
            raise RepositoryError(f"Failed to merge PR #{number}: {_error_message(e)}", e.status) from e
        if not status.merged:
            raise RepositoryError(f"Failed to merge PR #{number}: {status.message}")
        logger.info(f"✅ Merged PR #{number} in {repo_full_name} ({status.sha[:7]})")
        return status.sha

    # --- Contents ---

    def get_file(self, repo_full_name: str, path: str, ref: Optional[str] = None) -> str:
        """Decoded text content of ``path``."""
        kwargs = {"ref": ref} if ref else {}
        try:
            content = self._repo(repo_full_name).get_contents(path, **kwargs)
        except GithubException as e:
            raise RepositoryError(f"Failed to read {path}: {_error_message(e)}", e.status) from e
        if isinstance(content, list):
            raise RepositoryError(f"{path} is a directory")
        return content.decoded_content.decode("utf-8")

    def list_files(self, repo_full_name: str, path: str = "", ref: Optional[str] = None) -> List[RepoEntry]:
        kwargs = {"ref": ref} if ref else {}
        try:
            contents = self._repo(repo_full_name).get_contents(path, **kwargs)
        except GithubException as e:
            raise RepositoryError(f"Failed to list {path or '/'}: {_error_message(e)}", e.status) from e
        if not isinstance(contents, list):
            contents = [contents]
        return [RepoEntry(path=c.path, type=c.type, size=c.size or 0, sha=c.sha) for c in contents]


def parse_pr_url(pr_url: str) -> tuple:
    """``https://github.com/o/r/pull/42`` -> ("o/r", 42)."""
    parts = pr_url.rstrip("/").split("/")
    try:
        index = parts.index("pull")
        return f"{parts[index - 2]}/{parts[index - 1]}", int(parts[index + 1])
    except (ValueError, IndexError) as e:
        raise RepositoryError(f"Not a pull request URL: {pr_url}") from e
