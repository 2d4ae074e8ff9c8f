"""Per-pair git workspace: checkout, thread branch selection, commit and push."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from edit_relay.commit_message import commit_subject
from edit_relay.errors import CommitFailureError, WorkspaceConflictError
from edit_relay.models import Pair

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
GIT_AUTHOR_NAME = "edit-relay"
GIT_AUTHOR_EMAIL = "edit-relay@localhost"


class GitCommandError(RuntimeError):
    """A git invocation exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


class GitWorkspace:
    """Working copy of one pair's repository.

    Thread state lives only on ``thread-*`` branches: switching threads first
    commits whatever the previous thread left behind, so nothing is discarded.
    """

    def __init__(  # noqa: PLR0913
        self,
        root: Path,
        pair: Pair,
        *,
        repo_url: str | None = None,
        push: bool = True,
        timeout_seconds: int = 120,
        exclude: tuple[str, ...] = (),
        author_name: str = GIT_AUTHOR_NAME,
        author_email: str = GIT_AUTHOR_EMAIL,
    ) -> None:
        self.pair = pair
        self.path = root / pair.project_id / pair.user_id
        self.repo_url = repo_url or None
        self.push_enabled = push and self.repo_url is not None
        self.timeout_seconds = timeout_seconds
        self.exclude = tuple(item.strip("/") for item in exclude if item.strip("/"))
        self.author_name = author_name
        self.author_email = author_email

    def prepare(self) -> None:
        """Clone the repository, or initialise a local one, if absent.

        An existing checkout is pointed at ``repo_url`` and fetched.
        """

        if (self.path / ".git").is_dir():
            self._write_excludes()
            if self.repo_url is not None:
                try:
                    self._sync_origin()
                    self._git("fetch", "--prune", "origin")
                except GitCommandError as error:
                    logger.warning("Fetch failed for %s: %s", self.pair, error)
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            if self.repo_url is not None:
                self._git("clone", self.repo_url, str(self.path), cwd=self.path.parent)
                self._write_excludes()
                logger.info("Cloned %s into %s", self.repo_url, self.path)
                return
            self.path.mkdir(parents=True, exist_ok=True)
            self._git("init", "--initial-branch", DEFAULT_BRANCH)
            self._write_excludes()
            (self.path / "README.md").write_text(
                f"# {self.pair.project_id}\n\nWorkspace for {self.pair}.\n",
                "utf-8",
            )
            self._git("add", "-A")
            self._commit("Initial commit")
            logger.info("Initialised local repository for %s at %s", self.pair, self.path)
        except GitCommandError as error:
            raise WorkspaceConflictError(
                f"Could not prepare workspace for {self.pair}",
                detail=str(error),
            ) from error

    def current_branch(self) -> str:
        return self._git("branch", "--show-current").strip()

    def has_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").strip())

    def changed_files(self) -> list[str]:
        """Paths with uncommitted changes, relative to the workspace root."""

        files: list[str] = []
        output = self._git("status", "--porcelain", "--untracked-files=all")
        for line in output.splitlines():
            if len(line) < 4:  # noqa: PLR2004
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files

    def switch_to(self, branch_name: str) -> None:
        """Check out the thread branch, creating it from the default branch if needed."""

        try:
            current = self.current_branch()
            if current == branch_name:
                return
            if self.has_changes():
                changed = self.changed_files()
                self.commit_all(
                    commit_subject(
                        None,
                        changed,
                        thread_id=_thread_id_from_branch(current),
                        interrupted=True,
                    ),
                )
                logger.info("Saved %d pending change(s) on %s", len(changed), current)

            if self._branch_exists(f"refs/heads/{branch_name}"):
                self._git("checkout", branch_name)
            elif self.repo_url is not None and self._branch_exists(
                f"refs/remotes/origin/{branch_name}",
            ):
                self._git("checkout", "-b", branch_name, "--track", f"origin/{branch_name}")
            else:
                self._git("checkout", "-b", branch_name, self._base_ref())
        except GitCommandError as error:
            raise WorkspaceConflictError(
                f"Could not switch {self.pair} to {branch_name}",
                detail=str(error),
            ) from error

        if self.current_branch() != branch_name or self.has_changes():
            raise WorkspaceConflictError(
                f"Workspace of {self.pair} is not clean on {branch_name} after switching",
            )

    def commit_all(self, subject: str, body: str | None = None) -> str | None:
        """Stage and commit everything; return the new HEAD, or None if nothing changed."""

        try:
            if not self.has_changes():
                return None
            self._git("add", "-A")
            self._commit(subject, body)
            return self.head()
        except GitCommandError as error:
            raise CommitFailureError("Commit failed", detail=str(error)) from error

    def discard_changes(self) -> None:
        """Drop uncommitted work of an abandoned request."""

        try:
            self._git("reset", "--hard", "HEAD")
            self._git("clean", "-fd")
        except GitCommandError as error:
            logger.warning("Could not discard changes in %s: %s", self.path, error)

    def push(self, branch_name: str) -> None:
        if not self.push_enabled:
            return
        try:
            self._push_with_retry(branch_name)
        except GitCommandError as error:
            raise CommitFailureError(f"Push of {branch_name} failed", detail=str(error)) from error

    def head(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(GitCommandError),
        reraise=True,
    )
    def _push_with_retry(self, branch_name: str) -> None:
        self._git("push", "--set-upstream", "origin", branch_name)

    def _commit(self, subject: str, body: str | None = None) -> None:
        message = subject if not body else f"{subject}\n\n{body}"
        self._git(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "commit",
            "--no-verify",
            "-m",
            message,
        )

    def _sync_origin(self) -> None:
        try:
            current = self._git("remote", "get-url", "origin").strip()
        except GitCommandError:
            self._git("remote", "add", "origin", str(self.repo_url))
            return
        if current != self.repo_url:
            self._git("remote", "set-url", "origin", str(self.repo_url))
            logger.info("Repointed origin of %s to %s", self.pair, self.repo_url)

    def _write_excludes(self) -> None:
        """Keep build output out of commits via the checkout-local exclude file."""

        if not self.exclude:
            return
        exclude_file = self.path / ".git" / "info" / "exclude"
        existing = exclude_file.read_text("utf-8") if exclude_file.exists() else ""
        missing = [f"/{item}/" for item in self.exclude if f"/{item}/" not in existing.splitlines()]
        if not missing:
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_file.write_text(existing + prefix + "\n".join(missing) + "\n", "utf-8")

    def _branch_exists(self, ref: str) -> bool:
        try:
            self._git("show-ref", "--verify", "--quiet", ref)
        except GitCommandError:
            return False
        return True

    def _base_ref(self) -> str:
        if self.repo_url is not None:
            try:
                head = self._git("symbolic-ref", "--short", "refs/remotes/origin/HEAD").strip()
            except GitCommandError:
                head = ""
            if head:
                return head
            if self._branch_exists(f"refs/remotes/origin/{DEFAULT_BRANCH}"):
                return f"origin/{DEFAULT_BRANCH}"
        if self._branch_exists(f"refs/heads/{DEFAULT_BRANCH}"):
            return DEFAULT_BRANCH
        return "HEAD"

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        command = ["git", *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=cwd or self.path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise GitCommandError(
                list(args),
                124,
                f"timed out after {self.timeout_seconds}s",
            ) from error
        if completed.returncode != 0:
            raise GitCommandError(list(args), completed.returncode, completed.stderr)
        return completed.stdout


def _thread_id_from_branch(branch_name: str) -> str | None:
    if branch_name.startswith("thread-"):
        return branch_name[len("thread-") :]
    return None
