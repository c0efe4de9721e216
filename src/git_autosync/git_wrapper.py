import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, DEFAULT_COMMAND_TIMEOUT, DEFAULT_REMOTE

logger = logging.getLogger(APP_NAME)


class GitError(RuntimeError):
    """A git invocation exited non-zero or timed out.

    Attributes:
        args_list (list[str]): The git arguments that were run.
        returncode (int | None): The exit status, or None on timeout.
        stderr (str): Captured standard error, verbatim.
    """

    def __init__(self, args: list[str], returncode: int | None, stderr: str):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"git {' '.join(args)} failed: {detail}")


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    Every call is a synchronous subprocess run with the repository as its
    working directory. Success is exit status 0; anything else raises
    `GitError` carrying the captured standard error.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float): Seconds any single git invocation may run.
    """

    def __init__(self, path: Path, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float): Per-command timeout in seconds.

        Raises:
            ValueError: If the specified path does not contain a .git entry.
        """
        self.path = path
        self.timeout = timeout
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    def _run(self, args: list[str], network: bool = False) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): Arguments to pass to the git command.
            network (bool, optional): Whether the command talks to a remote.
                                      Network commands never prompt for
                                      credentials. Defaults to False.

        Returns:
            str: The stripped stdout of the command.

        Raises:
            GitError: If the command exits non-zero or times out.
        """
        env = None
        if network:
            env = os.environ.copy()
            env["GIT_TERMINAL_PROMPT"] = "0"
            env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=True,
                env=env,
                timeout=self.timeout,
            )
            return res.stdout.strip()
        except subprocess.CalledProcessError as e:
            raise GitError(args, e.returncode, e.stderr or "") from e
        except subprocess.TimeoutExpired as e:
            raise GitError(args, None, f"timed out after {self.timeout}s") from e

    def add_all(self) -> None:
        """Stages all changes (modified, deleted, and untracked files)."""
        self._run(["add", "--all"])

    def has_staged_changes(self) -> bool:
        """Reports whether the index differs from HEAD.

        Returns:
            bool: True if a commit would record something.
        """
        try:
            self._run(["diff", "--cached", "--quiet"])
        except GitError as e:
            if e.returncode == 1:
                return True
            raise
        return False

    def commit(self, message: str) -> None:
        """Creates a new commit from the index with the provided message.

        Args:
            message (str): The commit message.
        """
        self._run(["commit", "--quiet", "-m", message])

    def has_remote(self, name: str = DEFAULT_REMOTE) -> bool:
        """Checks whether a remote with the given name is configured."""
        output = self._run(["remote"])
        return name in output.splitlines()

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', '@{upstream}').

        Returns:
            str | None: The hash, or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def needs_push(self) -> bool:
        """Reports whether HEAD has commits its upstream does not.

        A branch without an upstream is assumed to need a push.
        """
        head = self.rev_parse("HEAD")
        upstream = self.rev_parse("@{upstream}")
        if head is None or upstream is None:
            return True
        return head != upstream

    def push(self) -> None:
        """Pushes the current branch to its configured remote."""
        self._run(["push"], network=True)

    def pull_rebase(self) -> None:
        """Fetches and rebases local commits onto the upstream branch."""
        self._run(["pull", "--rebase"], network=True)

    def rebase_abort(self) -> bool:
        """Aborts an in-progress rebase, returning True if it succeeded."""
        try:
            self._run(["rebase", "--abort"])
            return True
        except GitError as e:
            logger.debug(f"Rebase abort produced output for {self.path}: {e}")
            return False
