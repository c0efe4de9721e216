"""The per-repository sync cycle: stage, commit, push, pull-rebase.

A cycle is strictly sequential and never retries. Staging and committing
failures are fatal to the cycle; push and pull failures are advisory and
are reported without stopping the remaining phases. Nothing here raises
for a per-cycle problem: every result is folded into a `CycleOutcome`.
"""

import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from .config import RepositoryConfig
from .constants import APP_NAME, DEFAULT_COMMAND_TIMEOUT, DEFAULT_REMOTE
from .git_wrapper import GitError, GitRepo
from .system import Notifier

logger = logging.getLogger(APP_NAME)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M:%S"


class Phase(StrEnum):
    IDLE = "Idle"
    STAGING = "Staging"
    COMMITTING = "Committing"
    PUSHING = "Pushing"
    PULLING = "Pulling"


class PhaseStatus(StrEnum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    ADVISORY = "advisory-failure"
    FATAL = "fatal-failure"


# Phases whose failure does not abort the cycle.
ADVISORY_PHASES = frozenset({Phase.PUSHING, Phase.PULLING})


def expand_template(template: str, instant: datetime.datetime) -> str:
    """Expands {timestamp}, {date} and {time} against a fixed instant.

    Any other text, including other brace groups, is left untouched.

    Args:
        template (str): The commit message template.
        instant (datetime.datetime): The cycle start, in local time.

    Returns:
        str: The commit message.
    """
    return (
        template.replace("{timestamp}", instant.strftime(TIMESTAMP_FORMAT))
        .replace("{date}", instant.strftime(DATE_FORMAT))
        .replace("{time}", instant.strftime(TIME_FORMAT))
    )


@dataclass(frozen=True)
class PhaseResult:
    """What happened in one phase of a cycle.

    Attributes:
        phase (Phase): The phase this result belongs to.
        status (PhaseStatus): ok, skipped or failed.
        message (str): Short human-readable summary.
        stderr (str): Captured git standard error, verbatim, on failure.
    """

    phase: Phase
    status: PhaseStatus
    message: str = ""
    stderr: str = ""

    @property
    def failed(self) -> bool:
        return self.status is PhaseStatus.FAILED


@dataclass(frozen=True)
class CycleOutcome:
    """The value returned by one sync cycle.

    Attributes:
        path (Path): The repository the cycle ran against.
        started_at (datetime.datetime): Cycle start, local time.
        finished_at (datetime.datetime): Cycle end, local time.
        phases (tuple[PhaseResult, ...]): Results in the order they ran.
    """

    path: Path
    started_at: datetime.datetime
    finished_at: datetime.datetime
    phases: tuple[PhaseResult, ...]

    @property
    def status(self) -> OutcomeStatus:
        failures = [p for p in self.phases if p.failed]
        if any(p.phase not in ADVISORY_PHASES for p in failures):
            return OutcomeStatus.FATAL
        if failures:
            return OutcomeStatus.ADVISORY
        return OutcomeStatus.SUCCESS

    @property
    def committed(self) -> bool:
        return any(
            p.phase is Phase.COMMITTING and p.status is PhaseStatus.OK
            for p in self.phases
        )

    @property
    def message(self) -> str:
        """The first failure message, or an empty string on success."""
        for p in self.phases:
            if p.failed:
                return p.message
        return ""

    def result_for(self, phase: Phase) -> PhaseResult | None:
        for p in self.phases:
            if p.phase is phase:
                return p
        return None

    @classmethod
    def internal_error(
        cls, path: Path, started_at: datetime.datetime, error: BaseException
    ) -> "CycleOutcome":
        """Builds a fatal outcome for an exception that escaped the engine."""
        return cls(
            path=path,
            started_at=started_at,
            finished_at=_now(),
            phases=(
                PhaseResult(Phase.STAGING, PhaseStatus.FAILED, f"Internal error: {error}"),
            ),
        )


def _now() -> datetime.datetime:
    return datetime.datetime.now().astimezone()


class SyncEngine:
    """Runs sync cycles. Holds no per-repository state.

    `run_cycle` blocks on git subprocesses and is meant to be run on a
    worker thread, never on the event loop.

    Attributes:
        notifier (Notifier): Receives push/pull failure notifications.
        repo_factory (Callable[..., GitRepo]): Builds the git wrapper.
    """

    def __init__(
        self,
        notifier: Notifier | None = None,
        repo_factory: Callable[..., GitRepo] = GitRepo,
    ):
        self.notifier = notifier if notifier is not None else Notifier()
        self.repo_factory = repo_factory

    def run_cycle(
        self,
        repo: RepositoryConfig,
        *,
        started_at: datetime.datetime | None = None,
        template: str | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        on_phase: Callable[[Phase], None] | None = None,
    ) -> CycleOutcome:
        """Executes one stage -> commit -> push -> pull cycle.

        Args:
            repo (RepositoryConfig): A copy of the repository's configuration.
            started_at (datetime.datetime | None): Cycle start; defaults to now.
            template (str | None): Overrides the repository's message template.
            timeout (float): Per-git-command timeout in seconds.
            on_phase (Callable[[Phase], None] | None): Called as each phase begins.

        Returns:
            CycleOutcome: Phase-by-phase results.
        """
        started_at = started_at or _now()
        results: list[PhaseResult] = []

        def enter(phase: Phase) -> None:
            if on_phase is not None:
                on_phase(phase)

        def fatal(phase: Phase, message: str, stderr: str = "") -> CycleOutcome:
            logger.error(f"{phase.upper()} FAILED {repo.name}: {message}")
            results.append(PhaseResult(phase, PhaseStatus.FAILED, message, stderr))
            return CycleOutcome(repo.path, started_at, _now(), tuple(results))

        # 1. Staging.
        enter(Phase.STAGING)
        if not repo.path.is_dir():
            return fatal(Phase.STAGING, f"Repository path does not exist: {repo.path}")
        try:
            git = self.repo_factory(repo.path, timeout=timeout)
        except ValueError as e:
            return fatal(Phase.STAGING, str(e))
        try:
            git.add_all()
        except GitError as e:
            return fatal(Phase.STAGING, "Staging failed", e.stderr)
        results.append(PhaseResult(Phase.STAGING, PhaseStatus.OK))

        # 2. Committing (only when the index differs from HEAD).
        enter(Phase.COMMITTING)
        try:
            if git.has_staged_changes():
                message = expand_template(
                    template if template is not None else repo.commit_message_template,
                    started_at,
                )
                git.commit(message)
                logger.info(f"COMMITTED {repo.name}: {message}")
                results.append(PhaseResult(Phase.COMMITTING, PhaseStatus.OK, message))
            else:
                results.append(
                    PhaseResult(Phase.COMMITTING, PhaseStatus.SKIPPED, "No changes to commit")
                )
        except GitError as e:
            return fatal(Phase.COMMITTING, "Commit failed", e.stderr)

        try:
            has_remote = git.has_remote(DEFAULT_REMOTE)
        except GitError as e:
            logger.warning(f"REMOTE CHECK FAILED {repo.name}: {e.stderr.strip() or e}")
            results.append(
                PhaseResult(Phase.PUSHING, PhaseStatus.FAILED, "Could not list remotes", e.stderr)
            )
            results.append(PhaseResult(Phase.PULLING, PhaseStatus.SKIPPED, "Remote unknown"))
            return CycleOutcome(repo.path, started_at, _now(), tuple(results))

        if not has_remote:
            logger.warning(
                f"NO REMOTE {repo.name}: No '{DEFAULT_REMOTE}' remote; push and pull skipped."
            )
            reason = f"No '{DEFAULT_REMOTE}' remote configured"
            results.append(PhaseResult(Phase.PUSHING, PhaseStatus.SKIPPED, reason))
            results.append(PhaseResult(Phase.PULLING, PhaseStatus.SKIPPED, reason))
            return CycleOutcome(repo.path, started_at, _now(), tuple(results))

        # 3. Pushing (advisory).
        enter(Phase.PUSHING)
        results.append(self._push(repo, git))

        # 4. Pulling (advisory).
        enter(Phase.PULLING)
        results.append(self._pull(repo, git))

        return CycleOutcome(repo.path, started_at, _now(), tuple(results))

    def _push(self, repo: RepositoryConfig, git: GitRepo) -> PhaseResult:
        try:
            if not git.needs_push():
                logger.debug(f"Nothing to push for: {repo.path}")
                return PhaseResult(Phase.PUSHING, PhaseStatus.SKIPPED, "Nothing to push")
            git.push()
        except GitError as e:
            logger.warning(f"PUSH FAILED {repo.name}: {e.stderr.strip() or e}")
            self._notify_failure("Git Push Failed", repo, e)
            return PhaseResult(Phase.PUSHING, PhaseStatus.FAILED, "Push failed", e.stderr)
        logger.info(f"PUSHED {repo.name}")
        return PhaseResult(Phase.PUSHING, PhaseStatus.OK)

    def _pull(self, repo: RepositoryConfig, git: GitRepo) -> PhaseResult:
        try:
            git.pull_rebase()
        except GitError as e:
            logger.warning(f"PULL FAILED {repo.name}: {e.stderr.strip() or e}")
            self._notify_failure("Git Pull Failed", repo, e)
            # Leave the working copy clean for the next cycle.
            if git.rebase_abort():
                logger.debug(f"Aborted rebase for {repo.path}")
            return PhaseResult(Phase.PULLING, PhaseStatus.FAILED, "Pull --rebase failed", e.stderr)
        logger.info(f"PULLED {repo.name}")
        return PhaseResult(Phase.PULLING, PhaseStatus.OK)

    def _notify_failure(self, title: str, repo: RepositoryConfig, error: GitError) -> None:
        detail = error.stderr.strip() or str(error)
        self.notifier.notify(title, f"Repository: {repo.path}\n\nError:\n{detail}")
