"""Tests for the per-repository sync cycle."""

import datetime
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autosync.config import RepositoryConfig
from git_autosync.engine import (
    OutcomeStatus,
    Phase,
    PhaseStatus,
    SyncEngine,
    expand_template,
)
from git_autosync.git_wrapper import GitError
from git_autosync.protocol import OutcomeReport
from git_autosync.system import Notifier, SystemStrategy

INSTANT = datetime.datetime(2025, 11, 15, 14, 30, 0)


@pytest.fixture
def git() -> MagicMock:
    """A GitRepo double for a clean repository with an 'origin' remote."""
    repo = MagicMock()
    repo.has_staged_changes.return_value = False
    repo.has_remote.return_value = True
    repo.needs_push.return_value = True
    return repo


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def engine(git: MagicMock, notifier: MagicMock) -> SyncEngine:
    return SyncEngine(notifier=notifier, repo_factory=MagicMock(return_value=git))


def test_expand_template_fixed_instant() -> None:
    assert expand_template("{date} {time}", INSTANT) == "2025-11-15 14:30:00"
    assert expand_template("Auto-commit: {timestamp}", INSTANT) == (
        "Auto-commit: 2025-11-15 14:30:00"
    )


def test_expand_template_leaves_other_text_alone() -> None:
    assert expand_template("{dat} {timestamps}", INSTANT) == "{dat} {timestamps}"
    assert expand_template("{{not a placeholder}}", INSTANT) == "{{not a placeholder}}"
    assert expand_template("", INSTANT) == ""
    assert expand_template("{date} - {date}", INSTANT) == "2025-11-15 - 2025-11-15"


def test_cycle_without_changes_skips_commit_and_pushes(
    tmp_path: Path, engine: SyncEngine, git: MagicMock
) -> None:
    """No staged changes: no commit, but the cycle still reaches Pushing."""
    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.add_all.assert_called_once()
    git.commit.assert_not_called()
    git.push.assert_called_once()
    git.pull_rebase.assert_called_once()
    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.committed is False
    assert outcome.result_for(Phase.COMMITTING).status is PhaseStatus.SKIPPED
    assert outcome.result_for(Phase.PUSHING).status is PhaseStatus.OK


def test_cycle_commits_with_expanded_template(
    tmp_path: Path, engine: SyncEngine, git: MagicMock
) -> None:
    git.has_staged_changes.return_value = True
    repo = RepositoryConfig(tmp_path, commit_message_template="Notes {date} at {time}")

    outcome = engine.run_cycle(repo, started_at=INSTANT)

    git.commit.assert_called_once_with("Notes 2025-11-15 at 14:30:00")
    assert outcome.committed is True


def test_cycle_template_override(tmp_path: Path, engine: SyncEngine, git: MagicMock) -> None:
    git.has_staged_changes.return_value = True

    engine.run_cycle(
        RepositoryConfig(tmp_path), started_at=INSTANT, template="Auto-commit on daemon startup"
    )

    git.commit.assert_called_once_with("Auto-commit on daemon startup")


def test_push_failure_is_advisory(
    tmp_path: Path, engine: SyncEngine, git: MagicMock, notifier: MagicMock
) -> None:
    """A rejected push is reported, and the pull still runs and succeeds."""
    git.push.side_effect = GitError(["push"], 1, "! [rejected] main -> main (fetch first)")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.pull_rebase.assert_called_once()
    assert outcome.status is OutcomeStatus.ADVISORY
    push = outcome.result_for(Phase.PUSHING)
    assert push.status is PhaseStatus.FAILED
    assert "rejected" in push.stderr
    assert outcome.result_for(Phase.PULLING).status is PhaseStatus.OK

    title, body = notifier.notify.call_args.args
    assert title == "Git Push Failed"
    assert str(tmp_path) in body
    assert "rejected" in body


def test_pull_failure_aborts_rebase(
    tmp_path: Path, engine: SyncEngine, git: MagicMock, notifier: MagicMock
) -> None:
    git.pull_rebase.side_effect = GitError(["pull", "--rebase"], 1, "CONFLICT (content)")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.rebase_abort.assert_called_once()
    assert outcome.status is OutcomeStatus.ADVISORY
    assert outcome.result_for(Phase.PULLING).stderr == "CONFLICT (content)"
    notifier.notify.assert_called_once()
    assert notifier.notify.call_args.args[0] == "Git Pull Failed"


def test_staging_failure_is_fatal(
    tmp_path: Path, engine: SyncEngine, git: MagicMock, notifier: MagicMock
) -> None:
    git.add_all.side_effect = GitError(["add", "--all"], 128, "fatal: index.lock exists")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.commit.assert_not_called()
    git.push.assert_not_called()
    git.pull_rebase.assert_not_called()
    assert outcome.status is OutcomeStatus.FATAL
    assert [p.phase for p in outcome.phases] == [Phase.STAGING]
    assert outcome.message == "Staging failed"
    assert "index.lock" in outcome.phases[0].stderr
    notifier.notify.assert_not_called()


def test_commit_failure_is_fatal(tmp_path: Path, engine: SyncEngine, git: MagicMock) -> None:
    git.has_staged_changes.return_value = True
    git.commit.side_effect = GitError(["commit"], 128, "Please tell me who you are.")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.push.assert_not_called()
    assert outcome.status is OutcomeStatus.FATAL


def test_missing_directory_is_fatal(tmp_path: Path, engine: SyncEngine, git: MagicMock) -> None:
    outcome = engine.run_cycle(RepositoryConfig(tmp_path / "gone"), started_at=INSTANT)

    git.add_all.assert_not_called()
    assert outcome.status is OutcomeStatus.FATAL
    assert "does not exist" in outcome.message


def test_not_a_repository_is_fatal(tmp_path: Path, notifier: MagicMock) -> None:
    factory = MagicMock(side_effect=ValueError(f"Not a git repository: {tmp_path}"))
    engine = SyncEngine(notifier=notifier, repo_factory=factory)

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    assert outcome.status is OutcomeStatus.FATAL
    assert "Not a git repository" in outcome.message


def test_no_remote_skips_push_and_pull(
    tmp_path: Path, engine: SyncEngine, git: MagicMock
) -> None:
    git.has_remote.return_value = False

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.push.assert_not_called()
    git.pull_rebase.assert_not_called()
    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.result_for(Phase.PULLING).status is PhaseStatus.SKIPPED


def test_remote_listing_failure_is_advisory(
    tmp_path: Path, engine: SyncEngine, git: MagicMock
) -> None:
    git.has_remote.side_effect = GitError(["remote"], 128, "fatal: bad config line 3")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.push.assert_not_called()
    git.pull_rebase.assert_not_called()
    assert outcome.status is OutcomeStatus.ADVISORY
    assert outcome.result_for(Phase.PUSHING).stderr == "fatal: bad config line 3"
    assert outcome.result_for(Phase.PULLING).status is PhaseStatus.SKIPPED


def test_up_to_date_branch_skips_push(
    tmp_path: Path, engine: SyncEngine, git: MagicMock
) -> None:
    git.needs_push.return_value = False

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    git.push.assert_not_called()
    assert outcome.result_for(Phase.PUSHING).message == "Nothing to push"


def test_phase_callbacks_follow_the_state_machine(tmp_path: Path, engine: SyncEngine) -> None:
    seen: list[Phase] = []

    engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT, on_phase=seen.append)

    assert seen == [Phase.STAGING, Phase.COMMITTING, Phase.PUSHING, Phase.PULLING]


def test_broken_notifier_does_not_change_outcome(tmp_path: Path, git: MagicMock) -> None:
    """Failures of the notification sink never leak into the cycle."""

    class Exploding(SystemStrategy):
        def notify(self, title: str, message: str) -> None:
            raise OSError("no notification daemon")

    git.push.side_effect = GitError(["push"], 1, "denied")
    engine = SyncEngine(notifier=Notifier(Exploding()), repo_factory=MagicMock(return_value=git))

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)

    assert outcome.status is OutcomeStatus.ADVISORY
    assert outcome.result_for(Phase.PULLING).status is PhaseStatus.OK


def test_outcome_report(tmp_path: Path, engine: SyncEngine, git: MagicMock) -> None:
    git.push.side_effect = GitError(["push"], 1, "denied")

    outcome = engine.run_cycle(RepositoryConfig(tmp_path), started_at=INSTANT)
    data = OutcomeReport.from_outcome(outcome).model_dump(mode="json")

    assert data["path"] == str(tmp_path)
    assert data["status"] == "advisory-failure"
    assert data["started_at"] == "2025-11-15T14:30:00"
    assert [p["phase"] for p in data["phases"]] == ["Staging", "Committing", "Pushing", "Pulling"]
    assert data["phases"][2] == {
        "phase": "Pushing",
        "status": "failed",
        "message": "Push failed",
        "stderr": "denied",
    }


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_cycle_against_real_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Runs the real git binary: commit once, then an idempotent no-op cycle."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", "/dev/null")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Autosync Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "autosync@example.invalid")

    work = tmp_path / "work"
    work.mkdir()
    subprocess.run(["git", "init", "--quiet"], cwd=work, check=True)
    (work / "note.md").write_text("hello\n")

    engine = SyncEngine(notifier=MagicMock(spec=Notifier))
    repo = RepositoryConfig(work, commit_message_template="Note {date}")

    first = engine.run_cycle(repo, started_at=INSTANT)
    second = engine.run_cycle(repo, started_at=INSTANT)

    assert first.status is OutcomeStatus.SUCCESS
    assert first.committed is True
    assert second.committed is False
    log = subprocess.run(
        ["git", "log", "--format=%s"], cwd=work, check=True, capture_output=True, text=True
    )
    assert log.stdout.splitlines() == ["Note 2025-11-15"]
