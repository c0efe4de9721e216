"""Shared fixtures: a scriptable sync engine and short socket paths."""

import datetime
import tempfile
import threading
from collections import Counter
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autosync.config import Config, DaemonConfig, RepositoryConfig
from git_autosync.engine import CycleOutcome, Phase, PhaseResult, PhaseStatus


def ok_phases() -> tuple[PhaseResult, ...]:
    return (
        PhaseResult(Phase.STAGING, PhaseStatus.OK),
        PhaseResult(Phase.COMMITTING, PhaseStatus.SKIPPED, "No changes to commit"),
        PhaseResult(Phase.PUSHING, PhaseStatus.SKIPPED, "Nothing to push"),
        PhaseResult(Phase.PULLING, PhaseStatus.OK),
    )


class FakeEngine:
    """Stands in for SyncEngine, recording calls and optionally blocking.

    Attributes:
        gate (threading.Event | None): When set, cycles block until it is set.
        phases_for (Callable): Builds the phase results for a repository.
        calls (list[tuple[RepositoryConfig, str | None]]): Every cycle started.
        max_active (Counter): Highest number of simultaneous cycles per path.
    """

    def __init__(
        self,
        gate: threading.Event | None = None,
        phases_for: Callable[[RepositoryConfig], tuple[PhaseResult, ...]] | None = None,
    ):
        self.notifier = MagicMock()
        self.gate = gate
        self.phases_for = phases_for or (lambda repo: ok_phases())
        self.calls: list[tuple[RepositoryConfig, str | None]] = []
        self.active: Counter = Counter()
        self.max_active: Counter = Counter()
        self.started = threading.Event()
        self._lock = threading.Lock()

    def run_cycle(
        self,
        repo: RepositoryConfig,
        *,
        started_at: datetime.datetime | None = None,
        template: str | None = None,
        timeout: float = 300,
        on_phase: Callable[[Phase], None] | None = None,
    ) -> CycleOutcome:
        started_at = started_at or datetime.datetime.now().astimezone()
        with self._lock:
            self.calls.append((repo, template))
            self.active[repo.path] += 1
            self.max_active[repo.path] = max(
                self.max_active[repo.path], self.active[repo.path]
            )
        try:
            if on_phase is not None:
                on_phase(Phase.STAGING)
            self.started.set()
            if self.gate is not None:
                assert self.gate.wait(10), "gate was never opened"
            if on_phase is not None:
                on_phase(Phase.PULLING)
            return CycleOutcome(
                repo.path,
                started_at,
                datetime.datetime.now().astimezone(),
                self.phases_for(repo),
            )
        finally:
            with self._lock:
                self.active[repo.path] -= 1

    def paths_called(self) -> list[Path]:
        return [repo.path for repo, _ in self.calls]


class FakeClock:
    """A monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(*repos: RepositoryConfig, interval: int = 300) -> Config:
    return Config(daemon=DaemonConfig(check_interval=interval), repositories=tuple(repos))


@pytest.fixture
def executor() -> Iterator[ThreadPoolExecutor]:
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


@pytest.fixture
def gate() -> Iterator[threading.Event]:
    """A gate that is always opened at teardown so no worker stays blocked."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def socket_path() -> Iterator[Path]:
    """A socket path short enough for AF_UNIX (pytest's tmp_path can be too long)."""
    with tempfile.TemporaryDirectory(prefix="gas-") as d:
        yield Path(d) / "daemon.sock"


@pytest.fixture
def repo_dirs(tmp_path: Path) -> tuple[Path, Path]:
    a = tmp_path / "notes"
    b = tmp_path / "journal"
    a.mkdir()
    b.mkdir()
    return a, b
