import asyncio
import datetime
import functools
import itertools
import logging
import time
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path

from .config import Config, RepositoryConfig
from .constants import APP_NAME, STARTUP_COMMIT_MESSAGE
from .engine import CycleOutcome, OutcomeStatus, Phase, SyncEngine
from .system import Notifier

logger = logging.getLogger(APP_NAME)


class SchedulerError(Exception):
    """Base class for requests the scheduler refuses."""


class UnknownRepository(SchedulerError):
    pass


class RepositoryDisabled(SchedulerError):
    pass


class ShuttingDown(SchedulerError):
    pass


@dataclass
class RunState:
    """Transient per-repository state, owned by the Scheduler.

    Attributes:
        path (Path): The repository this state belongs to.
        generation (int): Bumped each time the state is recreated.
        phase (Phase): Current phase; anything but Idle means a cycle is running.
        last_started (datetime.datetime | None): Wall-clock start of the last cycle.
        last_finished (datetime.datetime | None): Wall-clock end of the last cycle.
        last_outcome (CycleOutcome | None): Result of the last finished cycle.
        started_monotonic (float | None): Monotonic start, for interval checks.
    """

    path: Path
    generation: int
    phase: Phase = Phase.IDLE
    last_started: datetime.datetime | None = None
    last_finished: datetime.datetime | None = None
    last_outcome: CycleOutcome | None = None
    started_monotonic: float | None = field(default=None, repr=False)


@dataclass(frozen=True)
class RepoStatus:
    """A read-only copy of one repository's state, for Status replies."""

    path: Path
    enabled: bool
    phase: Phase
    generation: int
    interval_seconds: int
    last_started: datetime.datetime | None
    last_finished: datetime.datetime | None
    last_outcome: CycleOutcome | None


@dataclass(frozen=True)
class ConfigDiff:
    added: tuple[Path, ...] = ()
    removed: tuple[Path, ...] = ()
    changed: tuple[Path, ...] = ()


def _now() -> datetime.datetime:
    return datetime.datetime.now().astimezone()


class Scheduler:
    """The single owner of the configuration and every RunState.

    All mutation happens on the event loop thread, inside one critical
    section per event. Cycles run on `executor`; the engine only ever sees a
    frozen copy of a RepositoryConfig and hands back a CycleOutcome value.

    At most one cycle per repository is in flight. A trigger for a repository
    that is already running joins the in-flight cycle instead of starting a
    new one.
    """

    def __init__(
        self,
        config: Config,
        engine: SyncEngine,
        executor: Executor,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._engine = engine
        self._executor = executor
        self._notifier = notifier if notifier is not None else engine.notifier
        self._clock = clock
        self._lock = asyncio.Lock()
        self._generations = itertools.count(1)
        self._states: dict[Path, RunState] = {
            repo.path: self._fresh_state(repo.path) for repo in config.repositories
        }
        self._inflight: dict[Path, asyncio.Task[CycleOutcome]] = {}
        self._accepting = True
        self.started = clock()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def accepting(self) -> bool:
        return self._accepting

    def is_running(self, path: Path) -> bool:
        return path in self._inflight

    def state(self, path: Path) -> RunState | None:
        return self._states.get(path)

    def _fresh_state(self, path: Path) -> RunState:
        return RunState(path=path, generation=next(self._generations))

    def _is_due(self, repo: RepositoryConfig, now: float) -> bool:
        state = self._states[repo.path]
        if state.started_monotonic is None:
            return True
        # Recomputed every tick so reloaded intervals apply immediately.
        return now - state.started_monotonic >= self._config.effective_interval(repo)

    # --- Dispatch ---

    def _dispatch(
        self, repo: RepositoryConfig, template: str | None = None
    ) -> asyncio.Task[CycleOutcome]:
        """Occupies the repository and starts a cycle. Caller holds the lock."""
        state = self._states[repo.path]
        started_at = _now()
        state.phase = Phase.STAGING
        state.last_started = started_at
        state.started_monotonic = self._clock()

        task = asyncio.create_task(
            self._run(repo, state.generation, started_at, template),
            name=f"cycle:{repo.path}",
        )
        self._inflight[repo.path] = task
        return task

    async def _run(
        self,
        repo: RepositoryConfig,
        generation: int,
        started_at: datetime.datetime,
        template: str | None,
    ) -> CycleOutcome:
        loop = asyncio.get_running_loop()

        def on_phase(phase: Phase) -> None:
            loop.call_soon_threadsafe(self._set_phase, repo.path, generation, phase)

        call = functools.partial(
            self._engine.run_cycle,
            repo,
            started_at=started_at,
            template=template,
            timeout=self._config.daemon.command_timeout,
            on_phase=on_phase,
        )
        try:
            outcome = await loop.run_in_executor(self._executor, call)
        except Exception as e:
            logger.exception(f"CYCLE ERROR {repo.name}")
            outcome = CycleOutcome.internal_error(repo.path, started_at, e)
        finally:
            self._inflight.pop(repo.path, None)

        self._record(repo, generation, outcome)
        return outcome

    def _set_phase(self, path: Path, generation: int, phase: Phase) -> None:
        state = self._states.get(path)
        if state is not None and state.generation == generation and path in self._inflight:
            state.phase = phase

    def _record(self, repo: RepositoryConfig, generation: int, outcome: CycleOutcome) -> None:
        state = self._states.get(repo.path)
        if state is None or state.generation != generation:
            # Removed (or removed and re-added) while the cycle ran.
            logger.debug(f"Discarding outcome for replaced state: {repo.path}")
            if (
                state is not None
                and self._config.get(repo.path) is None
                and repo.path not in self._inflight
            ):
                # A later generation was created and removed again meanwhile.
                del self._states[repo.path]
            return

        previous = state.last_outcome
        state.phase = Phase.IDLE
        state.last_finished = outcome.finished_at
        state.last_outcome = outcome

        if outcome.status is OutcomeStatus.FATAL:
            logger.error(f"CYCLE FAILED {repo.name}: {outcome.message}")
            repeated = (
                previous is not None
                and previous.status is OutcomeStatus.FATAL
                and previous.message == outcome.message
            )
            if not repeated:
                self._notify("Git Sync Failed", f"Repository: {repo.path}\n\n{outcome.message}")
        elif outcome.status is OutcomeStatus.ADVISORY:
            logger.info(f"CYCLE DONE {repo.name}: completed with advisory failures.")
        else:
            logger.debug(f"Cycle complete: {repo.path}")

        if self._config.get(repo.path) is None:
            logger.info(f"DROPPED {repo.name}: removed from configuration.")
            del self._states[repo.path]

    def _notify(self, title: str, body: str) -> None:
        # The sink may block (it shells out), so keep it off the loop.
        loop = asyncio.get_running_loop()
        loop.run_in_executor(self._executor, self._notifier.notify, title, body)

    # --- Event handlers ---

    async def run_startup(self) -> list[asyncio.Task[CycleOutcome]]:
        """Starts one cycle for every enabled repository.

        Pending changes are committed with a fixed startup message so that
        devices converge before the periodic timer takes over.
        """
        async with self._lock:
            tasks = [
                self._dispatch(repo, template=STARTUP_COMMIT_MESSAGE)
                for repo in self._config.repositories
                if repo.enabled and repo.path not in self._inflight
            ]
        logger.info(f"Initializing {len(tasks)} repositories...")
        return tasks

    async def tick(self) -> list[Path]:
        """Dispatches a cycle for every enabled repository that is due.

        Returns:
            list[Path]: The repositories a cycle was started for.
        """
        dispatched = []
        async with self._lock:
            if not self._accepting:
                return dispatched
            now = self._clock()
            for repo in self._config.repositories:
                if not repo.enabled or repo.path in self._inflight:
                    continue
                if self._is_due(repo, now):
                    self._dispatch(repo)
                    dispatched.append(repo.path)
        return dispatched

    async def trigger(self, path: Path | None = None) -> list[CycleOutcome]:
        """Runs an out-of-band cycle and waits for its outcome.

        Args:
            path (Path | None): The repository to sync; None means every
                                enabled repository.

        Returns:
            list[CycleOutcome]: One outcome per repository, in config order.

        Raises:
            ShuttingDown: If the daemon no longer accepts work.
            UnknownRepository: If `path` is not configured.
            RepositoryDisabled: If `path` is configured with auto_commit off.
        """
        async with self._lock:
            if not self._accepting:
                raise ShuttingDown("Daemon is shutting down")

            if path is None:
                targets = [r for r in self._config.repositories if r.enabled]
            else:
                repo = self._config.get(path)
                if repo is None:
                    raise UnknownRepository(f"Repository not configured: {path}")
                if not repo.enabled:
                    raise RepositoryDisabled(f"Repository is disabled: {path}")
                targets = [repo]

            tasks = []
            for repo in targets:
                task = self._inflight.get(repo.path)
                if task is None:
                    task = self._dispatch(repo)
                else:
                    logger.info(f"TRIGGER {repo.name}: joining in-flight cycle.")
                tasks.append(task)

        # A disconnecting client must not cancel a cycle others may share.
        return list(await asyncio.gather(*(asyncio.shield(t) for t in tasks)))

    async def apply_config(self, new: Config) -> ConfigDiff:
        """Swaps in a reloaded configuration.

        Removed repositories lose their state, once any in-flight cycle has
        finished. Added repositories get fresh state and become due at the
        next tick. Changed settings apply from the next cycle on.
        """
        async with self._lock:
            old = self._config
            old_paths = {r.path for r in old.repositories}
            new_paths = {r.path for r in new.repositories}

            added = tuple(r.path for r in new.repositories if r.path not in old_paths)
            removed = tuple(r.path for r in old.repositories if r.path not in new_paths)
            changed = tuple(
                r.path
                for r in new.repositories
                if r.path in old_paths and old.get(r.path) != r
            )

            for path in removed:
                if path not in self._inflight:
                    self._states.pop(path, None)
            for path in added:
                self._states[path] = self._fresh_state(path)

            if new.daemon.max_concurrent_cycles != old.daemon.max_concurrent_cycles:
                logger.warning(
                    "max_concurrent_cycles changed; restart the daemon to apply it."
                )
            if new.check_interval != old.check_interval:
                logger.info(
                    f"Check interval changed from {old.check_interval}s "
                    f"to {new.check_interval}s."
                )

            self._config = new

        logger.info(
            f"Configuration applied: {len(added)} added, {len(removed)} removed, "
            f"{len(changed)} changed."
        )
        return ConfigDiff(added=added, removed=removed, changed=changed)

    async def status(self) -> list[RepoStatus]:
        """Returns a copy of the state of every configured repository."""
        async with self._lock:
            snapshot = []
            for repo in self._config.repositories:
                state = self._states[repo.path]
                snapshot.append(
                    RepoStatus(
                        path=repo.path,
                        enabled=repo.enabled,
                        phase=state.phase,
                        generation=state.generation,
                        interval_seconds=self._config.effective_interval(repo),
                        last_started=state.last_started,
                        last_finished=state.last_finished,
                        last_outcome=state.last_outcome,
                    )
                )
            return snapshot

    def uptime(self) -> float:
        return self._clock() - self.started

    # --- Shutdown ---

    def stop_accepting(self) -> None:
        """Stops dispatching new cycles; in-flight cycles keep running."""
        self._accepting = False

    async def drain(self) -> None:
        """Waits until no cycle is in flight."""
        while self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
