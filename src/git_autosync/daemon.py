import asyncio
import logging
import signal
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, ConfigError, ConfigStore
from .constants import (
    APP_NAME,
    CONFIG_FILE,
    EXIT_BIND_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_FORCED,
    EXIT_OK,
    LOG_FILE,
    SOCKET_FILE,
    TICK_SECONDS,
    VERSION,
)
from .engine import SyncEngine
from .scheduler import Scheduler
from .server import ControlServer
from .system import Notifier

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class ConfigReloaded:
    config: Config


@dataclass(frozen=True)
class ShutdownRequested:
    signal_name: str


Event = Tick | ConfigReloaded | ShutdownRequested


class Daemon:
    """The coordinating process.

    Timer ticks, config reloads and termination signals are funnelled into one
    queue and handled one at a time. Control connections are served by the
    ControlServer on the same loop and reach shared state only through the
    Scheduler.

    Attributes:
        config_path (Path): The TOML configuration file.
        socket_path (Path): The control channel.
        tick_seconds (float): Period of the due-check timer.
    """

    def __init__(
        self,
        config_path: Path = CONFIG_FILE,
        socket_path: Path = SOCKET_FILE,
        *,
        engine: SyncEngine | None = None,
        notifier: Notifier | None = None,
        tick_seconds: float = TICK_SECONDS,
        debounce: float = 0.5,
    ):
        self.config_path = config_path
        self.socket_path = socket_path
        self.tick_seconds = tick_seconds
        self.notifier = notifier if notifier is not None else Notifier()
        self.engine = engine if engine is not None else SyncEngine(self.notifier)
        self.store = ConfigStore(config_path, debounce=debounce)
        self.scheduler: Scheduler | None = None
        self.server: ControlServer | None = None
        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._ready = asyncio.Event()

    async def wait_ready(self) -> None:
        """Resolves once the socket is bound and the loop is running."""
        await self._ready.wait()

    def request_shutdown(self, signal_name: str = "request") -> None:
        self._events.put_nowait(ShutdownRequested(signal_name))

    async def run(self) -> int:
        """Runs the daemon until a termination signal arrives.

        Returns:
            int: The process exit status.
        """
        logger.info(f"Starting {APP_NAME} {VERSION}")
        logger.info(f"Loading configuration from: {self.config_path}")
        try:
            config = self.store.load()
        except ConfigError as e:
            logger.critical(f"FATAL: {e}")
            return EXIT_CONFIG_ERROR
        logger.info(f"Loaded configuration with {len(config.repositories)} repositories")

        executor = ThreadPoolExecutor(
            max_workers=config.daemon.max_concurrent_cycles,
            thread_name_prefix="autosync-cycle",
        )
        self.scheduler = Scheduler(config, self.engine, executor, self.notifier)
        self.server = ControlServer(self.socket_path, self.scheduler)
        try:
            await self.server.start()
        except OSError as e:
            logger.critical(f"FATAL: Failed to bind control socket {self.socket_path}: {e}")
            executor.shutdown(wait=False)
            return EXIT_BIND_ERROR

        loop = asyncio.get_running_loop()
        handled = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
                handled.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name} in this thread.")

        await self.scheduler.run_startup()

        sources = [
            asyncio.create_task(self._ticker(), name="ticker"),
            asyncio.create_task(self._watch_config(), name="config-watch"),
        ]
        self._ready.set()

        try:
            reason = await self._loop()
            logger.info(f"Received {reason}, shutting down gracefully")
            clean = await self._shutdown(sources)
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)

        executor.shutdown(wait=clean, cancel_futures=True)
        logger.info(f"{APP_NAME} shut down {'cleanly' if clean else '(forced)'}")
        return EXIT_OK if clean else EXIT_FORCED

    async def _loop(self) -> str:
        """Handles events until shutdown is requested; returns the reason."""
        assert self.scheduler is not None
        while True:
            event = await self._events.get()
            if isinstance(event, Tick):
                await self.scheduler.tick()
            elif isinstance(event, ConfigReloaded):
                await self.scheduler.apply_config(event.config)
            elif isinstance(event, ShutdownRequested):
                return event.signal_name

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self._events.put_nowait(Tick())

    async def _watch_config(self) -> None:
        try:
            async for config in self.store.watch():
                self._events.put_nowait(ConfigReloaded(config))
        except OSError as e:
            logger.error(f"Config file watch error: {e}. Hot reload disabled.")

    async def _shutdown(self, sources: list[asyncio.Task]) -> bool:
        """Stops new work, waits for in-flight cycles, unlinks the socket.

        A second termination signal while waiting abandons the wait.

        Returns:
            bool: True if every in-flight cycle finished.
        """
        assert self.scheduler is not None and self.server is not None
        self.scheduler.stop_accepting()
        for task in sources:
            task.cancel()
        await asyncio.gather(*sources, return_exceptions=True)

        # Ticks and reloads queued before the signal no longer matter, but a
        # second signal that is already queued still forces the exit.
        forced = False
        while not self._events.empty():
            forced |= isinstance(self._events.get_nowait(), ShutdownRequested)
        if forced:
            self._events.put_nowait(ShutdownRequested("queued"))

        drain = asyncio.create_task(self.scheduler.drain())
        second = asyncio.create_task(self._next_shutdown())
        done, _ = await asyncio.wait({drain, second}, return_when=asyncio.FIRST_COMPLETED)
        clean = drain in done
        if not clean:
            logger.warning("Second termination signal; not waiting for running cycles.")
        for task in (drain, second):
            task.cancel()
        await asyncio.gather(drain, second, return_exceptions=True)

        await self.server.close()
        return clean

    async def _next_shutdown(self) -> None:
        while True:
            event = await self._events.get()
            if isinstance(event, ShutdownRequested):
                return


def setup_logging(interactive: bool) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        # In daemon mode, rotate logs to file.
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def run(config_path: Path = CONFIG_FILE, socket_path: Path = SOCKET_FILE) -> int:
    """Runs the daemon to completion and returns its exit status."""
    return asyncio.run(Daemon(config_path, socket_path).run())


def main() -> None:
    """Entry point for `git-autosync-daemon`."""
    setup_logging(interactive=False)
    sys.exit(run())


if __name__ == "__main__":
    main()
