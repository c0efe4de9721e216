import asyncio
import logging
import re
import tomllib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .constants import (
    APP_NAME,
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_COMMIT_TEMPLATE,
    DEFAULT_MAX_CONCURRENT_CYCLES,
)

logger = logging.getLogger(APP_NAME)

# Keys accepted for compatibility with older config files but not used.
_IGNORED_DAEMON_KEYS = {"enable_tray"}


class ConfigError(ValueError):
    """Raised when the configuration file cannot be read or is invalid."""


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def _positive_interval(where: str, value: Any) -> int:
    try:
        seconds = parse_time(value)
    except ValueError as e:
        raise ConfigError(f"Config error in {where}: {e}") from e
    if seconds <= 0:
        raise ConfigError(f"Config error in {where}: interval must be positive")
    return seconds


@dataclass(frozen=True)
class RepositoryConfig:
    """A single repository kept in sync by the daemon.

    Attributes:
        path (Path): Absolute path to the working copy. Unique within a Config.
        enabled (bool): Whether periodic cycles run (`auto_commit` in TOML).
        commit_message_template (str): Message with {timestamp}/{date}/{time}.
        check_interval (int | None): Per-repository override in seconds.
    """

    path: Path
    enabled: bool = True
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE
    check_interval: int | None = None

    @property
    def name(self) -> str:
        return self.path.name or str(self.path)


@dataclass(frozen=True)
class DaemonConfig:
    """Daemon operational settings.

    Attributes:
        check_interval (int): Seconds between cycles for each repository.
        max_concurrent_cycles (int): Worker pool size for blocking git calls.
        command_timeout (int): Seconds before a single git call is abandoned.
    """

    check_interval: int = DEFAULT_CHECK_INTERVAL
    max_concurrent_cycles: int = DEFAULT_MAX_CONCURRENT_CYCLES
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT


@dataclass(frozen=True)
class Config:
    """An immutable snapshot of the configuration file.

    Attributes:
        daemon (DaemonConfig): Global daemon settings.
        repositories (tuple[RepositoryConfig, ...]): Repositories in file order.
    """

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    repositories: tuple[RepositoryConfig, ...] = ()

    @property
    def check_interval(self) -> int:
        return self.daemon.check_interval

    def get(self, path: Path) -> RepositoryConfig | None:
        """Returns the repository configured at `path`, if any."""
        for repo in self.repositories:
            if repo.path == path:
                return repo
        return None

    def effective_interval(self, repo: RepositoryConfig) -> int:
        """Resolves the interval for a repository (override, else global)."""
        if repo.check_interval is not None:
            return repo.check_interval
        return self.daemon.check_interval

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a validated Config from parsed TOML data.

        Raises:
            ConfigError: If a value is invalid or a repository path repeats.
        """
        daemon_data = data.get("daemon", {})
        if not isinstance(daemon_data, dict):
            raise ConfigError("Config error: [daemon] must be a table")
        daemon = _parse_daemon(daemon_data)

        repo_data = data.get("repositories", [])
        if not isinstance(repo_data, list):
            raise ConfigError("Config error: [[repositories]] must be an array of tables")

        repositories = []
        seen: set[Path] = set()
        for index, entry in enumerate(repo_data):
            repo = _parse_repository(index, entry)
            if repo.path in seen:
                raise ConfigError(f"Duplicate repository path: {repo.path}")
            seen.add(repo.path)
            repositories.append(repo)

        unknown = set(data.keys()) - {"daemon", "repositories"}
        if unknown:
            logger.warning(
                f"Unknown config sections: {', '.join(sorted(unknown))}. Ignoring."
            )

        return cls(daemon=daemon, repositories=tuple(repositories))

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Reads and validates the TOML configuration file at `path`.

        Args:
            path (Path): The configuration file.

        Returns:
            Config: The parsed snapshot.

        Raises:
            ConfigError: If the file is missing, unreadable, or invalid.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        return cls.from_dict(data)


def _parse_daemon(data: dict[str, Any]) -> DaemonConfig:
    valid = {"check_interval_seconds", "max_concurrent_cycles", "command_timeout_seconds"}
    invalid_keys = set(data.keys()) - valid - _IGNORED_DAEMON_KEYS
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in [daemon]: {', '.join(sorted(invalid_keys))}. Ignoring."
        )

    updates: dict[str, int] = {}
    if "check_interval_seconds" in data:
        updates["check_interval"] = _positive_interval(
            "[daemon].check_interval_seconds", data["check_interval_seconds"]
        )
    if "command_timeout_seconds" in data:
        updates["command_timeout"] = _positive_interval(
            "[daemon].command_timeout_seconds", data["command_timeout_seconds"]
        )
    if "max_concurrent_cycles" in data:
        workers = data["max_concurrent_cycles"]
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ConfigError(
                "Config error in [daemon].max_concurrent_cycles: must be a positive integer"
            )
        updates["max_concurrent_cycles"] = workers

    return DaemonConfig(**updates)


def _parse_repository(index: int, entry: Any) -> RepositoryConfig:
    where = f"[[repositories]] #{index + 1}"
    if not isinstance(entry, dict):
        raise ConfigError(f"Config error in {where}: expected a table")

    valid = {"path", "auto_commit", "commit_message_template", "check_interval_seconds"}
    invalid_keys = set(entry.keys()) - valid
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in {where}: {', '.join(sorted(invalid_keys))}. Ignoring."
        )

    raw_path = entry.get("path")
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ConfigError(f"Config error in {where}: 'path' is required")
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        raise ConfigError(f"Config error in {where}: path must be absolute: {raw_path}")

    enabled = entry.get("auto_commit", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"Config error in {where}: 'auto_commit' must be a boolean")

    template = entry.get("commit_message_template", DEFAULT_COMMIT_TEMPLATE)
    if not isinstance(template, str):
        raise ConfigError(
            f"Config error in {where}: 'commit_message_template' must be a string"
        )

    interval = None
    if "check_interval_seconds" in entry:
        interval = _positive_interval(
            f"{where}.check_interval_seconds", entry["check_interval_seconds"]
        )

    return RepositoryConfig(
        path=path,
        enabled=enabled,
        commit_message_template=template,
        check_interval=interval,
    )


class ConfigEditor:
    """Rewrites the configuration file while keeping its comments and layout.

    Changes accumulate on the parsed document and are validated as a whole
    `Config` by `save`, so nothing the daemon would reject is ever written.

    Attributes:
        path (Path): The configuration file. It need not exist yet.
        document (tomlkit.TOMLDocument): The editable document.
    """

    def __init__(self, path: Path):
        self.path = path
        self.document = self._read()

    def _read(self) -> tomlkit.TOMLDocument:
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            document = tomlkit.document()
            document.add(tomlkit.comment(f"{APP_NAME} configuration"))
            document.add(tomlkit.nl())
            return document
        except OSError as e:
            raise ConfigError(f"Failed to read config file {self.path}: {e}") from e
        try:
            return tomlkit.parse(text)
        except TOMLKitError as e:
            raise ConfigError(f"Config syntax error in {self.path}: {e}") from e

    @property
    def config(self) -> Config:
        """The document as a validated snapshot."""
        return Config.from_dict(self.document.unwrap())

    def _find(self, path: Path) -> int | None:
        for index, entry in enumerate(self.document.get("repositories", [])):
            raw = entry.get("path") if isinstance(entry, dict) else None
            if isinstance(raw, str) and Path(raw).expanduser() == path:
                return index
        return None

    def _entry(self, path: Path) -> Any:
        index = self._find(path)
        if index is None:
            raise ConfigError(f"Repository not found in configuration: {path}")
        return self.document["repositories"][index]

    def add(
        self, path: Path, template: str | None = None, interval: int | None = None
    ) -> None:
        """Appends a [[repositories]] entry with auto-commit enabled.

        Raises:
            ConfigError: If the path is already configured.
        """
        if self._find(path) is not None:
            raise ConfigError(f"Repository already configured: {path}")
        entry = tomlkit.table()
        entry["path"] = str(path)
        entry["auto_commit"] = True
        entry["commit_message_template"] = template or DEFAULT_COMMIT_TEMPLATE
        if interval is not None:
            entry["check_interval_seconds"] = interval
        if "repositories" not in self.document:
            self.document.append("repositories", tomlkit.aot())
        self.document["repositories"].append(entry)

    def remove(self, path: Path) -> None:
        index = self._find(path)
        if index is None:
            raise ConfigError(f"Repository not found in configuration: {path}")
        del self.document["repositories"][index]

    def set_enabled(self, path: Path, enabled: bool) -> None:
        self._entry(path)["auto_commit"] = enabled

    def set_interval(self, seconds: int) -> None:
        """Sets the global [daemon].check_interval_seconds."""
        if "daemon" not in self.document:
            self.document["daemon"] = tomlkit.table()
        self.document["daemon"]["check_interval_seconds"] = seconds

    def save(self) -> Config:
        """Validates the document and atomically replaces the file with it.

        Returns:
            Config: The snapshot a reload of the new file will produce.

        Raises:
            ConfigError: If the edited document is not a valid configuration.
        """
        snapshot = self.config
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        tmp.write_text(tomlkit.dumps(self.document))
        tmp.replace(self.path)
        logger.debug(f"Saved configuration: {self.path}")
        return snapshot


class _ConfigFileHandler(FileSystemEventHandler):
    """Forwards watchdog events touching the config file to the event loop."""

    def __init__(self, target: Path, loop: asyncio.AbstractEventLoop, dirty: asyncio.Event):
        self.target = target
        self.loop = loop
        self.dirty = dirty

    def _matches(self, raw: bytes | str) -> bool:
        if isinstance(raw, bytes):
            raw = raw.decode(errors="replace")
        return Path(raw) == self.target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path]
        if dest := getattr(event, "dest_path", ""):
            paths.append(dest)
        if any(self._matches(p) for p in paths):
            self.loop.call_soon_threadsafe(self.dirty.set)


class ConfigStore:
    """Holds the current configuration snapshot and watches its backing file.

    A snapshot is only ever replaced by another valid snapshot: a failed parse
    on reload logs a warning and leaves the previous one in force.

    Attributes:
        path (Path): The configuration file.
        debounce (float): Quiet period, in seconds, that ends a burst of
            filesystem events before the file is re-parsed.
    """

    def __init__(self, path: Path, debounce: float = 0.5):
        self.path = path
        self.debounce = debounce
        self._current: Config | None = None

    @property
    def current(self) -> Config:
        if self._current is None:
            raise RuntimeError("Configuration has not been loaded")
        return self._current

    def load(self) -> Config:
        """Parses the file and publishes it as the current snapshot.

        Raises:
            ConfigError: If the file cannot be parsed.
        """
        self._current = Config.load(self.path)
        return self._current

    def reload(self) -> Config | None:
        """Re-parses the file, keeping the previous snapshot on failure.

        Returns:
            Config | None: The new snapshot, or None if parsing failed.
        """
        try:
            snapshot = Config.load(self.path)
        except ConfigError as e:
            logger.warning(f"CONFIG RELOAD FAILED: {e}. Keeping previous configuration.")
            return None
        self._current = snapshot
        logger.info(
            f"CONFIG RELOADED: {len(snapshot.repositories)} repositories, "
            f"interval {snapshot.check_interval}s."
        )
        return snapshot

    async def watch(self) -> AsyncIterator[Config]:
        """Yields a new snapshot after each successful reload of the file.

        The sequence is infinite; cancelling the consumer stops the watcher.
        """
        loop = asyncio.get_running_loop()
        dirty = asyncio.Event()
        target = self.path.absolute()
        handler = _ConfigFileHandler(target, loop, dirty)

        observer = Observer()
        observer.schedule(handler, str(target.parent), recursive=False)
        observer.start()
        logger.info(f"Watching config file for changes: {target}")
        try:
            while True:
                await dirty.wait()
                await self._settle(dirty)
                snapshot = await asyncio.to_thread(self.reload)
                if snapshot is not None:
                    yield snapshot
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join)

    async def _settle(self, dirty: asyncio.Event) -> None:
        """Waits until no new event has arrived for `debounce` seconds."""
        while True:
            dirty.clear()
            try:
                await asyncio.wait_for(dirty.wait(), self.debounce)
            except TimeoutError:
                return
