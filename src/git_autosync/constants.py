import os
from pathlib import Path

"""Global constants and filesystem layout for Git Autosync.

This module defines where the daemon reads its configuration, where it keeps
its log and control socket (adhering to XDG standards where applicable), and
the defaults used when the configuration file leaves a value out.
"""

# --- Identity ---
APP_NAME = "git-autosync"
"""str: The human-readable application name."""

VERSION = "0.3.0"
"""str: The daemon version reported by the control protocol."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / APP_NAME
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
CONFIG_DIR: Path = (Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config") / APP_NAME
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

_XDG_RUNTIME = os.environ.get("XDG_RUNTIME_DIR")
SOCKET_FILE: Path = (Path(_XDG_RUNTIME) / APP_NAME if _XDG_RUNTIME else STATE_DIR) / "daemon.sock"
"""Path: The control channel. Its presence on disk means a daemon is alive."""

# --- Defaults ---
DEFAULT_CHECK_INTERVAL = 300
"""int: Seconds between sync cycles when the config does not say otherwise."""

DEFAULT_COMMIT_TEMPLATE = "Auto-commit: {timestamp}"
"""str: Commit message template used when a repository does not set one."""

STARTUP_COMMIT_MESSAGE = "Auto-commit on daemon startup"
"""str: Commit message for pending changes found when the daemon starts."""

DEFAULT_MAX_CONCURRENT_CYCLES = 4
"""int: Size of the worker pool running blocking git invocations."""

DEFAULT_COMMAND_TIMEOUT = 300
"""int: Seconds a single git invocation may run before it is treated as failed."""

DEFAULT_REMOTE = "origin"
"""str: The remote pushed to and pulled from."""

TICK_SECONDS = 1.0
"""float: How often the scheduler checks which repositories are due."""

MAX_FRAME_BYTES = 64 * 1024
"""int: Upper bound on a single control-protocol line."""

# --- Exit codes ---
EXIT_OK = 0
EXIT_FORCED = 1
EXIT_CONFIG_ERROR = 2
EXIT_BIND_ERROR = 3
