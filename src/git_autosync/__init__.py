"""Git Autosync: keep git working copies committed, pushed and pulled.

This package provides the background daemon (event loop, scheduler and
per-repository sync engine), its line-delimited JSON control protocol, and a
small command-line client for observing and triggering the daemon.
"""

from . import (
    cli,
    client,
    config,
    constants,
    daemon,
    engine,
    git_wrapper,
    protocol,
    scheduler,
    server,
    system,
)

__all__ = [
    "cli",
    "client",
    "config",
    "constants",
    "daemon",
    "engine",
    "git_wrapper",
    "protocol",
    "scheduler",
    "server",
    "system",
]
