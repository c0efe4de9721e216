import asyncio
import contextlib
import logging
import os
from pathlib import Path

from . import protocol
from .constants import APP_NAME, MAX_FRAME_BYTES, VERSION
from .protocol import (
    ControlResponse,
    ErrorCode,
    ErrorReply,
    OutcomeReport,
    Ping,
    Pong,
    ProtocolError,
    RepositoryReport,
    Status,
    StatusReply,
    Trigger,
    TriggerResult,
)
from .scheduler import (
    RepositoryDisabled,
    Scheduler,
    SchedulerError,
    ShuttingDown,
    UnknownRepository,
)

logger = logging.getLogger(APP_NAME)

_SCHEDULER_ERROR_CODES: dict[type[SchedulerError], ErrorCode] = {
    UnknownRepository: ErrorCode.UNKNOWN_REPOSITORY,
    RepositoryDisabled: ErrorCode.REPOSITORY_DISABLED,
    ShuttingDown: ErrorCode.SHUTTING_DOWN,
}


class ControlServer:
    """Serves the control protocol on a Unix domain socket.

    The socket file is the daemon's liveness marker: a stale one left by a
    crashed process is removed before binding, and the file is unlinked on
    orderly shutdown.

    Attributes:
        socket_path (Path): Where the socket is bound.
        scheduler (Scheduler): Receives Status and Trigger requests.
        version (str): Reported in Pong and Status replies.
    """

    def __init__(self, socket_path: Path, scheduler: Scheduler, version: str = VERSION):
        self.socket_path = socket_path
        self.scheduler = scheduler
        self.version = version
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Binds the socket.

        Raises:
            OSError: If the socket cannot be created.
        """
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists() or self.socket_path.is_symlink():
            logger.warning(f"Removing stale socket file: {self.socket_path}")
            self.socket_path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(self.socket_path), limit=MAX_FRAME_BYTES
        )
        os.chmod(self.socket_path, 0o600)
        logger.info(f"Listening on Unix socket: {self.socket_path}")

    async def close(self) -> None:
        """Stops accepting, closes open connections and removes the socket file."""
        if self._server is not None:
            self._server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        try:
            self.socket_path.unlink()
            logger.info(f"Removed socket file: {self.socket_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove socket file: {e}")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            await self._serve(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Control client went away: {e}")
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            try:
                line = await reader.readline()
            except (asyncio.LimitOverrunError, ValueError):
                writer.write(
                    protocol.encode_response(
                        ErrorReply(
                            code=ErrorCode.FRAME_TOO_LARGE,
                            message=f"Request exceeds {MAX_FRAME_BYTES} bytes",
                        )
                    )
                )
                await writer.drain()
                return

            if not line:
                return
            if not line.strip():
                continue

            try:
                response = await self.respond(line)
            except Exception as e:
                logger.exception(f"Control request failed: {e}")
                response = ErrorReply(code=ErrorCode.INTERNAL, message=f"Internal error: {e}")
            writer.write(protocol.encode_response(response))
            await writer.drain()

    async def respond(self, line: bytes | str) -> ControlResponse:
        """Decodes one request frame and produces its response."""
        try:
            request = protocol.decode_request(line)
        except ProtocolError as e:
            logger.warning(f"Rejected control request: {e}")
            return ErrorReply(code=e.code, message=str(e))

        logger.debug(f"Received control request: {request}")

        # Ping never touches scheduler state, so it answers mid-cycle.
        if isinstance(request, Ping):
            return Pong(version=self.version)

        try:
            if isinstance(request, Status):
                return await self._status()
            if isinstance(request, Trigger):
                return await self._trigger(request)
        except SchedulerError as e:
            return ErrorReply(
                code=_SCHEDULER_ERROR_CODES.get(type(e), ErrorCode.INTERNAL), message=str(e)
            )

        return ErrorReply(code=ErrorCode.UNKNOWN_KIND, message=f"Unhandled request: {request}")

    async def _status(self) -> StatusReply:
        repos = await self.scheduler.status()
        return StatusReply(
            version=self.version,
            uptime_seconds=int(self.scheduler.uptime()),
            check_interval_seconds=self.scheduler.config.check_interval,
            shutting_down=not self.scheduler.accepting,
            repositories=tuple(RepositoryReport.from_status(r) for r in repos),
        )

    async def _trigger(self, request: Trigger) -> TriggerResult:
        outcomes = await self.scheduler.trigger(request.repo)
        logger.info(f"Manual trigger complete: {len(outcomes)} repositories.")
        return TriggerResult(outcomes=tuple(OutcomeReport.from_outcome(o) for o in outcomes))
