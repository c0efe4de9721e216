import socket
from pathlib import Path

from . import protocol
from .constants import SOCKET_FILE
from .protocol import ControlRequest, ControlResponse, Ping, Pong


class DaemonNotRunning(ConnectionError):
    """The control socket is missing or nobody is listening on it."""


class ControlClient:
    """Blocking client for the daemon's control socket.

    Attributes:
        socket_path (Path): The daemon's control socket.
        timeout (float | None): Socket timeout in seconds; None waits forever,
                                which Trigger requests may need.
    """

    def __init__(self, socket_path: Path = SOCKET_FILE, timeout: float | None = 5.0):
        self.socket_path = socket_path
        self.timeout = timeout

    def request(self, request: ControlRequest) -> ControlResponse:
        """Sends one request and returns the decoded response.

        Raises:
            DaemonNotRunning: If the daemon cannot be reached.
            ProtocolError: If the reply is not a valid response frame.
        """
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(self.timeout)
            try:
                s.connect(str(self.socket_path))
            except (FileNotFoundError, ConnectionRefusedError) as e:
                raise DaemonNotRunning(
                    f"Daemon is not running (no socket at {self.socket_path})"
                ) from e
            s.sendall(protocol.encode_request(request))

            buf = b""
            while b"\n" not in buf:
                chunk = s.recv(4096)
                if not chunk:
                    break
                buf += chunk

        line, _, _ = buf.partition(b"\n")
        if not line:
            raise DaemonNotRunning("Daemon closed the connection without replying")
        return protocol.decode_response(line)

    def is_running(self) -> bool:
        try:
            return isinstance(self.request(Ping()), Pong)
        except (OSError, protocol.ProtocolError):
            return False
