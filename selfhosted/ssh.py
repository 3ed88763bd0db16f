"""Remote command execution over SSH.

Plain steps go through ``fabric.Connection.run`` with their output streamed
line by line to a logger. Interactive steps open a raw paramiko channel with a
PTY so full-screen installers render; their output is fanned out to sinks by
two reader threads (stdout and stderr).
"""

import io
import socket
import threading
import time
from collections.abc import Callable, Sequence

import paramiko
from fabric import Connection

from .errors import ConfigurationError, ConnectionLostError, PTYError, ReadinessTimeoutError
from .pty import OutputSink

SSH_PORT = 22
SSH_WAIT_TIMEOUT = 300
SSH_WAIT_INTERVAL = 5
SSH_SETTLE_DELAY = 5
CONNECT_TIMEOUT = 30
CHUNK_SIZE = 4096
PTY_TERM = "xterm-256color"
PTY_COLS = 120
PTY_ROWS = 40

# Raised by paramiko and the socket layer when a connection drops mid-command.
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)

Logger = Callable[[str], None]


def wait_for_ssh(
    host: str,
    port: int = SSH_PORT,
    *,
    timeout: float = SSH_WAIT_TIMEOUT,
    interval: float = SSH_WAIT_INTERVAL,
    settle: float = SSH_SETTLE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    connect: Callable = socket.create_connection,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll TCP connectivity to ``host:port`` until it accepts a connection.

    :raises ReadinessTimeoutError: if nothing answers within ``timeout`` seconds
    """
    deadline = clock() + timeout
    while True:
        try:
            sock = connect((host, port), interval)
        except OSError:
            pass
        else:
            sock.close()
            # sshd accepts connections before it is ready for auth
            sleep(settle)
            return
        if clock() + interval > deadline:
            raise ReadinessTimeoutError(f"timeout waiting for SSH on {host}:{port}")
        sleep(interval)


def load_private_key(material: str) -> paramiko.PKey:
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConfigurationError("failed to parse SSH private key")


class LineWriter:
    """File-like sink that forwards complete, non-blank lines to a logger.

    ``flush`` is a no-op because invoke flushes after every write; call
    ``drain`` once the command finishes to emit a trailing partial line.
    """

    def __init__(self, logger: Logger):
        self.logger = logger
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            line = line.rstrip("\r")
            if line.strip():
                self.logger(line)
        return len(text)

    def flush(self) -> None:
        pass

    def drain(self) -> None:
        if self._pending.strip():
            self.logger(self._pending.rstrip("\r"))
        self._pending = ""


class ChannelInput:
    """Write side of a PTY channel, as registered in the session registry."""

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel

    def write(self, data: bytes) -> int:
        try:
            self.channel.sendall(data)
        except TRANSPORT_ERRORS as e:
            raise PTYError(f"write failed: {e}") from e
        return len(data)

    def close(self) -> None:
        if self.channel.closed:
            return
        try:
            self.channel.shutdown_write()
        except TRANSPORT_ERRORS:
            # the transport is gone, so the channel is already closed remotely
            self.channel.close()


class PTYProcess:
    def __init__(self, channel: paramiko.Channel, sinks: Sequence[OutputSink], command: str):
        self.channel = channel
        self.command = command
        self.sinks = list(sinks)
        self.stdin = ChannelInput(channel)
        self._readers = [
            threading.Thread(target=self._pump, args=(channel.recv,), daemon=True),
            threading.Thread(target=self._pump, args=(channel.recv_stderr,), daemon=True),
        ]
        for reader in self._readers:
            reader.start()

    def _pump(self, read: Callable[[int], bytes]) -> None:
        while True:
            try:
                chunk = read(CHUNK_SIZE)
            except TRANSPORT_ERRORS:
                # wait() reports the dropped connection through the exit status
                return
            if not chunk:
                return
            for sink in self.sinks:
                sink(chunk)

    def wait(self) -> int:
        """Block until the remote command exits and all output is delivered.

        :return: remote exit status
        """
        status = self.channel.recv_exit_status()
        for reader in self._readers:
            reader.join()
        self.channel.close()
        return status


class SSHRunner:
    def __init__(
        self,
        host: str,
        user: str = "root",
        *,
        private_key: str = "",
        key_path: str = "",
        logger: Logger | None = None,
    ):
        self.host = host
        self.user = user
        self.private_key = private_key
        self.key_path = key_path
        self.logger = logger
        self._connection: Connection | None = None

    def connect(self) -> Connection:
        if self._connection is not None:
            return self._connection
        connect_kwargs = {"timeout": CONNECT_TIMEOUT}
        if self.key_path:
            connect_kwargs["key_filename"] = self.key_path
        elif self.private_key:
            connect_kwargs["pkey"] = load_private_key(self.private_key)
        else:
            connect_kwargs["look_for_keys"] = True
        connection = Connection(self.host, user=self.user, connect_kwargs=connect_kwargs)
        try:
            connection.open()
        except (paramiko.SSHException, OSError) as e:
            raise ReadinessTimeoutError(f"SSH connection to {self.host} failed: {e}") from e
        self._connection = connection
        return connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "SSHRunner":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def run(self, command: str) -> int:
        """Run ``command``, streaming its output.

        :return: remote exit status
        :raises ConnectionLostError: if the connection drops mid-command
        """
        connection = self.connect()
        try:
            if self.logger is None:
                result = connection.run(command, warn=True, hide=False)
                return result.exited
            self.logger(f"Running: {command}")
            out, err = LineWriter(self.logger), LineWriter(self.logger)
            result = connection.run(command, warn=True, out_stream=out, err_stream=err)
        except TRANSPORT_ERRORS as e:
            self.close()
            raise ConnectionLostError(f"SSH connection to {self.host} lost: {e}") from e
        out.drain()
        err.drain()
        return result.exited

    def run_pty(self, command: str, sinks: Sequence[OutputSink]) -> PTYProcess:
        """Start ``command`` under a PTY; output is delivered to ``sinks``.

        :raises PTYError: if the channel or PTY cannot be set up
        """
        connection = self.connect()
        try:
            channel = connection.create_session()
            channel.get_pty(term=PTY_TERM, width=PTY_COLS, height=PTY_ROWS)
            channel.exec_command(command)
        except TRANSPORT_ERRORS as e:
            raise PTYError(f"failed to start PTY command: {e}") from e
        return PTYProcess(channel, sinks, command)
