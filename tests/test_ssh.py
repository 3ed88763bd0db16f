"""
Tests for SSH readiness polling and the PTY channel plumbing.
"""

from unittest.mock import MagicMock, patch

import paramiko
import pytest

from selfhosted.errors import ConfigurationError, ConnectionLostError, PTYError, ReadinessTimeoutError
from selfhosted.ssh import ChannelInput, LineWriter, PTYProcess, SSHRunner, load_private_key, wait_for_ssh


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class TestWaitForSSH:
    def test_ready_after_retries(self):
        clock = FakeClock()
        attempts = []
        sock = MagicMock()

        def connect(address, timeout):
            attempts.append(address)
            if len(attempts) < 3:
                raise ConnectionRefusedError()
            return sock

        slept = []

        def sleep(seconds):
            slept.append(seconds)
            clock.sleep(seconds)

        wait_for_ssh("203.0.113.10", sleep=sleep, connect=connect, clock=clock)
        assert attempts == [("203.0.113.10", 22)] * 3
        assert slept == [5, 5, 5]
        sock.close.assert_called_once()

    def test_timeout(self):
        clock = FakeClock()

        def connect(address, timeout):
            raise OSError("unreachable")

        with pytest.raises(ReadinessTimeoutError, match="203.0.113.10:22"):
            wait_for_ssh("203.0.113.10", timeout=30, sleep=clock.sleep, connect=connect, clock=clock)
        assert clock.now <= 30


class TestLineWriter:
    def test_complete_lines_only(self):
        lines = []
        writer = LineWriter(lines.append)
        writer.write("Reading package lists...\r\nDo")
        writer.write("ne\n\n")
        writer.write("partial")
        assert lines == ["Reading package lists...", "Done"]
        writer.drain()
        assert lines[-1] == "partial"


class FakeChannel:
    def __init__(self, stdout=(), stderr=(), status=0):
        self._stdout = list(stdout)
        self._stderr = list(stderr)
        self.status = status
        self.sent = []
        self.closed = False
        self.write_shut = False

    def recv(self, size):
        return self._stdout.pop(0) if self._stdout else b""

    def recv_stderr(self, size):
        return self._stderr.pop(0) if self._stderr else b""

    def recv_exit_status(self):
        return self.status

    def sendall(self, data):
        self.sent.append(data)

    def shutdown_write(self):
        self.write_shut = True

    def close(self):
        self.closed = True


class TestPTYProcess:
    def test_fans_out_both_streams(self):
        channel = FakeChannel(stdout=[b"a", b"b"], stderr=[b"err"], status=3)
        first, second = [], []
        process = PTYProcess(channel, [first.append, second.append], "cmd")
        assert process.wait() == 3
        assert sorted(first) == [b"a", b"b", b"err"]
        assert first == second
        assert channel.closed

    def test_channel_input(self):
        channel = FakeChannel()
        stdin = ChannelInput(channel)
        assert stdin.write(b"y\r") == 2
        stdin.close()
        assert channel.sent == [b"y\r"]
        assert channel.write_shut

    def test_close_after_channel_closed(self):
        channel = FakeChannel()
        channel.closed = True
        ChannelInput(channel).close()
        assert not channel.write_shut

    def test_write_on_dropped_channel(self):
        channel = FakeChannel()
        channel.sendall = MagicMock(side_effect=paramiko.SSHException("Socket is closed"))
        with pytest.raises(PTYError, match="Socket is closed"):
            ChannelInput(channel).write(b"y\r")

    def test_close_on_dropped_transport(self):
        channel = FakeChannel()
        channel.shutdown_write = MagicMock(side_effect=EOFError())
        ChannelInput(channel).close()
        assert channel.closed

    def test_reader_stops_on_dropped_connection(self):
        channel = FakeChannel(status=-1)
        channel.recv = MagicMock(side_effect=[b"partial", OSError("connection reset")])
        seen = []
        assert PTYProcess(channel, [seen.append], "cmd").wait() == -1
        assert seen == [b"partial"]


class TestSSHRunner:
    def test_run_returns_exit_status(self):
        connection = MagicMock()
        connection.run.return_value = MagicMock(exited=2)
        with patch("selfhosted.ssh.Connection", return_value=connection) as cls:
            with SSHRunner("1.2.3.4", key_path="/keys/id", logger=lambda line: None) as runner:
                assert runner.run("false") == 2
        assert cls.call_args.kwargs["connect_kwargs"]["key_filename"] == "/keys/id"
        assert connection.run.call_args.kwargs["warn"] is True
        connection.close.assert_called_once()

    def test_run_connection_lost(self):
        connection = MagicMock()
        connection.run.side_effect = EOFError("connection dropped")
        with patch("selfhosted.ssh.Connection", return_value=connection):
            runner = SSHRunner("1.2.3.4", key_path="/keys/id", logger=lambda line: None)
            with pytest.raises(ConnectionLostError, match="connection dropped"):
                runner.run("certbot")
        connection.close.assert_called_once()

    def test_connect_failure(self):
        connection = MagicMock()
        connection.open.side_effect = OSError("no route to host")
        with patch("selfhosted.ssh.Connection", return_value=connection):
            with pytest.raises(ReadinessTimeoutError, match="no route"):
                SSHRunner("1.2.3.4", key_path="/keys/id").connect()

    def test_run_pty_failure(self):
        connection = MagicMock()
        connection.create_session.side_effect = OSError("channel refused")
        with patch("selfhosted.ssh.Connection", return_value=connection):
            with pytest.raises(PTYError, match="channel refused"):
                SSHRunner("1.2.3.4", key_path="/keys/id").run_pty("tui", [])

    def test_run_pty_requests_terminal(self):
        channel = FakeChannel(status=0)
        channel.get_pty = MagicMock()
        channel.exec_command = MagicMock()
        connection = MagicMock()
        connection.create_session.return_value = channel
        with patch("selfhosted.ssh.Connection", return_value=connection):
            process = SSHRunner("1.2.3.4", key_path="/keys/id").run_pty("tui", [])
            assert process.wait() == 0
        channel.get_pty.assert_called_once_with(term="xterm-256color", width=120, height=40)
        channel.exec_command.assert_called_once_with("tui")


def test_bad_private_key():
    with pytest.raises(ConfigurationError, match="private key"):
        load_private_key("not a key")
