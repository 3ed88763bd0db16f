"""Process-wide directory of live PTY sessions.

Maps a session id to the input handle of an interactive step so keystrokes
from an operator (or from scripted auto-answers) reach the remote terminal.
"""

import base64
import binascii
import threading
from typing import Protocol

from .errors import PTYError, PTYSessionError


class InputHandle(Protocol):
    def write(self, data: bytes) -> int | None: ...

    def close(self) -> None: ...


class PTYSessionRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, InputHandle] = {}

    def register(self, session_id: str, handle: InputHandle) -> None:
        """Overwrites silently if ``session_id`` is reused."""
        with self._lock:
            self._sessions[session_id] = handle

    def write(self, session_id: str, data: bytes) -> None:
        """:raises PTYSessionError: unknown session; PTYError: write failed"""
        with self._lock:
            handle = self._sessions.get(session_id)
        if handle is None:
            raise PTYSessionError(f"unknown session: {session_id}")
        try:
            handle.write(data)
        except OSError as e:
            raise PTYError(f"write failed: {e}") from e

    def write_base64(self, session_id: str, data_b64: str) -> None:
        try:
            data = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PTYError(f"invalid base64: {e}") from e
        self.write(session_id, data)

    def close(self, session_id: str) -> None:
        """Close the handle and drop the entry; no-op if already gone."""
        with self._lock:
            handle = self._sessions.pop(session_id, None)
        if handle is not None:
            handle.close()

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


sessions = PTYSessionRegistry()


def handle_pty_input(payload: dict, registry: PTYSessionRegistry = sessions) -> None:
    """Keystroke injection: ``{"sessionId": ..., "dataB64": ...}``.

    :raises ValueError: if either field is missing
    :raises PTYError: invalid base64, unknown session or failed write
    """
    session_id = str(payload.get("sessionId") or "")
    data_b64 = str(payload.get("dataB64") or "")
    if not session_id or not data_b64:
        raise ValueError("sessionId and dataB64 are required")
    registry.write_base64(session_id, data_b64)
