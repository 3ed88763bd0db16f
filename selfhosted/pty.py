"""Scripted answers for full-screen terminal installers.

Output from a PTY session is fanned out to a list of sinks. One of them is an
``OutputBuffer`` holding the most recent output, which auto-answers poll for
the prompt they are waiting on before typing.
"""

import base64
import re
import threading
import time
from collections.abc import Callable, Mapping, Sequence

from .errors import PTYError
from .pty_sessions import PTYSessionRegistry
from .spec import TTYAutoAnswer
from .templates import render_template
from .utils import warn

PTY_SESSION = "[SELFHOSTED::PTY_SESSION]"
PTY_OUTPUT = "[SELFHOSTED::PTY]"
PTY_END = "[SELFHOSTED::PTY_END]"

BUFFER_LIMIT = 64 * 1024
POLL_INTERVAL = 0.25
DEFAULT_WAIT_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_DELAY_MS = 350
INITIAL_SETTLE = 0.8

_ANSI_CSI = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
_CONTROL = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

OutputSink = Callable[[bytes], None]


def strip_ansi(text: str) -> str:
    """Drop OSC, then CSI escape sequences, then remaining control characters."""
    if not text:
        return text
    text = _ANSI_OSC.sub("", text)
    text = _ANSI_CSI.sub("", text)
    return _CONTROL.sub("", text)


class OutputBuffer:
    """Rolling buffer of recent PTY output with a new-output signal."""

    def __init__(self, limit: int = BUFFER_LIMIT):
        self.limit = limit
        self._lock = threading.Lock()
        self._data = bytearray()
        self._changed = threading.Event()

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            self._data.extend(chunk)
            if len(self._data) > self.limit:
                del self._data[: len(self._data) - self.limit]
        self._changed.set()

    def text(self) -> str:
        with self._lock:
            raw = bytes(self._data)
        return strip_ansi(raw.decode("utf-8", errors="replace"))

    def matches(self, pattern: str, regex: re.Pattern | None = None) -> bool:
        current = self.text()
        if regex is not None:
            return regex.search(current) is not None
        return pattern in current

    def wait_for(self, pattern: str, is_regex: bool = False, timeout_ms: int = 0) -> bool:
        """Block until ``pattern`` shows up in the stripped output.

        Wakes on new output or every ``POLL_INTERVAL`` seconds. An invalid
        regular expression is matched as a plain substring.

        :return: True if matched, False if ``timeout_ms`` elapsed first
        """
        if timeout_ms <= 0:
            timeout_ms = DEFAULT_WAIT_TIMEOUT_MS
        deadline = time.monotonic() + timeout_ms / 1000

        regex = None
        if is_regex:
            try:
                regex = re.compile(pattern)
            except re.error:
                regex = None

        while True:
            self._changed.clear()
            if self.matches(pattern, regex):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._changed.wait(min(POLL_INTERVAL, remaining))


def render_answer(answer: TTYAutoAnswer, variables: Mapping[str, str]) -> str:
    """Text to type for ``answer``.

    ``true``/``false`` become ``y``/``n``; Enter (``\\r``) is appended unless
    the rendered value already holds a line break.
    """
    value = render_template(answer.value, variables)
    if value.strip().lower() == "true":
        value = "y"
    elif value.strip().lower() == "false":
        value = "n"
    if "\n" in value or "\r" in value:
        return value
    return value + "\r"


class AutoAnswerer:
    """Types configured answers into a live session, in order, on a thread."""

    def __init__(
        self,
        session_id: str,
        answers: Sequence[TTYAutoAnswer],
        buffer: OutputBuffer,
        registry: PTYSessionRegistry,
        variables: Mapping[str, str],
        *,
        sleep: Callable[[float], None] = time.sleep,
        initial_settle: float = INITIAL_SETTLE,
    ):
        self.session_id = session_id
        self.answers = list(answers)
        self.buffer = buffer
        self.registry = registry
        self.variables = variables
        self.sleep = sleep
        self.initial_settle = initial_settle
        self.sent: list[str] = []
        self.timed_out: list[int] = []
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, name=f"auto-answer-{self.session_id}", daemon=True
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        if self.initial_settle > 0:
            self.sleep(self.initial_settle)
        for index, answer in enumerate(self.answers):
            if answer.wait_for.strip():
                found = self.buffer.wait_for(
                    answer.wait_for, answer.wait_for_regex, answer.timeout_ms
                )
                if not found:
                    self.timed_out.append(index)
                    warn(f"Auto-answer {index + 1}: '{answer.wait_for}' not seen, sending anyway")
            delay_ms = answer.delay_ms if answer.delay_ms > 0 else DEFAULT_DELAY_MS
            self.sleep(delay_ms / 1000)

            value = render_answer(answer, self.variables)
            if self.session_id not in self.registry:
                return
            try:
                self.registry.write(self.session_id, value.encode())
            except PTYError as e:
                warn(f"Auto-answer stopped for session {self.session_id}: {e}")
                return
            self.sent.append(value)


def stream_sink(emit: Callable[[str], None]) -> OutputSink:
    """Sink forwarding raw chunks as base64 ``[SELFHOSTED::PTY]`` lines."""

    def _sink(chunk: bytes) -> None:
        if chunk:
            emit(f"{PTY_OUTPUT} {base64.b64encode(chunk).decode()}")

    return _sink
