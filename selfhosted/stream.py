"""Progress delivery over a long-lived connection.

A ``ProgressStream`` wraps any text writer (an HTTP response, a socket file,
stdout). Writes from the deployment and from the keep-alive thread are
serialized, and the first failed write silences the stream for good while the
deployment itself carries on.
"""

import copy
import threading
from collections.abc import Callable

from .deploy import Deployer, DeployOptions
from .errors import SelfhostedError
from .utils import warn

DONE = "[SELFHOSTED::DONE]"
ERROR = "[SELFHOSTED::ERROR]"
KEEPALIVE_INTERVAL = 30


class ProgressStream:
    def __init__(
        self,
        write: Callable[[str], object],
        *,
        sse: bool = False,
        flush: Callable[[], object] | None = None,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
    ):
        self._write = write
        self._flush = flush
        self.sse = sse
        self.keepalive_interval = keepalive_interval
        self._lock = threading.Lock()
        self._broken = False
        self._stop = threading.Event()
        self._keepalive: threading.Thread | None = None

    @property
    def broken(self) -> bool:
        return self._broken

    def _send(self, text: str) -> bool:
        with self._lock:
            if self._broken:
                return False
            try:
                self._write(text)
                if self._flush is not None:
                    self._flush()
            except (OSError, ValueError) as e:
                self._broken = True
                warn(f"progress stream closed: {e}")
                return False
            return True

    def emit(self, message: str) -> None:
        """Send each non-blank line of ``message``."""
        for line in message.splitlines():
            if not line.strip():
                continue
            self._send(f"data: {line}\n\n" if self.sse else f"{line}\n")

    __call__ = emit

    def keep_alive(self) -> None:
        if self.sse:
            self._send(": keep-alive\n\n")

    def _keepalive_loop(self) -> None:
        while not self._stop.wait(self.keepalive_interval):
            if self._broken:
                return
            self.keep_alive()

    def start(self) -> None:
        if self._keepalive is None and self.sse:
            self._keepalive = threading.Thread(target=self._keepalive_loop, daemon=True)
            self._keepalive.start()

    def stop(self) -> None:
        self._stop.set()
        if self._keepalive is not None:
            self._keepalive.join()
            self._keepalive = None

    def __enter__(self) -> "ProgressStream":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


def run_deployment(deployer: Deployer, options: DeployOptions, stream: ProgressStream) -> bool:
    """Deploy with all progress going to ``stream``.

    The stream always ends with exactly one ``DONE`` or ``ERROR`` line.

    :return: True if the deployment succeeded
    """
    deployer = copy.copy(deployer)
    deployer.logger = stream.emit
    with stream:
        try:
            deployer.deploy(options)
        except SelfhostedError as e:
            stream.emit(f"{ERROR} {_one_line(e)}")
            return False
        except Exception as e:
            stream.emit(f"{ERROR} {_one_line(e)}")
            raise
        stream.emit(DONE)
        return True


def _one_line(e: Exception) -> str:
    return " ".join(str(e).split()) or type(e).__name__
