"""Runs the steps of an installer spec on a remote server.

A spec's steps are split into two phases by their ``if:`` guard: unguarded
steps are the install phase, guarded steps the SSL phase. One call to
``run_phase`` walks the steps in order and executes only the requested phase.
"""

import secrets
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol

from .errors import ConnectionLostError, InstallStepError, PTYError, SpecError
from .pty import (
    INITIAL_SETTLE,
    PTY_END,
    PTY_SESSION,
    AutoAnswerer,
    OutputBuffer,
    OutputSink,
    stream_sink,
)
from .pty_sessions import InputHandle, PTYSessionRegistry, sessions
from .spec import InstallerSpec, Step
from .templates import (
    build_condition_flags,
    build_template_vars,
    evaluate_condition,
    render_template,
)
from .utils import parse_duration

Phase = Literal["install", "ssl"]
Logger = Callable[[str], None]


class PTYHandle(Protocol):
    stdin: InputHandle

    def wait(self) -> int: ...


class RemoteRunner(Protocol):
    def run(self, command: str) -> int: ...

    def run_pty(self, command: str, sinks: Sequence[OutputSink]) -> PTYHandle: ...

    def close(self) -> None: ...


@dataclass
class InstallConfig:
    """Values a spec's templates and guards can refer to as ``opts.<Field>``."""

    domain: str
    server_ip: str
    ssh_key: str = ""
    ssh_user: str = "root"
    enable_ssl: bool = False
    email: str = ""
    ssl: bool = False
    ssl_private_key_file: str = ""
    ssl_certificate_crt: str = ""
    http_to_https_redirection: bool = False
    extra_vars: dict[str, str] = field(default_factory=dict)
    extra_flags: dict[str, bool] = field(default_factory=dict)

    def string_fields(self) -> dict[str, str]:
        return {
            "Domain": self.domain,
            "ServerIP": self.server_ip,
            "SSHKey": self.ssh_key,
            "SSHUser": self.ssh_user,
            "Email": self.email,
            "SSLPrivateKeyFile": self.ssl_private_key_file,
            "SSLCertificateCrt": self.ssl_certificate_crt,
        }

    def bool_fields(self) -> dict[str, bool]:
        return {
            "EnableSSL": self.enable_ssl,
            "SSL": self.ssl,
            "HttpToHttpsRedirection": self.http_to_https_redirection,
        }

    def template_vars(self) -> dict[str, str]:
        return build_template_vars(self.string_fields(), self.bool_fields(), self.extra_vars)

    def condition_flags(self) -> dict[str, bool]:
        return build_condition_flags(self.string_fields(), self.bool_fields(), self.extra_flags)


def shell_quote(text: str) -> str:
    return "'" + text.replace("'", "'\\''") + "'"


def build_run_command(script: str) -> str:
    """Wrap a step script as ``bash -lc '<set -e + script>'``."""
    script = script.strip()
    if not script:
        return ""
    return "bash -lc " + shell_quote("set -e\n" + script)


def new_session_id() -> str:
    return secrets.token_urlsafe(12)


def select_steps(
    steps: Sequence[Step], phase: Phase, flags: Mapping[str, bool]
) -> list[Step]:
    """Steps of ``steps`` that ``phase`` would execute, in declared order."""
    selected = []
    for step in steps:
        if step.is_conditional != (phase == "ssl"):
            continue
        if step.is_conditional and not evaluate_condition(step.condition, flags):
            continue
        selected.append(step)
    return selected


def run_phase(
    spec: InstallerSpec,
    runner: RemoteRunner,
    config: InstallConfig,
    phase: Phase,
    *,
    logger: Logger,
    registry: PTYSessionRegistry = sessions,
    sleep: Callable[[float], None] = time.sleep,
    pty_sinks: Sequence[OutputSink] = (),
    auto_answer_settle: float = INITIAL_SETTLE,
    session_ids: Callable[[], str] = new_session_id,
) -> None:
    """Execute one phase of ``spec`` through ``runner``.

    Stops at the first failing step; steps already run are not undone.

    :raises InstallStepError: a step exited non-zero or lost its connection
    :raises PTYError: an interactive step could not be started
    :raises SpecError: a step has an unparseable ``sleep``
    """
    variables = config.template_vars()
    flags = config.condition_flags()

    for index, step in enumerate(select_steps(spec.steps, phase, flags)):
        label = step.name or f"step {index + 1}"
        if step.name:
            logger(f"⏳ {step.name}")
        if step.log.strip():
            logger(render_template(step.log, variables))
        if step.sleep:
            try:
                delay = parse_duration(step.sleep)
            except ValueError as e:
                raise SpecError(f"{label}: {e}") from e
            sleep(delay.total_seconds())

        if not step.run.strip():
            continue
        command = build_run_command(render_template(step.run, variables))

        if step.tty.enabled:
            status = _run_tty_step(
                step,
                command,
                runner,
                variables,
                logger=logger,
                registry=registry,
                sleep=sleep,
                pty_sinks=pty_sinks,
                settle=auto_answer_settle,
                session_id=session_ids(),
            )
            if status != 0:
                raise InstallStepError(label, status, "interactive command failed")
        else:
            try:
                status = runner.run(command)
            except (ConnectionLostError, OSError, EOFError) as e:
                raise InstallStepError(label, None, f"connection lost: {e}") from e
            if status != 0:
                raise InstallStepError(label, status)


def _run_tty_step(
    step: Step,
    command: str,
    runner: RemoteRunner,
    variables: Mapping[str, str],
    *,
    logger: Logger,
    registry: PTYSessionRegistry,
    sleep: Callable[[float], None],
    pty_sinks: Sequence[OutputSink],
    settle: float,
    session_id: str,
) -> int:
    logger(f"{PTY_SESSION} {session_id}")
    buffer = OutputBuffer()
    sinks = [stream_sink(logger), buffer.append, *pty_sinks]
    try:
        try:
            process = runner.run_pty(command, sinks)
        except (OSError, EOFError) as e:
            raise PTYError(f"failed to start PTY command: {e}") from e
        registry.register(session_id, process.stdin)
        if step.tty.auto_answer:
            AutoAnswerer(
                session_id,
                step.tty.auto_answer,
                buffer,
                registry,
                variables,
                sleep=sleep,
                initial_settle=settle,
            ).start()
        return process.wait()
    finally:
        registry.close(session_id)
        logger(f"{PTY_END} {session_id}")
