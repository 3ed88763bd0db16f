"""
Tests for phase selection and step execution.
"""

import base64

import pytest

from selfhosted.errors import InstallStepError, PTYError, SpecError
from selfhosted.executor import (
    InstallConfig,
    build_run_command,
    run_phase,
    select_steps,
    shell_quote,
)
from selfhosted.pty import PTY_END, PTY_OUTPUT, PTY_SESSION
from selfhosted.spec import load_spec

from conftest import FakeRunner


def no_sleep(_seconds):
    pass


def config(**kwargs) -> InstallConfig:
    return InstallConfig(domain="app.example.com", server_ip="203.0.113.10", **kwargs)


def run(spec, runner, cfg, phase, registry, **kwargs):
    lines = []
    run_phase(
        spec, runner, cfg, phase,
        logger=lines.append, registry=registry, sleep=no_sleep,
        auto_answer_settle=0, session_ids=lambda: "sess-1", **kwargs,
    )
    return lines


# ── Command construction ────────────────────────────────────────────


class TestBuildRunCommand:
    def test_wraps_in_bash_with_set_e(self):
        assert build_run_command("echo hi") == "bash -lc 'set -e\necho hi'"

    def test_escapes_single_quotes(self):
        assert build_run_command("echo 'x'") == "bash -lc 'set -e\necho '\\''x'\\'''"

    def test_empty_script(self):
        assert build_run_command("  \n") == ""

    def test_shell_quote(self):
        assert shell_quote("it's") == "'it'\\''s'"


# ── Phase selection ─────────────────────────────────────────────────

ABC_SPEC = """
app: abc
steps:
  - run: A
  - if: x
    run: B
  - run: C
"""


class TestSelectSteps:
    def test_install_phase_skips_guarded(self):
        spec = load_spec(ABC_SPEC)
        assert [s.run for s in select_steps(spec.steps, "install", {"x": True})] == ["A", "C"]

    def test_ssl_phase_requires_true_guard(self):
        spec = load_spec(ABC_SPEC)
        assert [s.run for s in select_steps(spec.steps, "ssl", {"x": True})] == ["B"]
        assert select_steps(spec.steps, "ssl", {}) == []

    def test_install_runs_a_then_c(self, registry):
        runner = FakeRunner()
        run(load_spec(ABC_SPEC), runner, config(), "install", registry)
        assert runner.commands == [build_run_command("A"), build_run_command("C")]


# ── Plain steps ─────────────────────────────────────────────────────


class TestRunPhase:
    def test_renders_commands_and_logs(self, sample_spec, registry):
        runner = FakeRunner()
        lines = run(sample_spec, runner, config(), "install", registry)
        assert runner.commands[0] == build_run_command("echo install app.example.com")
        assert "⏳ Install" in lines
        assert "⏳ Start" in lines
        assert "⏳ Certificates" not in lines

    def test_ssl_phase_uses_email_guard(self, sample_spec, registry):
        runner = FakeRunner()
        run(sample_spec, runner, config(enable_ssl=True, email="me@example.com"), "ssl", registry)
        assert runner.commands == [build_run_command("certbot -d app.example.com -m me@example.com")]

        runner = FakeRunner()
        run(sample_spec, runner, config(enable_ssl=True), "ssl", registry)
        assert runner.commands == []

    def test_failure_stops_phase(self, sample_spec, registry):
        runner = FakeRunner(exit_codes={"echo install": 3})
        with pytest.raises(InstallStepError) as exc:
            run(sample_spec, runner, config(), "install", registry)
        assert exc.value.step == "Install"
        assert exc.value.exit_code == 3
        assert len(runner.commands) == 1

    def test_lost_connection_names_the_step(self, sample_spec, registry):
        runner = FakeRunner(raise_on={"echo install": ConnectionResetError("reset by peer")})
        with pytest.raises(InstallStepError, match="connection lost: reset by peer") as exc:
            run(sample_spec, runner, config(), "install", registry)
        assert exc.value.step == "Install"
        assert exc.value.exit_code is None

    def test_sleep_and_log_steps(self, registry):
        spec = load_spec("app: x\nsteps:\n  - name: Wait\n    sleep: 2m\n    log: 'Waiting on {opts.Domain}'\n")
        slept, lines = [], []
        run_phase(spec, FakeRunner(), config(), "install", logger=lines.append, registry=registry,
                  sleep=slept.append)
        assert slept == [120.0]
        assert lines == ["⏳ Wait", "Waiting on app.example.com"]

    def test_bad_sleep_is_spec_error(self, registry):
        spec = load_spec("app: x\nsteps:\n  - sleep: soon\n")
        with pytest.raises(SpecError, match="step 1"):
            run(spec, FakeRunner(), config(), "install", registry)

    def test_wizard_answers_render(self, registry):
        spec = load_spec("app: x\nsteps:\n  - run: setup --plan {opts.plan}\n")
        runner = FakeRunner()
        run(spec, runner, config(extra_vars={"{opts.plan}": "pro"}), "install", registry)
        assert runner.commands == [build_run_command("setup --plan pro")]


# ── Interactive steps ───────────────────────────────────────────────

TTY_SPEC = """
app: tui
steps:
  - name: Installer
    run: ./install.sh {opts.Domain}
    tty:
      auto_answer:
        - wait_for: "Continue?"
          value: "true"
          timeout_ms: 2000
        - value: "{opts.Domain}"
"""


class TestTTYSteps:
    def test_session_lifecycle_and_answers(self, registry):
        runner = FakeRunner(pty_output=b"\x1b[1mContinue?\x1b[0m (y/n)", expect_writes=2)
        lines = run(load_spec(TTY_SPEC), runner, config(), "install", registry)

        assert runner.pty_commands == [build_run_command("./install.sh app.example.com")]
        assert runner.commands == []
        assert lines[1] == f"{PTY_SESSION} sess-1"
        assert lines[-1] == f"{PTY_END} sess-1"
        chunks = [base64.b64decode(line.split(" ", 1)[1]) for line in lines if line.startswith(PTY_OUTPUT)]
        assert chunks == [b"\x1b[1mContinue?\x1b[0m (y/n)"]

        stdin = runner.ptys[0].stdin
        assert stdin.writes == [b"y\r", b"app.example.com\r"]
        assert stdin.closed
        assert "sess-1" not in registry

    def test_non_zero_exit_fails_and_deregisters(self, registry):
        spec = load_spec("app: x\nsteps:\n  - name: TUI\n    run: ./tui\n    tty: true\n")
        runner = FakeRunner(pty_exit=1)
        with pytest.raises(InstallStepError, match="TUI"):
            run(spec, runner, config(), "install", registry)
        assert "sess-1" not in registry
        assert runner.ptys[0].stdin.closed

    def test_extra_sinks_receive_output(self, registry):
        spec = load_spec("app: x\nsteps:\n  - run: ./tui\n    tty: true\n")
        seen = []
        run(spec, FakeRunner(pty_output=b"hello"), config(), "install", registry, pty_sinks=[seen.append])
        assert seen == [b"hello"]

    def test_pty_start_failure_propagates(self, registry):
        class BrokenRunner(FakeRunner):
            def run_pty(self, command, sinks):
                raise PTYError("no pty")

        spec = load_spec("app: x\nsteps:\n  - run: ./tui\n    tty: true\n")
        lines = []
        with pytest.raises(PTYError):
            run_phase(spec, BrokenRunner(), config(), "install", logger=lines.append,
                      registry=registry, session_ids=lambda: "s9")
        assert lines[-1] == f"{PTY_END} s9"
