"""Exception hierarchy for deployments.

Fatal errors abort a deployment and are surfaced to the caller; DNS and SSL
errors are reported as warnings and never change the final outcome.
"""


class SelfhostedError(Exception):
    """Base class for all errors raised by selfhosted."""


class ConfigurationError(SelfhostedError):
    """Missing credentials, unknown app/provider or bad options."""


class SpecError(ConfigurationError):
    """Malformed installer spec document."""


class CommandError(SelfhostedError):
    """A local CLI tool (doctl, vultr-cli) exited non-zero."""

    def __init__(self, args: tuple, returncode: int, stderr: str):
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Command failed ({args[0]}, exit {returncode}): {stderr.strip()}")


class ProvisioningError(SelfhostedError):
    """Provider API failure while creating or destroying a server."""


class ReadinessTimeoutError(SelfhostedError):
    """Server or SSH never became reachable."""


class DNSError(SelfhostedError):
    """DNS detection or record creation failed."""


class InstallStepError(SelfhostedError):
    """A step's remote command exited non-zero."""

    def __init__(self, step: str, exit_code: int | None, detail: str = ""):
        self.step = step
        self.exit_code = exit_code
        msg = f"step '{step}' failed"
        if exit_code is not None:
            msg += f" (exit {exit_code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class SSLSetupError(SelfhostedError):
    pass


class ConnectionLostError(SelfhostedError):
    """The SSH transport failed while a command was running."""


class PTYError(SelfhostedError):
    """PTY allocation failed or the session's input pipe broke."""


class PTYSessionError(PTYError):
    pass


class DeploymentError(SelfhostedError):
    """A fatal phase error; ``cause`` is the original error."""

    def __init__(self, phase: str, cause: Exception):
        self.phase = phase
        self.cause = cause
        super().__init__(f"{phase} failed: {cause}")
