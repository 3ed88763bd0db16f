"""Environment-driven configuration.

Values come from the process environment, optionally seeded from a ``.env``
file in the working directory.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

PROVIDER_ENV = "SELFHOSTED_PROVIDER"
DEFAULT_PROVIDER = "digitalocean"
CLOUDFLARE_TOKEN_ENV = "CLOUDFLARE_API_TOKEN"

PRIVATE_KEY_NAMES = ["id_ed25519", "id_rsa", "id_ecdsa"]

_env_loaded = False


def load_env() -> None:
    global _env_loaded
    if not _env_loaded:
        load_dotenv()
        _env_loaded = True


def get_env(*names: str) -> str:
    """:return: value of the first non-empty variable among ``names``, or ''"""
    load_env()
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return ""


def default_provider_name() -> str:
    return get_env(PROVIDER_ENV) or DEFAULT_PROVIDER


def load_ssh_keys(
    private_path: str | None = None, public_path: str | None = None
) -> tuple[str, str]:
    """Read an SSH key pair.

    Explicit paths win, and a lone explicit half is paired with its sibling
    (``key`` and ``key.pub``). Otherwise the first name in ``~/.ssh`` with both
    halves present is used.

    :return: (private_key, public_key)
    :raises ConfigurationError: if either half cannot be found or read
    """
    if private_path and not public_path:
        public_path = f"{private_path}.pub"
    elif public_path and not private_path and public_path.endswith(".pub"):
        private_path = public_path[: -len(".pub")]

    if private_path and public_path:
        return _read_key(private_path), _read_key(public_path).strip()

    ssh_dir = Path.home() / ".ssh"
    for name in PRIVATE_KEY_NAMES:
        priv = ssh_dir / name
        pub = ssh_dir / f"{name}.pub"
        if priv.exists() and pub.exists():
            return _read_key(str(priv)), _read_key(str(pub)).strip()

    raise ConfigurationError(
        "SSH keys not found. Pass --ssh-key and --ssh-pub "
        f"(tried ~/.ssh/{{{','.join(PRIVATE_KEY_NAMES)}}})"
    )


def _read_key(path: str) -> str:
    try:
        return Path(path).expanduser().read_text()
    except OSError as e:
        raise ConfigurationError(f"Failed to read SSH key '{path}': {e}") from e
