"""Console helpers and small parsers shared across modules."""

import json
import re
import subprocess
import sys
from datetime import timedelta

from rich import print
from rich.console import Console

from .errors import CommandError

console = Console(markup=False, highlight=False, soft_wrap=True)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def log(msg: str):
    print(f"[green][INFO][/green] {msg}")


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {msg}")


def error(msg: str):
    print(f"[red][ERROR][/red] {msg}")
    sys.exit(1)


def echo(line: str):
    """Print a raw progress line; brackets are not treated as markup."""
    console.print(line)


def run_cmd(*args, env: dict | None = None) -> str:
    result = subprocess.run(args, capture_output=True, text=True, env=env)
    if result.returncode != 0:
        raise CommandError(args, result.returncode, result.stderr)
    return result.stdout.strip()


def run_cmd_json(*args, env: dict | None = None) -> dict | list:
    """Appends ``-o json`` flag and parses output."""
    output = run_cmd(*args, "-o", "json", env=env)
    return json.loads(output) if output else []


def parse_duration(value: str) -> timedelta:
    """Parse a step ``sleep`` value.

    Bare integers are seconds; otherwise one or more ``<number><unit>`` parts
    with units ``h``, ``m``, ``s`` or ``ms`` (``10s``, ``1m30s``).

    :raises ValueError: on empty or malformed input
    """
    text = value.strip().lower()
    if not text:
        raise ValueError("invalid sleep duration")
    if text.endswith(("s", "m", "h")):
        pos = 0
        total = timedelta()
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            amount = float(match.group(1))
            unit = match.group(2)
            if unit == "h":
                total += timedelta(hours=amount)
            elif unit == "m":
                total += timedelta(minutes=amount)
            elif unit == "s":
                total += timedelta(seconds=amount)
            else:
                total += timedelta(milliseconds=amount)
            pos = match.end()
        if pos == len(text):
            return total
        raise ValueError(f"invalid sleep duration: {value}")
    try:
        return timedelta(seconds=int(text))
    except ValueError:
        raise ValueError(f"invalid sleep duration: {value}") from None


def _split_size(value: str) -> tuple[float, str]:
    text = value.strip().lower().replace(" ", "")
    match = re.fullmatch(r"(\d+(?:\.\d+)?)(gib|gb|mib|mb)?", text)
    if not match:
        raise ValueError(f"invalid size: {value!r}")
    return float(match.group(1)), match.group(2) or ""


def parse_size_to_mb(value: str) -> int:
    """``2GB`` -> 2048, ``512MB`` -> 512; bare numbers are MB."""
    amount, unit = _split_size(value)
    if unit in ("gb", "gib"):
        amount *= 1024
    return int(amount)


def parse_size_to_gb(value: str) -> int:
    """``2048MB`` -> 2, ``80GB`` -> 80; bare numbers are GB."""
    amount, unit = _split_size(value)
    if unit in ("mb", "mib"):
        amount /= 1024
    return int(amount)


def sanitize_hostname(name: str) -> str:
    """Reduce ``name`` to a DNS-safe label of at most 63 characters."""
    label = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return label[:63].strip("-")


def get_root_domain(domain: str) -> str:
    """``xyz.example.com`` -> ``example.com``; empty when there is no dot."""
    parts = domain.strip().rstrip(".").split(".")
    if len(parts) < 2:
        return ""
    return ".".join(parts[-2:])


def get_subdomain(domain: str) -> str:
    """``app.example.com`` -> ``app``; ``@`` for a root domain."""
    parts = domain.strip().rstrip(".").split(".")
    if len(parts) > 2:
        return ".".join(parts[:-2])
    return "@"
