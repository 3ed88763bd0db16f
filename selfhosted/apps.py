"""Installable applications.

Most apps are plain installer specs bundled under ``selfhosted/specs`` and
listed in ``specs/apps.yaml``; ``DSLApp`` adapts a spec to the ``App``
contract the deployer works with. Apps written in Python can be registered
alongside and take precedence over a bundled spec of the same name.
"""

from collections.abc import Callable, Iterable
from importlib import resources
from typing import Protocol

import yaml

from .dns_providers import DNSRecord
from .errors import ConfigurationError, SpecError
from .executor import InstallConfig, RemoteRunner, run_phase
from .providers import Specs
from .spec import (
    DEFAULT_CPUS,
    DEFAULT_DISK_GB,
    DEFAULT_DOMAIN_HINT,
    DEFAULT_RAM_MB,
    InstallerSpec,
    WizardQuestion,
    load_spec,
)
from .templates import render_template

Logger = Callable[[str], None]


class App(Protocol):
    name: str
    description: str
    domain_hint: str

    def min_specs(self) -> Specs: ...

    def install(self, config: InstallConfig, runner: RemoteRunner, logger: Logger, **kwargs) -> None: ...

    def setup_ssl(self, config: InstallConfig, runner: RemoteRunner, logger: Logger, **kwargs) -> None: ...

    def summary(self, ip: str, domain: str) -> list[str]: ...

    def should_setup_dns(self, mode: str, provider_name: str, detected_dns: str) -> bool: ...

    def dns_records(self, domain: str, server_ip: str) -> list[DNSRecord]: ...

    def wizard_questions(self) -> list[WizardQuestion]: ...


def should_setup_dns(app: App, mode: str, provider_name: str, detected_dns: str) -> bool:
    """Apply the DNS mode; ``auto`` defers to the app's own policy."""
    mode = (mode or "auto").strip().lower()
    if mode == "skip":
        return False
    if mode in ("force", "cloudflare"):
        return True
    return app.should_setup_dns(mode, provider_name, detected_dns)


class DSLApp:
    def __init__(self, spec: InstallerSpec):
        self.spec = spec

    @property
    def name(self) -> str:
        return self.spec.app or "unknown"

    @property
    def description(self) -> str:
        return self.spec.description or self.name

    @property
    def domain_hint(self) -> str:
        return self.spec.domain_hint or DEFAULT_DOMAIN_HINT

    def min_specs(self) -> Specs:
        hw = self.spec.min_spec
        return Specs(
            cpus=hw.cpu or DEFAULT_CPUS,
            memory_mb=hw.ram_mb or DEFAULT_RAM_MB,
            disk_gb=hw.disk_gb or DEFAULT_DISK_GB,
        )

    def install(self, config: InstallConfig, runner: RemoteRunner, logger: Logger, **kwargs) -> None:
        run_phase(self.spec, runner, config, "install", logger=logger, **kwargs)

    def setup_ssl(self, config: InstallConfig, runner: RemoteRunner, logger: Logger, **kwargs) -> None:
        run_phase(self.spec, runner, config, "ssl", logger=logger, **kwargs)

    def summary(self, ip: str, domain: str) -> list[str]:
        return [
            f"🎉 {self.name} installation complete",
            f"🌐 Domain: {domain}",
            f"🔗 URL: https://{domain}",
            f"🔑 SSH: ssh root@{ip}",
        ]

    def should_setup_dns(self, mode: str, provider_name: str, detected_dns: str) -> bool:
        # Only touch provider DNS when the zone is already hosted there
        provider = provider_name.strip().lower()
        detected = detected_dns.strip().lower()
        if detected and provider and detected != provider:
            return False
        return True

    def dns_records(self, domain: str, server_ip: str) -> list[DNSRecord]:
        variables = {"{opts.Domain}": domain, "{opts.ServerIP}": server_ip}
        records = []
        for r in self.spec.dns_records:
            rtype = r.type.strip().upper() or "A"
            name = render_template(r.name, variables).strip()
            content = render_template(r.content, variables).strip()
            if name in ("", "@"):
                name = domain
            elif "." not in name:
                name = f"{name}.{domain}"
            if not content and rtype in ("A", "AAAA"):
                content = server_ip
            records.append(DNSRecord(type=rtype, name=name, content=content, ttl=r.ttl, proxied=r.proxied))
        return records

    def wizard_questions(self) -> list[WizardQuestion]:
        return list(self.spec.wizard_questions)


class AppRegistry:
    """Installable apps by name, built once at startup."""

    def __init__(self, apps: Iterable[App] = ()):
        self._apps: dict[str, App] = {}
        for app in apps:
            self.register(app)

    def register(self, app: App) -> None:
        self._apps[app.name] = app

    def register_default(self, app: App) -> None:
        """Register unless an app of the same name is already present."""
        self._apps.setdefault(app.name, app)

    def get(self, name: str) -> App:
        app = self._apps.get(name)
        if app is None:
            raise ConfigurationError(f"unknown app: {name}")
        return app

    def names(self) -> list[str]:
        return sorted(self._apps)

    def __iter__(self):
        return iter(self._apps[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._apps)


def load_apps_index(index_text: str, read: Callable[[str], str], registry: AppRegistry) -> AppRegistry:
    """Register every spec file listed under ``apps:`` in ``index_text``.

    :raises SpecError: bad index, unreadable or invalid spec, or a spec without ``app``
    """
    index = yaml.safe_load(index_text) or {}
    if not isinstance(index, dict) or set(index) - {"apps"}:
        raise SpecError("apps registry: apps.yaml must contain only an 'apps' list")
    filenames = [str(f).strip() for f in index.get("apps") or [] if str(f).strip()]
    if not filenames:
        raise SpecError("apps registry: apps.yaml has no entries")

    for filename in filenames:
        try:
            text = read(filename)
        except OSError as e:
            raise SpecError(f"apps registry: read {filename}: {e}") from e
        try:
            spec = load_spec(text)
        except SpecError as e:
            raise SpecError(f"apps registry: parse {filename}: {e}") from e
        if not spec.app:
            raise SpecError(f"apps registry: {filename} has no 'app' name")
        registry.register_default(DSLApp(spec))
    return registry


def default_apps(extra: Iterable[App] = ()) -> AppRegistry:
    """Registry of ``extra`` apps plus every bundled spec."""
    registry = AppRegistry(extra)
    specs_dir = resources.files("selfhosted") / "specs"
    return load_apps_index(
        (specs_dir / "apps.yaml").read_text(),
        lambda name: (specs_dir / name).read_text(),
        registry,
    )
