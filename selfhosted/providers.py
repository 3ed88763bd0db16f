"""Cloud provider adapters.

Each adapter drives its provider's official CLI (``doctl``, ``vultr-cli``) and
exposes the same small surface: catalog listing, server lifecycle and DNS.
"""

import base64
import binascii
import hashlib
import json
import os
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .config import get_env
from .errors import CommandError, ConfigurationError, ProvisioningError, ReadinessTimeoutError
from .utils import get_root_domain, get_subdomain, log, run_cmd, run_cmd_json

SERVER_WAIT_TIMEOUT = 300
SERVER_WAIT_INTERVAL = 5


@dataclass(frozen=True)
class Region:
    slug: str
    name: str


@dataclass(frozen=True)
class Size:
    slug: str
    vcpus: int
    memory_mb: int
    disk_gb: int = 0
    price_monthly: float = 0.0
    price_hourly: float = 0.0


@dataclass(frozen=True)
class Specs:
    cpus: int = 0
    memory_mb: int = 0
    disk_gb: int = 0


@dataclass(frozen=True)
class Server:
    id: str
    name: str
    ip: str
    status: str


@dataclass
class DeployConfig:
    name: str
    region: str
    size: str
    ssh_public_key: str
    image: str = ""
    domain: str = ""
    tags: list[str] = field(default_factory=list)


class Provider(Protocol):
    name: str
    description: str
    default_region: str

    def configure(self, settings: dict[str, str]) -> None: ...

    def needs_config(self) -> bool: ...

    def list_regions(self) -> list[Region]: ...

    def list_sizes(self) -> list[Size]: ...

    def get_size_for_specs(self, specs: Specs, region: str | None = None) -> str: ...

    def create_server(self, config: DeployConfig) -> Server: ...

    def wait_for_server(self, server_id: str) -> Server: ...

    def destroy_server(self, server_id: str) -> None: ...

    def setup_dns(self, domain: str, ip: str) -> None: ...


@runtime_checkable
class RegionalSizes(Protocol):
    def list_sizes_for_region(self, region: str) -> list[Size]: ...


def pick_best_size(sizes: Iterable[Size], specs: Specs) -> Size:
    """Cheapest size meeting the CPU and memory minimums; first one wins ties.

    :raises ProvisioningError: "no matching size" if none qualifies
    """
    best = None
    for size in sizes:
        if size.vcpus < specs.cpus or size.memory_mb < specs.memory_mb:
            continue
        if best is None or size.price_monthly < best.price_monthly:
            best = size
    if best is None:
        raise ProvisioningError(
            f"no matching size for {specs.cpus} CPUs, {specs.memory_mb}MB RAM"
        )
    return best


def list_sizes(provider: Provider, region: str | None = None) -> list[Size]:
    """Region-scoped sizes when the provider supports them, else all sizes."""
    if region and isinstance(provider, RegionalSizes):
        return provider.list_sizes_for_region(region)
    return provider.list_sizes()


def ssh_key_fingerprint(public_key: str) -> str:
    """MD5 fingerprint (``ab:cd:...``) of an OpenSSH public key."""
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise ConfigurationError("invalid SSH public key format")
    try:
        decoded = base64.b64decode(parts[1])
    except binascii.Error as e:
        raise ConfigurationError(f"failed to decode SSH public key: {e}") from e
    digest = hashlib.md5(decoded).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, 32, 2))


def poll_server(
    fetch: Callable[[], Server | None],
    server_id: str,
    *,
    timeout: float = SERVER_WAIT_TIMEOUT,
    interval: float = SERVER_WAIT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> Server:
    """Call ``fetch`` until it returns an active server with an IP.

    :raises ReadinessTimeoutError: after ``timeout`` seconds
    """
    waited = 0.0
    while True:
        server = fetch()
        if server is not None and server.status == "active" and server.ip:
            return server
        if waited >= timeout:
            raise ReadinessTimeoutError(f"server {server_id} not ready after {int(timeout)}s")
        sleep(interval)
        waited += interval


class DigitalOceanProvider:
    name = "digitalocean"
    description = "DigitalOcean - Simple cloud hosting"
    default_region = "fra1"
    default_image = "ubuntu-22-04-x64"

    def __init__(self, token: str = "", *, sleep: Callable[[float], None] = time.sleep):
        self.token = token
        self.sleep = sleep

    def configure(self, settings: dict[str, str]) -> None:
        token = settings.get("token", "").strip()
        if not token:
            raise ConfigurationError("token invalid or missing")
        self.token = token

    def _token(self) -> str:
        return self.token or get_env("DIGITALOCEAN_TOKEN", "DO_TOKEN")

    def needs_config(self) -> bool:
        return not self._token()

    def _doctl(self, *args, json_output: bool = True):
        token = self._token()
        if not token:
            raise ConfigurationError("DIGITALOCEAN_TOKEN or DO_TOKEN environment variable required")
        env = {**os.environ, "DIGITALOCEAN_ACCESS_TOKEN": token}
        try:
            if json_output:
                return run_cmd_json("doctl", *args, env=env)
            return run_cmd("doctl", *args, env=env)
        except CommandError as e:
            raise ProvisioningError(f"doctl {' '.join(args[:3])} failed: {e.stderr.strip()}") from e
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"doctl {' '.join(args[:3])} returned invalid JSON: {e}") from e

    def list_regions(self) -> list[Region]:
        regions = self._doctl("compute", "region", "list")
        return [Region(slug=r["slug"], name=r["name"]) for r in regions if r.get("available")]

    def list_sizes(self) -> list[Size]:
        sizes = self._doctl("compute", "size", "list")
        return [
            Size(
                slug=s["slug"],
                vcpus=s["vcpus"],
                memory_mb=s["memory"],
                disk_gb=s.get("disk", 0),
                price_monthly=float(s.get("price_monthly", 0)),
                price_hourly=float(s.get("price_hourly", 0)),
            )
            for s in sizes
            if s.get("available", True)
        ]

    def get_size_for_specs(self, specs: Specs, region: str | None = None) -> str:
        return pick_best_size(self.list_sizes(), specs).slug

    def _ensure_ssh_key(self, public_key: str) -> str:
        fingerprint = ssh_key_fingerprint(public_key)
        keys = self._doctl("compute", "ssh-key", "list")
        existing = next((k for k in keys if k["fingerprint"] == fingerprint), None)
        if existing:
            log(f"Found matching SSH key in DigitalOcean: {existing['name']}")
            return str(existing["id"])

        key_name = f"selfhosted-{fingerprint[-8:].replace(':', '')}"
        log("Uploading SSH key to DigitalOcean...")
        self._doctl("compute", "ssh-key", "create", key_name, "--public-key", public_key.strip())
        keys = self._doctl("compute", "ssh-key", "list")
        uploaded = next((k for k in keys if k["fingerprint"] == fingerprint), None)
        if not uploaded:
            raise ProvisioningError("Failed to upload SSH key")
        return str(uploaded["id"])

    @staticmethod
    def _public_ip(droplet: dict) -> str:
        return next(
            (
                n["ip_address"]
                for n in droplet.get("networks", {}).get("v4", [])
                if n["type"] == "public"
            ),
            "",
        )

    def _to_server(self, droplet: dict) -> Server:
        return Server(
            id=str(droplet["id"]),
            name=droplet["name"],
            ip=self._public_ip(droplet),
            status=droplet.get("status", ""),
        )

    def create_server(self, config: DeployConfig) -> Server:
        ssh_key_id = self._ensure_ssh_key(config.ssh_public_key)
        args = [
            "compute", "droplet", "create", config.name,
            "--region", config.region,
            "--size", config.size,
            "--image", config.image or self.default_image,
            "--ssh-keys", ssh_key_id,
        ]
        if config.tags:
            args += ["--tag-names", ",".join(config.tags)]
        droplets = self._doctl(*args)
        if not droplets:
            raise ProvisioningError("Failed to find created droplet")
        return self._to_server(droplets[0])

    def _get_server(self, server_id: str) -> Server | None:
        droplets = self._doctl("compute", "droplet", "get", server_id)
        return self._to_server(droplets[0]) if droplets else None

    def wait_for_server(self, server_id: str) -> Server:
        return poll_server(lambda: self._get_server(server_id), server_id, sleep=self.sleep)

    def destroy_server(self, server_id: str) -> None:
        self._doctl("compute", "droplet", "delete", str(server_id), "--force", json_output=False)

    def setup_dns(self, domain: str, ip: str) -> None:
        try:
            self._upsert_a_record(domain, ip)
        except (KeyError, TypeError) as e:
            raise ProvisioningError(f"unexpected doctl DNS output: {e!r}") from e

    def _upsert_a_record(self, domain: str, ip: str) -> None:
        root = get_root_domain(domain) or domain
        name = get_subdomain(domain)
        domains = self._doctl("compute", "domain", "list")
        if not any(d["name"] == root for d in domains):
            log(f"Adding domain '{root}' to DigitalOcean...")
            self._doctl("compute", "domain", "create", root)
            log("Point your domain's nameservers to ns1/ns2/ns3.digitalocean.com")

        records = self._doctl("compute", "domain", "records", "list", root)
        existing = [r for r in records if r["type"] == "A" and r["name"] == name]
        if existing:
            self._doctl(
                "compute", "domain", "records", "update", root,
                "--record-id", str(existing[0]["id"]),
                "--record-data", ip,
            )
        else:
            self._doctl(
                "compute", "domain", "records", "create", root,
                "--record-type", "A",
                "--record-name", name,
                "--record-data", ip,
                "--record-ttl", "300",
            )


class VultrProvider:
    name = "vultr"
    description = "Vultr - High performance cloud compute"
    default_region = "fra"

    # Ubuntu 22.04 x64
    DEFAULT_OS_ID = 1743

    def __init__(self, api_key: str = "", *, sleep: Callable[[float], None] = time.sleep):
        self.api_key = api_key
        self.sleep = sleep

    def configure(self, settings: dict[str, str]) -> None:
        api_key = settings.get("api_key", "").strip()
        if not api_key:
            raise ConfigurationError("api_key invalid or missing")
        self.api_key = api_key

    def _api_key(self) -> str:
        return self.api_key or get_env("VULTR_API_KEY")

    def needs_config(self) -> bool:
        return not self._api_key()

    def _cli(self, *args, json_output: bool = True):
        api_key = self._api_key()
        if not api_key:
            raise ConfigurationError("VULTR_API_KEY environment variable required")
        env = {**os.environ, "VULTR_API_KEY": api_key}
        try:
            if json_output:
                return run_cmd_json("vultr-cli", *args, env=env)
            return run_cmd("vultr-cli", *args, env=env)
        except CommandError as e:
            raise ProvisioningError(f"vultr-cli {' '.join(args[:2])} failed: {e.stderr.strip()}") from e
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"vultr-cli {' '.join(args[:2])} returned invalid JSON: {e}") from e

    def list_regions(self) -> list[Region]:
        result = self._cli("regions", "list")
        return [
            Region(slug=r["id"], name=f"{r.get('city', '')}, {r.get('country', '')}".strip(", "))
            for r in result.get("regions") or []
        ]

    def _plans(self) -> list[dict]:
        return self._cli("plans", "list").get("plans") or []

    @staticmethod
    def _to_size(plan: dict) -> Size:
        monthly = float(plan.get("monthly_cost", 0))
        return Size(
            slug=plan["id"],
            vcpus=plan.get("vcpu_count", 0),
            memory_mb=plan.get("ram", 0),
            disk_gb=plan.get("disk", 0),
            price_monthly=monthly,
            price_hourly=round(monthly / 730, 4),
        )

    def list_sizes(self) -> list[Size]:
        return [self._to_size(p) for p in self._plans()]

    def list_sizes_for_region(self, region: str) -> list[Size]:
        return [self._to_size(p) for p in self._plans() if region in (p.get("locations") or [])]

    def get_size_for_specs(self, specs: Specs, region: str | None = None) -> str:
        sizes = self.list_sizes_for_region(region) if region else self.list_sizes()
        return pick_best_size(sizes, specs).slug

    def _ensure_ssh_key(self, public_key: str) -> str:
        keys = self._cli("ssh-key", "list").get("ssh_keys") or []
        match = next((k for k in keys if k["ssh_key"].strip() == public_key.strip()), None)
        if match:
            log(f"Found matching SSH key in Vultr: '{match['name']}'")
            return match["id"]

        fingerprint = ssh_key_fingerprint(public_key)
        key_name = f"selfhosted-{fingerprint[-8:].replace(':', '')}"
        log("Uploading SSH key to Vultr...")
        created = self._cli("ssh-key", "create", "--name", key_name, "--key", public_key.strip())
        key = created.get("ssh_key") or {}
        if not key.get("id"):
            raise ProvisioningError("Failed to upload SSH key")
        return key["id"]

    @staticmethod
    def _to_server(instance: dict) -> Server:
        ip = instance.get("main_ip", "")
        ready = instance.get("status") == "active" and instance.get("server_status") == "ok"
        return Server(
            id=instance["id"],
            name=instance.get("label", ""),
            ip="" if ip == "0.0.0.0" else ip,
            status="active" if ready else instance.get("server_status") or instance.get("status", ""),
        )

    def create_server(self, config: DeployConfig) -> Server:
        ssh_key_id = self._ensure_ssh_key(config.ssh_public_key)
        args = [
            "instance", "create",
            "--region", config.region,
            "--plan", config.size,
            "--os", config.image or str(self.DEFAULT_OS_ID),
            "--label", config.name,
            "--host", config.name,
            "--ssh-keys", ssh_key_id,
        ]
        if config.tags:
            args += ["--tags", ",".join(config.tags)]
        result = self._cli(*args)
        instance = result.get("instance")
        if not instance:
            raise ProvisioningError("Failed to find created instance")
        return self._to_server(instance)

    def _get_server(self, server_id: str) -> Server | None:
        instance = self._cli("instance", "get", server_id).get("instance")
        return self._to_server(instance) if instance else None

    def wait_for_server(self, server_id: str) -> Server:
        return poll_server(lambda: self._get_server(server_id), server_id, sleep=self.sleep)

    def destroy_server(self, server_id: str) -> None:
        self._cli("instance", "delete", server_id, json_output=False)

    def setup_dns(self, domain: str, ip: str) -> None:
        try:
            self._upsert_a_record(domain, ip)
        except (KeyError, TypeError, AttributeError) as e:
            raise ProvisioningError(f"unexpected vultr-cli DNS output: {e!r}") from e

    def _upsert_a_record(self, domain: str, ip: str) -> None:
        root = get_root_domain(domain) or domain
        sub = get_subdomain(domain)
        name = "" if sub == "@" else sub
        domains = self._cli("dns", "domain", "list").get("domains") or []
        if not any(d.get("domain") == root for d in domains):
            log(f"Creating DNS zone for '{root}'...")
            self._cli("dns", "domain", "create", "--domain", root, json_output=False)

        records = self._cli("dns", "record", "list", root).get("records") or []
        existing = [r for r in records if r.get("type") == "A" and r.get("name") == name]
        if existing:
            self._cli(
                "dns", "record", "update", root, str(existing[0]["id"]),
                "--data", ip,
                json_output=False,
            )
        else:
            self._cli(
                "dns", "record", "create", root,
                "--type", "A", "--name", name, "--data", ip, "--ttl", "300",
                json_output=False,
            )


ProviderFactory = Callable[[], Provider]


class ProviderRegistry:
    """Provider adapter factories by name, built once at startup.

    ``get`` builds a new adapter on every call, so credentials set with
    ``configure`` stay with the deployment that set them.
    """

    def __init__(self, factories: Iterable[ProviderFactory] = ()):
        self._factories: dict[str, ProviderFactory] = {}
        for factory in factories:
            self.register(factory)

    def register(self, factory: ProviderFactory, name: str | None = None) -> None:
        self._factories[name or factory.name] = factory

    def get(self, name: str) -> Provider:
        factory = self._factories.get(name)
        if factory is None:
            available = ", ".join(sorted(self._factories)) or "none"
            raise ConfigurationError(f"unknown provider: {name}. Available: {available}")
        return factory()

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __iter__(self):
        return iter(self.get(name) for name in self.names())


def default_providers() -> ProviderRegistry:
    return ProviderRegistry([DigitalOceanProvider, VultrProvider])
