"""
Tests for size selection, readiness polling and the CLI-backed adapters.
"""

import base64
import hashlib
import json
from unittest.mock import patch

import pytest

from selfhosted.errors import (
    CommandError,
    ConfigurationError,
    ProvisioningError,
    ReadinessTimeoutError,
)
from selfhosted.providers import (
    DeployConfig,
    DigitalOceanProvider,
    ProviderRegistry,
    Server,
    Size,
    Specs,
    VultrProvider,
    list_sizes,
    pick_best_size,
    poll_server,
    ssh_key_fingerprint,
)

from conftest import PUBLIC_KEY, FakeProvider

SIZES = [
    Size(slug="s1", vcpus=1, memory_mb=1024, price_monthly=5),
    Size(slug="s2", vcpus=2, memory_mb=2048, price_monthly=10),
    Size(slug="s4", vcpus=4, memory_mb=4096, price_monthly=20),
]


# ── Size selection ──────────────────────────────────────────────────


class TestPickBestSize:
    def test_cheapest_that_fits(self):
        assert pick_best_size(SIZES, Specs(cpus=2, memory_mb=2048)).slug == "s2"

    def test_no_match(self):
        with pytest.raises(ProvisioningError, match="no matching size"):
            pick_best_size(SIZES, Specs(cpus=8, memory_mb=0))

    def test_first_wins_ties(self):
        sizes = [Size(slug="a", vcpus=2, memory_mb=2048, price_monthly=10),
                 Size(slug="b", vcpus=4, memory_mb=4096, price_monthly=10)]
        assert pick_best_size(sizes, Specs(cpus=1, memory_mb=512)).slug == "a"

    def test_memory_also_counts(self):
        assert pick_best_size(SIZES, Specs(cpus=1, memory_mb=3000)).slug == "s4"


def test_list_sizes_uses_region_when_supported():
    vultr = VultrProvider(api_key="k")
    with patch.object(VultrProvider, "list_sizes_for_region", return_value=SIZES[:1]) as regional:
        assert list_sizes(vultr, "fra") == SIZES[:1]
    regional.assert_called_once_with("fra")
    assert list_sizes(FakeProvider(), "fra") == FakeProvider().sizes


def test_ssh_key_fingerprint():
    blob = base64.b64decode(PUBLIC_KEY.split()[1])
    digest = hashlib.md5(blob).hexdigest()
    fingerprint = ssh_key_fingerprint(PUBLIC_KEY)
    assert fingerprint.replace(":", "") == digest
    assert len(fingerprint.split(":")) == 16
    with pytest.raises(ConfigurationError):
        ssh_key_fingerprint("garbage")


class TestPollServer:
    def test_returns_active_server(self):
        states = iter([None, Server("1", "n", "", "new"), Server("1", "n", "1.2.3.4", "active")])
        slept = []
        server = poll_server(lambda: next(states), "1", sleep=slept.append, interval=5)
        assert server.ip == "1.2.3.4"
        assert slept == [5, 5]

    def test_times_out(self):
        with pytest.raises(ReadinessTimeoutError, match="not ready"):
            poll_server(lambda: None, "1", timeout=10, interval=5, sleep=lambda _: None)


# ── DigitalOcean ────────────────────────────────────────────────────


class TestDigitalOcean:
    def test_needs_config_without_token(self, monkeypatch):
        monkeypatch.setattr("selfhosted.providers.get_env", lambda *names: "")
        provider = DigitalOceanProvider()
        assert provider.needs_config()
        provider.configure({"token": "abc"})
        assert not provider.needs_config()

    def test_configure_rejects_empty_token(self):
        with pytest.raises(ConfigurationError):
            DigitalOceanProvider().configure({"token": " "})

    def test_list_sizes(self):
        payload = [
            {"slug": "s-1vcpu-1gb", "vcpus": 1, "memory": 1024, "disk": 25, "price_monthly": 6, "available": True},
            {"slug": "old", "vcpus": 1, "memory": 512, "disk": 20, "price_monthly": 4, "available": False},
        ]
        with patch("selfhosted.providers.run_cmd_json", return_value=payload) as run:
            sizes = DigitalOceanProvider(token="t").list_sizes()
        assert [s.slug for s in sizes] == ["s-1vcpu-1gb"]
        assert run.call_args.args == ("doctl", "compute", "size", "list")
        assert run.call_args.kwargs["env"]["DIGITALOCEAN_ACCESS_TOKEN"] == "t"

    def test_create_server_uses_existing_key(self):
        fingerprint = ssh_key_fingerprint(PUBLIC_KEY)
        droplet = {"id": 42, "name": "app-server", "status": "new", "networks": {"v4": []}}
        responses = {
            ("compute", "ssh-key", "list"): [{"id": 7, "name": "me", "fingerprint": fingerprint}],
            ("compute", "droplet", "create"): [droplet],
        }

        def fake(tool, *args, env=None):
            return responses[args[:3]]

        with patch("selfhosted.providers.run_cmd_json", side_effect=fake) as run:
            server = DigitalOceanProvider(token="t").create_server(
                DeployConfig(name="app-server", region="fra1", size="s-1vcpu-1gb",
                             ssh_public_key=PUBLIC_KEY, tags=["app", "selfhosted"])
            )
        assert server == Server(id="42", name="app-server", ip="", status="new")
        create_args = run.call_args.args
        assert "--ssh-keys" in create_args and "7" in create_args
        assert "app,selfhosted" in create_args

    def test_cli_failure_is_provisioning_error(self):
        with patch("selfhosted.providers.run_cmd_json",
                   side_effect=CommandError(("doctl",), 1, "Unable to authenticate")):
            with pytest.raises(ProvisioningError, match="Unable to authenticate"):
                DigitalOceanProvider(token="t").list_regions()

    def test_wait_for_server_reads_public_ip(self):
        droplet = {"id": 42, "name": "n", "status": "active",
                   "networks": {"v4": [{"type": "private", "ip_address": "10.0.0.2"},
                                       {"type": "public", "ip_address": "203.0.113.5"}]}}
        with patch("selfhosted.providers.run_cmd_json", return_value=[droplet]):
            server = DigitalOceanProvider(token="t", sleep=lambda _: None).wait_for_server("42")
        assert server.ip == "203.0.113.5"

    def test_setup_dns_creates_record(self):
        calls = []

        def fake_json(tool, *args, env=None):
            calls.append(args)
            if args[:3] == ("compute", "domain", "list"):
                return [{"name": "example.com"}]
            return []

        with patch("selfhosted.providers.run_cmd_json", side_effect=fake_json):
            DigitalOceanProvider(token="t").setup_dns("app.example.com", "1.2.3.4")
        create = calls[-1]
        assert create[:5] == ("compute", "domain", "records", "create", "example.com")
        assert "app" in create and "1.2.3.4" in create

    def test_invalid_json_is_provisioning_error(self):
        with patch("selfhosted.providers.run_cmd_json",
                   side_effect=json.JSONDecodeError("Expecting value", "<html>", 0)):
            with pytest.raises(ProvisioningError, match="invalid JSON"):
                DigitalOceanProvider(token="t").setup_dns("app.example.com", "1.2.3.4")

    def test_setup_dns_unexpected_output(self):
        with patch("selfhosted.providers.run_cmd_json", return_value=[{"slug": "example.com"}]):
            with pytest.raises(ProvisioningError, match="unexpected doctl DNS output"):
                DigitalOceanProvider(token="t").setup_dns("app.example.com", "1.2.3.4")


# ── Vultr ───────────────────────────────────────────────────────────


class TestVultr:
    PLANS = {"plans": [
        {"id": "vc2-1c-1gb", "vcpu_count": 1, "ram": 1024, "disk": 25, "monthly_cost": 5, "locations": ["fra"]},
        {"id": "vc2-2c-4gb", "vcpu_count": 2, "ram": 4096, "disk": 80, "monthly_cost": 20, "locations": ["ewr"]},
        {"id": "vc2-4c-8gb", "vcpu_count": 4, "ram": 8192, "disk": 160, "monthly_cost": 40, "locations": ["fra"]},
    ]}

    def test_region_scoped_size_selection(self):
        with patch("selfhosted.providers.run_cmd_json", return_value=self.PLANS):
            provider = VultrProvider(api_key="k")
            assert provider.get_size_for_specs(Specs(cpus=2, memory_mb=2048), "fra") == "vc2-4c-8gb"
            assert provider.get_size_for_specs(Specs(cpus=2, memory_mb=2048)) == "vc2-2c-4gb"

    def test_instance_status(self):
        pending = VultrProvider._to_server(
            {"id": "i1", "label": "x", "main_ip": "0.0.0.0", "status": "active", "server_status": "installingbooting"}
        )
        ready = VultrProvider._to_server(
            {"id": "i1", "label": "x", "main_ip": "1.2.3.4", "status": "active", "server_status": "ok"}
        )
        assert pending.ip == "" and pending.status == "installingbooting"
        assert ready.ip == "1.2.3.4" and ready.status == "active"

    def test_configure(self):
        provider = VultrProvider()
        provider.configure({"api_key": "k"})
        assert provider.api_key == "k"
        with pytest.raises(ConfigurationError):
            provider.configure({})


# ── Registry ────────────────────────────────────────────────────────


class TestProviderRegistry:
    def test_get_and_names(self):
        registry = ProviderRegistry([FakeProvider, VultrProvider])
        assert registry.names() == ["fakecloud", "vultr"]
        assert registry.get("vultr").name == "vultr"
        assert [p.name for p in registry] == ["fakecloud", "vultr"]

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="unknown provider: aws. Available: fakecloud"):
            ProviderRegistry([FakeProvider]).get("aws")

    def test_get_builds_a_fresh_adapter(self, monkeypatch):
        monkeypatch.setattr("selfhosted.providers.get_env", lambda *names: "")
        registry = ProviderRegistry([DigitalOceanProvider])
        first = registry.get("digitalocean")
        first.configure({"token": "tenant-a"})
        second = registry.get("digitalocean")
        assert second is not first
        assert second.needs_config()

    def test_explicit_name(self):
        registry = ProviderRegistry()
        registry.register(lambda: VultrProvider(api_key="k"), name="vultr-eu")
        assert registry.names() == ["vultr-eu"]
        assert registry.get("vultr-eu").api_key == "k"
