"""End-to-end deployment of one app to one new server.

Phases run in a fixed order: provision, DNS, SSH-wait, install, SSL,
summary. Provisioning, SSH-wait and install failures abort the deployment
with a ``DeploymentError``; DNS and SSL failures are reported as warnings
through the logger and the deployment still succeeds.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .apps import App, AppRegistry, should_setup_dns
from .config import CLOUDFLARE_TOKEN_ENV, get_env, load_ssh_keys
from .dns_providers import CloudflareClient, DNSProviderInfo, DNSRecord, detect_dns_provider
from .errors import (
    ConfigurationError,
    DeploymentError,
    SelfhostedError,
    SSLSetupError,
)
from .executor import InstallConfig, RemoteRunner
from .providers import DeployConfig, Provider, ProviderRegistry, Server
from .pty import OutputSink
from .pty_sessions import PTYSessionRegistry, sessions
from .ssh import SSHRunner, wait_for_ssh
from .templates import wizard_answer_vars
from .utils import echo, sanitize_hostname

Logger = Callable[[str], None]

DNS_MODES = ("auto", "force", "skip", "cloudflare")
AUTO_SIZE = "auto"


@dataclass
class DeployOptions:
    app_name: str
    provider_name: str
    domain: str
    region: str = ""
    size: str = AUTO_SIZE
    deploy_name: str = ""
    ssh_key_path: str = ""
    ssh_pub_path: str = ""
    ssh_private_key: str = ""
    ssh_public_key: str = ""
    provider_settings: dict[str, str] = field(default_factory=dict)
    enable_ssl: bool = True
    email: str = ""
    ssl_private_key_file: str = ""
    ssl_certificate_crt: str = ""
    http_to_https_redirection: bool = False
    dns_mode: str = "auto"
    cloudflare_token: str = ""
    cloudflare_proxied: bool = True
    wizard_answers: dict[str, object] = field(default_factory=dict)

    @property
    def ssl_requested(self) -> bool:
        return bool(
            (self.enable_ssl and self.email.strip())
            or self.ssl_private_key_file.strip()
            or self.ssl_certificate_crt.strip()
            or self.http_to_https_redirection
        )


class Deployer:
    """Runs deployments against injected provider and app registries.

    Holds no state between calls, so one instance can serve concurrent
    deployments.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        apps: AppRegistry,
        *,
        logger: Logger = echo,
        runner_factory: Callable[..., RemoteRunner] = SSHRunner,
        ssh_waiter: Callable[[str], None] = wait_for_ssh,
        dns_detector: Callable[[str], DNSProviderInfo] = detect_dns_provider,
        cloudflare_factory: Callable[[str], CloudflareClient] = CloudflareClient,
        registry: PTYSessionRegistry = sessions,
        pty_sinks: Sequence[OutputSink] = (),
    ):
        self.providers = providers
        self.apps = apps
        self.logger = logger
        self.runner_factory = runner_factory
        self.ssh_waiter = ssh_waiter
        self.dns_detector = dns_detector
        self.cloudflare_factory = cloudflare_factory
        self.registry = registry
        self.pty_sinks = pty_sinks

    def _prepare(self, options: DeployOptions) -> tuple[App, Provider, str, str, str]:
        """Resolve everything that can fail before a server exists.

        :return: (app, provider, private_key, public_key, cloudflare_token)
        :raises ConfigurationError:
        """
        app = self.apps.get(options.app_name)
        provider = self.providers.get(options.provider_name)
        if options.provider_settings:
            provider.configure(options.provider_settings)
        if provider.needs_config():
            raise ConfigurationError(f"provider {provider.name} is not configured")

        if not options.domain.strip():
            raise ConfigurationError("domain is required")
        mode = options.dns_mode.strip().lower() or "auto"
        if mode not in DNS_MODES:
            raise ConfigurationError(f"invalid DNS mode: {options.dns_mode} (use {', '.join(DNS_MODES)})")

        token = options.cloudflare_token.strip()
        if mode == "cloudflare":
            token = token or get_env(CLOUDFLARE_TOKEN_ENV)
            if not token:
                raise ConfigurationError(f"DNS mode cloudflare needs a token or {CLOUDFLARE_TOKEN_ENV}")

        private_key, public_key = options.ssh_private_key, options.ssh_public_key
        if not private_key or not public_key:
            loaded_private, loaded_public = load_ssh_keys(
                options.ssh_key_path or None, options.ssh_pub_path or None
            )
            private_key = private_key or loaded_private
            public_key = public_key or loaded_public
        return app, provider, private_key, public_key.strip(), token

    def _install_config(
        self, options: DeployOptions, server_ip: str, private_key: str, *, ssl: bool
    ) -> InstallConfig:
        extra_vars, extra_flags = wizard_answer_vars(options.wizard_answers)
        return InstallConfig(
            domain=options.domain.strip(),
            server_ip=server_ip,
            ssh_key=private_key,
            enable_ssl=options.enable_ssl,
            email=options.email.strip(),
            ssl=ssl,
            ssl_private_key_file=options.ssl_private_key_file,
            ssl_certificate_crt=options.ssl_certificate_crt,
            http_to_https_redirection=options.http_to_https_redirection,
            extra_vars=extra_vars,
            extra_flags=extra_flags,
        )

    def _runner(self, server_ip: str, options: DeployOptions, private_key: str) -> RemoteRunner:
        return self.runner_factory(
            server_ip,
            "root",
            private_key=private_key,
            key_path=options.ssh_key_path,
            logger=self.logger,
        )

    def deploy(self, options: DeployOptions) -> Server:
        """Provision a server and install ``options.app_name`` on it.

        :return: the provisioned server
        :raises ConfigurationError: before anything is provisioned
        :raises DeploymentError: a fatal phase failed; ``cause`` holds the original error
        """
        app, provider, private_key, public_key, cf_token = self._prepare(options)
        domain = options.domain.strip()

        server = self._provision(app, provider, options, public_key)
        self._setup_dns(app, provider, options, server, cf_token)

        self.logger(f"⏳ Waiting for SSH on {server.ip}...")
        try:
            self.ssh_waiter(server.ip)
        except SelfhostedError as e:
            raise DeploymentError("SSH wait", e) from e
        self.logger("✅ SSH is ready")

        runner = self._runner(server.ip, options, private_key)
        try:
            config = self._install_config(options, server.ip, private_key, ssl=options.ssl_requested)
            self.logger(f"📦 Installing {app.name}...")
            try:
                app.install(config, runner, self.logger, registry=self.registry, pty_sinks=self.pty_sinks)
            except SelfhostedError as e:
                raise DeploymentError("installation", e) from e
            self.logger(f"✅ {app.name} installed")

            if options.ssl_requested:
                self.logger("🔒 Setting up SSL...")
                try:
                    app.setup_ssl(config, runner, self.logger, registry=self.registry, pty_sinks=self.pty_sinks)
                except SelfhostedError as e:
                    self.logger(f"⚠️ SSL setup failed: {e}; the app is reachable over HTTP")
                else:
                    self.logger("✅ SSL configured")
        finally:
            runner.close()

        for line in app.summary(server.ip, domain):
            self.logger(line)
        return server

    def _provision(self, app: App, provider: Provider, options: DeployOptions, public_key: str) -> Server:
        region = options.region.strip() or provider.default_region
        try:
            size = options.size.strip()
            if not size or size == AUTO_SIZE:
                size = provider.get_size_for_specs(app.min_specs(), region)
                self.logger(f"📐 Selected size {size} for {app.name}")
            config = DeployConfig(
                name=sanitize_hostname(options.deploy_name or f"{app.name}-server"),
                region=region,
                size=size,
                ssh_public_key=public_key,
                domain=options.domain.strip(),
                tags=[app.name, "selfhosted"],
            )
            self.logger(f"🚀 Creating server {config.name} on {provider.name} ({region}, {size})...")
            server = provider.create_server(config)
            self.logger(f"⏳ Waiting for server {server.id} to become active...")
            server = provider.wait_for_server(server.id)
        except SelfhostedError as e:
            raise DeploymentError("provisioning", e) from e
        self.logger(f"✅ Server ready: {server.ip}")
        return server

    def _setup_dns(
        self, app: App, provider: Provider, options: DeployOptions, server: Server, cf_token: str
    ) -> None:
        mode = options.dns_mode.strip().lower() or "auto"
        domain = options.domain.strip()
        if mode == "skip":
            self.logger(f"⏭️ Skipping DNS setup; point {domain} at {server.ip} yourself")
            return
        try:
            if cf_token:
                self._setup_cloudflare(app, options, server, cf_token)
                return
            detected = self.dns_detector(domain) if mode == "auto" else DNSProviderInfo()
            if detected.detected:
                self.logger(f"🔍 DNS for {domain} is served by {detected.name} ({detected.host})")
            if not should_setup_dns(app, mode, provider.name, detected.slug):
                self.logger(
                    f"⚠️ DNS for {domain} is not managed by {provider.name}; "
                    f"create an A record pointing to {server.ip}"
                )
                return
            self.logger(f"🌐 Configuring DNS for {domain} on {provider.name}...")
            provider.setup_dns(domain, server.ip)
            self.logger("✅ DNS configured")
        except SelfhostedError as e:
            self.logger(f"⚠️ DNS setup failed: {e}")

    def _setup_cloudflare(self, app: App, options: DeployOptions, server: Server, token: str) -> None:
        domain = options.domain.strip()
        client = self.cloudflare_factory(token)
        zone = client.find_zone(domain)
        self.logger(f"🌐 Configuring DNS for {domain} in Cloudflare zone {zone.name}...")
        records = app.dns_records(domain, server.ip) or [DNSRecord(type="A", name=domain, content=server.ip)]
        for record in records:
            client.create_record(zone.id, record, proxied=options.cloudflare_proxied)
            self.logger(f"   {record.type} {record.name} -> {record.content}")
        self.logger("✅ DNS configured")

    def setup_ssl(self, options: DeployOptions, server_ip: str) -> None:
        """Run only the SSL phase against an existing server.

        :raises SSLSetupError: the phase failed
        """
        app = self.apps.get(options.app_name)
        private_key = options.ssh_private_key
        if not private_key:
            private_key, _ = load_ssh_keys(options.ssh_key_path or None, options.ssh_pub_path or None)
        config = self._install_config(options, server_ip, private_key, ssl=True)
        runner = self._runner(server_ip, options, private_key)
        self.logger(f"🔒 Setting up SSL for {options.domain} on {server_ip}...")
        try:
            app.setup_ssl(config, runner, self.logger, registry=self.registry, pty_sinks=self.pty_sinks)
        except SelfhostedError as e:
            raise SSLSetupError(str(e)) from e
        finally:
            runner.close()
        self.logger("✅ SSL configured")

    def destroy(self, provider_name: str, server_id: str) -> None:
        provider = self.providers.get(provider_name)
        self.logger(f"🗑️ Destroying server {server_id} on {provider.name}...")
        provider.destroy_server(server_id)
        self.logger("✅ Server destroyed")
