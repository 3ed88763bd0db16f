"""Provision a server and install a self-hosted app on it.

Prerequisites: doctl or vultr-cli installed, provider token in the environment
(or .env), SSH key pair in ~/.ssh.

Usage: selfhosted <command> [options]

Examples:
    selfhosted apps
    selfhosted deploy plausible --domain stats.example.com --email me@example.com
    selfhosted sizes vultr --region fra
    selfhosted dns detect example.com
    selfhosted serve --port 8080
"""

import base64
import binascii
import json
import sys

import cyclopts
from rich import print

from .apps import default_apps
from .config import default_provider_name
from .deploy import AUTO_SIZE, Deployer, DeployOptions
from .dns_providers import detect_dns_provider
from .errors import SelfhostedError
from .providers import default_providers, list_sizes
from .pty import PTY_END, PTY_OUTPUT, PTY_SESSION
from .stream import ProgressStream, run_deployment
from .utils import echo, error, log

app = cyclopts.App(
    name="selfhosted", help="Deploy self-hosted apps to cloud providers", sort_key=None
)

dns_app = cyclopts.App(name="dns", help="Inspect DNS hosting", sort_key=1)

app.command(dns_app)


def terminal_logger(line: str):
    """Progress sink for an interactive terminal: PTY chunks are written raw."""
    if line.startswith(PTY_OUTPUT):
        try:
            chunk = base64.b64decode(line[len(PTY_OUTPUT):].strip())
        except (binascii.Error, ValueError):
            return
        sys.stdout.buffer.write(chunk)
        sys.stdout.buffer.flush()
    elif line.startswith(PTY_SESSION) or line.startswith(PTY_END):
        return
    else:
        echo(line)


def parse_answers(answers: list[str] | None) -> dict[str, str]:
    """``id=value`` pairs to a mapping."""
    result = {}
    for item in answers or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            error(f"Invalid answer '{item}', expected id=value")
        result[key.strip()] = value
    return result


@app.command(name="deploy")
def deploy(
    app_name: str,
    *,
    domain: str,
    provider: str | None = None,
    region: str = "",
    size: str = AUTO_SIZE,
    name: str = "",
    ssh_key: str = "",
    ssh_pub: str = "",
    email: str = "",
    no_ssl: bool = False,
    ssl_key_file: str = "",
    ssl_cert_file: str = "",
    redirect_https: bool = False,
    dns_mode: str = "auto",
    cloudflare_token: str = "",
    no_cloudflare_proxy: bool = False,
    answer: list[str] | None = None,
    sse: bool = False,
):
    """Create a server and install an app on it.

    :param app_name: App to install (see `selfhosted apps`)
    :param domain: Domain the app will be served on
    :param provider: Cloud provider (default: SELFHOSTED_PROVIDER or digitalocean)
    :param region: Provider region (default: provider's default region)
    :param size: Server size, or "auto" for the cheapest that fits the app
    :param name: Server name (default: <app>-server)
    :param ssh_key: Private key path (default: ~/.ssh/id_ed25519 or id_rsa)
    :param ssh_pub: Public key path
    :param email: Email for Let's Encrypt
    :param no_ssl: Skip SSL setup
    :param ssl_key_file: Existing SSL private key file on the server
    :param ssl_cert_file: Existing SSL certificate file on the server
    :param redirect_https: Redirect HTTP to HTTPS
    :param dns_mode: auto, force, skip or cloudflare
    :param cloudflare_token: Cloudflare API token (manages DNS through Cloudflare)
    :param no_cloudflare_proxy: Create Cloudflare records DNS-only
    :param answer: Wizard answer as id=value, repeatable
    :param sse: Emit progress as server-sent events
    """
    options = DeployOptions(
        app_name=app_name,
        provider_name=provider or default_provider_name(),
        domain=domain,
        region=region,
        size=size,
        deploy_name=name,
        ssh_key_path=ssh_key,
        ssh_pub_path=ssh_pub,
        enable_ssl=not no_ssl,
        email=email,
        ssl_private_key_file=ssl_key_file,
        ssl_certificate_crt=ssl_cert_file,
        http_to_https_redirection=redirect_https,
        dns_mode=dns_mode,
        cloudflare_token=cloudflare_token,
        cloudflare_proxied=not no_cloudflare_proxy,
        wizard_answers=parse_answers(answer),
    )
    deployer = Deployer(default_providers(), default_apps())

    if sse:
        stream = ProgressStream(sys.stdout.write, sse=True, flush=sys.stdout.flush)
        if not run_deployment(deployer, options, stream):
            sys.exit(1)
        return

    deployer.logger = terminal_logger
    try:
        deployer.deploy(options)
    except SelfhostedError as e:
        error(str(e))


@app.command(name="apps")
def list_apps():
    """List installable apps."""
    for a in default_apps():
        specs = a.min_specs()
        print(
            f"  [bold]{a.name}[/bold]: {a.description} "
            f"({specs.cpus} CPU, {specs.memory_mb}MB RAM, {specs.disk_gb}GB disk)"
        )


@app.command(name="questions")
def show_questions(app_name: str):
    """Print an app's wizard questions as JSON.

    :param app_name: App name
    """
    try:
        questions = default_apps().get(app_name).wizard_questions()
    except SelfhostedError as e:
        error(str(e))
    echo(json.dumps([q.to_dict() for q in questions], indent=2))


@app.command(name="providers")
def list_providers():
    """List cloud providers."""
    for p in default_providers():
        status = "[yellow]needs config[/yellow]" if p.needs_config() else "[green]ready[/green]"
        print(f"  [bold]{p.name}[/bold]: {p.description} ({status})")


@app.command(name="regions")
def list_regions(provider: str):
    """List a provider's regions.

    :param provider: Cloud provider
    """
    try:
        regions = default_providers().get(provider).list_regions()
    except SelfhostedError as e:
        error(str(e))
    for r in regions:
        print(f"  {r.slug}: {r.name}")


@app.command(name="sizes")
def list_provider_sizes(provider: str, *, region: str | None = None):
    """List a provider's server sizes.

    :param provider: Cloud provider
    :param region: Only sizes available in this region
    """
    try:
        sizes = list_sizes(default_providers().get(provider), region)
    except SelfhostedError as e:
        error(str(e))
    for s in sizes:
        print(
            f"  {s.slug}: {s.vcpus} CPU, {s.memory_mb}MB RAM, {s.disk_gb}GB disk, "
            f"${s.price_monthly:g}/mo"
        )


@app.command(name="destroy")
def destroy(provider: str, server_id: str, *, force: bool = False):
    """Destroy a server.

    :param provider: Cloud provider
    :param server_id: Provider's server ID
    :param force: Skip confirmation
    """
    if not force:
        confirm = input(f"Destroy server {server_id} on {provider}? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return
    try:
        Deployer(default_providers(), default_apps(), logger=terminal_logger).destroy(provider, server_id)
    except SelfhostedError as e:
        error(str(e))


@app.command(name="setup-ssl")
def setup_ssl(
    app_name: str,
    server_ip: str,
    *,
    domain: str,
    email: str = "",
    ssh_key: str = "",
    ssh_pub: str = "",
    ssl_key_file: str = "",
    ssl_cert_file: str = "",
    redirect_https: bool = False,
):
    """Run only the SSL steps of an app on an existing server.

    :param app_name: App installed on the server
    :param server_ip: Server IP
    :param domain: Domain the app is served on
    :param email: Email for Let's Encrypt
    :param ssh_key: Private key path
    :param ssh_pub: Public key path
    :param ssl_key_file: Existing SSL private key file on the server
    :param ssl_cert_file: Existing SSL certificate file on the server
    :param redirect_https: Redirect HTTP to HTTPS
    """
    options = DeployOptions(
        app_name=app_name,
        provider_name="",
        domain=domain,
        ssh_key_path=ssh_key,
        ssh_pub_path=ssh_pub,
        email=email,
        ssl_private_key_file=ssl_key_file,
        ssl_certificate_crt=ssl_cert_file,
        http_to_https_redirection=redirect_https,
    )
    try:
        Deployer(default_providers(), default_apps(), logger=terminal_logger).setup_ssl(options, server_ip)
    except SelfhostedError as e:
        error(str(e))


@app.command(name="serve")
def serve(*, port: int = 8080, host: str = "127.0.0.1"):
    """Start the web API: catalogs, streamed deployments and PTY input.

    :param port: HTTP port to listen on
    :param host: Interface to bind
    """
    from .server import start_server

    start_server(port=port, host=host)


@dns_app.command(name="detect")
def dns_detect(domain: str):
    """Guess who hosts a domain's DNS from its nameservers.

    :param domain: Domain name
    """
    info = detect_dns_provider(domain)
    if not info.detected:
        error(f"No NS records found for {domain}")
    print(f"  Provider: [bold]{info.name}[/bold]")
    print(f"  Nameserver: {info.host}")


def main():
    app()


if __name__ == "__main__":
    main()
