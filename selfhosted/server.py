"""HTTP API behind the web wizard.

Serves the app and provider catalogs, streams a deployment's progress as
server-sent events and routes keystrokes to live PTY sessions.
"""

import queue
import threading
from collections.abc import Callable, Iterator
from typing import Any

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .apps import AppRegistry, default_apps
from .deploy import AUTO_SIZE, Deployer, DeployOptions
from .dns_providers import CloudflareClient, DNSProviderInfo, detect_dns_provider
from .errors import ConfigurationError, PTYError, SelfhostedError
from .providers import Provider, ProviderRegistry, default_providers, list_sizes
from .pty_sessions import PTYSessionRegistry, handle_pty_input, sessions
from .stream import KEEPALIVE_INTERVAL, ProgressStream, run_deployment
from .utils import log, warn

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class DeployRequest(BaseModel):
    """Body of ``POST /api/deploy``, in the wizard's camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    app: str
    provider: str
    domain: str
    region: str = ""
    size: str = AUTO_SIZE
    server_name: str = Field("", alias="serverName")
    email: str = ""
    dns_mode: str = Field("auto", alias="dnsMode")
    cloudflare_token: str = Field("", alias="cloudflareToken")
    cloudflare_proxied: bool = Field(True, alias="cloudflareProxied")
    provider_settings: dict[str, str] = Field(default_factory=dict, alias="providerSettings")
    wizard_answers: dict[str, Any] = Field(default_factory=dict, alias="wizardAnswers")

    def to_options(self) -> DeployOptions:
        return DeployOptions(
            app_name=self.app,
            provider_name=self.provider,
            domain=self.domain,
            region=self.region,
            size=self.size or AUTO_SIZE,
            deploy_name=self.server_name,
            email=self.email,
            dns_mode=self.dns_mode,
            cloudflare_token=self.cloudflare_token,
            cloudflare_proxied=self.cloudflare_proxied,
            provider_settings=dict(self.provider_settings),
            wizard_answers=dict(self.wizard_answers),
        )


class CloudflareVerifyRequest(BaseModel):
    token: str


class FrameQueue:
    """Write side handed to a ``ProgressStream``; fails once the client is gone."""

    def __init__(self):
        self.frames: queue.Queue[str | None] = queue.Queue()
        self.closed = False

    def write(self, text: str) -> None:
        if self.closed:
            raise BrokenPipeError("client disconnected")
        self.frames.put(text)

    def finish(self) -> None:
        self.frames.put(None)


def stream_deployment(
    deployer: Deployer,
    options: DeployOptions,
    *,
    keepalive_interval: float = KEEPALIVE_INTERVAL,
) -> Iterator[str]:
    """Run a deployment on a worker thread and yield its SSE frames.

    If the client goes away the deployment carries on; only its output is
    dropped.
    """
    out = FrameQueue()
    stream = ProgressStream(out.write, sse=True, keepalive_interval=keepalive_interval)
    stream.emit("Connected")

    def work():
        try:
            run_deployment(deployer, options, stream)
        except Exception as e:
            # run_deployment has already sent the ERROR line
            warn(f"Deployment of {options.app_name} crashed: {e!r}")
        finally:
            out.finish()

    threading.Thread(target=work, daemon=True).start()
    try:
        while True:
            frame = out.frames.get()
            if frame is None:
                return
            yield frame
    finally:
        out.closed = True


def create_app(
    providers: ProviderRegistry | None = None,
    apps: AppRegistry | None = None,
    *,
    deployer: Deployer | None = None,
    registry: PTYSessionRegistry = sessions,
    dns_detector: Callable[[str], DNSProviderInfo] = detect_dns_provider,
    cloudflare_factory: Callable[[str], CloudflareClient] = CloudflareClient,
    keepalive_interval: float = KEEPALIVE_INTERVAL,
) -> FastAPI:
    """Build the API around injected registries.

    :param deployer: used for ``/api/deploy``; built from the registries if omitted
    """
    if providers is None:
        providers = default_providers()
    if apps is None:
        apps = default_apps()
    if deployer is None:
        deployer = Deployer(providers, apps, registry=registry)

    api = FastAPI(
        title="selfhosted",
        description="Deploy self-hosted apps to cloud providers",
    )

    def get_provider(name: str) -> Provider:
        try:
            return providers.get(name)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

    @api.get("/")
    def root():
        """Health check."""
        return {"status": "ok", "service": "selfhosted"}

    @api.get("/api/apps")
    def list_apps():
        result = []
        for app in apps:
            specs = app.min_specs()
            questions = [q.to_dict() for q in app.wizard_questions()]
            result.append(
                {
                    "name": app.name,
                    "description": app.description,
                    "min_cpus": specs.cpus,
                    "min_memory": specs.memory_mb,
                    "domain_hint": app.domain_hint,
                    "wizard": {"application": {"custom_questions": questions}},
                }
            )
        return result

    @api.get("/api/providers")
    def list_providers():
        return [
            {"name": p.name, "description": p.description, "needs_config": p.needs_config()}
            for p in providers
        ]

    @api.get("/api/providers/check")
    def check_provider(provider: str):
        needs_config = get_provider(provider).needs_config()
        return {"provider": provider, "hasCredentials": not needs_config, "needsConfig": needs_config}

    @api.get("/api/regions")
    def list_regions(provider: str):
        p = get_provider(provider)
        try:
            return p.list_regions()
        except SelfhostedError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

    @api.get("/api/sizes")
    def list_provider_sizes(provider: str, region: str = ""):
        p = get_provider(provider)
        try:
            return list_sizes(p, region or None)
        except SelfhostedError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

    @api.get("/api/domains/check")
    def check_domain(domain: str):
        info = dns_detector(domain)
        return {
            "provider": info.slug or "other",
            "name": info.name,
            "nameservers": [info.host] if info.host else [],
        }

    @api.post("/api/cloudflare/verify")
    def verify_cloudflare(request: CloudflareVerifyRequest):
        try:
            valid = cloudflare_factory(request.token).verify_token()
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except SelfhostedError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"valid": valid}

    @api.post("/api/deploy")
    def deploy(request: DeployRequest):
        frames = stream_deployment(
            deployer, request.to_options(), keepalive_interval=keepalive_interval
        )
        return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)

    @api.post("/api/pty/input")
    def pty_input(payload: dict[str, Any] = Body(...)):
        try:
            handle_pty_input(payload, registry)
        except (ValueError, PTYError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"status": "ok"}

    return api


def start_server(port: int = DEFAULT_PORT, host: str = DEFAULT_HOST):
    """Start the API server."""
    log(f"Starting web API at http://{host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level="info")
