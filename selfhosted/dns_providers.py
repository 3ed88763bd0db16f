"""Nameserver-based DNS host detection and the Cloudflare DNS API client."""

import json
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass

import dns.exception
import dns.resolver

from .config import CLOUDFLARE_TOKEN_ENV, get_env
from .errors import ConfigurationError, DNSError
from .utils import get_root_domain

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_AUTO_TTL = 1
HTTP_TIMEOUT = 30


@dataclass(frozen=True)
class DNSProviderInfo:
    """``slug`` matches a cloud provider name where one exists."""

    name: str = ""
    slug: str = ""
    host: str = ""

    @property
    def detected(self) -> bool:
        return bool(self.host)


UNKNOWN = "Unknown"

# (nameserver substring, display name, slug); first match wins
NS_SIGNATURES = [
    ("digitalocean.com", "DigitalOcean", "digitalocean"),
    ("cloudflare.com", "Cloudflare", "cloudflare"),
    ("awsdns", "AWS Route 53", "aws"),
    ("googledomains.com", "Google Cloud DNS", "gcp"),
    ("google.com", "Google Cloud DNS", "gcp"),
    ("azure-dns", "Azure DNS", "azure"),
    ("linode.com", "Linode", "linode"),
    ("vultr.com", "Vultr", "vultr"),
    ("hetzner.com", "Hetzner", "hetzner"),
    ("hetzner-dns", "Hetzner", "hetzner"),
    ("ovh.net", "OVH", "ovh"),
    ("ovh.com", "OVH", "ovh"),
    ("namecheap.com", "Namecheap", "namecheap"),
    ("godaddy.com", "GoDaddy", "godaddy"),
    ("name.com", "Name.com", "namecom"),
    ("bluehost.com", "Bluehost", "bluehost"),
    ("hostgator.com", "HostGator", "hostgator"),
    ("dreamhost.com", "DreamHost", "dreamhost"),
    ("hover.com", "Hover", "hover"),
    ("dnsimple.com", "DNSimple", "dnsimple"),
    ("zoneedit.com", "ZoneEdit", "zoneedit"),
    ("netlify.com", "Netlify DNS", "netlify"),
    ("vercel-dns.com", "Vercel DNS", "vercel"),
    ("dynect.net", "Dyn", "dyn"),
    ("nsone.net", "NS1", "ns1"),
    ("dnspark.net", "DNSPark", "dnspark"),
    ("easydns.com", "EasyDNS", "easydns"),
    ("afraid.org", "FreeDNS", "freedns"),
]


def lookup_ns(domain: str) -> list[str]:
    """:return: NS host names for ``domain``, empty if the lookup fails"""
    try:
        answer = dns.resolver.resolve(domain, "NS")
    except dns.exception.DNSException:
        return []
    return [str(rdata.target) for rdata in answer]


def classify_nameserver(host: str) -> DNSProviderInfo:
    host = host.strip().lower().rstrip(".")
    for signature, name, slug in NS_SIGNATURES:
        if signature in host:
            return DNSProviderInfo(name=name, slug=slug, host=host)
    return DNSProviderInfo(name=UNKNOWN, slug="unknown", host=host)


def detect_dns_provider(
    domain: str, lookup: Callable[[str], list[str]] = lookup_ns
) -> DNSProviderInfo:
    """Best-effort guess of who serves ``domain``'s DNS.

    Falls back to the root domain when the name itself has no NS records.
    Returns an empty ``DNSProviderInfo`` when nothing resolves.
    """
    records = lookup(domain)
    if not records:
        root = get_root_domain(domain)
        if root and root != domain:
            records = lookup(root)
    if not records:
        return DNSProviderInfo()
    return classify_nameserver(records[0])


@dataclass(frozen=True)
class DNSRecord:
    type: str
    name: str
    content: str
    ttl: int = 0
    proxied: bool | None = None


@dataclass(frozen=True)
class CloudflareZone:
    id: str
    name: str
    status: str = ""


class CloudflareClient:
    def __init__(self, token: str, *, opener: Callable = urllib.request.urlopen):
        if not token:
            raise ConfigurationError("Cloudflare token cannot be empty")
        self.token = token
        self._open = opener

    @classmethod
    def from_env(cls) -> "CloudflareClient":
        token = get_env(CLOUDFLARE_TOKEN_ENV)
        if not token:
            raise ConfigurationError(f"{CLOUDFLARE_TOKEN_ENV} not found")
        return cls(token)

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        data = json.dumps(payload).encode() if payload is not None else None
        req = urllib.request.Request(
            f"{CLOUDFLARE_API}{path}",
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with self._open(req, timeout=HTTP_TIMEOUT) as response:
                body = response.read()
        except urllib.error.HTTPError as e:
            body = e.read()
            if not body:
                raise DNSError(f"Cloudflare API {method} {path}: HTTP {e.code}") from e
        except urllib.error.URLError as e:
            raise DNSError(f"Cloudflare API {method} {path}: {e.reason}") from e
        except OSError as e:
            raise DNSError(f"Cloudflare API {method} {path}: {e}") from e

        try:
            result = json.loads(body)
        except ValueError as e:
            raise DNSError(f"Cloudflare API {method} {path}: invalid response") from e
        if not isinstance(result, dict):
            raise DNSError(f"Cloudflare API {method} {path}: invalid response")
        if not result.get("success"):
            errors = result.get("errors") or []
            message = errors[0].get("message") if errors else "request failed"
            raise DNSError(f"Cloudflare API error: {message}")
        return result

    def verify_token(self) -> bool:
        result = self._request("GET", "/user/tokens/verify")
        return (result.get("result") or {}).get("status") == "active"

    def list_zones(self) -> list[CloudflareZone]:
        result = self._request("GET", "/zones?per_page=50")
        try:
            return [
                CloudflareZone(id=z["id"], name=z["name"], status=z.get("status", ""))
                for z in result.get("result") or []
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise DNSError(f"Cloudflare API: malformed zone list: {e!r}") from e

    def find_zone(self, domain: str) -> CloudflareZone:
        """Zone named exactly the root domain, else a zone ``domain`` ends in.

        :raises DNSError: if no zone matches
        """
        domain = domain.lower().rstrip(".")
        root = get_root_domain(domain)
        zones = self.list_zones()
        for zone in zones:
            if zone.name.lower() == root:
                return zone
        for zone in zones:
            if domain.endswith("." + zone.name.lower()):
                return zone
        raise DNSError(f"no matching zone found for domain {domain}")

    def create_record(self, zone_id: str, record: DNSRecord, proxied: bool = False) -> str:
        """:return: id of the created record"""
        payload = {
            "type": record.type,
            "name": record.name,
            "content": record.content,
            "ttl": record.ttl or CLOUDFLARE_AUTO_TTL,
            "proxied": proxied if record.proxied is None else record.proxied,
        }
        result = self._request("POST", f"/zones/{zone_id}/dns_records", payload)
        return (result.get("result") or {}).get("id", "")

    def setup_dns(self, domain: str, ip: str, proxied: bool = True) -> None:
        zone = self.find_zone(domain)
        self.create_record(zone.id, DNSRecord(type="A", name=domain, content=ip, ttl=3600), proxied)
