"""Network enrichment for guest identities.

Server side, ``GeoLookupService`` turns a client address into a
``NetworkEnrichment`` (hashed IP, country, city, ISP, VPN/Tor heuristics)
using an ip-api.com compatible endpoint. Client side,
``HttpEnrichmentClient`` fetches the same data from ``GET /api/guest-init``.

Enrichment is best-effort everywhere: lookups degrade to placeholder values
or ``None`` instead of raising.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import httpx

from guestwatch.services.ip_utils import ClientIP, hash_ip

logger = logging.getLogger(__name__)

DEFAULT_GEO_API_URL = "http://ip-api.com/json"
GEO_FIELDS = "status,country,city,isp,org,as"

# Known VPN / datacenter ASNs
VPN_ASNS = [
    "AS9009",  # M247
    "AS16509",  # Amazon AWS
    "AS14618",  # Amazon AWS
    "AS15169",  # Google Cloud
    "AS396982",  # Google Cloud
    "AS8075",  # Microsoft Azure
    "AS13335",  # Cloudflare
    "AS20473",  # Vultr
    "AS14061",  # DigitalOcean
    "AS63949",  # PrivateSystems
    "AS209854",  # Surfshark
    "AS212238",  # Datacamp
]

VPN_KEYWORDS = ["vpn", "proxy", "hosting", "datacenter", "cloud", "server", "vps"]
TOR_KEYWORDS = ["tor", "exit", "relay"]


@dataclass
class NetworkEnrichment:
    """Server-derived network metadata merged into a guest record."""

    ip_hash: str | None = None
    country: str | None = None
    city: str | None = None
    isp: str | None = None
    vpn_detected: bool = False
    tor_detected: bool = False
    ip_source: str | None = None

    def guest_fields(self) -> dict:
        """Columns to write onto the guest row."""
        return asdict(self)


def detect_vpn(isp: str, org: str, asn: str) -> bool:
    """Guess whether the network is a VPN, proxy or datacenter."""
    if any(vpn_asn in (asn or "") for vpn_asn in VPN_ASNS):
        return True
    combined = f"{isp} {org} {asn}".lower()
    return any(kw in combined for kw in VPN_KEYWORDS)


def detect_tor(isp: str, org: str) -> bool:
    """Guess whether the network is a Tor relay."""
    combined = f"{isp} {org}".lower()
    return any(kw in combined for kw in TOR_KEYWORDS)


class GeoLookupService:
    """Resolves client addresses into NetworkEnrichment."""

    def __init__(self, salt: str, base_url: str = DEFAULT_GEO_API_URL, timeout: float = 5.0):
        """Initialize geo lookup.

        Args:
            salt: Salt for IP hashing
            base_url: ip-api.com compatible JSON endpoint
            timeout: Request timeout in seconds
        """
        self.salt = salt
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def local(self, client: ClientIP) -> NetworkEnrichment:
        """Placeholder enrichment for private addresses; no lookup is made."""
        return NetworkEnrichment(
            ip_hash=hash_ip(client.ip, self.salt),
            country="Local",
            city="Development",
            isp="localhost",
            ip_source=client.source,
        )

    def unknown(self, client: ClientIP) -> NetworkEnrichment:
        return NetworkEnrichment(
            ip_hash=hash_ip(client.ip, self.salt),
            country="Unknown",
            city="Unknown",
            isp="Unknown",
            ip_source=client.source,
        )

    async def enrich(self, client: ClientIP) -> NetworkEnrichment:
        """Look up geo/network data for a client address.

        Private addresses are answered locally. Lookup failures degrade to
        ``Unknown`` fields; this method does not raise.

        Args:
            client: Extracted client address

        Returns:
            NetworkEnrichment for the address
        """
        if client.is_private:
            return self.local(client)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.get(
                    f"{self.base_url}/{client.ip}", params={"fields": GEO_FIELDS}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("Geo lookup timeout")
            return self.unknown(client)
        except httpx.HTTPStatusError as e:
            logger.warning(f"Geo lookup failed: {e}")
            return self.unknown(client)
        except Exception as e:
            logger.warning(f"Geo lookup error: {e}")
            return self.unknown(client)

        if data.get("status") != "success":
            return self.unknown(client)

        isp = data.get("isp") or ""
        org = data.get("org") or ""
        asn = data.get("as") or ""
        return NetworkEnrichment(
            ip_hash=hash_ip(client.ip, self.salt),
            country=data.get("country") or "Unknown",
            city=data.get("city") or "Unknown",
            isp=isp or "Unknown",
            vpn_detected=detect_vpn(isp, org, asn),
            tor_detected=detect_tor(isp, org),
            ip_source=client.source,
        )


class EnrichmentSource(Protocol):
    """Anything that can produce enrichment for the current visitor."""

    async def fetch(self) -> NetworkEnrichment | None: ...


class StaticEnrichmentSource:
    """Enrichment already computed for this request."""

    def __init__(self, enrichment: NetworkEnrichment | None):
        self.enrichment = enrichment

    async def fetch(self) -> NetworkEnrichment | None:
        return self.enrichment


class ClientIPEnrichmentSource:
    """Server-side source: geo lookup of the requesting client's address."""

    def __init__(self, geo: GeoLookupService, client: ClientIP):
        self.geo = geo
        self.client = client

    async def fetch(self) -> NetworkEnrichment | None:
        return await self.geo.enrich(self.client)


class HttpEnrichmentClient:
    """Client-side source: ``GET /api/guest-init``."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def fetch(self) -> NetworkEnrichment | None:
        """Fetch enrichment for this client.

        Returns:
            NetworkEnrichment, or None when the endpoint is unreachable or
            answers with an error status
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.get(self.url)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("Network info fetch timeout")
            return None
        except httpx.HTTPStatusError as e:
            logger.warning(f"Failed to fetch network info: {e.response.status_code}")
            return None
        except Exception as e:
            logger.warning(f"Network info fetch error: {e}")
            return None

        return NetworkEnrichment(
            ip_hash=data.get("ip_hash") or None,
            country=data.get("country") or None,
            city=data.get("city") or None,
            isp=data.get("isp") or None,
            vpn_detected=bool(data.get("vpn_detected", False)),
            tor_detected=bool(data.get("tor_detected", False)),
            ip_source=data.get("ip_source") or None,
        )
