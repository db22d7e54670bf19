"""Network enrichment router.

Clients call this once per visit. The response carries a salted hash of the
client address, never the address itself.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request

from guestwatch.dependencies import get_geo_service
from guestwatch.models.schemas import ClientGeoData
from guestwatch.services.ip_utils import extract_client_ip, mask_ip
from guestwatch.services.network_enrichment import GeoLookupService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/guest-init", response_model=ClientGeoData, response_model_exclude_none=True)
async def guest_init(
    request: Request,
    debug_ip: str | None = Query(None),
    geo: GeoLookupService = Depends(get_geo_service),
):
    """Return geo/network data for the calling client."""
    peer = request.client.host if request.client else None
    client = extract_client_ip(request.headers, peer)
    logger.info(
        f"IP extracted: source={client.source}, private={client.is_private}, "
        f"ip_masked={mask_ip(client.ip)}"
    )

    enrichment = await geo.enrich(client)

    data = ClientGeoData(
        ip_hash=enrichment.ip_hash,
        country=enrichment.country,
        city=enrichment.city,
        isp=enrichment.isp,
        vpn_detected=enrichment.vpn_detected,
        tor_detected=enrichment.tor_detected,
        ip_source=enrichment.ip_source,
    )
    if debug_ip == "1":
        data.debug = {
            "all_headers": {
                name: mask_ip(value.split(",")[0].strip()) if value else None
                for name, value in client.all_headers.items()
            },
            "selected_source": client.source,
            "is_private": client.is_private,
            "raw_ip_masked": mask_ip(client.ip),
        }
    return data
