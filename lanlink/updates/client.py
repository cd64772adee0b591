"""Pull an update from a peer node's control surface."""

import logging

import httpx

from lanlink.config import CONNECT_TIMEOUT
from lanlink.errors import TransportError
from lanlink.updates.distributor import UpdateDistributor
from lanlink.updates.models import DownloadTicket, UpdateMetadata, version_key

logger = logging.getLogger(__name__)


def is_newer(candidate: str, current: str) -> bool:
    return version_key(candidate) > version_key(current)


async def fetch_peer_update(
    base_url: str,
    distributor: UpdateDistributor,
    current_version: str,
    token: str,
    timeout: float = CONNECT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DownloadTicket | None:
    """Download the peer's active update if it is newer than ours.

    The bytes are verified and backed up locally before they are stored;
    returns None when the peer has nothing newer to offer.
    """
    headers = {"Authorization": f"Bearer {token}"}
    try:
        async with httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        ) as client:
            response = await client.get("/api/check-update")
            if response.status_code == 404:
                logger.info(f"{base_url} has no update to offer")
                return None
            response.raise_for_status()
            metadata = UpdateMetadata(**response.json()["metadata"])

            if not is_newer(metadata.version, current_version):
                logger.info(f"Peer update {metadata.version} is not newer than {current_version}")
                return None

            response = await client.get(
                "/api/download-update", params={"address": distributor.local_address}
            )
            response.raise_for_status()
            data = response.content
    except httpx.HTTPError as e:
        raise TransportError(f"Fetching update from {base_url} failed: {e}") from e

    logger.info(f"Fetched update {metadata.version} ({len(data)} bytes) from {base_url}")
    return await distributor.store_artifact(metadata, data)
