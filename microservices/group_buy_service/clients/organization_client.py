"""
Organization Service Client

Client for calling organization_service to check buyer organization status.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..protocols import OrganizationLookupError

logger = logging.getLogger(__name__)


class OrganizationClient:
    """Client for organization_service"""

    def __init__(self, base_url: str = "http://localhost:8212", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"X-Internal-Service": "true"}

    async def get_organization(self, organization_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an organization.

        Returns None when the organization does not exist.

        Raises:
            OrganizationLookupError: organization_service unreachable or erroring
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/api/v1/organizations/{organization_id}",
                    headers=self.headers,
                )
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.warning(f"Organization not found: {organization_id}")
                return None
            logger.error(f"Error getting organization {organization_id}: {e}")
            raise OrganizationLookupError(
                f"Organization service returned {e.response.status_code}"
            ) from e

        except httpx.HTTPError as e:
            logger.error(f"Organization service unreachable for {organization_id}: {e}")
            raise OrganizationLookupError("Organization service unavailable") from e

    async def is_organization_active(self, organization_id: str) -> bool:
        organization = await self.get_organization(organization_id)
        if organization is None:
            return False
        return str(organization.get("status", "")).lower() == "active"

    async def health_check(self) -> bool:
        """Check if organization_service is healthy"""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False
