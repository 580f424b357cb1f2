"""
Group Buy Service Clients

Clients for calling other microservices.
"""

from .organization_client import OrganizationClient

__all__ = [
    "OrganizationClient",
]
