#!/usr/bin/env python3
"""Group-buy operational policy

Grace window and reconciliation batch sizing are policy, supplied per
environment rather than baked into the settlement engine.
"""
import os
from dataclasses import dataclass

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class GroupBuyConfig:
    """Campaign settlement and collection policy"""

    # Hours before the end date at which an ACTIVE campaign enters GRACE_PERIOD
    grace_period_hours: int = 48

    # Upper bound on payment intents examined by one reconciliation run
    retry_batch_size: int = 500

    # Organization service (buyer activity checks)
    organization_service_url: str = "http://localhost:8212"
    organization_service_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'GroupBuyConfig':
        """Load group-buy policy from environment variables"""
        return cls(
            grace_period_hours=_int(os.getenv("GROUP_BUY_GRACE_PERIOD_HOURS", "48"), 48),
            retry_batch_size=_int(os.getenv("GROUP_BUY_RETRY_BATCH_SIZE", "500"), 500),
            organization_service_url=os.getenv("ORGANIZATION_SERVICE_URL", "http://localhost:8212"),
            organization_service_timeout=float(os.getenv("ORGANIZATION_SERVICE_TIMEOUT", "10.0")),
        )
