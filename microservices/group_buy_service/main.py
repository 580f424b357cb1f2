"""
Group Buy Service Main Application

FastAPI application for group-buy campaigns, pledges and payment collection.
Port: 8262
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Request, status
from fastapi.responses import JSONResponse

from core.config_manager import ConfigManager
from core.logger import setup_service_logger

from .models import (
    BracketProgress,
    BracketSetRequest,
    Campaign,
    CampaignCancelRequest,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignLockResult,
    CampaignUpdateRequest,
    GatewayOutcomeRequest,
    HealthResponse,
    LivenessResponse,
    PaymentHistory,
    PaymentIntent,
    PaymentIntentHistory,
    PhaseAdvanceSummary,
    Pledge,
    PledgeCreateRequest,
    PledgeListResponse,
    PledgeUpdateRequest,
    ReadinessResponse,
    ReconciliationSummary,
    ResolveARRequest,
    SettlementResult,
)
from .factory import GroupBuyServiceFactory
from .protocols import (
    GroupBuyServiceError,
    NotFoundError,
    PhaseViolationError,
    DuplicateCommitmentError,
    DuplicateSettlementError,
    InvalidTransitionError,
    PledgeAccessDeniedError,
    CampaignAccessDeniedError,
    OrganizationNotActiveError,
    OrganizationLookupError,
    CampaignValidationError,
    BracketConfigurationError,
    RetryLimitExceededError,
    NotRetryableError,
)

# Service configuration
SERVICE_NAME = "group_buy_service"
SERVICE_VERSION = "1.0.0"

config_manager = ConfigManager(SERVICE_NAME)
service_config = config_manager.get_service_config()
SERVICE_PORT = service_config.service_port or 8262

setup_service_logger(SERVICE_NAME, service_config.log_level)
logger = logging.getLogger(__name__)

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[GroupBuyServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")
    config_manager.print_config_summary()

    factory = GroupBuyServiceFactory(config_manager)
    await factory.initialize()

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


app = FastAPI(
    title="Group Buy Service",
    description="Group-buy campaign settlement and payment collection",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================

# Most specific class first
ERROR_STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PhaseViolationError, status.HTTP_409_CONFLICT),
    (DuplicateCommitmentError, status.HTTP_409_CONFLICT),
    (DuplicateSettlementError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (PledgeAccessDeniedError, status.HTTP_403_FORBIDDEN),
    (CampaignAccessDeniedError, status.HTTP_403_FORBIDDEN),
    (OrganizationNotActiveError, status.HTTP_403_FORBIDDEN),
    (CampaignValidationError, 422),
    (BracketConfigurationError, 422),
    (RetryLimitExceededError, status.HTTP_400_BAD_REQUEST),
    (NotRetryableError, status.HTTP_400_BAD_REQUEST),
    (OrganizationLookupError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_code_for(exc: GroupBuyServiceError) -> int:
    for error_cls, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(GroupBuyServiceError)
async def group_buy_error_handler(request: Request, exc: GroupBuyServiceError):
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error_code": exc.error_code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


# ====================
# Dependencies
# ====================


def get_factory() -> GroupBuyServiceFactory:
    """Get initialized factory"""
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_auth_context(request: Request) -> dict:
    """Extract auth context from request headers"""
    return {
        "user_id": request.headers.get("X-User-ID", "system"),
        "organization_id": request.headers.get("X-Organization-ID"),
    }


def require_organization(auth: dict = Depends(get_auth_context)) -> str:
    """Acting organization (supplier or buyer)"""
    organization_id = auth.get("organization_id")
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Organization-ID header required",
        )
    return organization_id


def require_internal_service(request: Request) -> None:
    """Scheduler and gateway integration calls"""
    if request.headers.get("X-Internal-Service", "").lower() != "true":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Internal service access only",
        )


# ====================
# Health Endpoints
# ====================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        db_healthy = await factory.repository.health_check()
        dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        if factory.nats_client:
            dependencies["nats"] = "healthy" if factory.nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    details = {}

    if factory:
        db_healthy = await factory.repository.health_check()
        checks["database"] = db_healthy
        details["database"] = "Connected" if db_healthy else "Connection failed"

        if factory.nats_client:
            checks["nats"] = factory.nats_client.is_connected
            details["nats"] = "Connected" if factory.nats_client.is_connected else "Disconnected"
        else:
            checks["nats"] = True  # Optional
            details["nats"] = "Not configured (optional)"
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    return ReadinessResponse(
        ready=checks.get("database", False),
        checks=checks,
        details=details,
    )


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(alive=True, uptime_seconds=time.time() - startup_time)


# ====================
# Campaign Endpoints (supplier)
# ====================


@app.post(
    "/api/v1/group-buy/campaigns",
    response_model=Campaign,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(
    request: CampaignCreateRequest,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Create a campaign in draft"""
    return await components.lifecycle.create_campaign(supplier_id, request)


@app.get("/api/v1/group-buy/campaigns", response_model=CampaignListResponse, tags=["Campaigns"])
async def list_campaigns(
    supplier_id: Optional[str] = Query(None, description="Filter by supplier"),
    phase: Optional[str] = Query(None, description="Filter by phase"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    campaigns = await components.lifecycle.list_campaigns(
        supplier_id=supplier_id, phase=phase, limit=limit, offset=offset
    )
    return CampaignListResponse(campaigns=campaigns, total=len(campaigns))


@app.get("/api/v1/group-buy/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def get_campaign(
    campaign_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.lifecycle.get_campaign(campaign_id)


@app.patch("/api/v1/group-buy/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Update a draft campaign"""
    return await components.lifecycle.update_campaign(campaign_id, supplier_id, request)


@app.put(
    "/api/v1/group-buy/campaigns/{campaign_id}/brackets",
    response_model=Campaign,
    tags=["Campaigns"],
)
async def set_brackets(
    campaign_id: str,
    request: BracketSetRequest,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Replace the discount brackets of a draft campaign"""
    return await components.lifecycle.set_brackets(campaign_id, supplier_id, request.brackets)


@app.delete(
    "/api/v1/group-buy/campaigns/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Campaigns"],
)
async def delete_campaign(
    campaign_id: str,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Delete a draft campaign"""
    await components.lifecycle.delete_draft_campaign(campaign_id, supplier_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/publish",
    response_model=Campaign,
    tags=["Campaigns"],
)
async def publish_campaign(
    campaign_id: str,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.lifecycle.publish_campaign(campaign_id, supplier_id)


@app.post(
    "/api/v1/group-buy/campaigns/{campaign_id}/cancel",
    response_model=Campaign,
    tags=["Campaigns"],
)
async def cancel_campaign(
    campaign_id: str,
    request: Optional[CampaignCancelRequest] = None,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    reason = request.reason if request else None
    return await components.lifecycle.cancel_campaign(campaign_id, supplier_id, reason=reason)


@app.get(
    "/api/v1/group-buy/campaigns/{campaign_id}/bracket-progress",
    response_model=BracketProgress,
    tags=["Campaigns"],
)
async def get_bracket_progress(
    campaign_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.lifecycle.get_bracket_progress(campaign_id)


@app.get(
    "/api/v1/group-buy/campaigns/{campaign_id}/pledges",
    response_model=PledgeListResponse,
    tags=["Campaigns"],
)
async def list_campaign_pledges(
    campaign_id: str,
    supplier_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Pledges of a campaign, visible to its supplier"""
    campaign = await components.lifecycle.get_campaign(campaign_id)
    if campaign.supplier_id != supplier_id:
        raise CampaignAccessDeniedError("You do not have permission to view this campaign's pledges")
    pledges = await components.pledge_ledger.list_campaign_pledges(campaign_id)
    return PledgeListResponse(pledges=pledges, total=len(pledges))


# ====================
# Pledge Endpoints (buyer)
# ====================


@app.post(
    "/api/v1/group-buy/pledges",
    response_model=Pledge,
    status_code=status.HTTP_201_CREATED,
    tags=["Pledges"],
)
async def create_pledge(
    request: PledgeCreateRequest,
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.pledge_ledger.create_pledge(
        request.campaign_id, buyer_org_id, request.quantity
    )


@app.get("/api/v1/group-buy/pledges", response_model=PledgeListResponse, tags=["Pledges"])
async def list_my_pledges(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    pledges = await components.pledge_ledger.list_buyer_pledges(buyer_org_id, status=status_filter)
    return PledgeListResponse(pledges=pledges, total=len(pledges))


@app.get("/api/v1/group-buy/pledges/{pledge_id}", response_model=Pledge, tags=["Pledges"])
async def get_pledge(
    pledge_id: str,
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.pledge_ledger.get_pledge(pledge_id, buyer_org_id)


@app.patch("/api/v1/group-buy/pledges/{pledge_id}", response_model=Pledge, tags=["Pledges"])
async def update_pledge(
    pledge_id: str,
    request: PledgeUpdateRequest,
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.pledge_ledger.update_pledge(pledge_id, buyer_org_id, request.quantity)


@app.delete("/api/v1/group-buy/pledges/{pledge_id}", response_model=Pledge, tags=["Pledges"])
async def cancel_pledge(
    pledge_id: str,
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Withdraw a pledge (ACTIVE phase only)"""
    return await components.pledge_ledger.cancel_pledge(pledge_id, buyer_org_id)


@app.post("/api/v1/group-buy/pledges/{pledge_id}/commit", response_model=Pledge, tags=["Pledges"])
async def commit_pledge(
    pledge_id: str,
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Confirm a pledge during the grace period"""
    return await components.pledge_ledger.commit_pledge(pledge_id, buyer_org_id)


# ====================
# Payment Endpoints (buyer)
# ====================


@app.get("/api/v1/group-buy/payments/history", response_model=PaymentHistory, tags=["Payments"])
async def get_payment_history(
    campaign_id: Optional[str] = Query(None, description="Filter by campaign"),
    buyer_org_id: str = Depends(require_organization),
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.get_payment_history(
        buyer_org_id=buyer_org_id, campaign_id=campaign_id
    )


# ====================
# Internal Endpoints (scheduler, gateway integration, operations)
# ====================


@app.post(
    "/internal/jobs/advance-phases",
    response_model=PhaseAdvanceSummary,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def advance_phases(components: GroupBuyServiceFactory = Depends(get_factory)):
    return await components.lifecycle.advance_due_phases()


@app.post(
    "/internal/jobs/retry-reconciliation",
    response_model=ReconciliationSummary,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def run_retry_reconciliation(components: GroupBuyServiceFactory = Depends(get_factory)):
    return await components.reconciliation_job.run()


@app.post(
    "/internal/campaigns/{campaign_id}/lock",
    response_model=CampaignLockResult,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def lock_campaign(
    campaign_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.lifecycle.lock_campaign(campaign_id)


@app.post(
    "/internal/campaigns/{campaign_id}/settlement",
    response_model=SettlementResult,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def generate_settlement(
    campaign_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    """Settle a LOCKED campaign; a second run is rejected per pledge"""
    return await components.settlement_generator.generate(campaign_id)


@app.post(
    "/internal/campaigns/{campaign_id}/complete",
    response_model=Campaign,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def complete_campaign(
    campaign_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.lifecycle.complete_campaign(campaign_id)


@app.get(
    "/internal/payment-intents/{intent_id}",
    response_model=PaymentIntentHistory,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def get_payment_intent(
    intent_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.get_intent_history(intent_id)


@app.post(
    "/internal/payment-intents/{intent_id}/retry",
    response_model=PaymentIntent,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def retry_payment_intent(
    intent_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.retry(intent_id, reason="manual retry")


@app.post(
    "/internal/payment-intents/{intent_id}/escalate",
    response_model=PaymentIntent,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def escalate_to_ar(
    intent_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.escalate_to_ar(intent_id)


@app.post(
    "/internal/payment-intents/{intent_id}/resolve-ar",
    response_model=PaymentIntent,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def resolve_ar(
    intent_id: str,
    request: ResolveARRequest,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.resolve_ar(intent_id, request.collected, note=request.note)


@app.post(
    "/internal/payment-intents/{intent_id}/checkout-created",
    response_model=PaymentIntent,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def checkout_created(
    intent_id: str,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.start_processing(intent_id)


@app.post(
    "/internal/payment-intents/{intent_id}/gateway-outcome",
    response_model=PaymentIntent,
    dependencies=[Depends(require_internal_service)],
    tags=["Internal"],
)
async def gateway_outcome(
    intent_id: str,
    request: GatewayOutcomeRequest,
    components: GroupBuyServiceFactory = Depends(get_factory),
):
    return await components.payment_intents.apply_gateway_outcome(
        intent_id, request.outcome, reason=request.reason
    )


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.group_buy_service.main:app",
        host=service_config.service_host,
        port=SERVICE_PORT,
        log_level=service_config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
