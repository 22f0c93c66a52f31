"""
METER RAIL - FastAPI Server

Usage metering and tier enforcement over HTTP.

Every endpoint except /health needs an X-API-Key header. The tenant is
taken from the X-Creator-Id header, which the gateway in front of this
service sets after authenticating the caller.

Endpoints:
- POST /meters, GET /meters - Meter registry
- POST /usage - Track a usage event (429 when a hard cap blocks it)
- POST /enforcement/check - Speculative limit check
- POST /tiers, GET /tiers - Subscription tiers
- POST /assignments - Assign a customer to a tier
- POST /customers/{id}/tier-change - Mid-period tier change
- POST /billing/cycles - Invoice overages for a period
- GET /billing/sync/failed, POST /billing/sync/{id}/retry - Retry queue
- POST /webhooks/stripe - Stripe webhooks
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import structlog

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..billing import StripeBillingProvider, TierSpec
from ..core.errors import LimitExceededError, MeteringError, NotFoundError, ProviderError, ValidationError
from ..metering import MeterSpec, PlanLimitSpec, TrackUsageRequest
from ..persistence import UsageMeter
from ..services import Services, build_services

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class PlanLimitModel(BaseModel):
    """Limit of a meter on one plan."""
    plan_name: str
    limit_value: Optional[float] = Field(None, ge=0)
    overage_price: Optional[float] = Field(None, ge=0)
    soft_limit_threshold: float = Field(default=0.8, ge=0, le=1)
    hard_cap: bool = False

    def to_spec(self) -> PlanLimitSpec:
        return PlanLimitSpec(**self.model_dump())


class MeterRequest(BaseModel):
    """Request to create a meter."""
    event_name: str = Field(..., description="Event name, unique per creator")
    display_name: str
    aggregation_type: str = Field(default="count", description="count, sum, max, unique, duration")
    description: Optional[str] = None
    unit_name: str = "units"
    billing_model: str = Field(default="metered", description="metered or licensed")
    unique_property: Optional[str] = Field(None, description="Property counted by 'unique' meters")
    plan_limits: List[PlanLimitModel] = Field(default_factory=list)


class UsageRequest(BaseModel):
    """A usage event."""
    event_name: str
    user_id: str
    value: float = 1
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = Field(None, description="ISO-8601, defaults to now")


class EnforcementRequest(BaseModel):
    """A speculative enforcement check."""
    customer_id: str
    metric_name: str
    requested_increment: float = 1


class TierRequest(BaseModel):
    """Request to create a tier."""
    name: str
    price: float = Field(default=0, ge=0)
    currency: str = "usd"
    billing_cycle: str = Field(default="monthly", description="daily, weekly, monthly, yearly")
    description: Optional[str] = None
    feature_entitlements: List[str] = Field(default_factory=list)
    usage_caps: Dict[str, float] = Field(default_factory=dict)
    trial_period_days: int = Field(default=0, ge=0)
    is_default: bool = False
    sort_order: int = 0


class TierUpdateRequest(BaseModel):
    """Partial tier update; only fields sent are changed."""
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    description: Optional[str] = None
    feature_entitlements: Optional[List[str]] = None
    usage_caps: Optional[Dict[str, float]] = None
    trial_period_days: Optional[int] = Field(None, ge=0)
    is_default: Optional[bool] = None
    sort_order: Optional[int] = None
    active: Optional[bool] = None


class AssignmentRequest(BaseModel):
    """Assign a customer to a tier."""
    customer_id: str
    tier_id: str
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    subscription_item_refs: Optional[Dict[str, str]] = None


class TierChangeRequest(BaseModel):
    """Move a customer to another tier mid-period."""
    tier_id: str
    prorate: bool = True


class PeriodRequest(BaseModel):
    """A billing period key (YYYY-MM, YYYY-Www, YYYY-MM-DD or YYYY)."""
    billing_period: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application Factory
# ============================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without `services`, they are built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        """Application lifespan handler."""
        owned = services is None
        application.state.services = services or build_services()
        application.state.start_time = datetime.now(timezone.utc)
        logger.info("meter_rail_starting", version=__version__)
        yield
        logger.info("meter_rail_stopping")
        if owned:
            application.state.services.close()

    application = FastAPI(
        title="Meter Rail",
        description="""
# Usage Metering & Tier Enforcement

Record billable usage, enforce subscription-tier limits in real time and
reconcile overages with the billing provider.

## Features
- **Meters**: count, sum, max, unique and duration aggregation per billing period
- **Enforcement**: soft-limit warnings and hard-cap blocks before an event is recorded
- **Overages**: computed at period close, invoiced once
- **Billing sync**: bounded retry with a terminal failed state
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    origins = services.settings.cors_origins if services else ["*"]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(application)
    _register_routes(application)
    return application


def _register_error_handlers(application: FastAPI) -> None:

    @application.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @application.exception_handler(NotFoundError)
    async def not_found_error(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @application.exception_handler(LimitExceededError)
    async def limit_exceeded_error(request: Request, exc: LimitExceededError):
        return JSONResponse(status_code=429, content=exc.to_dict())

    @application.exception_handler(ProviderError)
    async def provider_error(request: Request, exc: ProviderError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @application.exception_handler(MeteringError)
    async def metering_error(request: Request, exc: MeteringError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})


# ============================================================================
# Dependencies
# ============================================================================

def get_services(request: Request) -> Services:
    """Get the application's services."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return services


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    services: Services = Depends(get_services),
) -> str:
    """Verify API key."""
    if x_api_key != services.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_creator_id(
    x_creator_id: str = Header(..., alias="X-Creator-Id"),
    api_key: str = Depends(verify_api_key),
) -> str:
    """Tenant the request acts for."""
    if not x_creator_id.strip():
        raise HTTPException(status_code=400, detail="X-Creator-Id must not be empty")
    return x_creator_id


def _owned_meter(services: Services, creator_id: str, meter_id: str) -> UsageMeter:
    """A meter of the requesting creator; other tenants' meters are not found."""
    meter = services.registry.get_meter(meter_id)
    if meter.creator_id != creator_id:
        raise NotFoundError(f"Meter not found: {meter_id}")
    return meter


# ============================================================================
# Endpoints
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - request.app.state.start_time).total_seconds()
        return HealthResponse(status="healthy", version=__version__, uptime_seconds=uptime)

    @app.get("/metrics", tags=["System"])
    def get_metrics(services: Services = Depends(get_services), api_key: str = Depends(verify_api_key)):
        """Enforcement gate metrics."""
        return {"enforcement": services.enforcement.get_metrics()}

    # Meters

    @app.post("/meters", status_code=201, tags=["Meters"])
    def create_meter(
        request: MeterRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Create a meter with its plan limits."""
        spec = MeterSpec(
            event_name=request.event_name,
            display_name=request.display_name,
            aggregation_type=request.aggregation_type,
            description=request.description,
            unit_name=request.unit_name,
            billing_model=request.billing_model,
            unique_property=request.unique_property,
            plan_limits=[limit.to_spec() for limit in request.plan_limits],
        )
        meter = services.registry.create_meter(creator_id, spec)
        return {
            **meter.to_dict(),
            "plan_limits": [limit.to_dict() for limit in services.registry.get_plan_limits(meter.id)],
        }

    @app.get("/meters", tags=["Meters"])
    def list_meters(creator_id: str = Depends(get_creator_id), services: Services = Depends(get_services)):
        """Active meters, newest first."""
        meters = services.registry.list_meters(creator_id)
        return {"total": len(meters), "meters": [m.to_dict() for m in meters]}

    @app.delete("/meters/{meter_id}", tags=["Meters"])
    def deactivate_meter(
        meter_id: str,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Deactivate a meter; its history is kept."""
        return services.registry.deactivate_meter(creator_id, meter_id).to_dict()

    @app.put("/meters/{meter_id}/limits", tags=["Meters"])
    def set_plan_limit(
        meter_id: str,
        request: PlanLimitModel,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Create or replace a meter's limit on one plan."""
        _owned_meter(services, creator_id, meter_id)
        return services.registry.set_plan_limit(meter_id, request.to_spec()).to_dict()

    # Usage

    @app.post("/usage", tags=["Usage"])
    def track_usage(
        request: UsageRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """
        Track a usage event.

        Returns 429 with {reason, current_usage, limit_value} when the
        customer's hard cap would be exceeded; the event is not recorded.
        """
        result = services.tracker.track_usage(creator_id, TrackUsageRequest(
            event_name=request.event_name,
            user_id=request.user_id,
            value=request.value,
            properties=request.properties,
            timestamp=request.timestamp,
        ))
        return result.to_dict()

    @app.get("/usage/summary", tags=["Usage"])
    def usage_summary(
        meter_id: str,
        user_id: str,
        plan_name: str,
        billing_period: Optional[str] = None,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Usage of one meter by one user against one plan."""
        _owned_meter(services, creator_id, meter_id)
        return services.tracker.get_usage_summary(meter_id, user_id, plan_name, billing_period).to_dict()

    @app.get("/usage/analytics", tags=["Usage"])
    def usage_analytics(
        start: str,
        end: str,
        meter_id: Optional[str] = None,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Usage totals, per-user breakdown and trend over a date range."""
        if meter_id is not None:
            _owned_meter(services, creator_id, meter_id)
        return services.aggregation.get_usage_analytics(creator_id, start, end, meter_id=meter_id).to_dict()

    @app.post("/enforcement/check", tags=["Usage"])
    def check_enforcement(
        request: EnforcementRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Read-only limit check; safe to call speculatively."""
        return services.enforcement.check_enforcement(
            request.customer_id, creator_id, request.metric_name, request.requested_increment
        ).to_dict()

    @app.get("/alerts", tags=["Usage"])
    def list_alerts(
        meter_id: str,
        user_id: str,
        include_acknowledged: bool = False,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        _owned_meter(services, creator_id, meter_id)
        alerts = services.monitor.list_alerts(meter_id, user_id, include_acknowledged=include_acknowledged)
        return {"total": len(alerts), "alerts": [a.to_dict() for a in alerts]}

    @app.post("/alerts/{alert_id}/acknowledge", tags=["Usage"])
    def acknowledge_alert(
        alert_id: str,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        alert = services.monitor.get_alert(alert_id)
        try:
            _owned_meter(services, creator_id, alert.meter_id)
        except NotFoundError:
            raise NotFoundError(f"Alert not found: {alert_id}")
        return services.monitor.acknowledge_alert(alert_id).to_dict()

    # Tiers

    @app.post("/tiers", status_code=201, tags=["Tiers"])
    def create_tier(
        request: TierRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        return services.tiers.create_tier(creator_id, TierSpec(**request.model_dump())).to_dict()

    @app.get("/tiers", tags=["Tiers"])
    def list_tiers(creator_id: str = Depends(get_creator_id), services: Services = Depends(get_services)):
        tiers = services.tiers.list_tiers(creator_id)
        return {"total": len(tiers), "tiers": [t.to_dict() for t in tiers]}

    @app.patch("/tiers/{tier_id}", tags=["Tiers"])
    def update_tier(
        tier_id: str,
        request: TierUpdateRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Change the fields present in the body."""
        changes = request.model_dump(exclude_unset=True)
        return services.tiers.update_tier(creator_id, tier_id, changes).to_dict()

    @app.delete("/tiers/{tier_id}", status_code=204, tags=["Tiers"])
    def delete_tier(
        tier_id: str,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        services.tiers.delete_tier(creator_id, tier_id)

    @app.post("/assignments", tags=["Tiers"])
    def assign_customer(
        request: AssignmentRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        assignment = services.tiers.assign_customer_to_tier(
            request.customer_id,
            creator_id,
            request.tier_id,
            external_subscription_ref=request.external_subscription_ref,
            external_customer_ref=request.external_customer_ref,
            subscription_item_refs=request.subscription_item_refs,
        )
        return assignment.to_dict()

    @app.get("/customers/{customer_id}/tier", tags=["Tiers"])
    def customer_tier(
        customer_id: str,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        info = services.tiers.get_customer_tier_info(customer_id, creator_id)
        if info is None:
            raise NotFoundError(f"No current tier for customer {customer_id}")
        return info

    @app.post("/customers/{customer_id}/tier-change", tags=["Tiers"])
    def change_tier(
        customer_id: str,
        request: TierChangeRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Switch tiers; the old tier's overages stay billable."""
        assignment = services.billing_sync.process_tier_change(
            customer_id, creator_id, request.tier_id, prorate=request.prorate
        )
        return assignment.to_dict()

    @app.get("/customers/{customer_id}/upgrade-options", tags=["Tiers"])
    def upgrade_options(
        customer_id: str,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        options = services.tiers.get_tier_upgrade_options(customer_id, creator_id)
        return {"options": [o.to_dict() for o in options]}

    @app.get("/customers/{customer_id}/overages", tags=["Billing"])
    def customer_overages(
        customer_id: str,
        billing_period: str,
        preview: bool = False,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Overages for a period; `preview` computes without storing."""
        if preview:
            overages = services.overages.preview_overages(customer_id, creator_id, billing_period)
        else:
            overages = services.overages.calculate_usage_overages(customer_id, creator_id, billing_period)
        return {
            "billing_period": billing_period,
            "overages": [o.to_dict() for o in overages],
            "total_cost": sum(o.overage_cost for o in overages),
        }

    # Billing

    @app.post("/billing/cycles", tags=["Billing"])
    def process_billing_cycle(
        request: PeriodRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Invoice overages for a period. Partial failures are listed in `errors`."""
        return services.billing_sync.process_billing_cycle(creator_id, request.billing_period).to_dict()

    @app.post("/billing/reconcile", tags=["Billing"])
    def reconcile_period(
        request: PeriodRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Recompute every aggregate with events in the period."""
        count = services.aggregation.reconcile_period(creator_id, request.billing_period)
        return {"billing_period": request.billing_period, "aggregates": count}

    @app.post("/billing/sync/usage", tags=["Billing"])
    def sync_period_usage(
        request: PeriodRequest,
        creator_id: str = Depends(get_creator_id),
        services: Services = Depends(get_services),
    ):
        """Report the period's usage totals to the billing provider."""
        return services.billing_sync.sync_period_usage(creator_id, request.billing_period)

    @app.get("/billing/sync/failed", tags=["Billing"])
    def failed_sync(
        limit: int = 100,
        services: Services = Depends(get_services),
        api_key: str = Depends(verify_api_key),
    ):
        """Failed sync records still eligible for retry."""
        records = services.billing_sync.get_failed_billing_sync(limit=limit)
        return {"total": len(records), "records": [r.to_dict() for r in records]}

    @app.post("/billing/sync/{record_id}/retry", tags=["Billing"])
    def retry_sync(
        record_id: str,
        services: Services = Depends(get_services),
        api_key: str = Depends(verify_api_key),
    ):
        return services.billing_sync.retry_failed_sync(record_id).to_dict()

    @app.post("/webhooks/stripe", tags=["Billing"])
    async def stripe_webhook(
        request: Request,
        stripe_signature: str = Header(..., alias="Stripe-Signature"),
        services: Services = Depends(get_services),
    ):
        """Stripe webhook: invoice.paid links invoice items to overages."""
        if not isinstance(services.provider, StripeBillingProvider):
            raise HTTPException(status_code=404, detail="Stripe webhooks not enabled")

        payload = await request.body()
        try:
            event = services.provider.construct_webhook_event(payload, stripe_signature)
        except ProviderError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if event["type"] == "invoice.paid":
            updated = services.billing_sync.handle_invoice_paid(event["object"])
            return {"event_type": event["type"], "processed": True, "overages_updated": updated}
        return {"event_type": event["type"], "processed": False}


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    from ..config import Settings

    settings = Settings.from_env()
    uvicorn.run(
        "meter_rail.api.server:app",
        host="0.0.0.0",
        port=settings.port,
    )


if __name__ == "__main__":
    run()
