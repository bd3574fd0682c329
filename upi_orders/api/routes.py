"""
API routes for the order lifecycle.

Domain errors are not caught here: ``OrderError`` subclasses propagate to
the exception handler registered in ``api.main``, which renders them with
their status code and reason.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from upi_orders.core.audit import AuditAction, AuditFilters, EntityType
from upi_orders.core.lifecycle import DEFAULT_REMOVAL_REASON
from upi_orders.core.models import (
    ClientContext,
    IdentityContext,
    OrderFilters,
    OrderStatus,
    PageRequest,
)
from upi_orders.core.settings_provider import SettingsUpdate

from .dependencies import (
    ServiceContainer,
    get_client_context,
    get_container,
    get_identity,
    require_admin,
)
from .schemas import (
    AuditLogListResponse,
    AuditStatsResponse,
    ChannelToggleBody,
    CreateOrderBody,
    ExpirationOverviewResponse,
    HealthCheckResponse,
    OrderListResponse,
    OrderResponse,
    SettingsResponse,
    SubmitUtrBody,
    SweepResponse,
    UpdateStatusBody,
    UtrStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _order_filters(
    status_filter: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> OrderFilters:
    return OrderFilters(
        status=OrderStatus.parse(status_filter) if status_filter else None,
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
    )


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create a pending UPI order with a bounded validity window",
)
async def create_order(
    body: CreateOrderBody,
    identity: IdentityContext = Depends(get_identity),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.lifecycle.create_order(
        body.model_dump(), actor_id=identity.user_id, client=client
    )
    return OrderResponse.from_order(order, container.lifecycle.clock())


@order_router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    identity: IdentityContext = Depends(get_identity),
    container: ServiceContainer = Depends(get_container),
) -> OrderListResponse:
    result = await container.lifecycle.list_orders(
        identity.user_id,
        _order_filters(status_filter, start_date, end_date),
        PageRequest(page=page, limit=limit),
    )
    return OrderListResponse.from_page(result, container.lifecycle.clock())


@order_router.get("/stats", summary="Order statistics")
async def order_stats(
    identity: IdentityContext = Depends(get_identity),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Counts by status; admins see every order, merchants their own."""
    created_by = None if identity.is_admin else identity.user_id
    stats = await container.lifecycle.order_stats(created_by)
    return stats.model_dump()


@order_router.post(
    "/expire",
    response_model=SweepResponse,
    summary="Run an expiration sweep",
    description="Expire overdue pending orders (cron entry point)",
)
async def run_sweep(
    authorization: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> SweepResponse:
    token = container.settings.cron_secret_token
    if token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    now = container.sweeper.clock()
    result = await container.sweeper.sweep(now)
    audit_retried = await container.audit_trail.retry_pending()
    logger.info(
        "api_sweep_completed",
        expired_count=result.expired_count,
        failures=len(result.failures),
        audit_retried=audit_retried,
    )
    return SweepResponse(
        expired_count=result.expired_count,
        expired_ids=result.expired_ids,
        failures=result.failures,
        audit_retried=audit_retried,
        audit_pending=container.audit_trail.pending_count,
        timestamp=now,
    )


@order_router.get(
    "/expire",
    response_model=ExpirationOverviewResponse,
    summary="Expiration overview",
)
async def expiration_overview(
    within_minutes: int = Query(default=5, ge=1, le=60),
    container: ServiceContainer = Depends(get_container),
) -> ExpirationOverviewResponse:
    now = container.sweeper.clock()
    stats = await container.sweeper.stats(now)
    expiring = await container.sweeper.expiring_soon(within_minutes, now)
    return ExpirationOverviewResponse(
        total_pending=stats.total_pending,
        total_expired=stats.total_expired,
        expired_today=stats.expired_today,
        expiring_soon=expiring,
    )


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
    description="Public order lookup for the payment page; expires overdue orders on read",
)
async def get_order(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.lifecycle.get_order(order_id)
    return OrderResponse.from_order(order, container.lifecycle.clock())


@order_router.post(
    "/{order_id}/utr",
    response_model=OrderResponse,
    summary="Submit UTR",
    description="Record the payer's bank reference and move the order to verification",
)
async def submit_utr(
    order_id: str,
    body: SubmitUtrBody,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.lifecycle.submit_utr(
        order_id, body.utr, actor_id=x_user_id or None, client=client
    )
    return OrderResponse.from_order(order, container.lifecycle.clock())


@order_router.get(
    "/{order_id}/utr",
    response_model=UtrStatusResponse,
    summary="UTR status",
)
async def utr_status(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> UtrStatusResponse:
    order = await container.lifecycle.get_order(order_id)
    return UtrStatusResponse(
        order_id=order.order_id,
        status=order.status.value,
        utr=order.utr,
        utr_submitted_at=order.metadata.get("utr_submitted_at"),
        can_submit_utr=order.can_submit_utr(container.lifecycle.clock()),
    )


@order_router.delete(
    "/{order_id}/utr",
    response_model=OrderResponse,
    summary="Remove UTR",
    description="Administrative correction: clear the UTR and reopen or expire the order",
)
async def remove_utr(
    order_id: str,
    reason: str = Query(default=DEFAULT_REMOVAL_REASON, min_length=1, max_length=500),
    identity: IdentityContext = Depends(require_admin),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.lifecycle.remove_utr(
        order_id, identity.user_id, reason=reason, client=client
    )
    return OrderResponse.from_order(order, container.lifecycle.clock())


@admin_router.get(
    "/orders",
    response_model=OrderListResponse,
    summary="List all orders",
)
async def list_all_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> OrderListResponse:
    result = await container.lifecycle.list_all_orders(
        _order_filters(status_filter, start_date, end_date),
        PageRequest(page=page, limit=limit),
    )
    return OrderListResponse.from_page(result, container.lifecycle.clock())


@admin_router.put(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Decide an order",
    description="Complete or fail an order under verification, or expire a pending order",
)
async def update_order_status(
    order_id: str,
    body: UpdateStatusBody,
    identity: IdentityContext = Depends(require_admin),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.lifecycle.decide(
        order_id, body.status, identity.user_id, reason=body.reason, client=client
    )
    return OrderResponse.from_order(order, container.lifecycle.clock())


@admin_router.get(
    "/audit-logs",
    response_model=AuditLogListResponse,
    summary="Query the audit log",
)
async def list_audit_logs(
    actor_id: Optional[str] = Query(default=None, alias="userId"),
    action: Optional[AuditAction] = Query(default=None),
    entity_type: Optional[EntityType] = Query(default=None, alias="entityType"),
    entity_id: Optional[str] = Query(default=None, alias="entityId"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> AuditLogListResponse:
    result = await container.audit_logger.query(
        AuditFilters(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            start_date=_naive_utc(start_date),
            end_date=_naive_utc(end_date),
        ),
        PageRequest(page=page, limit=limit),
    )
    return AuditLogListResponse(
        entries=result.entries, total=result.total, page=result.page, limit=result.limit
    )


@admin_router.get(
    "/audit-logs/stats",
    response_model=AuditStatsResponse,
    summary="Audit log statistics",
)
async def audit_log_stats(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    days: int = Query(default=30, ge=1, le=365),
    container: ServiceContainer = Depends(get_container),
) -> AuditStatsResponse:
    """Defaults to the last ``days`` days when no range is given."""
    end = _naive_utc(end_date) or container.lifecycle.clock()
    start = _naive_utc(start_date) or end - timedelta(days=days)
    return AuditStatsResponse.from_counts(
        await container.audit_logger.aggregate_counts(start, end),
        await container.audit_logger.actor_stats(start, end),
    )


@admin_router.get("/settings", response_model=SettingsResponse, summary="Current settings")
async def get_system_settings(
    container: ServiceContainer = Depends(get_container),
) -> SettingsResponse:
    return SettingsResponse.from_snapshot(await container.settings_provider.get_snapshot())


@admin_router.put("/settings", response_model=SettingsResponse, summary="Update settings")
async def update_system_settings(
    body: SettingsUpdate,
    identity: IdentityContext = Depends(require_admin),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> SettingsResponse:
    snapshot = await container.settings_provider.update(body, identity.user_id, client=client)
    return SettingsResponse.from_snapshot(snapshot)


@admin_router.put(
    "/settings/channels/{channel}",
    response_model=SettingsResponse,
    summary="Enable or disable a payment channel",
)
async def toggle_channel(
    channel: str,
    body: ChannelToggleBody,
    identity: IdentityContext = Depends(require_admin),
    client: ClientContext = Depends(get_client_context),
    container: ServiceContainer = Depends(get_container),
) -> SettingsResponse:
    snapshot = await container.settings_provider.set_channel(
        channel, body.enabled, identity.user_id, client=client
    )
    return SettingsResponse.from_snapshot(snapshot)


@admin_router.get(
    "/settings/history",
    response_model=AuditLogListResponse,
    summary="Settings change history",
)
async def settings_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> AuditLogListResponse:
    result = await container.settings_provider.history(PageRequest(page=page, limit=limit))
    return AuditLogListResponse(
        entries=result.entries, total=result.total, page=result.page, limit=result.limit
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await container.health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await container.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await container.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
