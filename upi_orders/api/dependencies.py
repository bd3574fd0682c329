"""
FastAPI dependencies: service wiring, caller identity and request provenance.

Identity is established upstream (gateway / identity provider) and passed
through the ``X-User-Id`` and ``X-User-Role`` headers; this service only
records it.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upi_orders.config import Settings, get_settings
from upi_orders.core.audit import AuditLogger, AuditTrail
from upi_orders.core.expiration import ExpirationSweeper
from upi_orders.core.lifecycle import OrderLifecycleManager
from upi_orders.core.models import ClientContext, IdentityContext
from upi_orders.core.order_store import OrderStore
from upi_orders.core.settings_provider import DatabaseSettingsProvider
from upi_orders.database.connection import get_session_factory
from upi_orders.monitoring.health import HealthCheck


class ServiceContainer:
    """All services sharing one session factory and one audit retry queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.store = OrderStore(session_factory)
        self.audit_logger = AuditLogger(session_factory)
        self.audit_trail = AuditTrail(
            self.audit_logger,
            max_attempts=self.settings.audit_retry_max_attempts,
            max_queue=self.settings.audit_retry_queue_max,
        )
        self.settings_provider = DatabaseSettingsProvider(
            session_factory, self.audit_trail, defaults=self.settings
        )
        self.lifecycle = OrderLifecycleManager(
            self.store, self.audit_trail, self.settings_provider
        )
        self.sweeper = ExpirationSweeper(
            self.store, self.audit_trail, batch_size=self.settings.sweep_batch_size
        )
        self.health_check = HealthCheck(session_factory, self.audit_trail)


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """Get or create the process-wide service container."""
    global _container
    if _container is None:
        _container = ServiceContainer(get_session_factory())
    return _container


def reset_container() -> None:
    global _container
    _container = None


async def get_identity(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: str = Header(default="merchant", alias="X-User-Role"),
) -> IdentityContext:
    """Caller identity; 401 when the gateway supplied none."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required"
        )
    return IdentityContext(user_id=x_user_id.strip(), role=x_user_role.strip() or "merchant")


async def require_admin(identity: IdentityContext = Depends(get_identity)) -> IdentityContext:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


def get_client_context(request: Request) -> ClientContext:
    """Client IP (first ``X-Forwarded-For`` hop when present), user agent and referrer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.headers.get("x-real-ip") or (
            request.client.host if request.client else None
        )
    return ClientContext(
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
    )
