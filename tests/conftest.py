"""
Pytest configuration and fixtures.

Each test gets its own file-backed SQLite database, so concurrent tests
exercise real connections and real lock contention.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from upi_orders.api.dependencies import ServiceContainer, get_container
from upi_orders.config import Settings
from upi_orders.core.audit import AuditLogger, AuditTrail
from upi_orders.core.expiration import ExpirationSweeper
from upi_orders.core.lifecycle import OrderLifecycleManager
from upi_orders.core.order_store import OrderStore
from upi_orders.core.settings_provider import SettingsSnapshot, StaticSettingsProvider
from upi_orders.database.connection import build_engine, build_session_factory, init_db


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests against a local database")
    config.addinivalue_line("markers", "race: concurrent access scenarios")
    config.addinivalue_line("markers", "integration: HTTP-level tests through the FastAPI app")


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 15, 10, 0, 0))


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        app_name="upi-orders-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        default_timer_duration_minutes=9,
        cron_secret_token="cron-secret",
        audit_retry_max_attempts=3,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh database with all tables."""
    engine = build_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def audit_logger(session_factory: async_sessionmaker[AsyncSession]) -> AuditLogger:
    return AuditLogger(session_factory)


@pytest.fixture
def audit_trail(audit_logger: AuditLogger) -> AuditTrail:
    return AuditTrail(audit_logger, max_attempts=3)


@pytest.fixture
def settings_snapshot() -> SettingsSnapshot:
    return SettingsSnapshot(timer_duration_minutes=9)


@pytest.fixture
def settings_provider(settings_snapshot: SettingsSnapshot) -> StaticSettingsProvider:
    return StaticSettingsProvider(settings_snapshot)


@pytest.fixture
def lifecycle(
    store: OrderStore,
    audit_trail: AuditTrail,
    settings_provider: StaticSettingsProvider,
    clock: FrozenClock,
) -> OrderLifecycleManager:
    return OrderLifecycleManager(store, audit_trail, settings_provider, clock=clock)


@pytest.fixture
def sweeper(store: OrderStore, audit_trail: AuditTrail, clock: FrozenClock) -> ExpirationSweeper:
    return ExpirationSweeper(store, audit_trail, clock=clock)


@pytest.fixture
def sample_order_data() -> dict[str, Any]:
    """Sample order request data."""
    return {"amount": "100", "merchant_name": "Acme", "pay_address": "acme@bank"}


@pytest.fixture
def container(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    clock: FrozenClock,
) -> ServiceContainer:
    container = ServiceContainer(session_factory, test_settings)
    container.lifecycle.clock = clock
    container.sweeper.clock = clock
    container.settings_provider.clock = clock
    return container


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app with services bound to the test database."""
    from upi_orders.api.main import app

    app.dependency_overrides[get_container] = lambda: container
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
