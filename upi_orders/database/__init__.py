"""Database package for the UPI order service."""
from .connection import (
    build_engine,
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from .models import AuditLogRecord, Base, OrderRecord, SystemSettingsRecord

__all__ = [
    "Base",
    "OrderRecord",
    "AuditLogRecord",
    "SystemSettingsRecord",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
