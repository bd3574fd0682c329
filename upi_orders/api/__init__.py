"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateOrderBody,
    OrderListResponse,
    OrderResponse,
    SubmitUtrBody,
    UpdateStatusBody,
)

__all__ = [
    "app",
    "CreateOrderBody",
    "OrderListResponse",
    "OrderResponse",
    "SubmitUtrBody",
    "UpdateStatusBody",
]
