"""Background workers for async processing."""
from .expiration_worker import run_cycle, start_expiration_worker

__all__ = ["run_cycle", "start_expiration_worker"]
