"""UPI order payment lifecycle and verification service."""

__version__ = "1.0.0"
