"""
Utilities package for delivery-sync.

Exports shared helpers for logging and other cross-cutting concerns.
Keep this package lightweight and free of domain-specific logic.
"""

from delivery_sync.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
