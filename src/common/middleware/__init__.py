"""Common middleware for Roster."""

from .observability import StructlogContextMiddleware

__all__ = ["StructlogContextMiddleware"]
