"""Database-host side of the clone lifecycle."""

from .freeze import GuestFreezeClient

__all__ = ["GuestFreezeClient"]
