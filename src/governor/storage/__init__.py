"""Storage layer."""

from governor.storage.database import Database

__all__ = ["Database"]
