"""Data access repositories."""

from .grant_repository import GrantRepository

__all__ = ["GrantRepository"]
