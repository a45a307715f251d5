"""Database models."""

from .photos import Folder, SharePermission, UserInfo

__all__ = ["Folder", "SharePermission", "UserInfo"]
