"""Reconciliation, audit and ACL tool services."""

from .access_probe import SuAccessProbe
from .acl_gateway import AclGateway, SynoAclTool
from .audit_service import AuditEngine
from .batch_service import BatchDriver
from .reconciler import Reconciler

__all__ = ["AclGateway", "AuditEngine", "BatchDriver", "Reconciler", "SuAccessProbe", "SynoAclTool"]
