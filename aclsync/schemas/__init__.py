"""Pydantic schemas for ACL state and run reports."""

from .acl import (
    PermissionLevel,
    Effect,
    Rights,
    PrincipalKind,
    AccessEntry,
    Node,
    WRITABLE_ENTRIES,
    rights_from_mask,
)
from .report import (
    EntryFailure,
    NodeStatus,
    NodeResult,
    RejectedGrant,
    RunReport,
    AccessLevel,
    Classification,
    AclDiagnosis,
    AuditMode,
    AccessDecision,
    NodeAudit,
    AuditReport,
)

__all__ = [
    "PermissionLevel", "Effect", "Rights", "PrincipalKind", "AccessEntry", "Node",
    "WRITABLE_ENTRIES", "rights_from_mask",
    "EntryFailure", "NodeStatus", "NodeResult", "RejectedGrant", "RunReport",
    "AccessLevel", "Classification", "AclDiagnosis", "AuditMode",
    "AccessDecision", "NodeAudit", "AuditReport",
]
