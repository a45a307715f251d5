"""Run and audit report schemas.

Reports accumulate every non-fatal error of a run so that callers get one
aggregate success signal plus a structured list of what went wrong.
"""

from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .acl import AccessEntry, PermissionLevel


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class EntryFailure(BaseModel):
    """A single add/delete/list call that failed and was skipped."""
    operation: str
    path: str
    principal: Optional[str] = None
    message: str
    details: dict = Field(default_factory=dict)


class NodeStatus(str, Enum):
    RECONCILED = "reconciled"
    PARTIAL = "partial"        # completed with entry failures
    FAILED = "failed"          # aborted by an unexpected error
    MISSING = "missing"        # not present on the filesystem


class NodeResult(BaseModel):
    """Outcome of reconciling one node."""
    node_id: Optional[int]
    path: str
    status: NodeStatus = NodeStatus.RECONCILED
    removed: int = 0
    added: int = 0
    granted: List[str] = Field(default_factory=list)
    traversal_updates: List[str] = Field(default_factory=list)
    failures: List[EntryFailure] = Field(default_factory=list)
    error: Optional[str] = None

    def finish(self) -> "NodeResult":
        if self.status == NodeStatus.RECONCILED and self.failures:
            self.status = NodeStatus.PARTIAL
        return self


class RejectedGrant(BaseModel):
    """A stored grant skipped because its level is not recognized."""
    node_id: int
    principal: Optional[str]
    value: Any
    message: str


class RunReport(BaseModel):
    """Accumulator threaded through a reconcile run."""
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    results: List[NodeResult] = Field(default_factory=list)
    rejected_grants: List[RejectedGrant] = Field(default_factory=list)

    def record(self, result: NodeResult) -> None:
        self.results.append(result)

    def finish(self) -> "RunReport":
        self.finished_at = _now()
        return self

    def with_status(self, *statuses: NodeStatus) -> List[NodeResult]:
        return [r for r in self.results if r.status in statuses]

    @property
    def failed_nodes(self) -> List[NodeResult]:
        return self.with_status(NodeStatus.FAILED, NodeStatus.PARTIAL)

    @property
    def missing_nodes(self) -> List[NodeResult]:
        return self.with_status(NodeStatus.MISSING)

    @property
    def entry_failure_count(self) -> int:
        return sum(len(r.failures) for r in self.results)

    @property
    def succeeded(self) -> bool:
        """True when every node reconciled without mutation errors."""
        return not self.failed_nodes

    def summary(self) -> dict:
        return {
            "total_nodes": len(self.results),
            "reconciled": len(self.with_status(NodeStatus.RECONCILED)),
            "partial": len(self.with_status(NodeStatus.PARTIAL)),
            "failed": len(self.with_status(NodeStatus.FAILED)),
            "missing": len(self.missing_nodes),
            "entries_removed": sum(r.removed for r in self.results),
            "entries_added": sum(r.added for r in self.results),
            "entry_failures": self.entry_failure_count,
            "rejected_grants": len(self.rejected_grants),
            "succeeded": self.succeeded,
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AccessLevel(str, Enum):
    """Actual access observed by probing."""
    FULL = "full"
    TRAVERSAL = "traversal"
    DENIED = "denied"


class Classification(str, Enum):
    ALIGNED = "aligned"
    MISSING_PERMISSION = "missing_permission"
    OVER_PRIVILEGED = "over_privileged"


class AclDiagnosis(str, Enum):
    """Shape of a principal's ACL entries on a mismatched node."""
    NO_ACL = "no_acl"
    EXPLICIT_DENY = "explicit_deny_level0"
    EXPLICIT_ENTRY = "has_level0_explicit"
    INHERITED_ALLOW_ONLY = "inherited_allow_only"
    INHERITED_DENY = "inherited_deny"
    NO_ACCESS = "no_access"


class AuditMode(str, Enum):
    SUMMARY = "summary"
    FULL = "full"
    NODE = "node"
    PRINCIPAL = "principal"


class AccessDecision(BaseModel):
    """Desired vs. actual access for one (node, principal) pair."""
    node_id: Optional[int]
    node_path: str
    principal: str
    level: PermissionLevel
    desired: bool
    actual: AccessLevel
    classification: Classification
    diagnosis: Optional[AclDiagnosis] = None
    conflicting_entries: List[AccessEntry] = Field(default_factory=list)

    @property
    def is_mismatch(self) -> bool:
        return self.classification != Classification.ALIGNED


class NodeAudit(BaseModel):
    node_id: Optional[int]
    path: str
    missing: bool = False
    decisions: List[AccessDecision] = Field(default_factory=list)

    @property
    def mismatches(self) -> List[AccessDecision]:
        return [d for d in self.decisions if d.is_mismatch]

    @property
    def aligned(self) -> bool:
        return not self.missing and not self.mismatches


class AuditReport(BaseModel):
    """Aggregated audit results."""
    mode: AuditMode
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    nodes: List[NodeAudit] = Field(default_factory=list)

    def finish(self) -> "AuditReport":
        self.finished_at = _now()
        return self

    @property
    def total_nodes(self) -> int:
        return len(self.nodes)

    @property
    def aligned_nodes(self) -> List[NodeAudit]:
        return [n for n in self.nodes if n.aligned]

    @property
    def misaligned_nodes(self) -> List[NodeAudit]:
        return [n for n in self.nodes if not n.missing and n.mismatches]

    @property
    def missing_nodes(self) -> List[NodeAudit]:
        return [n for n in self.nodes if n.missing]

    @property
    def mismatches(self) -> List[AccessDecision]:
        return [d for n in self.nodes for d in n.mismatches]

    def mismatches_per_node(self) -> Dict[str, int]:
        return {n.path: len(n.mismatches) for n in self.nodes if n.mismatches}

    def mismatches_per_principal(self) -> Dict[str, List[str]]:
        """Principal -> paths of the nodes where that principal is misaligned."""
        per_principal: Dict[str, List[str]] = defaultdict(list)
        for decision in self.mismatches:
            per_principal[decision.principal].append(decision.node_path)
        return dict(per_principal)

    @property
    def alignment_rate(self) -> float:
        if not self.nodes:
            return 1.0
        return len(self.aligned_nodes) / len(self.nodes)

    @property
    def is_clean(self) -> bool:
        return not self.missing_nodes and not self.mismatches

    def summary(self) -> dict:
        by_class = defaultdict(int)
        for decision in self.mismatches:
            by_class[decision.classification.value] += 1
        return {
            "mode": self.mode.value,
            "total_nodes": self.total_nodes,
            "aligned_nodes": len(self.aligned_nodes),
            "misaligned_nodes": len(self.misaligned_nodes),
            "missing_nodes": len(self.missing_nodes),
            "decisions": sum(len(n.decisions) for n in self.nodes),
            "mismatches": len(self.mismatches),
            "mismatches_by_classification": dict(by_class),
            "alignment_rate": round(self.alignment_rate, 4),
            "is_clean": self.is_clean,
        }
