"""Audit of stored grants against the access users actually have.

For each (folder, user) pair the stored grant gives the desired state and
the access probe gives the actual one. The pair is aligned when both agree,
with two tolerated differences:

- traversal-only access without a grant: the folder lies on the way to a
  folder the user is granted.
- full access to the root without a grant on it, for a user granted
  somewhere in the tree: the root is where users discover their folders.

Mismatches carry a diagnosis built from the user's ACL entries on the folder.
"""

import logging
import os
from typing import Iterable, List, Optional, Tuple

from ..exceptions import AclToolError, ExcludedPrincipalError
from ..schemas.acl import AccessEntry, Effect, Node, Rights
from ..schemas.report import (
    AccessDecision,
    AccessLevel,
    AclDiagnosis,
    AuditMode,
    AuditReport,
    Classification,
    NodeAudit,
)
from ..tree_index import RunContext
from .acl_gateway import AclGateway

logger = logging.getLogger(__name__)


def classify_access(
    desired: bool,
    actual: AccessLevel,
    is_root: bool = False,
    holds_any_grant: bool = False,
) -> Classification:
    """Apply the alignment rules in order."""
    if desired and actual == AccessLevel.FULL:
        return Classification.ALIGNED
    if not desired and actual == AccessLevel.DENIED:
        return Classification.ALIGNED
    if not desired and actual == AccessLevel.TRAVERSAL:
        return Classification.ALIGNED
    if is_root and not desired and actual == AccessLevel.FULL and holds_any_grant:
        return Classification.ALIGNED
    if desired:
        return Classification.MISSING_PERMISSION
    return Classification.OVER_PRIVILEGED


def diagnose(entries: Iterable[AccessEntry], desired: bool) -> Tuple[AclDiagnosis, List[AccessEntry]]:
    """Describe one user's entries on a mismatched folder.

    Returns the diagnosis and the inherited entries working against the
    desired state: denies when access is wanted, allows when it is not.
    """
    entries = list(entries)
    conflict_effect = Effect.DENY if desired else Effect.ALLOW
    conflicting = [e for e in entries if not e.is_explicit and e.effect == conflict_effect]

    if not entries:
        return AclDiagnosis.NO_ACL, conflicting
    explicit = [e for e in entries if e.is_explicit]
    if any(e.effect == Effect.DENY for e in explicit):
        return AclDiagnosis.EXPLICIT_DENY, conflicting
    if explicit:
        return AclDiagnosis.EXPLICIT_ENTRY, conflicting
    if any(e.effect == Effect.ALLOW and e.rights in (Rights.READ_LIST, Rights.ALL) for e in entries):
        return AclDiagnosis.INHERITED_ALLOW_ONLY, conflicting
    if any(e.effect == Effect.DENY for e in entries):
        return AclDiagnosis.INHERITED_DENY, conflicting
    return AclDiagnosis.NO_ACCESS, conflicting


class AuditEngine:
    """Classifies folders and users and aggregates the results.

    Args:
        context: Run state (tree, grants, principals).
        probe: Anything with ``probe(principal, path) -> AccessLevel``.
        gateway: Optional; when given, mismatches are diagnosed from ACL entries.
        include_root: Also audit the root folder in ``audit_all``.
    """

    def __init__(
        self,
        context: RunContext,
        probe,
        gateway: Optional[AclGateway] = None,
        include_root: bool = False,
    ):
        self.context = context
        self.probe = probe
        self.gateway = gateway
        self.include_root = include_root

    # ------------------------------------------------------------------
    # Single decisions
    # ------------------------------------------------------------------

    def classify(self, node: Node, principal: str) -> AccessDecision:
        level = self.context.grants.level(node.id, principal)
        desired = level.grants_access
        actual = self.probe.probe(principal, node.physical_path)
        classification = classify_access(
            desired,
            actual,
            is_root=node.is_root,
            holds_any_grant=self.context.holds_any_grant(principal),
        )
        decision = AccessDecision(
            node_id=node.id,
            node_path=node.path,
            principal=principal,
            level=level,
            desired=desired,
            actual=actual,
            classification=classification,
        )
        if decision.is_mismatch and self.gateway is not None:
            try:
                entries = self.gateway.entries_for(node.physical_path, principal)
            except AclToolError as e:
                logger.warning("Cannot read ACL of %s for diagnosis: %s", node.path, e.message)
            else:
                diagnosis, conflicting = diagnose(entries, desired)
                decision = decision.model_copy(update={
                    "diagnosis": diagnosis,
                    "conflicting_entries": conflicting,
                })
        return decision

    def audit_node(self, node: Node, principals: Optional[List[str]] = None, verbose: bool = False) -> NodeAudit:
        """Classify every (or the given) principal on one folder.

        A folder absent from disk is reported as missing without probing.
        """
        if not os.path.isdir(node.physical_path):
            logger.warning("Folder %s (%s) is missing on disk: %s", node.id, node.path, node.physical_path)
            return NodeAudit(node_id=node.id, path=node.path, missing=True)

        audit = NodeAudit(node_id=node.id, path=node.path)
        for principal in (principals if principals is not None else self.context.principals):
            decision = self.classify(node, principal)
            audit.decisions.append(decision)
            if decision.is_mismatch:
                logger.warning(
                    "%s: %s on %s (desired=%s, actual=%s, diagnosis=%s)",
                    decision.classification.value, principal, node.path,
                    desired_label(decision), decision.actual.value,
                    decision.diagnosis.value if decision.diagnosis else "n/a",
                )
            elif verbose:
                logger.info(
                    "aligned: %s on %s (desired=%s, actual=%s)",
                    principal, node.path, desired_label(decision), decision.actual.value,
                )
        return audit

    # ------------------------------------------------------------------
    # Audit modes
    # ------------------------------------------------------------------

    def audit_nodes(self) -> List[Node]:
        nodes = list(self.context.granted_nodes)
        if self.include_root and not any(n.is_root for n in nodes):
            nodes.insert(0, self.context.tree.root)
        return nodes

    def audit_all(self, mode: AuditMode = AuditMode.SUMMARY) -> AuditReport:
        """Audit every granted folder. FULL logs aligned decisions too."""
        report = AuditReport(mode=mode)
        verbose = mode == AuditMode.FULL
        for node in self.audit_nodes():
            audit = self.audit_node(node, verbose=verbose)
            report.nodes.append(audit)
            if audit.mismatches:
                logger.warning("Folder %s (%s): %d mismatches", node.id, node.path, len(audit.mismatches))
        return self._finish(report)

    def audit_node_id(self, node_id: int) -> AuditReport:
        """Audit one folder in detail. Raises NodeNotFoundError for an unknown id."""
        node = self.context.tree.get(node_id)
        report = AuditReport(mode=AuditMode.NODE)
        report.nodes.append(self.audit_node(node, verbose=True))
        return self._finish(report)

    def audit_principal(self, principal: str) -> AuditReport:
        """Audit one principal across every granted folder.

        Raises:
            ExcludedPrincipalError: For a system/service identity.
        """
        if self.context.is_excluded(principal):
            raise ExcludedPrincipalError(principal)
        report = AuditReport(mode=AuditMode.PRINCIPAL)
        for node in self.audit_nodes():
            report.nodes.append(self.audit_node(node, principals=[principal], verbose=True))
        return self._finish(report)

    def _finish(self, report: AuditReport) -> AuditReport:
        report.finish()
        summary = report.summary()
        logger.info(
            "Audit (%s): %d folders, %d aligned, %d misaligned, %d missing, %d mismatches",
            report.mode.value, summary["total_nodes"], summary["aligned_nodes"],
            summary["misaligned_nodes"], summary["missing_nodes"], summary["mismatches"],
            extra={"audit": summary},
        )
        for principal, paths in sorted(report.mismatches_per_principal().items()):
            logger.info("  %s: %d mismatches (%s)", principal, len(paths), ", ".join(paths))
        if report.is_clean:
            logger.info("All audited folders are aligned")
        return report


def desired_label(decision: AccessDecision) -> str:
    return decision.level.name.lower() if decision.desired else "none"
