"""Runs the reconciler over every granted folder, one at a time.

Folders are processed in ascending id order, which approximates
parent-before-child since folders are created top-down. A folder's failure
never stops the batch: it is logged, recorded in the run report and the
next folder is processed.
"""

import logging
from typing import Tuple

from ..exceptions import AclSyncException, NodeMissingError
from ..schemas.acl import Node
from ..schemas.report import AuditMode, AuditReport, NodeResult, NodeStatus, RunReport
from ..tree_index import RunContext
from .audit_service import AuditEngine
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class BatchDriver:
    """Sequential reconcile runs over one RunContext."""

    def __init__(self, context: RunContext, reconciler: Reconciler):
        self.context = context
        self.reconciler = reconciler

    def run_all(self) -> RunReport:
        nodes = sorted(self.context.granted_nodes, key=lambda n: n.id)
        logger.info("Reconciling %d granted folders", len(nodes))
        report = self._new_report()
        for index, node in enumerate(nodes, start=1):
            logger.info("[%d/%d] Folder %s (%s)", index, len(nodes), node.id, node.path)
            report.record(self._reconcile_safely(node))
        return self._finish(report)

    def reconcile_one(self, node_id: int) -> RunReport:
        """Reconcile a single folder. Raises NodeNotFoundError for an unknown id."""
        node = self.context.tree.get(node_id)
        report = self._new_report()
        report.record(self._reconcile_safely(node))
        return self._finish(report)

    def nightly(self, audit_engine: AuditEngine) -> Tuple[RunReport, AuditReport]:
        """Reconcile every folder, then run a summary audit."""
        run_report = self.run_all()
        logger.info("Reconciliation finished, starting summary audit")
        audit_report = audit_engine.audit_all(AuditMode.SUMMARY)
        return run_report, audit_report

    def _reconcile_safely(self, node: Node) -> NodeResult:
        try:
            return self.reconciler.reconcile(node)
        except NodeMissingError as e:
            logger.warning("Skipping folder %s (%s): %s", node.id, node.path, e.message)
            return NodeResult(node_id=node.id, path=node.path, status=NodeStatus.MISSING, error=e.message)
        except AclSyncException as e:
            logger.error(
                "Failed to reconcile folder %s (%s): %s", node.id, node.path, e.message,
                exc_info=True, extra={"error": e.to_dict()},
            )
            return NodeResult(node_id=node.id, path=node.path, status=NodeStatus.FAILED, error=e.message)
        except Exception as e:
            logger.exception("Unexpected error reconciling folder %s (%s)", node.id, node.path)
            return NodeResult(
                node_id=node.id, path=node.path, status=NodeStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )

    def _new_report(self) -> RunReport:
        return RunReport(rejected_grants=list(self.context.grants.rejected))

    def _finish(self, report: RunReport) -> RunReport:
        report.finish()
        summary = report.summary()
        logger.info(
            "Reconciliation done: %d folders, %d reconciled, %d partial, %d failed, %d missing, "
            "%d entries removed, %d added",
            summary["total_nodes"], summary["reconciled"], summary["partial"],
            summary["failed"], summary["missing"],
            summary["entries_removed"], summary["entries_added"],
            extra={"run": summary},
        )
        for result in report.failed_nodes:
            logger.warning(
                "Folder %s (%s) %s: %s",
                result.node_id, result.path, result.status.value,
                result.error or f"{len(result.failures)} entry failures",
            )
        return report
