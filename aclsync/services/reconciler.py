"""Converges the explicit ACL entries of one folder to its stored grants.

Per folder, in order:

    clean      -- drop every explicit user entry (excluded users untouched)
    grant      -- read/list allow for each user holding a grant
    deny       -- deny-all for every other known user, or a traversal-only
                  allow when that user holds a grant somewhere below
    traversal  -- walk up to the root so every granted or passing user can reach
                  the folder: stop at a reconciled ancestor granted to that
                  user or at an explicit allow, otherwise remove the user's
                  denies and add a traversal-only allow

Only explicit (level 0) entries are ever written. Inherited denies met on the
way up are removed where they are defined, on the ancestor ``level`` steps up.
A failed add or delete is recorded in the folder's result and the sequence
goes on: the folder ends under-granted, never over-granted.
"""

import logging
import os
from typing import Callable, List, Set

from ..exceptions import AclToolError, NodeMissingError
from ..schemas.acl import AccessEntry, Effect, Node, Rights
from ..schemas.report import EntryFailure, NodeResult
from ..tree_index import RunContext
from .acl_gateway import AclGateway

logger = logging.getLogger(__name__)


class Reconciler:
    """Applies the clean/grant/deny/traversal sequence to single folders."""

    def __init__(self, gateway: AclGateway, context: RunContext):
        self.gateway = gateway
        self.context = context

    def reconcile(self, node: Node) -> NodeResult:
        """Reconcile one folder and retrofit its ancestors.

        Raises:
            NodeMissingError: If the folder does not exist on disk.
        """
        if not os.path.isdir(node.physical_path):
            raise NodeMissingError(node.id, node.physical_path)

        logger.info("Reconciling folder %s (%s)", node.id, node.path)
        result = NodeResult(node_id=node.id, path=node.path)

        self._clean(node, result)
        granted = self._grant(node, result)
        passing = self._deny(node, set(granted), result)
        for principal in granted + passing:
            self._propagate_traversal(node, principal, result)

        result.finish()
        logger.info(
            "Folder %s (%s): %d removed, %d added, %d granted, %d traversal updates, %d failures",
            node.id, node.path, result.removed, result.added, len(result.granted),
            len(result.traversal_updates), len(result.failures),
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _clean(self, node: Node, result: NodeResult) -> None:
        def owned(entry: AccessEntry) -> bool:
            return entry.is_user() and not self.context.is_excluded(entry.principal)

        self._remove(node.physical_path, owned, None, result)

    def _grant(self, node: Node, result: NodeResult) -> List[str]:
        """Add read/list allows. Returns every non-excluded granted principal."""
        granted = []
        for principal, level in sorted(self.context.grants.grants_for(node.id).items()):
            if self.context.is_excluded(principal):
                logger.warning(
                    "Ignoring grant %s for excluded principal '%s' on %s",
                    level.name, principal, node.path,
                )
                continue
            granted.append(principal)
            if self._add(node.physical_path, principal, Effect.ALLOW, Rights.READ_LIST, result):
                result.granted.append(principal)
        return granted

    def _deny(self, node: Node, granted: Set[str], result: NodeResult) -> List[str]:
        """Deny everyone else. Returns the principals given traversal instead."""
        below = self.context.traversal_principals(node)
        passing = []
        for principal in self.context.principals:
            if principal in granted or self.context.is_excluded(principal):
                continue
            if principal in below:
                passing.append(principal)
                self._add(node.physical_path, principal, Effect.ALLOW, Rights.TRAVERSE, result)
            else:
                self._add(node.physical_path, principal, Effect.DENY, Rights.ALL, result)
        return passing

    def _propagate_traversal(self, node: Node, principal: str, result: NodeResult) -> None:
        context = self.context
        tree = context.tree
        for ancestor in tree.ancestors(node):
            # A reconciled ancestor holding the grant gets its own allow.
            if context.is_reconciled(ancestor) and context.grants.has_grant(ancestor.id, principal):
                return

            path = ancestor.physical_path
            try:
                entries = self.gateway.entries_for(path, principal)
            except AclToolError as e:
                self._record(result, "list", path, principal, e)
                return

            if any(e.is_explicit and e.effect == Effect.ALLOW for e in entries):
                return

            def is_deny(entry: AccessEntry) -> bool:
                return entry.is_user(principal) and entry.effect == Effect.DENY

            denies = [e for e in entries if e.effect == Effect.DENY]
            if any(e.is_explicit for e in denies):
                self._remove(path, is_deny, principal, result)
            for level in sorted({e.level for e in denies if not e.is_explicit}):
                source = tree.ancestor_at(ancestor, level)
                if source is None:
                    logger.warning(
                        "Inherited deny for '%s' on %s points above the root (level %d)",
                        principal, ancestor.path, level,
                    )
                    continue
                self._remove(source.physical_path, is_deny, principal, result)

            if self._add(path, principal, Effect.ALLOW, Rights.TRAVERSE, result):
                result.traversal_updates.append(f"{ancestor.path}:{principal}")
                logger.debug("Traversal granted to '%s' on %s", principal, ancestor.path)

    # ------------------------------------------------------------------
    # Gateway calls with failure recording
    # ------------------------------------------------------------------

    def _add(self, path: str, principal: str, effect: Effect, rights: Rights, result: NodeResult) -> bool:
        try:
            self.gateway.add_entry(path, principal, effect, rights)
        except AclToolError as e:
            self._record(result, "add", path, principal, e)
            return False
        result.added += 1
        return True

    def _remove(self, path: str, predicate: Callable[[AccessEntry], bool], principal, result: NodeResult) -> None:
        removed, failures = self.gateway.remove_where(path, predicate, principal)
        result.removed += removed
        for failure in failures:
            logger.warning(
                "%s failed on %s for '%s': %s",
                failure.operation, failure.path, failure.principal, failure.message,
            )
        result.failures.extend(failures)

    @staticmethod
    def _record(result: NodeResult, operation: str, path: str, principal: str, error: AclToolError) -> None:
        logger.warning("%s failed on %s for '%s': %s", operation, path, principal, error.message)
        result.failures.append(EntryFailure(
            operation=operation,
            path=path,
            principal=principal,
            message=error.message,
            details=error.details,
        ))
