"""In-memory run state: folder tree, grant table and the context passed to every component.

Built once per run from the grant datastore. The tree shape is never
re-read during a run; only the ACL state of individual folders is.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .exceptions import GrantSourceUnavailableError, InvalidPermissionLevelError, NodeNotFoundError
from .schemas.acl import Node, PermissionLevel
from .schemas.report import RejectedGrant

logger = logging.getLogger(__name__)

ROOT_PATH = "/"


def normalize_logical_path(name: str) -> str:
    """Normalize a stored folder name to a canonical logical path.

    "Scans/Family/", "/Scans//Family" -> "/Scans/Family"; "" and "/" -> "/".
    """
    v = (name or "").strip().strip("/")
    while "//" in v:
        v = v.replace("//", "/")
    return "/" + v if v else ROOT_PATH


def to_physical_path(photo_root: str, logical_path: str) -> str:
    """Map a logical path onto the photo share directory."""
    logical_path = normalize_logical_path(logical_path)
    if logical_path == ROOT_PATH:
        return photo_root
    return photo_root.rstrip("/") + logical_path


class TreeIndex:
    """Folders keyed by id and by logical path, with parent navigation.

    Parents are resolved through the stored parent id when it agrees with the
    logical path, and through the logical path otherwise, so an ancestor walk
    always moves strictly towards the root. Ancestors absent from the
    datastore are synthesized with ``id=None``.
    """

    def __init__(self, photo_root: str, root_id: int = 1):
        self.photo_root = photo_root
        self.root_id = root_id
        self._by_id: Dict[int, Node] = {}
        self._by_path: Dict[str, Node] = {}

    @classmethod
    def from_folders(
        cls,
        folders: Iterable[Tuple[int, str, Optional[int]]],
        photo_root: str,
        root_id: int = 1,
    ) -> "TreeIndex":
        tree = cls(photo_root, root_id)
        for folder_id, name, parent_id in folders:
            tree.add(folder_id, name, parent_id)
        return tree

    def add(self, node_id: int, name: str, parent_id: Optional[int] = None) -> Node:
        path = normalize_logical_path(name)
        is_root = node_id == self.root_id or path == ROOT_PATH
        node = Node(
            id=node_id,
            path=path,
            parent_id=None if is_root else parent_id,
            physical_path=to_physical_path(self.photo_root, path),
            is_root=is_root,
        )
        self._by_id[node_id] = node
        # The first folder registered for a path wins; duplicates are kept by id only.
        self._by_path.setdefault(path, node)
        return node

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._by_id

    def get(self, node_id: int) -> Node:
        """Get node by id. Raises NodeNotFoundError if missing."""
        node = self._by_id.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def get_optional(self, node_id: Optional[int]) -> Optional[Node]:
        if node_id is None:
            return None
        return self._by_id.get(node_id)

    def by_path(self, path: str) -> Node:
        """Get node by logical path, synthesizing it if the datastore lacks it."""
        path = normalize_logical_path(path)
        node = self._by_path.get(path)
        if node is not None:
            return node
        if path == ROOT_PATH:
            return self.root
        return Node(
            id=None,
            path=path,
            physical_path=to_physical_path(self.photo_root, path),
        )

    @property
    def root(self) -> Node:
        node = self._by_id.get(self.root_id) or self._by_path.get(ROOT_PATH)
        if node is not None:
            return node
        return Node(
            id=self.root_id,
            path=ROOT_PATH,
            physical_path=self.photo_root,
            is_root=True,
        )

    def parent(self, node: Node) -> Optional[Node]:
        """The node's parent, or None for the root."""
        if node.is_root or node.path == ROOT_PATH:
            return None
        parent_path = posixpath.dirname(node.path)
        candidate = self.get_optional(node.parent_id)
        if candidate is not None and candidate.path == parent_path:
            return candidate
        return self.by_path(parent_path)

    def ancestors(self, node: Node) -> List[Node]:
        """Ancestors from the nearest parent up to and including the root."""
        result = []
        current = self.parent(node)
        while current is not None:
            result.append(current)
            current = self.parent(current)
        return result

    def ancestor_at(self, node: Node, distance: int) -> Optional[Node]:
        """The ancestor *distance* steps up, or None past the root."""
        if distance <= 0:
            return node
        ancestors = self.ancestors(node)
        if distance > len(ancestors):
            return None
        return ancestors[distance - 1]


@dataclass
class GrantTable:
    """Grants of the current run, keyed by node id then principal."""

    grants: Dict[int, Dict[str, PermissionLevel]] = field(default_factory=dict)
    rejected: List[RejectedGrant] = field(default_factory=list)

    def add_raw(self, node_id: int, principal: str, value: object) -> Optional[PermissionLevel]:
        """Decode and store one stored grant; unrecognized levels are rejected."""
        try:
            level = PermissionLevel.parse(value, node_id=node_id, principal=principal)
        except InvalidPermissionLevelError as e:
            logger.warning(
                "Skipping grant with %s for '%s' on folder %s",
                e.message, principal, node_id,
            )
            self.rejected.append(RejectedGrant(
                node_id=node_id, principal=principal, value=value, message=e.message,
            ))
            return None
        if level.grants_access:
            current = self.grants.setdefault(node_id, {}).get(principal, PermissionLevel.NONE)
            self.grants[node_id][principal] = max(current, level)
        return level

    def level(self, node_id: Optional[int], principal: str) -> PermissionLevel:
        if node_id is None:
            return PermissionLevel.NONE
        return self.grants.get(node_id, {}).get(principal, PermissionLevel.NONE)

    def has_grant(self, node_id: Optional[int], principal: str) -> bool:
        return self.level(node_id, principal).grants_access

    def grants_for(self, node_id: Optional[int]) -> Dict[str, PermissionLevel]:
        if node_id is None:
            return {}
        return dict(self.grants.get(node_id, {}))


@dataclass
class RunContext:
    """Everything a reconcile or audit run reads, built once and passed explicitly."""

    tree: TreeIndex
    grants: GrantTable
    principals: List[str]
    excluded: frozenset = frozenset()
    granted_nodes: List[Node] = field(default_factory=list)
    _traversal: Optional[Dict[str, Set[str]]] = field(default=None, repr=False)

    def is_excluded(self, principal: str) -> bool:
        return principal in self.excluded

    def is_reconciled(self, node: Node) -> bool:
        """True for a non-root folder the batch reconciles."""
        return not node.is_root and any(n.id == node.id for n in self.granted_nodes)

    def holds_any_grant(self, principal: str) -> bool:
        """Whether *principal* holds a grant on any reconciled folder."""
        return any(self.grants.has_grant(n.id, principal) for n in self.granted_nodes)

    def traversal_principals(self, node: Node) -> Set[str]:
        """Principals holding a grant on a strict descendant of *node*."""
        if self._traversal is None:
            self._traversal = self._build_traversal_map()
        return set(self._traversal.get(node.path, ()))

    def _build_traversal_map(self) -> Dict[str, Set[str]]:
        traversal: Dict[str, Set[str]] = {}
        for node in self.granted_nodes:
            per_node = self.grants.grants_for(node.id)
            for ancestor in self.tree.ancestors(node):
                traversal.setdefault(ancestor.path, set()).update(per_node)
        return traversal


def build_run_context(repo, photo_root: str, root_id: int = 1) -> RunContext:
    """Load the tree, grants, principals and granted nodes in one pass.

    Args:
        repo: A GrantRepository (or anything exposing the same queries).
        photo_root: Physical directory of the logical root.
        root_id: Folder id of the tree root.

    Raises:
        GrantSourceUnavailableError: If any datastore query fails.
    """
    try:
        tree = TreeIndex.from_folders(repo.list_folders(), photo_root, root_id)
        grants = repo.load_grant_table()
        principals = repo.list_all_principals()
        granted = repo.list_granted_nodes()
    except SQLAlchemyError as e:
        raise GrantSourceUnavailableError(
            "Failed to load run state from the permission datastore", original_error=e
        ) from e

    granted_nodes = []
    for node_id, name in sorted(granted):
        node = tree.get(node_id) if node_id in tree else tree.add(node_id, name)
        granted_nodes.append(node)

    logger.info(
        "Run state loaded: %d folders indexed, %d granted, %d principals",
        len(tree), len(granted_nodes), len(principals),
    )
    return RunContext(
        tree=tree,
        grants=grants,
        principals=list(principals),
        excluded=frozenset(getattr(repo, "excluded_principals", frozenset())),
        granted_nodes=granted_nodes,
    )
