"""Repository over the Synology Photos permission tables.

Read-only. Every query the reconciler and the audit need goes through here:
granted folders, per-folder grants, folder paths, known users, and the full
folder list for the tree index.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..exceptions import GrantSourceUnavailableError, NodeNotFoundError
from ..models.photos import Folder, SharePermission, UserInfo
from ..tree_index import GrantTable

logger = logging.getLogger(__name__)

# share_permission.target_id 0 is the public link share, not a user.
PUBLIC_TARGET_ID = 0


class GrantRepository:
    """Data access layer for folders, share permissions and users."""

    def __init__(
        self,
        db: Session,
        excluded_principals: Iterable[str] = (),
        excluded_path_markers: Iterable[str] = ("#recycle", "@eaDir", ".__"),
        root_folder_id: int = 1,
    ):
        self.db = db
        self.excluded_principals = frozenset(excluded_principals)
        self.excluded_path_markers = list(excluded_path_markers)
        self.root_folder_id = root_folder_id

    def ping(self) -> None:
        """Fail fast when the datastore cannot answer a trivial query."""
        try:
            self.db.query(func.count(Folder.id)).scalar()
        except SQLAlchemyError as e:
            raise GrantSourceUnavailableError(
                "Permission datastore query failed", original_error=e
            ) from e

    def _reconcilable(self, query: Query) -> Query:
        """Restrict a folder query to real, non-root, non-system folders."""
        query = query.filter(
            Folder.id != self.root_folder_id,
            Folder.name.isnot(None),
            Folder.name != "",
            Folder.name != "/",
        )
        for marker in self.excluded_path_markers:
            query = query.filter(~Folder.name.contains(marker, autoescape=True))
        return query

    def _with_user_grants(self, query: Query) -> Query:
        return (
            query
            .join(SharePermission, Folder.passphrase_share == SharePermission.passphrase_share)
            .filter(
                SharePermission.target_id != PUBLIC_TARGET_ID,
                SharePermission.permission > 0,
            )
        )

    def list_granted_nodes(self) -> List[Tuple[int, str]]:
        """Folders with at least one user grant, ordered by id."""
        query = self.db.query(Folder.id, Folder.name)
        query = self._reconcilable(self._with_user_grants(query))
        rows = query.distinct().order_by(Folder.id).all()
        return [(row.id, row.name) for row in rows]

    def get_grants(self, node_id: int) -> List[Tuple[str, int]]:
        """(user name, raw permission value) pairs with a value above zero."""
        query = self.db.query(UserInfo.name, SharePermission.permission)
        query = (
            self._with_user_grants(query.select_from(Folder))
            .join(UserInfo, SharePermission.target_id == UserInfo.id)
            .filter(Folder.id == node_id, UserInfo.name.isnot(None))
            .order_by(UserInfo.name)
        )
        return [(row.name, row.permission) for row in query.all()]

    def get_logical_path(self, node_id: int) -> str:
        """Stored name of a folder. Raises NodeNotFoundError if missing."""
        name = self.db.query(Folder.name).filter(Folder.id == node_id).scalar()
        if name is None:
            raise NodeNotFoundError(node_id)
        return name

    def list_all_principals(self) -> List[str]:
        """Every known user except the system/service exclusion set."""
        query = self.db.query(UserInfo.name).filter(
            UserInfo.name.isnot(None),
            UserInfo.name != "",
            ~UserInfo.name.startswith("/volume1", autoescape=True),
        )
        if self.excluded_principals:
            query = query.filter(UserInfo.name.notin_(self.excluded_principals))
        rows = query.distinct().order_by(UserInfo.name).all()
        return [row.name for row in rows]

    def list_folders(self) -> List[Tuple[int, str, Optional[int]]]:
        """(id, name, parent id) of every named folder, for the tree index."""
        rows = (
            self.db.query(Folder.id, Folder.name, Folder.parent)
            .filter(Folder.name.isnot(None))
            .order_by(Folder.id)
            .all()
        )
        return [(row.id, row.name, row.parent) for row in rows]

    def load_grant_table(self) -> GrantTable:
        """Every user grant of every reconcilable folder, decoded.

        The root and system folders are left out, as in ``list_granted_nodes``.

        Grants with an unrecognized permission value are recorded in
        ``GrantTable.rejected`` and otherwise ignored.
        """
        query = self.db.query(Folder.id, UserInfo.name, SharePermission.permission)
        query = (
            self._reconcilable(self._with_user_grants(query.select_from(Folder)))
            .join(UserInfo, SharePermission.target_id == UserInfo.id)
            .filter(UserInfo.name.isnot(None))
            .order_by(Folder.id, UserInfo.name)
        )
        table = GrantTable()
        for row in query.all():
            table.add_raw(row.id, row.name, row.permission)
        logger.info(
            "Loaded grants for %d folders (%d rejected)",
            len(table.grants), len(table.rejected),
        )
        return table
