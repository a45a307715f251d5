"""Shared test fixtures for the aclsync test suite.

The Photos datastore is an in-memory SQLite database built from the ORM
models. ACLs live in ``FakeAclTool``, an in-memory stand-in for
``synoacltool`` that produces the same text output (explicit entries first,
then entries inherited from ancestors with their level) and shifts positions
on deletion. ``AclProbe`` evaluates those entries the way the filesystem
does, so reconcile-then-audit can be tested end to end against real
directories under ``tmp_path``.
"""

import os
import posixpath

os.environ["LOG_FORMAT"] = "text"
os.environ["REQUIRE_ROOT"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aclsync.database import Base
from aclsync.exceptions import AclToolError
from aclsync.models import Folder, SharePermission, UserInfo
from aclsync.repositories import GrantRepository
from aclsync.schemas.acl import Effect
from aclsync.schemas.report import AccessLevel
from aclsync.services.acl_gateway import AclGateway, parse_entries
from aclsync.tree_index import build_run_context

EXCLUDED = frozenset({"admin", "guest", "root"})


# ---------------------------------------------------------------------------
# Datastore
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def db(engine):
    """Per-test database session."""
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture()
def photo_root(tmp_path):
    root = tmp_path / "photo"
    root.mkdir()
    return str(root)


class PhotoStore:
    """Seeds the Photos tables and mirrors folders on disk."""

    def __init__(self, db, photo_root: str):
        self.db = db
        self.photo_root = photo_root
        self._users = {}
        self.add_folder(1, "/", None)

    def add_user(self, name: str, user_id: int = None) -> int:
        user_id = user_id or len(self._users) + 100
        self.db.add(UserInfo(id=user_id, name=name, uid=user_id + 1000))
        self.db.commit()
        self._users[name] = user_id
        return user_id

    def add_folder(self, folder_id: int, name: str, parent: int = None, on_disk: bool = True) -> None:
        self.db.add(Folder(
            id=folder_id, name=name, parent=parent,
            passphrase_share=f"share{folder_id}",
        ))
        self.db.commit()
        if on_disk:
            os.makedirs(self.physical(name), exist_ok=True)

    def grant(self, folder_id: int, user: str, permission: int = 1) -> None:
        if user not in self._users:
            self.add_user(user)
        self.db.add(SharePermission(
            passphrase_share=f"share{folder_id}",
            target_id=self._users[user],
            target_type=1,
            permission=permission,
        ))
        self.db.commit()

    def physical(self, name: str) -> str:
        name = name.strip("/")
        return posixpath.join(self.photo_root, name) if name else self.photo_root

    def repository(self) -> GrantRepository:
        return GrantRepository(self.db, excluded_principals=EXCLUDED)

    def context(self):
        return build_run_context(self.repository(), self.photo_root)


@pytest.fixture()
def store(db, photo_root):
    return PhotoStore(db, photo_root)


# ---------------------------------------------------------------------------
# ACL tool and probe
# ---------------------------------------------------------------------------


class FakeAclTool:
    """In-memory synoacltool with inheritance and positional deletion.

    Failure injection:
        fail_add_for     -- principals whose adds always fail
        fail_delete_for  -- principals whose deletes always fail
        fail_get_paths   -- paths whose listing fails
    """

    def __init__(self, photo_root: str):
        self.photo_root = photo_root
        self.explicit = {}
        self.calls = []
        self.fail_add_for = set()
        self.fail_delete_for = set()
        self.fail_get_paths = set()

    def preset(self, path: str, *entries: str) -> None:
        """Install explicit entries given as 'kind:name:effect:mask:inherit'."""
        self.explicit.setdefault(path, []).extend(tuple(s.split(":")) for s in entries)

    def _chain(self, path: str):
        """(path, level) from the folder itself up to the photo root."""
        level = 0
        current = path
        while True:
            yield current, level
            if current == self.photo_root or len(current) <= len(self.photo_root):
                return
            current = posixpath.dirname(current)
            level += 1

    def _listing(self, path: str):
        rows = []
        for source, level in self._chain(path):
            for kind, name, effect, mask, inherit in self.explicit.get(source, []):
                if level == 0 or "d" in inherit:
                    rows.append((kind, name, effect, mask, inherit, level))
        return rows

    def get(self, path: str) -> str:
        self.calls.append(("get", path))
        if path in self.fail_get_paths or not os.path.isdir(path):
            raise AclToolError(f"cannot get ACL of {path}", command=["synoacltool", "-get", path])
        lines = ["ACL version: 1", "Archive: is_inherit,is_support_ACL", "---------------------"]
        for position, (kind, name, effect, mask, inherit, level) in enumerate(self._listing(path)):
            lines.append(f"\t [{position}] {kind}:{name}:{effect}:{mask}:{inherit} (level:{level})")
        return "\n".join(lines) + "\n"

    def add(self, path: str, entry_text: str) -> None:
        self.calls.append(("add", path, entry_text))
        kind, name, effect, mask, inherit = entry_text.split(":")
        if name in self.fail_add_for or not os.path.isdir(path):
            raise AclToolError("add failed", command=["synoacltool", "-add", path, entry_text])
        self.explicit.setdefault(path, []).append((kind, name, effect, mask, inherit))

    def delete(self, path: str, position: int) -> None:
        self.calls.append(("del", path, position))
        rows = self._listing(path)
        if position >= len(rows):
            raise AclToolError("index out of range", command=["synoacltool", "-del", path, str(position)])
        kind, name, effect, mask, inherit, level = rows[position]
        if level > 0:
            raise AclToolError("cannot delete an inherited entry")
        if name in self.fail_delete_for:
            raise AclToolError("delete failed")
        # Explicit entries are listed first, in insertion order.
        del self.explicit[path][position]

    # Inspection helpers

    def explicit_for(self, path: str, name: str):
        return [(effect, mask) for kind, n, effect, mask, _ in self.explicit.get(path, [])
                if kind == "user" and n == name]

    def snapshot(self):
        return {path: sorted(entries) for path, entries in self.explicit.items() if entries}


class AclProbe:
    """Effective access computed from FakeAclTool entries.

    Explicit entries win over inherited ones and, at the same level, a deny
    wins over an allow. Entering a folder needs execute on every folder from
    the photo root down; listing needs read and execute on the folder.
    """

    def __init__(self, tool: FakeAclTool):
        self.tool = tool

    def _allowed(self, principal: str, path: str, right: str) -> bool:
        entries = [e for e in parse_entries(self.tool.get(path)) if e.is_user(principal)]
        entries.sort(key=lambda e: (e.level, e.effect != Effect.DENY))
        for entry in entries:
            if right in entry.permissions:
                return entry.effect == Effect.ALLOW
        return False

    def probe(self, principal: str, path: str) -> AccessLevel:
        chain = [p for p, _ in self.tool._chain(path)]
        for ancestor in chain[1:]:
            if not self._allowed(principal, ancestor, "x"):
                return AccessLevel.DENIED
        if not self._allowed(principal, path, "x"):
            return AccessLevel.DENIED
        if self._allowed(principal, path, "r"):
            return AccessLevel.FULL
        return AccessLevel.TRAVERSAL


class StubProbe:
    """Probe returning canned results keyed by (principal, path)."""

    def __init__(self, results=None, default: AccessLevel = AccessLevel.DENIED):
        self.results = results or {}
        self.default = default
        self.calls = []

    def probe(self, principal: str, path: str) -> AccessLevel:
        self.calls.append((principal, path))
        return self.results.get((principal, path), self.default)


@pytest.fixture()
def acl_tool(photo_root):
    return FakeAclTool(photo_root)


@pytest.fixture()
def gateway(acl_tool):
    return AclGateway(acl_tool, retry_attempts=2)


@pytest.fixture()
def acl_probe(acl_tool):
    return AclProbe(acl_tool)
