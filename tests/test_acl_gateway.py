"""Tests for ACL tool output parsing, the subprocess wrapper and the gateway."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from aclsync.exceptions import AclToolError
from aclsync.schemas.acl import (
    DENY_ALL_MASK,
    READ_LIST_MASK,
    TRAVERSE_MASK,
    Effect,
    PrincipalKind,
    Rights,
)
from aclsync.services.acl_gateway import AclGateway, SynoAclTool, parse_entries

SAMPLE_OUTPUT = """ACL version: 1
Archive: is_inherit,is_support_ACL
Owner: [admin(user)]
---------------------
\t [0] user:bonzac:allow:r-x---a-R-c--:fd-- (level:0)
\t [1] user:famille:deny:rwxpdDaARWcCo:fd-- (level:0)
\t [2] group:administrators:allow:rwxpdDaARWcCo:fd-- (level:1)
\t [3] owner:*:allow:rwxpdDaARWcCo:fd-- (level:2)
\t [4] user:valentin:allow:--x---a-R-c--:---- (level:0)
"""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseEntries:
    def test_parses_every_entry_line(self):
        entries = parse_entries(SAMPLE_OUTPUT)
        assert [e.position for e in entries] == [0, 1, 2, 3, 4]

    def test_typed_fields(self):
        bonzac, famille, group, owner, valentin = parse_entries(SAMPLE_OUTPUT)

        assert bonzac.principal_kind == PrincipalKind.USER
        assert bonzac.effect == Effect.ALLOW
        assert bonzac.rights == Rights.READ_LIST
        assert bonzac.is_explicit

        assert famille.effect == Effect.DENY
        assert famille.rights == Rights.ALL

        assert group.principal_kind == PrincipalKind.GROUP
        assert group.level == 1
        assert not group.is_explicit

        assert owner.principal_kind == PrincipalKind.OWNER
        assert valentin.rights == Rights.TRAVERSE
        assert valentin.inheritance == "----"

    def test_ignores_headers_and_garbage(self):
        assert parse_entries("ACL version: 1\nnot an entry\n") == []

    def test_identity_ignores_position(self):
        first = parse_entries("[0] user:a:allow:r-x---a-R-c--:fd-- (level:0)")[0]
        moved = parse_entries("[7] user:a:allow:r-x---a-R-c--:fd-- (level:0)")[0]
        assert first.identity() == moved.identity()
        assert first != moved


# ---------------------------------------------------------------------------
# Subprocess wrapper
# ---------------------------------------------------------------------------


class TestSynoAclTool:
    def test_get_runs_tool(self):
        completed = MagicMock(returncode=0, stdout=SAMPLE_OUTPUT, stderr="")
        with patch("aclsync.services.acl_gateway.subprocess.run", return_value=completed) as run:
            out = SynoAclTool("synoacltool", timeout=5).get("/volume1/photo/Scans")

        assert out == SAMPLE_OUTPUT
        args, kwargs = run.call_args
        assert args[0] == ["synoacltool", "-get", "/volume1/photo/Scans"]
        assert kwargs["timeout"] == 5

    def test_add_and_delete_arguments(self):
        completed = MagicMock(returncode=0, stdout="", stderr="")
        with patch("aclsync.services.acl_gateway.subprocess.run", return_value=completed) as run:
            tool = SynoAclTool()
            tool.add("/p", "user:a:allow:r-x---a-R-c--:fd--")
            tool.delete("/p", 3)

        assert run.call_args_list[0][0][0] == ["synoacltool", "-add", "/p", "user:a:allow:r-x---a-R-c--:fd--"]
        assert run.call_args_list[1][0][0] == ["synoacltool", "-del", "/p", "3"]

    def test_nonzero_exit_raises(self):
        completed = MagicMock(returncode=255, stdout="", stderr="Invalid index")
        with patch("aclsync.services.acl_gateway.subprocess.run", return_value=completed):
            with pytest.raises(AclToolError) as exc_info:
                SynoAclTool().delete("/p", 9)
        assert exc_info.value.details["stderr"] == "Invalid index"

    def test_timeout_raises(self):
        with patch(
            "aclsync.services.acl_gateway.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="synoacltool", timeout=1),
        ):
            with pytest.raises(AclToolError, match="timed out"):
                SynoAclTool(timeout=1).get("/p")

    def test_missing_binary_raises(self):
        with patch("aclsync.services.acl_gateway.subprocess.run", side_effect=FileNotFoundError("nope")):
            with pytest.raises(AclToolError):
                SynoAclTool("missing-tool").get("/p")


# ---------------------------------------------------------------------------
# Gateway over the in-memory tool
# ---------------------------------------------------------------------------


@pytest.fixture()
def folder(store):
    store.add_folder(10, "/Scans", 1)
    return store.physical("/Scans")


class TestAddEntry:
    def test_writes_level0_entries_with_fixed_masks(self, gateway, acl_tool, folder):
        gateway.add_entry(folder, "a", Effect.ALLOW, Rights.READ_LIST)
        gateway.add_entry(folder, "b", Effect.ALLOW, Rights.TRAVERSE)
        gateway.add_entry(folder, "c", Effect.DENY, Rights.ALL)

        assert acl_tool.explicit_for(folder, "a") == [("allow", READ_LIST_MASK)]
        assert acl_tool.explicit_for(folder, "b") == [("allow", TRAVERSE_MASK)]
        assert acl_tool.explicit_for(folder, "c") == [("deny", DENY_ALL_MASK)]
        assert all(e.level == 0 for e in gateway.list_entries(folder))

    def test_never_writes_full_allow(self, gateway, folder):
        with pytest.raises(ValueError):
            gateway.add_entry(folder, "a", Effect.ALLOW, Rights.ALL)

    def test_retries_then_raises(self, gateway, acl_tool, folder):
        acl_tool.fail_add_for.add("a")
        with pytest.raises(AclToolError):
            gateway.add_entry(folder, "a", Effect.ALLOW, Rights.READ_LIST)
        assert len([c for c in acl_tool.calls if c[0] == "add"]) == 2

    def test_failed_call_that_applied_counts_as_done(self, folder):
        tool = MagicMock()
        tool.add.side_effect = AclToolError("lost reply")
        tool.get.return_value = "[0] user:a:allow:r-x---a-R-c--:fd-- (level:0)\n"

        AclGateway(tool, retry_attempts=3).add_entry(folder, "a", Effect.ALLOW, Rights.READ_LIST)

        assert tool.add.call_count == 1


class TestRemoveWhere:
    def test_relists_before_every_delete(self, gateway, acl_tool, folder):
        acl_tool.preset(
            folder,
            "user:a:allow:r-x---a-R-c--:fd--",
            "group:users:allow:r-x---a-R-c--:fd--",
            "user:b:deny:rwxpdDaARWcCo:fd--",
            "user:c:allow:--x---a-R-c--:----",
        )

        removed, failures = gateway.remove_where(folder, lambda e: e.is_user())

        assert removed == 3
        assert failures == []
        deletes = [c for c in acl_tool.calls if c[0] == "del"]
        # Positions computed from fresh listings: 0, then the group shifts to 0 and b to 1.
        assert [c[2] for c in deletes] == [0, 1, 1]
        assert [e.principal for e in gateway.list_entries(folder)] == ["users"]

    def test_never_deletes_inherited_entries(self, gateway, acl_tool, store, folder):
        store.add_folder(11, "/Scans/Family", 10)
        child = store.physical("/Scans/Family")
        acl_tool.preset(folder, "user:a:deny:rwxpdDaARWcCo:fd--")

        removed, failures = gateway.remove_where(child, lambda e: e.is_user("a"))

        assert (removed, failures) == (0, [])
        assert acl_tool.explicit_for(folder, "a") == [("deny", DENY_ALL_MASK)]

    def test_undeletable_entry_is_reported_and_skipped(self, gateway, acl_tool, folder):
        acl_tool.preset(
            folder,
            "user:stuck:deny:rwxpdDaARWcCo:fd--",
            "user:b:deny:rwxpdDaARWcCo:fd--",
        )
        acl_tool.fail_delete_for.add("stuck")

        removed, failures = gateway.remove_where(folder, lambda e: e.is_user())

        assert removed == 1
        assert len(failures) == 1
        assert failures[0].operation == "delete"
        assert failures[0].principal == "stuck"
        assert acl_tool.explicit_for(folder, "stuck") == [("deny", DENY_ALL_MASK)]
        assert acl_tool.explicit_for(folder, "b") == []

    def test_list_failure_is_reported(self, gateway, acl_tool, folder):
        acl_tool.fail_get_paths.add(folder)
        removed, failures = gateway.remove_where(folder, lambda e: True, principal="a")
        assert removed == 0
        assert failures[0].operation == "list"
        assert failures[0].principal == "a"

    def test_entries_for_includes_inherited(self, gateway, acl_tool, store, folder):
        store.add_folder(11, "/Scans/Family", 10)
        child = store.physical("/Scans/Family")
        acl_tool.preset(folder, "user:a:allow:r-x---a-R-c--:fd--")
        acl_tool.preset(child, "user:a:deny:rwxpdDaARWcCo:fd--", "user:b:deny:rwxpdDaARWcCo:fd--")

        entries = gateway.entries_for(child, "a")

        assert [(e.effect, e.level) for e in entries] == [(Effect.DENY, 0), (Effect.ALLOW, 1)]
