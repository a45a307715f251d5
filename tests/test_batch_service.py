"""Tests for the sequential batch driver."""

from unittest.mock import MagicMock

import pytest

from aclsync.exceptions import AclToolError, NodeNotFoundError
from aclsync.schemas.report import NodeStatus
from aclsync.services.batch_service import BatchDriver
from aclsync.services.reconciler import Reconciler


@pytest.fixture()
def three_folders(store):
    store.add_folder(30, "/C", 1)
    store.add_folder(10, "/A", 1)
    store.add_folder(20, "/B", 1)
    for folder_id in (30, 10, 20):
        store.grant(folder_id, "valentin")
    return store


class TestRunAll:
    def test_processes_folders_in_id_order(self, three_folders, gateway):
        context = three_folders.context()
        report = BatchDriver(context, Reconciler(gateway, context)).run_all()

        assert [r.node_id for r in report.results] == [10, 20, 30]
        assert report.succeeded
        assert report.finished_at is not None

    def test_unexpected_error_does_not_stop_the_batch(self, three_folders, gateway):
        context = three_folders.context()
        real = Reconciler(gateway, context)
        reconciler = MagicMock(wraps=real)

        def flaky(node):
            if node.id == 20:
                raise RuntimeError("boom")
            return real.reconcile(node)

        reconciler.reconcile.side_effect = flaky

        report = BatchDriver(context, reconciler).run_all()

        assert [r.status for r in report.results] == [
            NodeStatus.RECONCILED, NodeStatus.FAILED, NodeStatus.RECONCILED,
        ]
        assert "RuntimeError" in report.results[1].error
        assert not report.succeeded
        assert report.summary()["failed"] == 1

    def test_aclsync_error_is_recorded(self, three_folders, gateway):
        context = three_folders.context()
        reconciler = MagicMock()
        reconciler.reconcile.side_effect = AclToolError("tool crashed")

        report = BatchDriver(context, reconciler).run_all()

        assert len(report.failed_nodes) == 3
        assert all(r.error == "tool crashed" for r in report.results)

    def test_missing_folders_are_skipped_not_failed(self, store, gateway):
        store.add_folder(10, "/Here", 1)
        store.add_folder(11, "/Gone", 1, on_disk=False)
        store.grant(10, "valentin")
        store.grant(11, "valentin")
        context = store.context()

        report = BatchDriver(context, Reconciler(gateway, context)).run_all()

        assert [r.path for r in report.missing_nodes] == ["/Gone"]
        assert report.succeeded

    def test_partial_nodes_fail_the_run(self, three_folders, gateway, acl_tool):
        acl_tool.fail_add_for.add("valentin")
        context = three_folders.context()

        report = BatchDriver(context, Reconciler(gateway, context)).run_all()

        assert {r.status for r in report.results} == {NodeStatus.PARTIAL}
        assert report.entry_failure_count > 0
        assert not report.succeeded

    def test_rejected_grants_are_reported(self, three_folders, gateway):
        three_folders.grant(10, "odd", 6)
        context = three_folders.context()

        report = BatchDriver(context, Reconciler(gateway, context)).run_all()

        assert [g.principal for g in report.rejected_grants] == ["odd"]
        assert report.summary()["rejected_grants"] == 1


class TestReconcileOne:
    def test_single_folder(self, three_folders, gateway):
        context = three_folders.context()
        report = BatchDriver(context, Reconciler(gateway, context)).reconcile_one(20)
        assert [r.node_id for r in report.results] == [20]

    def test_unknown_folder(self, three_folders, gateway):
        context = three_folders.context()
        with pytest.raises(NodeNotFoundError):
            BatchDriver(context, Reconciler(gateway, context)).reconcile_one(999)
