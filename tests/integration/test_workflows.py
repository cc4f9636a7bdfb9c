"""
Integration tests — end-to-end workflows through the wired runtime.

Covers: the Reports/2024/q1.pdf sharing scenario, propagation completeness and
isolation, precedence, sibling uniqueness, recursive delete completeness,
storage-key immutability and the revoke non-cascade behavior.
"""

import json
import uuid
from pathlib import Path

import pytest

from treevault.engine.errors import (
    TreeVaultConflictError,
    TreeVaultForbiddenError,
    TreeVaultNotFoundError,
)
from treevault.engine.logging import get_log_queue

pytestmark = pytest.mark.integration


def new_uuid():
    return str(uuid.uuid4())


@pytest.fixture
def W():
    return new_uuid()


@pytest.fixture
def U1():
    return new_uuid()


@pytest.fixture
def U2():
    return new_uuid()


class TestReportsScenario:

    def test_share_reports_folder(self, live_runtime, put_file, W, U1, U2):
        rt = live_runtime
        reports = rt.folders.create_folder("Reports", U1, W)
        year = rt.folders.create_folder("2024", U1, W, reports.id)
        q1 = put_file(W, U1, year.id, "q1.pdf", b"\0" * 10000, "application/pdf")
        assert q1.size_bytes == 10000

        rt.permissions.grant_specific(U2, reports.id, "folder", ["read"])

        assert rt.resolver.can_access(U2, "folder", year.id, "read").allowed
        assert rt.resolver.can_access(U2, "file", q1.id, "read").allowed
        assert not rt.resolver.can_access(U2, "folder", reports.id, "write").allowed
        with pytest.raises(TreeVaultForbiddenError):
            rt.resolver.require(U2, "folder", reports.id, "write")

        # the read capability really serves the bytes
        url = rt.files.get_file(q1.id).download_url
        key = rt.gateway.verify_url(url, "read")
        assert rt.gateway.read(key) == b"\0" * 10000


class TestProperties:

    def test_ownership_bypass(self, live_runtime, W, U1):
        folder = live_runtime.folders.create_folder("Mine", U1, W)
        for action in ("read", "write", "create", "delete", "owner"):
            assert live_runtime.resolver.can_access(U1, "folder", folder.id, action).tier == "owner"

    def test_propagation_completeness_deep_tree(self, live_runtime, put_file, W, U1, U2):
        rt = live_runtime
        top = rt.folders.create_folder("top", U1, W)
        parent = top
        all_ids = []
        for depth in range(6):
            parent = rt.folders.create_folder(f"d{depth}", U1, W, parent.id)
            all_ids.append(("folder", parent.id))
            f = put_file(W, U1, parent.id, f"f{depth}.txt", b"x")
            all_ids.append(("file", f.id))

        rt.permissions.grant_specific(U2, top.id, "folder", ["read", "write"])
        for kind, rid in all_ids:
            assert rt.resolver.can_access(U2, kind, rid, "write").tier == "specific"

    def test_propagation_isolation(self, live_runtime, put_file, W, U1, U2):
        rt = live_runtime
        a = rt.folders.create_folder("A", U1, W)
        b = rt.folders.create_folder("B", U1, W)
        fb = put_file(W, U1, b.id, "b.txt", b"b")
        rt.permissions.grant_specific(U2, a.id, "folder", ["read"])
        assert not rt.resolver.can_access(U2, "folder", b.id, "read").allowed
        assert not rt.resolver.can_access(U2, "file", fb.id, "read").allowed

    def test_precedence_global_over_specific(self, live_runtime, W, U1, U2):
        rt = live_runtime
        folder = rt.folders.create_folder("F", U1, W)
        rt.permissions.grant_global(U2, ["read"])
        rt.permissions.grant_specific(U2, folder.id, "folder", ["read", "delete"])
        assert rt.resolver.can_access(U2, "folder", folder.id, "read").tier == "global"
        assert rt.resolver.can_access(U2, "folder", folder.id, "delete").tier == "specific"
        assert not rt.resolver.can_access(U2, "folder", folder.id, "create").allowed

    def test_sibling_uniqueness(self, live_runtime, W, U1, U2):
        rt = live_runtime
        parent = rt.folders.create_folder("P", U1, W)
        rt.folders.create_folder("Same", U1, W, parent.id)
        with pytest.raises(TreeVaultConflictError):
            rt.folders.create_folder("Same", U2, W, parent.id)

    def test_recursive_delete_completeness(self, live_runtime, put_file, W, U1, U2):
        rt = live_runtime
        root = rt.folders.create_folder("R", U1, W)
        a = rt.folders.create_folder("A", U1, W, root.id)
        b = rt.folders.create_folder("B", U1, W, a.id)
        keep = rt.folders.create_folder("Keep", U1, W)
        files = [put_file(W, U1, fid, f"{i}.bin", b"data") for i, fid in enumerate((root.id, a.id, b.id))]
        kept = put_file(W, U1, keep.id, "kept.bin", b"data")
        rt.permissions.grant_specific(U2, root.id, "folder", ["read"])

        report = rt.delete_folder(root.id)

        assert set(report.folder_ids) == {root.id, a.id, b.id}
        for f in files:
            assert not rt.gateway.exists(f.storage_key)
            with pytest.raises(TreeVaultNotFoundError):
                rt.files.get_file(f.id)
        for fid in (root.id, a.id, b.id):
            with pytest.raises(TreeVaultNotFoundError):
                rt.folders.get_folder(fid)
        assert rt.gateway.exists(kept.storage_key)
        assert rt.permissions.list_for_user(U2) == []

    def test_second_file_delete_is_not_found(self, live_runtime, put_file, W, U1):
        f = put_file(W, U1, None, "once.txt", b"1")
        live_runtime.delete_file(f.id)
        with pytest.raises(TreeVaultNotFoundError):
            live_runtime.delete_file(f.id)

    def test_storage_key_immutability(self, live_runtime, put_file, W, U1):
        rt = live_runtime
        folder = rt.folders.create_folder("F", U1, W)
        other = rt.folders.create_folder("G", U1, W)
        f = put_file(W, U1, folder.id, "a.txt", b"a")

        renamed = rt.folders.update_folder(folder.id, {"name": "F2", "storage_prefix": "hijack/"})
        assert renamed.storage_prefix == folder.storage_prefix

        moved = rt.files.update_file(f.id, {"name": "b.txt", "folder_id": other.id, "storage_key": "hijack"})
        assert moved.storage_key == f.storage_key
        assert rt.gateway.read(moved.storage_key) == b"a"

    def test_revoke_does_not_cascade(self, live_runtime, W, U1, U2):
        rt = live_runtime
        parent = rt.folders.create_folder("P", U1, W)
        child = rt.folders.create_folder("C", U1, W, parent.id)
        direct = rt.permissions.grant_specific(U2, parent.id, "folder", ["read"])
        rt.permissions.revoke(direct.id)
        assert not rt.resolver.can_access(U2, "folder", parent.id, "read").allowed
        assert rt.resolver.can_access(U2, "folder", child.id, "read").allowed


class TestEventLog:

    def test_lifecycle_and_grant_events_written(self, live_runtime, integration_config, W, U1, U2):
        rt = live_runtime
        folder = rt.folders.create_folder("Logged", U1, W)
        rt.permissions.grant_specific(U2, folder.id, "folder", ["read"])
        rt.resolver.can_access(U2, "folder", folder.id, "write")
        get_log_queue().stop()

        log_dir = Path(integration_config.logging.directory)

        def events(object_type, category):
            out = []
            for path in (log_dir / object_type / category).glob("*.jsonl"):
                out.extend(json.loads(line)["event"] for line in path.read_text().splitlines() if line)
            return out

        assert "folder_created" in events("folders", "execution")
        assert "permission_granted" in events("permissions", "security")
        assert "access_denied" in events("folders", "security")
