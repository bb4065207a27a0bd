"""
Tests for the workspace store registry.
"""

import asyncio

import pytest

from taskpilot.config.runtime_config import RuntimeConfig
from taskpilot.runtime.errors import InvalidWorkspaceIdError, StorageUnavailableError
from taskpilot.runtime.workspace_registry import WorkspaceStoreRegistry, validate_workspace_id


class TestValidateWorkspaceId:
    @pytest.mark.parametrize("workspace_id", ["ws1", "my-project", "a.b_c", "X"])
    def test_valid(self, workspace_id):
        assert validate_workspace_id(workspace_id) == workspace_id

    @pytest.mark.parametrize("workspace_id", ["", "..", ".", "a/b", "a b", "../etc", None])
    def test_invalid(self, workspace_id):
        with pytest.raises(InvalidWorkspaceIdError):
            validate_workspace_id(workspace_id)


class TestGetWorkspaceStore:
    def test_reuses_open_store(self, registry):
        first = asyncio.run(registry.get_workspace_store("ws1"))
        second = asyncio.run(registry.get_workspace_store("ws1"))

        assert first is second
        assert registry.open_count == 1
        assert registry.open_workspaces() == ["ws1"]

    def test_concurrent_first_access_opens_once(self, registry):
        async def open_many():
            return await asyncio.gather(*[registry.get_workspace_store("ws1") for _ in range(10)])

        stores = asyncio.run(open_many())

        assert all(s is stores[0] for s in stores)
        assert registry.open_count == 1

    def test_locks_follow_the_running_loop(self, registry):
        async def open_many():
            await asyncio.gather(*[registry.get_workspace_store("ws1") for _ in range(5)])

        async def drop_and_reopen():
            return await asyncio.gather(
                registry.drop_workspace("ws1"), registry.get_workspace_store("ws1")
            )

        asyncio.run(open_many())
        dropped, db = asyncio.run(drop_and_reopen())

        assert dropped is True
        assert db.is_open
        assert registry.open_workspaces() == ["ws1"]
        assert registry.open_count == 2

    def test_store_for(self, registry):
        assert registry.store_for(None) is registry.global_db
        assert registry.store_for("ws1") is None
        db = asyncio.run(registry.get_workspace_store("ws1"))
        assert registry.store_for("ws1") is db

    def test_file_backed_stores(self, tmp_path):
        config = RuntimeConfig(
            home_dir=tmp_path,
            global_db_path=tmp_path / "global.duckdb",
            workspaces_dir=tmp_path / "workspaces",
        )
        registry = WorkspaceStoreRegistry(config)

        db = asyncio.run(registry.get_workspace_store("ws1"))

        assert db.db_path == tmp_path / "workspaces" / "ws1.duckdb"
        assert db.db_path.exists()
        registry.close()

    def test_failed_open_is_not_cached(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        workspaces.mkdir()
        blocker = workspaces / "ws1.duckdb"
        blocker.mkdir()
        config = RuntimeConfig(home_dir=tmp_path, global_db_path=None, workspaces_dir=workspaces)
        registry = WorkspaceStoreRegistry(config)

        with pytest.raises(StorageUnavailableError):
            asyncio.run(registry.get_workspace_store("ws1"))
        assert registry.open_workspaces() == []

        blocker.rmdir()
        db = asyncio.run(registry.get_workspace_store("ws1"))
        assert db.is_open
        registry.close()

    def test_invalid_id_rejected(self, registry):
        with pytest.raises(InvalidWorkspaceIdError):
            asyncio.run(registry.get_workspace_store("../escape"))


class TestDropWorkspace:
    def test_drop_closes_and_deletes_file(self, tmp_path):
        config = RuntimeConfig(home_dir=tmp_path, global_db_path=None, workspaces_dir=tmp_path / "ws")
        registry = WorkspaceStoreRegistry(config)
        db = asyncio.run(registry.get_workspace_store("ws1"))
        path = db.db_path

        assert asyncio.run(registry.drop_workspace("ws1")) is True

        assert not path.exists()
        assert registry.open_workspaces() == []
        assert not db.is_open
        registry.close()

    def test_drop_unknown_workspace(self, registry):
        assert asyncio.run(registry.drop_workspace("never-opened")) is False
