"""
workspace_registry.py - Owns the global store and one store per workspace.

Workspace stores are opened lazily on first access. Opening is single-flight:
concurrent first access for the same workspace opens exactly one handle.

Usage:
    from taskpilot.runtime.workspace_registry import WorkspaceStoreRegistry

    registry = WorkspaceStoreRegistry.from_config(get_runtime_config())
    db = await registry.get_workspace_store("ws-1")
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, List, Optional

from ..config.runtime_config import RuntimeConfig
from .async_utils import run_blocking
from .db import FlowDB
from .errors import InvalidWorkspaceIdError

logger = logging.getLogger(__name__)

_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_workspace_id(workspace_id: str) -> str:
    """Reject ids that cannot safely name a store file."""
    if (
        not isinstance(workspace_id, str)
        or not _WORKSPACE_ID_RE.match(workspace_id)
        or workspace_id in (".", "..")
    ):
        raise InvalidWorkspaceIdError(workspace_id)
    return workspace_id


class WorkspaceStoreRegistry:
    """Caches one FlowDB per workspace alongside the global FlowDB."""

    def __init__(self, config: RuntimeConfig, global_db: Optional[FlowDB] = None):
        self.config = config
        self.global_db = global_db or FlowDB(
            config.global_db_path, name="global", end_sentinel=config.end_sentinel
        )
        self._stores: Dict[str, FlowDB] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_loop: Optional[asyncio.AbstractEventLoop] = None
        self.open_count = 0

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "WorkspaceStoreRegistry":
        return cls(config)

    def _get_lock(self, workspace_id: str) -> asyncio.Lock:
        """Get or create a lock for a workspace on the running event loop."""
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            # A lock is bound to the loop it first waited on
            self._locks = {}
            self._locks_loop = loop
        if workspace_id not in self._locks:
            self._locks[workspace_id] = asyncio.Lock()
        return self._locks[workspace_id]

    def _open(self, workspace_id: str) -> FlowDB:
        db = FlowDB(
            self.config.workspace_db_path(workspace_id),
            name=workspace_id,
            end_sentinel=self.config.end_sentinel,
        )
        # Touch the connection so open failures surface here, not on first query
        db.connection
        return db

    async def get_workspace_store(self, workspace_id: str) -> FlowDB:
        """Return the store for a workspace, opening it on first access.

        Raises:
            InvalidWorkspaceIdError: If the id cannot name a store file.
            StorageUnavailableError: If the store cannot be opened. The
                failure is not cached; the next call retries.
        """
        validate_workspace_id(workspace_id)
        db = self._stores.get(workspace_id)
        if db is not None:
            return db

        async with self._get_lock(workspace_id):
            db = self._stores.get(workspace_id)
            if db is None:
                db = await run_blocking(self._open, workspace_id)
                self._stores[workspace_id] = db
                self.open_count += 1
                logger.info("Opened workspace store %s (%s)", workspace_id, db.db_path or ":memory:")
        return db

    def store_for(self, workspace_id: Optional[str]) -> Optional[FlowDB]:
        """Return an already-open store, or the global store for None."""
        if not workspace_id:
            return self.global_db
        return self._stores.get(workspace_id)

    def open_workspaces(self) -> List[str]:
        return sorted(self._stores)

    async def drop_workspace(self, workspace_id: str) -> bool:
        """Close a workspace's store and delete its file.

        Cached instruction bundles are not touched here; use
        Orchestrator.drop_workspace to evict them too. Returns True if
        anything was closed or deleted.
        """
        validate_workspace_id(workspace_id)
        async with self._get_lock(workspace_id):
            db = self._stores.pop(workspace_id, None)
            if db is not None:
                await run_blocking(db.close)
            path = self.config.workspace_db_path(workspace_id)
            removed = False
            if path is not None and path.exists():
                path.unlink()
                wal = path.with_name(path.name + ".wal")
                if wal.exists():
                    wal.unlink()
                removed = True
        logger.info("Dropped workspace store %s", workspace_id)
        return db is not None or removed

    def close(self) -> None:
        """Close every open store."""
        for workspace_id, db in list(self._stores.items()):
            db.close()
            logger.debug("Closed workspace store %s", workspace_id)
        self._stores.clear()
        self._locks = {}
        self._locks_loop = None
        self.global_db.close()
