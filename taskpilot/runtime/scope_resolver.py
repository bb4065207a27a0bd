"""
scope_resolver.py - Workspace-over-global lookup for flows and templates.

A workspace row shadows the global row with the same name. When the workspace
has no row (or no workspace is given), the global store answers.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from .async_utils import run_blocking
from .db import FlowDB
from .types import EntityKind, FeedbackStep, ToolFlow
from .workspace_registry import WorkspaceStoreRegistry

logger = logging.getLogger(__name__)

Row = Union[ToolFlow, FeedbackStep]


class ScopeResolver:
    """Resolves a named flow or template for a workspace."""

    def __init__(self, registry: WorkspaceStoreRegistry):
        self.registry = registry

    async def _lookup(
        self, db: FlowDB, kind: EntityKind, name: str, workspace_id: Optional[str]
    ) -> Optional[Row]:
        if kind == EntityKind.FLOW:
            return await run_blocking(db.find_tool_flow, name, workspace_id)
        return await run_blocking(db.find_feedback_step, name, workspace_id)

    async def resolve(
        self, kind: EntityKind, name: str, workspace_id: Optional[str] = None
    ) -> Optional[Row]:
        """Return the workspace row if one exists, else the global row, else None."""
        kind = EntityKind(kind)
        if workspace_id:
            store = await self.registry.get_workspace_store(workspace_id)
            row = await self._lookup(store, kind, name, workspace_id)
            if row is not None:
                logger.debug("Resolved %s %r from workspace %s", kind.value, name, workspace_id)
                return row

        row = await self._lookup(self.registry.global_db, kind, name, None)
        if row is not None:
            logger.debug("Resolved %s %r from global scope", kind.value, name)
        return row

    async def resolve_flow(self, tool_name: str, workspace_id: Optional[str] = None) -> Optional[ToolFlow]:
        return await self.resolve(EntityKind.FLOW, tool_name, workspace_id)

    async def resolve_template(
        self, name_or_id: str, workspace_id: Optional[str] = None
    ) -> Optional[FeedbackStep]:
        """Resolve a template by name; fall back to an id lookup in the same order."""
        row = await self.resolve(EntityKind.TEMPLATE, name_or_id, workspace_id)
        if row is not None:
            return row

        if workspace_id:
            store = await self.registry.get_workspace_store(workspace_id)
            row = await run_blocking(store.get_feedback_step, name_or_id)
            if row is not None:
                return row
        return await run_blocking(self.registry.global_db.get_feedback_step, name_or_id)

    async def global_flow_by_id(self, flow_id: str) -> Optional[ToolFlow]:
        return await run_blocking(self.registry.global_db.get_tool_flow, flow_id)
