"""
flow_registry.py - Look up the effective tool flow and its ordered steps.

The registry answers "which flow applies to this tool in this workspace" via
the scope resolver, and loads steps from whichever store owns the flow.

Usage:
    from taskpilot.config.flow_registry import FlowRegistry

    registry = FlowRegistry(resolver)
    flow = await registry.get_flow("taskpilot_add", "ws-1")
    steps = await registry.get_steps(flow)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..runtime.async_utils import run_blocking
from ..runtime.db import FlowDB
from ..runtime.scope_resolver import ScopeResolver
from ..runtime.types import ToolFlow, ToolFlowStep

logger = logging.getLogger(__name__)


class FlowRegistry:
    """Registry of tool flows across the global and workspace scopes."""

    def __init__(self, resolver: ScopeResolver):
        self.resolver = resolver

    @property
    def stores(self):
        return self.resolver.registry

    async def _store_for(self, flow: ToolFlow) -> FlowDB:
        if flow.is_global:
            return self.stores.global_db
        return await self.stores.get_workspace_store(flow.workspace_id)

    async def get_flow(self, tool_name: str, workspace_id: Optional[str] = None) -> Optional[ToolFlow]:
        """Get the flow for a tool; a workspace flow shadows the global one."""
        return await self.resolver.resolve_flow(tool_name, workspace_id)

    async def get_steps(self, flow: ToolFlow) -> List[ToolFlowStep]:
        """Get the steps of a flow sorted by (step_order, id)."""
        store = await self._store_for(flow)
        steps = await run_blocking(store.get_steps, flow.id)
        return sorted(steps, key=lambda s: (s.step_order, s.id))

    async def get_total_steps(self, flow: ToolFlow) -> int:
        return len(await self.get_steps(flow))

    async def list_flows(self, workspace_id: Optional[str] = None) -> List[ToolFlow]:
        """Effective flow per tool name for a workspace, sorted by tool name."""
        by_tool: Dict[str, ToolFlow] = {}
        for flow in await run_blocking(self.stores.global_db.list_tool_flows, None):
            by_tool[flow.tool_name] = flow

        if workspace_id:
            store = await self.stores.get_workspace_store(workspace_id)
            # Ordered by insertion, so the latest copy of a tool wins
            for flow in await run_blocking(store.list_tool_flows, workspace_id):
                by_tool[flow.tool_name] = flow

        return [by_tool[name] for name in sorted(by_tool)]
