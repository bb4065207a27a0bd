"""
clone.py - Copy a global tool flow and its steps into a workspace.

The copy is independent: fresh ids, workspace scope, identical step order,
handlers, templates, hand-offs and metadata. Cloning is not idempotent; each
call adds another workspace copy, and the most recent one shadows the global
flow for that workspace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List

from .async_utils import run_blocking
from .errors import CloneSourceNotGlobalError, FlowNotFoundError
from .types import ToolFlow, generate_id
from .workspace_registry import WorkspaceStoreRegistry, validate_workspace_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloneResult:
    new_flow_id: str
    tool_name: str
    step_ids: List[str]

    def to_dict(self):
        return {
            "new_flow_id": self.new_flow_id,
            "tool_name": self.tool_name,
            "step_ids": list(self.step_ids),
        }


class CloneOperator:
    """Writes workspace copies of global flows."""

    def __init__(self, registry: WorkspaceStoreRegistry):
        self.registry = registry

    async def clone(self, flow_id: str, target_workspace_id: str) -> CloneResult:
        """Clone global flow ``flow_id`` into ``target_workspace_id``.

        Raises:
            FlowNotFoundError: If no flow with that id exists in the global store.
            CloneSourceNotGlobalError: If the source is workspace-scoped.
            StorageUnavailableError: If either store cannot be read or written.
        """
        validate_workspace_id(target_workspace_id)
        global_db = self.registry.global_db
        source = await run_blocking(global_db.get_tool_flow, flow_id)
        if source is None:
            raise FlowNotFoundError(flow_id)
        if not source.is_global:
            raise CloneSourceNotGlobalError(flow_id, source.workspace_id)

        steps = await run_blocking(global_db.get_steps, source.id)

        new_flow = ToolFlow(
            id=generate_id("tf"),
            tool_name=source.tool_name,
            description=source.description,
            feedback_step_id=source.feedback_step_id,
            next_tool=source.next_tool,
            is_global=False,
            workspace_id=target_workspace_id,
        )
        new_steps = [
            replace(step, id=generate_id("tfs"), tool_flow_id=new_flow.id, metadata=dict(step.metadata))
            for step in steps
        ]

        store = await self.registry.get_workspace_store(target_workspace_id)
        await run_blocking(store.insert_flow_with_steps, new_flow, new_steps)

        logger.info(
            "Cloned tool flow %s (%s) into workspace %s as %s with %d steps",
            flow_id,
            source.tool_name,
            target_workspace_id,
            new_flow.id,
            len(new_steps),
        )
        return CloneResult(
            new_flow_id=new_flow.id,
            tool_name=new_flow.tool_name,
            step_ids=[s.id for s in new_steps],
        )
