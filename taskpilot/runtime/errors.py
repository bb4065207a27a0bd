"""Error types for the tool-flow runtime.

Unknown tools, unknown steps and unresolved template variables are not
errors: the orchestrator turns them into fallback text. Everything below is
raised to the caller.
"""

from __future__ import annotations

from typing import Optional


class ToolflowError(Exception):
    """Base exception for tool-flow runtime errors."""

    pass


class StorageUnavailableError(ToolflowError):
    """Raised when a flow store cannot be opened or a query against it fails."""

    def __init__(self, store: str, cause: Optional[BaseException] = None):
        self.store = store
        self.cause = cause
        msg = f"Flow store '{store}' is unavailable"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class InvalidRowError(ToolflowError):
    """Raised when a stored row carries a malformed JSON column or schema."""

    def __init__(self, table: str, row_id: str, problem: str):
        self.table = table
        self.row_id = row_id
        self.problem = problem
        super().__init__(f"{table} row '{row_id}' is invalid: {problem}")


class ScopeInvariantError(ToolflowError, ValueError):
    """Raised when a row is neither cleanly global nor cleanly workspace-scoped."""

    pass


class InvalidWorkspaceIdError(ToolflowError, ValueError):
    """Raised for workspace ids that cannot name a store file."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Invalid workspace id: {workspace_id!r}")


class DuplicateRowError(ToolflowError):
    """Raised when a write collides with an existing row's primary or unique key."""

    def __init__(self, table: str, key: str, message: Optional[str] = None):
        self.table = table
        self.key = key
        super().__init__(message or f"{table} already has a row with key '{key}'")


class DuplicateStepOrderError(DuplicateRowError):
    """Raised when a step reuses a step_order already taken within its flow."""

    def __init__(self, tool_flow_id: str, step_order: int):
        self.tool_flow_id = tool_flow_id
        self.step_order = step_order
        super().__init__(
            "tool_flow_steps",
            f"{tool_flow_id}#{step_order}",
            f"Tool flow '{tool_flow_id}' already has a step with step_order={step_order}",
        )


class FlowNotFoundError(ToolflowError):
    """Raised when a tool flow id does not exist in the store being queried."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Tool flow '{flow_id}' not found")


class CloneSourceNotGlobalError(ToolflowError):
    """Raised when cloning a flow that is already workspace-scoped."""

    def __init__(self, flow_id: str, workspace_id: Optional[str]):
        self.flow_id = flow_id
        self.workspace_id = workspace_id
        super().__init__(
            f"Tool flow '{flow_id}' belongs to workspace '{workspace_id}'; "
            "only global flows can be cloned"
        )
