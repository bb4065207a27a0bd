# taskpilot/runtime package
# Tiered tool-flow orchestration: resolve a tool's workflow (workspace over
# global), render the current step's instructions, compute what comes next.
#
# Core components:
#   - types: Row dataclasses (ToolFlow, ToolFlowStep, FeedbackStep) and enums
#   - db: DuckDB store (one global, one per workspace)
#   - workspace_registry: Lazily opened workspace stores
#   - scope_resolver: Workspace-over-global lookup
#   - instruction_cache: Resolved bundles per (tool, scope)
#   - orchestrator: Orchestrator singleton
#
# Usage:
#     from taskpilot.runtime import get_orchestrator
#     orchestrator = get_orchestrator()
#     result = await orchestrator.orchestrate("taskpilot_add", "ws-1")

from typing import TYPE_CHECKING

from .errors import (
    CloneSourceNotGlobalError,
    DuplicateStepOrderError,
    FlowNotFoundError,
    InvalidRowError,
    InvalidWorkspaceIdError,
    ScopeInvariantError,
    StorageUnavailableError,
    ToolflowError,
)
from .instruction_cache import CacheKey, CompiledBundle, InstructionCache
from .types import (
    EntityKind,
    FeedbackStep,
    Scope,
    ToolFlow,
    ToolFlowStep,
    VariableSchema,
    generate_id,
)

# TYPE_CHECKING stubs for static type checkers; the orchestrator is imported
# lazily at runtime because it depends on taskpilot.config, which imports
# from this package.
if TYPE_CHECKING:
    from .orchestrator import OrchestrationResult as OrchestrationResult
    from .orchestrator import Orchestrator as Orchestrator
    from .orchestrator import get_orchestrator as get_orchestrator

__all__ = [
    # Types
    "Scope",
    "EntityKind",
    "ToolFlow",
    "ToolFlowStep",
    "FeedbackStep",
    "VariableSchema",
    "generate_id",
    # Errors
    "ToolflowError",
    "StorageUnavailableError",
    "InvalidRowError",
    "ScopeInvariantError",
    "InvalidWorkspaceIdError",
    "DuplicateStepOrderError",
    "FlowNotFoundError",
    "CloneSourceNotGlobalError",
    # Cache
    "CacheKey",
    "CompiledBundle",
    "InstructionCache",
    # Orchestrator (imported lazily)
    "Orchestrator",
    "OrchestrationResult",
    "get_orchestrator",
]

_LAZY = {"Orchestrator", "OrchestrationResult", "get_orchestrator"}


def __getattr__(name: str):
    """Lazy import for the orchestrator to avoid circular dependencies."""
    if name in _LAZY:
        from . import orchestrator

        return getattr(orchestrator, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
