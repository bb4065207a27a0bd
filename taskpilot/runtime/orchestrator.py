"""
orchestrator.py - Decide what a tool call renders and what comes next.

Given a tool name, an optional step id and a workspace, the orchestrator
resolves the applicable flow (workspace over global), renders the selected
step's feedback template, and reports the transition: the following step of
the same tool, a hand-off to another tool, or termination.

The orchestrator never runs a step's domain logic. Resolution results are
cached per (tool, scope) until cleared; rendering happens on every call.

Usage:
    from taskpilot.runtime.orchestrator import Orchestrator

    orchestrator = Orchestrator.from_config(get_runtime_config())
    result = await orchestrator.orchestrate("taskpilot_add", "ws-1", context={...})
    result.text, result.next_step, result.next_tool
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..config.flow_registry import FlowRegistry
from ..config.runtime_config import RuntimeConfig, get_runtime_config
from ..config.tool_names import completion_message, generic_completion_message
from ..prompts.renderer import TemplateCache, get_template_cache, schema_violations
from .async_utils import run_blocking
from .clone import CloneOperator, CloneResult
from .instruction_cache import CacheKey, CompiledBundle, InstructionCache
from .scope_resolver import ScopeResolver
from .types import (
    FeedbackStep,
    ToolFlow,
    ToolFlowStep,
    VariableSchema,
    generate_id,
    parse_variable_schema,
)
from .workspace_registry import WorkspaceStoreRegistry, validate_workspace_id

logger = logging.getLogger(__name__)


class OrchestrationState(str, Enum):
    ENTRY = "entry"  # no step id given; first step rendered
    AT_STEP = "at_step"  # requested step found and rendered
    UNKNOWN_STEP = "unknown_step"
    UNKNOWN_TOOL = "unknown_tool"


class TransitionKind(str, Enum):
    NEXT_STEP = "next_step"
    HANDOFF = "handoff"
    TERMINAL = "terminal"


@dataclass
class OrchestrationResult:
    """Rendered instructions plus what the caller should do next.

    ``next_step`` is set when the same tool continues with another step;
    ``next_tool`` when control passes to a different tool. Both are None when
    the flow is finished or the request could not be matched.
    """

    text: str
    tool_name: str
    state: OrchestrationState
    next_tool: Optional[str] = None
    next_step: Optional[str] = None
    transition: Optional[TransitionKind] = None
    step_id: Optional[str] = None
    flow_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.transition == TransitionKind.TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "tool_name": self.tool_name,
            "state": self.state.value,
            "next_tool": self.next_tool,
            "next_step": self.next_step,
            "transition": self.transition.value if self.transition else None,
            "step_id": self.step_id,
            "flow_id": self.flow_id,
            "warnings": list(self.warnings),
        }


def _next_step_hint(tool_name: str, step: ToolFlowStep) -> str:
    hint = f'**NEXT STEP:** Call {tool_name} with stepId="{step.key}"'
    instruction = step.metadata.get("instruction")
    if instruction:
        hint += f" - {instruction}"
    return hint


def _next_tool_hint(next_tool: str) -> str:
    return f"**NEXT TOOL:** Call {next_tool}"


class Orchestrator:
    """Tiered tool-flow orchestration over the global and workspace stores."""

    def __init__(
        self,
        registry: WorkspaceStoreRegistry,
        cache: Optional[InstructionCache] = None,
        template_cache: Optional[TemplateCache] = None,
    ):
        self.registry = registry
        self.resolver = ScopeResolver(registry)
        self.flows = FlowRegistry(self.resolver)
        self.cloner = CloneOperator(registry)
        self.cache = cache if cache is not None else InstructionCache()
        self.template_cache = template_cache if template_cache is not None else get_template_cache()

    @classmethod
    def from_config(cls, config: Optional[RuntimeConfig] = None) -> "Orchestrator":
        config = config or get_runtime_config()
        return cls(
            WorkspaceStoreRegistry.from_config(config),
            cache=InstructionCache(enabled=config.cache_enabled),
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    async def _resolve_templates(
        self, flow: ToolFlow, steps: List[ToolFlowStep], workspace_id: Optional[str]
    ) -> Dict[str, FeedbackStep]:
        templates: Dict[str, FeedbackStep] = {}
        for step in steps:
            name = step.feedback_step
            if not name or name in templates:
                continue
            template = await self.resolver.resolve_template(name, workspace_id)
            if template is None:
                logger.warning(
                    "Feedback step %r referenced by %s (%s) not found", name, step.system_tool_fn, flow.tool_name
                )
                continue
            templates[name] = template
        return templates

    async def _load_bundle(self, tool_name: str, workspace_id: Optional[str]) -> Optional[CompiledBundle]:
        key = CacheKey.for_tool(tool_name, workspace_id)
        bundle = self.cache.get(key)
        if bundle is not None:
            return bundle

        flow = await self.flows.get_flow(tool_name, workspace_id)
        if flow is None:
            return None

        steps = await self.flows.get_steps(flow)
        templates = await self._resolve_templates(flow, steps, workspace_id)
        flow_template = None
        if flow.feedback_step_id:
            flow_template = await self.resolver.resolve_template(flow.feedback_step_id, workspace_id)
            if flow_template is None:
                logger.warning("Feedback step %r for flow %s not found", flow.feedback_step_id, flow.id)

        bundle = CompiledBundle(
            flow=flow, steps=tuple(steps), templates=templates, flow_template=flow_template
        )
        self.cache.put(key, bundle)
        logger.debug(
            "Resolved %s for %s: flow=%s steps=%d templates=%d",
            tool_name,
            key.scope,
            flow.id,
            len(steps),
            len(templates),
        )
        return bundle

    # =========================================================================
    # Rendering
    # =========================================================================

    def _variables(
        self,
        bundle: CompiledBundle,
        step: Optional[ToolFlowStep],
        template: Optional[FeedbackStep],
        workspace_id: Optional[str],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Merge variables, lowest precedence first."""
        flow = bundle.flow
        variables: Dict[str, Any] = {}
        if template is not None:
            variables.update(template.variable_schema.defaults())
        variables.update(
            {
                "tool_name": flow.tool_name,
                "workspace_id": workspace_id,
                "flow_id": flow.id,
                "flow_description": flow.description,
                "step_id": step.key if step else None,
                "step_order": step.step_order if step else None,
                "total_steps": len(bundle.steps),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        if step is not None:
            variables.update(step.metadata)
        variables.update(context)
        return variables

    def _render(
        self,
        template: Optional[FeedbackStep],
        variables: Dict[str, Any],
        fallback: str,
        warnings: List[str],
    ) -> str:
        if template is None:
            return fallback
        violations = schema_violations(template.variable_schema, variables)
        for message in violations:
            logger.warning("Variables for feedback step %s: %s", template.name, message)
        warnings.extend(violations)
        return self.template_cache.render(template, variables)

    # =========================================================================
    # Public API
    # =========================================================================

    async def orchestrate(
        self,
        tool_name: str,
        workspace_id: Optional[str] = None,
        step_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> OrchestrationResult:
        """Render the instructions for a tool call and compute the transition.

        Unknown tools and unknown steps produce fallback text, not errors.

        Raises:
            StorageUnavailableError: If a store cannot be read.
            InvalidWorkspaceIdError: If workspace_id cannot name a store.
        """
        context = dict(context or {})
        bundle = await self._load_bundle(tool_name, workspace_id)
        if bundle is None:
            logger.info("No tool flow for %s (workspace=%s)", tool_name, workspace_id)
            return OrchestrationResult(
                text=generic_completion_message(tool_name),
                tool_name=tool_name,
                state=OrchestrationState.UNKNOWN_TOOL,
            )

        flow = bundle.flow
        warnings: List[str] = []

        if not bundle.steps and step_id is None:
            template = bundle.flow_template
            variables = self._variables(bundle, None, template, workspace_id, context)
            text = self._render(template, variables, completion_message(tool_name), warnings)
            return self._finish(
                text,
                tool_name,
                OrchestrationState.ENTRY,
                flow,
                step=None,
                following=None,
                next_tool=flow.next_tool,
                warnings=warnings,
            )

        if step_id is None:
            step = bundle.steps[0]
            state = OrchestrationState.ENTRY
        else:
            step = bundle.find_step(step_id)
            state = OrchestrationState.AT_STEP
            if step is None:
                available = [s.key for s in bundle.steps]
                logger.info("Unknown step %r for %s (available: %s)", step_id, tool_name, available)
                return OrchestrationResult(
                    text=(
                        f"Unknown step `{step_id}` for `{tool_name}`. "
                        f"Available steps: {', '.join(available) or 'none'}."
                    ),
                    tool_name=tool_name,
                    state=OrchestrationState.UNKNOWN_STEP,
                    flow_id=flow.id,
                )

        template = bundle.template_for(step)
        variables = self._variables(bundle, step, template, workspace_id, context)
        text = self._render(
            template, variables, f"Execute step `{step.key}` of `{tool_name}`.", warnings
        )

        following = bundle.following(step)
        if step.next_tool:
            return self._finish(
                text, tool_name, state, flow, step, None, step.next_tool, warnings
            )
        return self._finish(text, tool_name, state, flow, step, following, flow.next_tool, warnings)

    def _finish(
        self,
        text: str,
        tool_name: str,
        state: OrchestrationState,
        flow: ToolFlow,
        step: Optional[ToolFlowStep],
        following: Optional[ToolFlowStep],
        next_tool: Optional[str],
        warnings: List[str],
    ) -> OrchestrationResult:
        if following is not None:
            transition = TransitionKind.NEXT_STEP
            text = f"{text}\n\n{_next_step_hint(tool_name, following)}"
            next_tool = None
        elif next_tool:
            transition = TransitionKind.HANDOFF
            text = f"{text}\n\n{_next_tool_hint(next_tool)}"
        else:
            transition = TransitionKind.TERMINAL
            next_tool = None

        return OrchestrationResult(
            text=text,
            tool_name=tool_name,
            state=state,
            next_tool=next_tool,
            next_step=following.key if following else None,
            transition=transition,
            step_id=step.key if step else None,
            flow_id=flow.id,
            warnings=warnings,
        )

    async def get_available_next_steps(self, tool_name: str, workspace_id: Optional[str] = None) -> List[str]:
        """Step keys of the tool's flow in order, then every hand-off target."""
        bundle = await self._load_bundle(tool_name, workspace_id)
        if bundle is None:
            return []

        result: List[str] = []
        for step in bundle.steps:
            if step.key not in result:
                result.append(step.key)
        targets = [s.next_tool for s in bundle.steps if s.next_tool] + [bundle.flow.next_tool]
        for target in targets:
            if target and target not in result:
                result.append(target)
        return result

    def clear_cache(self, tool_name: Optional[str] = None, workspace_id: Optional[str] = None) -> int:
        """Drop cached bundles: all of them, or one (tool, scope) key.

        Returns the number of bundles evicted.
        """
        if tool_name is None:
            self.template_cache.clear()
            return self.cache.clear()
        return int(self.cache.invalidate(CacheKey.for_tool(tool_name, workspace_id)))

    async def clone(self, flow_id: str, target_workspace_id: str) -> CloneResult:
        """Clone a global flow into a workspace; the clone applies on the next call."""
        result = await self.cloner.clone(flow_id, target_workspace_id)
        self.cache.invalidate(CacheKey.for_tool(result.tool_name, target_workspace_id))
        return result

    async def update_feedback_step(
        self,
        workspace_id: str,
        name: str,
        template_content: str,
        description: Optional[str] = None,
        variable_schema: Union[VariableSchema, Dict[str, Any], None] = None,
    ) -> FeedbackStep:
        """Write a workspace override for a template.

        The global template of the same name supplies the description and
        variable schema when they are not given. Cached bundles keep serving
        the previous template until clear_cache() is called.
        """
        validate_workspace_id(workspace_id)
        if variable_schema is not None and not isinstance(variable_schema, VariableSchema):
            variable_schema = parse_variable_schema(variable_schema, name)

        base = await run_blocking(self.registry.global_db.find_feedback_step, name, None)
        if description is None:
            description = base.description if base else ""
        if variable_schema is None:
            variable_schema = base.variable_schema if base else VariableSchema()

        store = await self.registry.get_workspace_store(workspace_id)
        saved = await run_blocking(
            store.upsert_feedback_step,
            FeedbackStep(
                id=generate_id("fs"),
                name=name,
                template_content=template_content,
                description=description,
                variable_schema=variable_schema,
                is_global=False,
                workspace_id=workspace_id,
            ),
        )
        logger.info("Feedback step %s overridden in workspace %s", name, workspace_id)
        return saved

    async def list_flows(self, workspace_id: Optional[str] = None) -> List[ToolFlow]:
        return await self.flows.list_flows(workspace_id)

    async def list_feedback_steps(self, workspace_id: Optional[str] = None) -> List[FeedbackStep]:
        """Effective template per name for a workspace, sorted by name.

        A workspace override replaces the global template of the same name.
        """
        by_name: Dict[str, FeedbackStep] = {}
        for feedback_step in await run_blocking(self.registry.global_db.list_feedback_steps, None):
            by_name[feedback_step.name] = feedback_step

        if workspace_id:
            store = await self.registry.get_workspace_store(workspace_id)
            for feedback_step in await run_blocking(store.list_feedback_steps, workspace_id):
                by_name[feedback_step.name] = feedback_step

        return [by_name[name] for name in sorted(by_name)]

    async def drop_workspace(self, workspace_id: str) -> bool:
        """Delete a workspace's store and evict every cached bundle for it."""
        dropped = await self.registry.drop_workspace(workspace_id)
        evicted = self.cache.invalidate_scope(workspace_id)
        logger.info("Workspace %s dropped (%d cached bundles evicted)", workspace_id, evicted)
        return dropped

    def completion_message(self, tool_name: str, context: Optional[str] = None) -> str:
        return completion_message(tool_name, context)

    def close(self) -> None:
        self.registry.close()


# Module-level singleton
_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Return the process-wide orchestrator, creating it from config on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator.from_config()
    return _orchestrator


def reset_orchestrator() -> None:
    """Close and discard the singleton (for testing)."""
    global _orchestrator
    if _orchestrator is not None:
        _orchestrator.close()
    _orchestrator = None
