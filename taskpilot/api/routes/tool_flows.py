"""
Tool-flow endpoints for the TaskPilot API.

Provides endpoints for:
- Orchestrating a tool call (rendered instructions plus transition)
- Listing the next steps a tool can lead to
- Clearing the instruction cache
- Cloning a global flow into a workspace
- Listing a workspace's effective flows
- Listing a workspace's effective feedback-step templates
- Overriding a feedback-step template for a workspace
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ...runtime.errors import (
    CloneSourceNotGlobalError,
    FlowNotFoundError,
    InvalidRowError,
    InvalidWorkspaceIdError,
)
from ...runtime.orchestrator import Orchestrator
from ...runtime.types import FeedbackStep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tool-flows"])


# =============================================================================
# Pydantic Models
# =============================================================================


class OrchestrateRequest(BaseModel):
    """Request to orchestrate a tool call."""

    workspace_id: Optional[str] = Field(None, description="Workspace whose overrides apply.")
    step_id: Optional[str] = Field(None, description="Step key, step id or system_tool_fn.")
    context: Dict[str, Any] = Field(default_factory=dict, description="Template variables.")


class OrchestrateResponse(BaseModel):
    text: str
    tool_name: str
    state: str
    next_tool: Optional[str] = None
    next_step: Optional[str] = None
    transition: Optional[str] = None
    step_id: Optional[str] = None
    flow_id: Optional[str] = None
    completion_message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class NextStepsResponse(BaseModel):
    tool_name: str
    next_steps: List[str]


class CacheClearRequest(BaseModel):
    tool_name: Optional[str] = None
    workspace_id: Optional[str] = None


class CacheClearResponse(BaseModel):
    cleared: int


class CloneResponse(BaseModel):
    new_flow_id: str
    tool_name: str
    step_ids: List[str]


class ToolFlowSummary(BaseModel):
    id: str
    tool_name: str
    description: str = ""
    feedback_step_id: Optional[str] = None
    next_tool: Optional[str] = None
    scope: str
    workspace_id: Optional[str] = None


class ToolFlowListResponse(BaseModel):
    workspace_id: str
    flows: List[ToolFlowSummary]


class FeedbackStepUpdateRequest(BaseModel):
    """Workspace override for a feedback-step template."""

    template_content: str
    description: Optional[str] = None
    variable_schema: Optional[Dict[str, Any]] = None


class FeedbackStepResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    template_content: str
    variable_schema: Dict[str, Any] = Field(default_factory=dict)
    workspace_id: Optional[str] = None
    scope: str = "workspace"


class FeedbackStepListResponse(BaseModel):
    workspace_id: str
    feedback_steps: List[FeedbackStepResponse]


# =============================================================================
# Helpers
# =============================================================================


def _get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _feedback_step_response(feedback_step: FeedbackStep) -> FeedbackStepResponse:
    return FeedbackStepResponse(
        id=feedback_step.id,
        name=feedback_step.name,
        description=feedback_step.description,
        template_content=feedback_step.template_content,
        variable_schema=feedback_step.variable_schema.to_json_schema(),
        workspace_id=feedback_step.workspace_id,
        scope=feedback_step.scope.value,
    )


def _bad_workspace(e: InvalidWorkspaceIdError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "error": "invalid_workspace_id",
            "message": str(e),
            "details": {"workspace_id": e.workspace_id},
        },
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/tools/{tool_name}/orchestrate", response_model=OrchestrateResponse)
async def orchestrate_tool(tool_name: str, body: OrchestrateRequest, request: Request):
    """Render instructions for a tool call and report what comes next.

    Unknown tools and steps return 200 with fallback text.
    """
    orchestrator = _get_orchestrator(request)
    try:
        result = await orchestrator.orchestrate(
            tool_name,
            workspace_id=body.workspace_id,
            step_id=body.step_id,
            context=body.context,
        )
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)

    payload = result.to_dict()
    if result.is_terminal:
        payload["completion_message"] = orchestrator.completion_message(tool_name)
    return OrchestrateResponse(**payload)


@router.get("/tools/{tool_name}/next-steps", response_model=NextStepsResponse)
async def get_next_steps(tool_name: str, request: Request, workspace_id: Optional[str] = None):
    orchestrator = _get_orchestrator(request)
    try:
        steps = await orchestrator.get_available_next_steps(tool_name, workspace_id)
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)
    return NextStepsResponse(tool_name=tool_name, next_steps=steps)


@router.post("/cache/clear", response_model=CacheClearResponse)
async def clear_cache(body: CacheClearRequest, request: Request):
    """Clear every cached bundle, or only the one for a tool in a scope."""
    cleared = _get_orchestrator(request).clear_cache(body.tool_name, body.workspace_id)
    logger.info("Cache cleared: tool=%s workspace=%s evicted=%d", body.tool_name, body.workspace_id, cleared)
    return CacheClearResponse(cleared=cleared)


@router.post(
    "/workspaces/{workspace_id}/tool-flows/{flow_id}/clone",
    response_model=CloneResponse,
    status_code=201,
)
async def clone_tool_flow(workspace_id: str, flow_id: str, request: Request):
    """Clone a global flow and its steps into a workspace.

    Raises:
        404: Flow not found.
        409: Flow is not global.
    """
    try:
        result = await _get_orchestrator(request).clone(flow_id, workspace_id)
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)
    except FlowNotFoundError:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "flow_not_found",
                "message": f"Tool flow '{flow_id}' not found",
                "details": {"flow_id": flow_id},
            },
        )
    except CloneSourceNotGlobalError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "clone_source_not_global",
                "message": str(e),
                "details": {"flow_id": flow_id, "workspace_id": e.workspace_id},
            },
        )
    return CloneResponse(**result.to_dict())


@router.get("/workspaces/{workspace_id}/tool-flows", response_model=ToolFlowListResponse)
async def list_tool_flows(workspace_id: str, request: Request):
    """Effective flow per tool for a workspace (workspace copies shadow global flows)."""
    try:
        flows = await _get_orchestrator(request).list_flows(workspace_id)
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)
    return ToolFlowListResponse(
        workspace_id=workspace_id,
        flows=[
            ToolFlowSummary(
                id=f.id,
                tool_name=f.tool_name,
                description=f.description,
                feedback_step_id=f.feedback_step_id,
                next_tool=f.next_tool,
                scope=f.scope.value,
                workspace_id=f.workspace_id,
            )
            for f in flows
        ],
    )


@router.get("/workspaces/{workspace_id}/feedback-steps", response_model=FeedbackStepListResponse)
async def list_feedback_steps(workspace_id: str, request: Request):
    """Effective template per name for a workspace (overrides shadow global templates)."""
    try:
        feedback_steps = await _get_orchestrator(request).list_feedback_steps(workspace_id)
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)
    return FeedbackStepListResponse(
        workspace_id=workspace_id,
        feedback_steps=[_feedback_step_response(fs) for fs in feedback_steps],
    )


@router.put("/workspaces/{workspace_id}/feedback-steps/{name}", response_model=FeedbackStepResponse)
async def update_feedback_step(
    workspace_id: str, name: str, body: FeedbackStepUpdateRequest, request: Request
):
    """Write a workspace override for a template.

    Cached bundles keep the previous template until the cache is cleared.
    """
    try:
        saved = await _get_orchestrator(request).update_feedback_step(
            workspace_id,
            name,
            body.template_content,
            description=body.description,
            variable_schema=body.variable_schema,
        )
    except InvalidWorkspaceIdError as e:
        raise _bad_workspace(e)
    except InvalidRowError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "error": "invalid_variable_schema",
                "message": e.problem,
                "details": {"name": name},
            },
        )
    return _feedback_step_response(saved)
