"""
Test fixtures for the tool-flow runtime.

Every store is an in-memory DuckDB database, so tests never touch the
user's ~/.taskpilot directory. Builders write rows directly through FlowDB
so each test states exactly which flows and templates exist in which scope.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from taskpilot.config.runtime_config import RuntimeConfig, reset_config
from taskpilot.prompts.renderer import TemplateCache
from taskpilot.runtime.db import FlowDB
from taskpilot.runtime.instruction_cache import InstructionCache
from taskpilot.runtime.orchestrator import Orchestrator
from taskpilot.runtime.types import FeedbackStep, ToolFlow, ToolFlowStep, generate_id, parse_variable_schema
from taskpilot.runtime.workspace_registry import WorkspaceStoreRegistry


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Point TASKPILOT_HOME at a temp dir and drop cached config between tests."""
    monkeypatch.setenv("TASKPILOT_HOME", str(tmp_path / "home"))
    for var in (
        "TASKPILOT_CONFIG",
        "TASKPILOT_GLOBAL_DB",
        "TASKPILOT_WORKSPACES_DIR",
        "TASKPILOT_CACHE_ENABLED",
        "TASKPILOT_END_SENTINEL",
        "TASKPILOT_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()


# ============================================================================
# Stores
# ============================================================================


@pytest.fixture
def config():
    return RuntimeConfig.in_memory()


@pytest.fixture
def registry(config):
    reg = WorkspaceStoreRegistry(config)
    yield reg
    reg.close()


@pytest.fixture
def global_db(registry) -> FlowDB:
    return registry.global_db


@pytest.fixture
def workspace_db(registry):
    """Open (or reuse) a workspace store: ``workspace_db("ws1")``."""

    def _open(workspace_id: str) -> FlowDB:
        return asyncio.run(registry.get_workspace_store(workspace_id))

    return _open


@pytest.fixture
def orchestrator(registry):
    return Orchestrator(registry, cache=InstructionCache(), template_cache=TemplateCache())


# ============================================================================
# Row builders
# ============================================================================


@pytest.fixture
def add_template():
    """Insert a feedback step into a store."""

    def _add(
        db: FlowDB,
        name: str,
        content: str,
        workspace_id: Optional[str] = None,
        schema: Optional[Dict[str, Any]] = None,
        description: str = "",
    ) -> FeedbackStep:
        return db.insert_feedback_step(
            FeedbackStep(
                id=generate_id("fs"),
                name=name,
                template_content=content,
                description=description,
                variable_schema=parse_variable_schema(schema),
                is_global=workspace_id is None,
                workspace_id=workspace_id,
            )
        )

    return _add


@pytest.fixture
def add_flow():
    """Insert a tool flow and its steps into a store.

    Steps are dicts with ``order`` and ``key`` plus optional ``template``,
    ``next_tool`` and ``metadata``.
    """

    def _add(
        db: FlowDB,
        tool_name: str,
        steps: Optional[List[Dict[str, Any]]] = None,
        workspace_id: Optional[str] = None,
        next_tool: Optional[str] = None,
        feedback_step_id: Optional[str] = None,
        description: str = "",
        flow_id: Optional[str] = None,
    ) -> ToolFlow:
        flow = ToolFlow(
            id=flow_id or generate_id("tf"),
            tool_name=tool_name,
            description=description,
            feedback_step_id=feedback_step_id,
            next_tool=next_tool,
            is_global=workspace_id is None,
            workspace_id=workspace_id,
        )
        rows = [
            ToolFlowStep(
                id=generate_id("tfs"),
                tool_flow_id=flow.id,
                step_order=spec["order"],
                system_tool_fn=f"{tool_name}:{spec['key']}",
                feedback_step=spec.get("template"),
                next_tool=spec.get("next_tool"),
                metadata=spec.get("metadata", {}),
            )
            for spec in steps or []
        ]
        return db.insert_flow_with_steps(flow, rows)

    return _add


@pytest.fixture
def add_scenario(global_db, add_flow, add_template):
    """Global taskpilot_add flow: validate (order 1) then create (order 2)."""

    def _add() -> ToolFlow:
        add_template(global_db, "validate_task", "Validate {{context.title}} before adding it.")
        add_template(
            global_db,
            "create_task",
            "Create {{context.title}} with priority {{priority}}.",
            schema={
                "type": "object",
                "properties": {"priority": {"type": "string", "default": "Medium"}},
            },
        )
        return add_flow(
            global_db,
            "taskpilot_add",
            steps=[
                {"order": 1, "key": "validate", "template": "validate_task"},
                {
                    "order": 2,
                    "key": "create",
                    "template": "create_task",
                    "metadata": {"instruction": "Create the task"},
                },
            ],
            flow_id="tf_add",
        )

    return _add


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def client(orchestrator, config):
    """TestClient over an app backed by the in-memory orchestrator (no seeding)."""
    from taskpilot.api.server import create_app

    app = create_app(config=config, orchestrator=orchestrator, seed_on_startup=False)
    return TestClient(app)
