"""
Tests for cloning global flows into workspaces.
"""

import asyncio

import pytest

from taskpilot.runtime.clone import CloneOperator
from taskpilot.runtime.errors import CloneSourceNotGlobalError, FlowNotFoundError


class TestClone:
    def test_copies_flow_and_steps(self, registry, global_db, workspace_db, add_flow):
        add_flow(
            global_db,
            "taskpilot_add",
            steps=[
                {"order": 1, "key": "validate", "template": "v", "metadata": {"k": 1}},
                {"order": 2, "key": "create", "template": "c", "next_tool": "taskpilot_status"},
            ],
            next_tool="taskpilot_focus",
            description="Add a task",
            flow_id="tf_add",
        )

        result = asyncio.run(CloneOperator(registry).clone("tf_add", "ws1"))

        ws = workspace_db("ws1")
        copy = ws.get_tool_flow(result.new_flow_id)
        assert result.tool_name == "taskpilot_add"
        assert copy.workspace_id == "ws1"
        assert not copy.is_global
        assert copy.description == "Add a task"
        assert copy.next_tool == "taskpilot_focus"

        steps = ws.get_steps(result.new_flow_id)
        assert [s.id for s in steps] == result.step_ids
        assert [(s.step_order, s.system_tool_fn, s.feedback_step, s.next_tool) for s in steps] == [
            (1, "taskpilot_add:validate", "v", None),
            (2, "taskpilot_add:create", "c", "taskpilot_status"),
        ]
        assert steps[0].metadata == {"k": 1}
        assert set(result.step_ids).isdisjoint(s.id for s in global_db.get_steps("tf_add"))

    def test_global_store_untouched(self, registry, global_db, add_flow):
        add_flow(global_db, "t", steps=[{"order": 1, "key": "a"}], flow_id="tf_t")

        asyncio.run(CloneOperator(registry).clone("tf_t", "ws1"))

        assert [f.id for f in global_db.list_tool_flows()] == ["tf_t"]
        assert global_db.list_tool_flows("ws1") == []

    def test_not_idempotent_latest_shadows(self, registry, global_db, workspace_db, add_flow):
        add_flow(global_db, "t", steps=[{"order": 1, "key": "a"}], flow_id="tf_t")
        cloner = CloneOperator(registry)

        first = asyncio.run(cloner.clone("tf_t", "ws1"))
        second = asyncio.run(cloner.clone("tf_t", "ws1"))

        assert first.new_flow_id != second.new_flow_id
        ws = workspace_db("ws1")
        assert len(ws.list_tool_flows("ws1")) == 2
        assert ws.find_tool_flow("t", "ws1").id == second.new_flow_id

    def test_unknown_flow(self, registry):
        with pytest.raises(FlowNotFoundError):
            asyncio.run(CloneOperator(registry).clone("missing", "ws1"))

    def test_workspace_flow_id_is_not_found_in_global_store(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="tf_t")
        clone = asyncio.run(CloneOperator(registry).clone("tf_t", "ws1"))

        with pytest.raises(FlowNotFoundError):
            asyncio.run(CloneOperator(registry).clone(clone.new_flow_id, "ws2"))

    def test_workspace_row_in_global_store_rejected(self, registry, global_db, add_flow):
        add_flow(global_db, "t", workspace_id="wsX", flow_id="tf_ws")

        with pytest.raises(CloneSourceNotGlobalError) as exc_info:
            asyncio.run(CloneOperator(registry).clone("tf_ws", "ws1"))

        assert exc_info.value.workspace_id == "wsX"

    def test_result_to_dict(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="tf_t")
        result = asyncio.run(CloneOperator(registry).clone("tf_t", "ws1"))

        assert result.to_dict() == {
            "new_flow_id": result.new_flow_id,
            "tool_name": "t",
            "step_ids": [],
        }
