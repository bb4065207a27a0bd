"""Tool names served by TaskPilot and the text shown when a flow completes."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional


class ToolName(str, Enum):
    INIT = "taskpilot_init"
    START = "taskpilot_start"
    ADD = "taskpilot_add"
    CREATE_TASK = "taskpilot_create_task"
    STATUS = "taskpilot_status"
    UPDATE = "taskpilot_update"
    AUDIT = "taskpilot_audit"
    FOCUS = "taskpilot_focus"
    GITHUB = "taskpilot_github"
    RULE_UPDATE = "taskpilot_rule_update"
    REMOTE_INTERFACE = "taskpilot_remote_interface"
    UPDATE_RESOURCES = "taskpilot_update_resources"
    UPDATE_STEPS = "taskpilot_update_steps"


TOOL_NAMES: List[str] = [t.value for t in ToolName]

COMPLETION_MESSAGES: Dict[str, str] = {
    ToolName.ADD.value: (
        "Task has been successfully added to your workspace. Use `taskpilot_status` "
        "to view all tasks or continue with other workflow tools."
    ),
    ToolName.INIT.value: (
        "Project initialization completed. Your workspace is now set up with the task "
        "management system. Use `taskpilot_add` to create your first task."
    ),
    ToolName.STATUS.value: (
        "Status overview complete. Use detailed information to guide your next actions "
        "or run `taskpilot_focus` on specific tasks."
    ),
    ToolName.UPDATE.value: (
        "Task update completed successfully. Changes have been saved to your workspace database."
    ),
    ToolName.AUDIT.value: (
        "Audit completed. Review the generated reports and recommendations for workspace "
        "optimization."
    ),
    ToolName.FOCUS.value: (
        "Focus session complete. Task analysis and recommendations are ready for implementation."
    ),
}


def is_valid_tool_name(name: str) -> bool:
    return name in TOOL_NAMES


def generic_completion_message(tool_name: str) -> str:
    return f"{tool_name} completed successfully. Refer to the output for next steps."


def completion_message(tool_name: str, context: Optional[str] = None) -> str:
    """Text shown once a tool's flow has nothing left to do."""
    text = COMPLETION_MESSAGES.get(tool_name) or generic_completion_message(tool_name)
    if context:
        text = f"{text} Context: {context}"
    return text
