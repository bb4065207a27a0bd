"""Row types for tool flows, flow steps and feedback-step templates.

These dataclasses are what the store hands to the rest of the runtime. JSON
columns (variable schemas, step metadata) are parsed and validated here, at
the persistence boundary, so nothing downstream sees an untyped blob.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRowError, ScopeInvariantError

GLOBAL_SCOPE_KEY = "global"


class Scope(str, Enum):
    """Where a row lives."""

    GLOBAL = "global"
    WORKSPACE = "workspace"


class EntityKind(str, Enum):
    """Kinds of rows the scope resolver can look up by name."""

    FLOW = "flow"
    TEMPLATE = "template"


def generate_id(prefix: str) -> str:
    """Generate a row id such as ``tf_3f9a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def scope_key(workspace_id: Optional[str]) -> str:
    """Storage key for a scope: the workspace id, or ``global``."""
    return workspace_id if workspace_id else GLOBAL_SCOPE_KEY


def template_hash(template_content: str) -> str:
    """Short sha256 of template text; changes whenever the content does."""
    return hashlib.sha256(template_content.encode("utf-8")).hexdigest()[:16]


def _check_scope(kind: str, row_id: str, is_global: bool, workspace_id: Optional[str]) -> None:
    if is_global and workspace_id is not None:
        raise ScopeInvariantError(
            f"{kind} '{row_id}' is global but carries workspace_id={workspace_id!r}"
        )
    if not is_global and not workspace_id:
        raise ScopeInvariantError(f"{kind} '{row_id}' is workspace-scoped but has no workspace_id")


# =============================================================================
# Typed JSON columns
# =============================================================================


class VariableSchema(BaseModel):
    """JSON Schema describing the variables a feedback-step template expects.

    Only the object form is accepted. ``properties.<name>.default`` provides
    the value used when neither the flow, the step nor the caller supplies one.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "object"
    properties: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)

    def defaults(self) -> Dict[str, Any]:
        return {
            name: spec["default"]
            for name, spec in self.properties.items()
            if isinstance(spec, dict) and "default" in spec
        }

    def declared(self) -> List[str]:
        return list(self.properties)

    def to_json_schema(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def violations(self, variables: Dict[str, Any]) -> List[str]:
        """Return jsonschema error messages for ``variables``; empty when valid."""
        validator = jsonschema.Draft7Validator(self.to_json_schema())
        return [error.message for error in validator.iter_errors(variables)]


def parse_variable_schema(raw: Any, row_id: str = "?") -> VariableSchema:
    """Parse a stored or user-supplied variable schema.

    Accepts None, a JSON string, or a dict. Raises InvalidRowError when the
    value is not an object-typed JSON Schema.
    """
    if raw is None or raw == "":
        return VariableSchema()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidRowError("feedback_steps", row_id, f"variable_schema is not JSON: {e}")
    if not isinstance(raw, dict):
        raise InvalidRowError("feedback_steps", row_id, "variable_schema must be a JSON object")
    if not raw:
        return VariableSchema()
    try:
        jsonschema.Draft7Validator.check_schema(raw)
        schema = VariableSchema.model_validate(raw)
    except jsonschema.SchemaError as e:
        raise InvalidRowError("feedback_steps", row_id, f"variable_schema: {e.message}")
    except ValidationError as e:
        raise InvalidRowError("feedback_steps", row_id, f"variable_schema: {e}")
    if schema.type != "object":
        raise InvalidRowError(
            "feedback_steps", row_id, f"variable_schema type must be 'object', got {schema.type!r}"
        )
    return schema


def parse_metadata(raw: Any, row_id: str = "?") -> Dict[str, Any]:
    """Parse a step's metadata column into a dict."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidRowError("tool_flow_steps", row_id, f"metadata is not JSON: {e}")
    if not isinstance(raw, dict):
        raise InvalidRowError("tool_flow_steps", row_id, "metadata must be a JSON object")
    return dict(raw)


def normalize_next_tool(value: Optional[str], end_sentinel: str = "end") -> Optional[str]:
    """Map the stored end sentinel (and blanks) to None."""
    if value is None:
        return None
    value = value.strip()
    if not value or value == end_sentinel:
        return None
    return value


# =============================================================================
# Rows
# =============================================================================


@dataclass(frozen=True)
class ToolFlow:
    """One workflow per tool name within a scope."""

    id: str
    tool_name: str
    description: str = ""
    feedback_step_id: Optional[str] = None
    next_tool: Optional[str] = None
    is_global: bool = True
    workspace_id: Optional[str] = None

    def __post_init__(self):
        _check_scope("ToolFlow", self.id, self.is_global, self.workspace_id)

    @property
    def scope(self) -> Scope:
        return Scope.GLOBAL if self.is_global else Scope.WORKSPACE

    @property
    def scope_key(self) -> str:
        return scope_key(self.workspace_id)


@dataclass(frozen=True)
class ToolFlowStep:
    """An ordered step belonging to a tool flow.

    ``system_tool_fn`` is conventionally ``"<tool>:<step>"``; the part after
    the last colon is the step key callers pass back as ``step_id``.
    """

    id: str
    tool_flow_id: str
    step_order: int
    system_tool_fn: str
    feedback_step: Optional[str] = None
    next_tool: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.system_tool_fn.rsplit(":", 1)[-1]

    def matches(self, step_id: str) -> bool:
        return step_id in (self.id, self.system_tool_fn, self.key)


@dataclass(frozen=True)
class FeedbackStep:
    """A named, reusable instruction template."""

    id: str
    name: str
    template_content: str
    description: str = ""
    variable_schema: VariableSchema = field(default_factory=VariableSchema)
    is_global: bool = True
    workspace_id: Optional[str] = None

    def __post_init__(self):
        _check_scope("FeedbackStep", self.id, self.is_global, self.workspace_id)

    @property
    def scope(self) -> Scope:
        return Scope.GLOBAL if self.is_global else Scope.WORKSPACE

    @property
    def scope_key(self) -> str:
        return scope_key(self.workspace_id)

    @property
    def content_hash(self) -> str:
        return template_hash(self.template_content)
