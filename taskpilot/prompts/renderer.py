"""
renderer.py - Render feedback-step templates by substituting variables.

This module provides template rendering that:
- Finds {{key}}, {{ key }} and {{context.key}} placeholders
- Substitutes values from a variables mapping (dotted keys walk nested dicts)
- Leaves unresolved placeholders in the output unchanged
- Caches parsed templates per feedback step, keyed by content hash

Rendering is pure: it never touches a store.

Usage:
    from taskpilot.prompts.renderer import render, find_missing_variables

    text = render("Add {{title}} to {{ context.workspace_id }}", {"title": "x"})
    missing = find_missing_variables(template, variables)
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..runtime.types import FeedbackStep, VariableSchema, template_hash

logger = logging.getLogger(__name__)

# Placeholder markers: {{name}}, {{ name }}, {{context.name}}, {{a.b.c}}
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")

CONTEXT_PREFIX = "context."

_MISSING = object()


@dataclass(frozen=True)
class Placeholder:
    raw: str  # The marker exactly as written, emitted when unresolved
    key: str  # Variable name with any context. prefix removed


Token = Union[str, Placeholder]


@dataclass(frozen=True)
class CompiledTemplate:
    """A template parsed once into literal text and placeholders."""

    tokens: Tuple[Token, ...]
    content_hash: str

    @property
    def placeholders(self) -> List[str]:
        """Distinct placeholder keys in order of first appearance."""
        seen: List[str] = []
        for token in self.tokens:
            if isinstance(token, Placeholder) and token.key not in seen:
                seen.append(token.key)
        return seen


def _strip_prefix(key: str) -> str:
    if key.startswith(CONTEXT_PREFIX) and len(key) > len(CONTEXT_PREFIX):
        return key[len(CONTEXT_PREFIX):]
    return key


def compile_template(template_content: str) -> CompiledTemplate:
    """Parse template text into tokens."""
    tokens: List[Token] = []
    pos = 0
    for match in PLACEHOLDER_PATTERN.finditer(template_content):
        if match.start() > pos:
            tokens.append(template_content[pos:match.start()])
        tokens.append(Placeholder(raw=match.group(0), key=_strip_prefix(match.group(1))))
        pos = match.end()
    if pos < len(template_content):
        tokens.append(template_content[pos:])
    return CompiledTemplate(tokens=tuple(tokens), content_hash=template_hash(template_content))


def _lookup(variables: Mapping[str, Any], key: str) -> Any:
    if key in variables:
        return variables[key]
    if "." not in key:
        return _MISSING

    # Walk nested mappings for dotted keys
    current: Any = variables
    for part in key.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def format_value(value: Any) -> str:
    """Format a variable for insertion into rendered text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def render_compiled(compiled: CompiledTemplate, variables: Optional[Mapping[str, Any]] = None) -> str:
    variables = variables or {}
    parts: List[str] = []
    for token in compiled.tokens:
        if isinstance(token, str):
            parts.append(token)
            continue
        value = _lookup(variables, token.key)
        parts.append(token.raw if value is _MISSING else format_value(value))
    return "".join(parts)


def render(template_content: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Substitute variables into template text.

    Placeholders with no matching variable are emitted unchanged.
    """
    return render_compiled(compile_template(template_content), variables)


def find_missing_variables(template_content: str, variables: Mapping[str, Any]) -> List[str]:
    """Placeholder keys that render() would leave unresolved."""
    compiled = compile_template(template_content)
    return [key for key in compiled.placeholders if _lookup(variables, key) is _MISSING]


def validate_template(template_content: str, schema: VariableSchema) -> List[str]:
    """Placeholder keys that the variable schema does not declare.

    Only the first segment of a dotted key has to be declared.
    """
    declared = set(schema.declared())
    return [
        key
        for key in compile_template(template_content).placeholders
        if key.split(".", 1)[0] not in declared
    ]


def schema_violations(schema: VariableSchema, variables: Mapping[str, Any]) -> List[str]:
    return schema.violations(dict(variables))


# =============================================================================
# Template cache
# =============================================================================


class TemplateCache:
    """Parsed templates keyed by feedback-step id.

    An entry is re-parsed when the step's template content changes.
    """

    def __init__(self):
        self._entries: Dict[str, CompiledTemplate] = {}
        self._lock = threading.Lock()

    def get(self, feedback_step: FeedbackStep) -> CompiledTemplate:
        current_hash = feedback_step.content_hash
        with self._lock:
            cached = self._entries.get(feedback_step.id)
        if cached is not None and cached.content_hash == current_hash:
            return cached

        compiled = compile_template(feedback_step.template_content)
        with self._lock:
            self._entries[feedback_step.id] = compiled
        if cached is not None:
            logger.debug("Template %s changed; re-parsed", feedback_step.name)
        return compiled

    def render(self, feedback_step: FeedbackStep, variables: Optional[Mapping[str, Any]] = None) -> str:
        return render_compiled(self.get(feedback_step), variables)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Global template cache instance
_template_cache = TemplateCache()


def get_template_cache() -> TemplateCache:
    return _template_cache


def clear_cache() -> None:
    """Clear all cached parsed templates."""
    _template_cache.clear()
    logger.debug("Template cache cleared")
