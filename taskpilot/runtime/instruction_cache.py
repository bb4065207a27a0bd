"""
instruction_cache.py - Cache of resolved flow bundles per (tool, scope).

A bundle is the resolution result: the flow, its ordered steps and the
feedback-step rows they reference. Rendered text is never cached.

Entries live until invalidated explicitly; edits to the stores are not
observed. Concurrent misses on the same key both write and the last write
wins.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, NamedTuple, Optional, Tuple

from .types import FeedbackStep, ToolFlow, ToolFlowStep, scope_key

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    tool_name: str
    scope: str  # workspace id, or "global"

    @classmethod
    def for_tool(cls, tool_name: str, workspace_id: Optional[str] = None) -> "CacheKey":
        return cls(tool_name, scope_key(workspace_id))


@dataclass(frozen=True)
class CompiledBundle:
    """Resolved flow definition ready for rendering."""

    flow: ToolFlow
    steps: Tuple[ToolFlowStep, ...]
    templates: Dict[str, FeedbackStep] = field(default_factory=dict)  # by template name
    flow_template: Optional[FeedbackStep] = None

    def template_for(self, step: ToolFlowStep) -> Optional[FeedbackStep]:
        if not step.feedback_step:
            return None
        return self.templates.get(step.feedback_step)

    def find_step(self, step_id: str) -> Optional[ToolFlowStep]:
        for step in self.steps:
            if step.matches(step_id):
                return step
        return None

    def following(self, step: ToolFlowStep) -> Optional[ToolFlowStep]:
        for index, candidate in enumerate(self.steps):
            if candidate.id == step.id:
                return self.steps[index + 1] if index + 1 < len(self.steps) else None
        return None


class InstructionCache:
    """Process-wide map from CacheKey to CompiledBundle."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._entries: Dict[CacheKey, CompiledBundle] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> Optional[CompiledBundle]:
        if not self.enabled:
            return None
        with self._lock:
            bundle = self._entries.get(key)
            if bundle is None:
                self.misses += 1
            else:
                self.hits += 1
        return bundle

    def put(self, key: CacheKey, bundle: CompiledBundle) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = bundle

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("Invalidated cached bundle for %s/%s", key.tool_name, key.scope)
        return removed

    def invalidate_scope(self, scope: str) -> int:
        """Drop every bundle cached for one scope (a workspace id, or "global")."""
        with self._lock:
            keys = [key for key in self._entries if key.scope == scope]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug("Invalidated %d cached bundles for scope %s", len(keys), scope)
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Instruction cache cleared (%d bundles)", count)
        return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
