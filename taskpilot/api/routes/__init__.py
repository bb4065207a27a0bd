"""
Routes package for the TaskPilot API.

This package contains the FastAPI routers for:
- tool_flows: Orchestration, next steps, cache control, cloning and
  workspace template overrides
"""

from .tool_flows import router as tool_flows_router

__all__ = [
    "tool_flows_router",
]
