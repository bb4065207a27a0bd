"""
TaskPilot API - FastAPI REST API over the tool-flow orchestrator.

Endpoints (from routes/tool_flows.py):
    POST   /api/tools/{tool_name}/orchestrate                         - Render a tool call
    GET    /api/tools/{tool_name}/next-steps                          - Reachable steps and tools
    POST   /api/cache/clear                                           - Clear cached bundles
    POST   /api/workspaces/{workspace_id}/tool-flows/{flow_id}/clone  - Clone a global flow
    GET    /api/workspaces/{workspace_id}/tool-flows                  - Effective flows
    GET    /api/workspaces/{workspace_id}/feedback-steps              - Effective templates
    PUT    /api/workspaces/{workspace_id}/feedback-steps/{name}       - Override a template

Health:
    GET    /api/health                                                - Health check
"""

from .routes import tool_flows_router
from .server import create_app

__all__ = ["create_app", "tool_flows_router"]
