"""
Tests for workspace-over-global resolution.
"""

import asyncio

from taskpilot.runtime.scope_resolver import ScopeResolver
from taskpilot.runtime.types import EntityKind


class TestResolveFlow:
    """Tests for flow shadowing."""

    def test_global_flow_when_no_workspace(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="g")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.resolve_flow("t")).id == "g"

    def test_global_flow_when_workspace_has_none(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="g")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.resolve_flow("t", "ws1")).id == "g"

    def test_workspace_flow_shadows_global(self, registry, global_db, workspace_db, add_flow):
        add_flow(global_db, "t", flow_id="g")
        add_flow(workspace_db("ws1"), "t", workspace_id="ws1", flow_id="w")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.resolve_flow("t", "ws1")).id == "w"
        # Other workspaces still see the global flow
        assert asyncio.run(resolver.resolve_flow("t", "ws2")).id == "g"
        assert asyncio.run(resolver.resolve_flow("t")).id == "g"

    def test_not_found(self, registry):
        resolver = ScopeResolver(registry)
        assert asyncio.run(resolver.resolve(EntityKind.FLOW, "missing", "ws1")) is None

    def test_kind_accepts_plain_string(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="g")
        resolver = ScopeResolver(registry)
        assert asyncio.run(resolver.resolve("flow", "t")).id == "g"


class TestResolveTemplate:
    """Tests for template shadowing and id fallback."""

    def test_workspace_template_shadows_global(self, registry, global_db, workspace_db, add_template):
        add_template(global_db, "greet", "Hello from global")
        add_template(workspace_db("ws1"), "greet", "Hello from ws1", workspace_id="ws1")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.resolve_template("greet", "ws1")).template_content == "Hello from ws1"
        assert asyncio.run(resolver.resolve_template("greet")).template_content == "Hello from global"

    def test_falls_back_to_id_lookup(self, registry, global_db, add_template):
        row = add_template(global_db, "greet", "Hello")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.resolve_template(row.id, "ws1")).name == "greet"

    def test_missing_template(self, registry):
        resolver = ScopeResolver(registry)
        assert asyncio.run(resolver.resolve_template("nope", "ws1")) is None

    def test_global_flow_by_id(self, registry, global_db, add_flow):
        add_flow(global_db, "t", flow_id="g")
        resolver = ScopeResolver(registry)

        assert asyncio.run(resolver.global_flow_by_id("g")).tool_name == "t"
        assert asyncio.run(resolver.global_flow_by_id("missing")) is None
