"""
db.py - DuckDB-backed storage for tool flows, flow steps and feedback steps.

Each FlowDB is one store. The process has one global store holding the
default (global) rows, plus one store per workspace holding that workspace's
override rows. Both use the same schema.

Usage:
    from taskpilot.runtime.db import FlowDB

    db = FlowDB(db_path)
    db.insert_tool_flow(flow)
    db.insert_step(step)
    flow = db.find_tool_flow("taskpilot_add")
    steps = db.get_steps(flow.id)

Key collisions on insert raise DuplicateRowError. Every other DuckDB failure
surfaces as StorageUnavailableError so callers can tell an outage apart from
"row not found" (which returns None) and from a write conflict.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from .errors import DuplicateRowError, DuplicateStepOrderError, StorageUnavailableError
from .types import (
    FeedbackStep,
    ToolFlow,
    ToolFlowStep,
    VariableSchema,
    normalize_next_tool,
    parse_metadata,
    parse_variable_schema,
    scope_key,
)

logger = logging.getLogger(__name__)

# Lazy import to avoid hard dependency at module load time
_duckdb = None


def _get_duckdb():
    """Lazy import of duckdb module."""
    global _duckdb
    if _duckdb is None:
        try:
            import duckdb

            _duckdb = duckdb
        except ImportError as e:
            raise StorageUnavailableError("duckdb", e)
    return _duckdb


# =============================================================================
# Schema Definitions
# =============================================================================

SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Insertion sequence: the latest workspace copy of a tool flow wins
CREATE SEQUENCE IF NOT EXISTS tool_flows_seq;
CREATE TABLE IF NOT EXISTS tool_flows (
    id VARCHAR PRIMARY KEY,
    seq BIGINT DEFAULT nextval('tool_flows_seq'),
    tool_name VARCHAR NOT NULL,
    description VARCHAR,
    feedback_step_id VARCHAR,
    next_tool VARCHAR,
    is_global BOOLEAN NOT NULL DEFAULT TRUE,
    workspace_id VARCHAR,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tool_flow_steps (
    id VARCHAR PRIMARY KEY,
    tool_flow_id VARCHAR NOT NULL,
    step_order INTEGER NOT NULL,
    system_tool_fn VARCHAR NOT NULL,
    feedback_step VARCHAR,
    next_tool VARCHAR,
    metadata JSON,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(tool_flow_id, step_order)
);

CREATE TABLE IF NOT EXISTS feedback_steps (
    id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    scope_key VARCHAR NOT NULL,  -- workspace id, or 'global'
    description VARCHAR,
    template_content VARCHAR NOT NULL,
    variable_schema JSON,
    is_global BOOLEAN NOT NULL DEFAULT TRUE,
    workspace_id VARCHAR,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(name, scope_key)
);

CREATE INDEX IF NOT EXISTS idx_tool_flows_name ON tool_flows(tool_name, workspace_id);
CREATE INDEX IF NOT EXISTS idx_steps_flow ON tool_flow_steps(tool_flow_id);
"""

_FLOW_COLUMNS = "id, tool_name, description, feedback_step_id, next_tool, is_global, workspace_id"
_STEP_COLUMNS = "id, tool_flow_id, step_order, system_tool_fn, feedback_step, next_tool, metadata"
_FEEDBACK_COLUMNS = (
    "id, name, description, template_content, variable_schema, is_global, workspace_id"
)


class FlowDB:
    """DuckDB-backed tool-flow store.

    Thread-safe: every statement runs under an RLock, so the store can be
    driven from executor threads.

    Attributes:
        db_path: Path to the DuckDB file, or None for an in-memory store.
        name: Label used in logs and errors ("global", or the workspace id).
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        name: str = "global",
        end_sentinel: str = "end",
    ):
        self.db_path = db_path
        self.name = name
        self.end_sentinel = end_sentinel
        self._connection = None
        self._lock = threading.RLock()
        self._initialized = False

    @property
    def connection(self):
        """Get or create the DuckDB connection, creating the schema on first use."""
        if self._connection is None:
            duckdb = _get_duckdb()
            with self._lock:
                if self._connection is None:
                    try:
                        if self.db_path:
                            self.db_path.parent.mkdir(parents=True, exist_ok=True)
                            self._connection = duckdb.connect(str(self.db_path))
                        else:
                            self._connection = duckdb.connect(":memory:")
                    except (duckdb.Error, OSError) as e:
                        logger.error("Failed to open flow store %s at %s: %s", self.name, self.db_path, e)
                        raise StorageUnavailableError(self.name, e)

                    if not self._initialized:
                        try:
                            self._init_schema()
                        except StorageUnavailableError:
                            self._connection.close()
                            self._connection = None
                            raise
                        self._initialized = True

        return self._connection

    def _init_schema(self):
        """Initialize the database schema."""
        duckdb = _get_duckdb()
        with self._lock:
            try:
                self._connection.execute(CREATE_TABLES_SQL)
                result = self._connection.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                ).fetchone()
                if result is None:
                    self._connection.execute(
                        "INSERT INTO schema_version (version) VALUES (?)", [SCHEMA_VERSION]
                    )
            except duckdb.Error as e:
                raise StorageUnavailableError(self.name, e)

            logger.debug("FlowDB %s schema initialized (schema_version=%d)", self.name, SCHEMA_VERSION)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Lock the connection and translate DuckDB failures.

        DuckDB auto-commits by default; multi-statement writes use _atomic().
        """
        duckdb = _get_duckdb()
        with self._lock:
            conn = self.connection
            try:
                yield conn
            except duckdb.Error as e:
                logger.warning("Flow store %s operation failed: %s", self.name, e)
                raise StorageUnavailableError(self.name, e)

    def _insert(self, conn, table: str, key: str, sql: str, params: Sequence[Any]) -> None:
        """Execute an INSERT, reporting key collisions as DuplicateRowError."""
        duckdb = _get_duckdb()
        try:
            conn.execute(sql, list(params))
        except duckdb.ConstraintException as e:
            logger.info("Rejected insert into %s.%s: %s", self.name, table, e)
            raise DuplicateRowError(
                table, key, f"{table} row '{key}' conflicts with an existing row: {e}"
            )

    @contextmanager
    def _atomic(self) -> Iterator[Any]:
        """Run several statements in one DuckDB transaction."""
        with self._transaction() as conn:
            conn.begin()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def close(self):
        """Close the database connection."""
        if self._connection is not None:
            with self._lock:
                self._connection.close()
                self._connection = None
                self._initialized = False

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _to_flow(self, row: Sequence[Any]) -> ToolFlow:
        return ToolFlow(
            id=row[0],
            tool_name=row[1],
            description=row[2] or "",
            feedback_step_id=row[3],
            next_tool=normalize_next_tool(row[4], self.end_sentinel),
            is_global=bool(row[5]),
            workspace_id=row[6],
        )

    def _to_step(self, row: Sequence[Any]) -> ToolFlowStep:
        return ToolFlowStep(
            id=row[0],
            tool_flow_id=row[1],
            step_order=int(row[2]),
            system_tool_fn=row[3],
            feedback_step=row[4],
            next_tool=normalize_next_tool(row[5], self.end_sentinel),
            metadata=parse_metadata(row[6], row[0]),
        )

    def _to_feedback_step(self, row: Sequence[Any]) -> FeedbackStep:
        return FeedbackStep(
            id=row[0],
            name=row[1],
            description=row[2] or "",
            template_content=row[3],
            variable_schema=parse_variable_schema(row[4], row[0]),
            is_global=bool(row[5]),
            workspace_id=row[6],
        )

    # =========================================================================
    # Tool flows
    # =========================================================================

    def _insert_flow_row(self, conn, flow: ToolFlow) -> None:
        self._insert(
            conn,
            "tool_flows",
            flow.id,
            f"INSERT INTO tool_flows ({_FLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                flow.id,
                flow.tool_name,
                flow.description,
                flow.feedback_step_id,
                flow.next_tool,
                flow.is_global,
                flow.workspace_id,
            ],
        )

    def insert_tool_flow(self, flow: ToolFlow) -> ToolFlow:
        with self._transaction() as conn:
            self._insert_flow_row(conn, flow)
        logger.debug("Inserted tool flow %s (%s) into %s", flow.id, flow.tool_name, self.name)
        return flow

    def get_tool_flow(self, flow_id: str) -> Optional[ToolFlow]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_FLOW_COLUMNS} FROM tool_flows WHERE id = ?", [flow_id]
            ).fetchone()
        return self._to_flow(row) if row else None

    def find_tool_flow(self, tool_name: str, workspace_id: Optional[str] = None) -> Optional[ToolFlow]:
        """Find the flow for a tool in one scope.

        With a workspace id, only that workspace's rows are considered; without
        one, only global rows. When several rows qualify the most recently
        inserted wins.
        """
        if workspace_id:
            where = "tool_name = ? AND is_global = FALSE AND workspace_id = ?"
            params: List[Any] = [tool_name, workspace_id]
        else:
            where = "tool_name = ? AND is_global = TRUE"
            params = [tool_name]
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_FLOW_COLUMNS} FROM tool_flows WHERE {where} "
                "ORDER BY seq DESC, id DESC LIMIT 1",
                params,
            ).fetchone()
        return self._to_flow(row) if row else None

    def list_tool_flows(self, workspace_id: Optional[str] = None) -> List[ToolFlow]:
        """List the flows of one scope, ordered by tool name then insertion."""
        if workspace_id:
            where, params = "is_global = FALSE AND workspace_id = ?", [workspace_id]
        else:
            where, params = "is_global = TRUE", []
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_FLOW_COLUMNS} FROM tool_flows WHERE {where} ORDER BY tool_name, seq",
                params,
            ).fetchall()
        return [self._to_flow(r) for r in rows]

    def update_tool_flow(
        self,
        flow_id: str,
        description: Optional[str] = None,
        feedback_step_id: Optional[str] = None,
        next_tool: Optional[str] = None,
    ) -> Optional[ToolFlow]:
        """Update the mutable columns of a flow; None leaves a column unchanged."""
        assignments = []
        params: List[Any] = []
        for column, value in (
            ("description", description),
            ("feedback_step_id", feedback_step_id),
            ("next_tool", next_tool),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)
        if not assignments:
            return self.get_tool_flow(flow_id)

        with self._transaction() as conn:
            conn.execute(
                f"UPDATE tool_flows SET {', '.join(assignments)}, updated_at = now() WHERE id = ?",
                params + [flow_id],
            )
        return self.get_tool_flow(flow_id)

    # =========================================================================
    # Tool flow steps
    # =========================================================================

    def _insert_step_row(self, conn, step: ToolFlowStep) -> None:
        taken = conn.execute(
            "SELECT COUNT(*) FROM tool_flow_steps WHERE tool_flow_id = ? AND step_order = ?",
            [step.tool_flow_id, step.step_order],
        ).fetchone()
        if taken[0]:
            raise DuplicateStepOrderError(step.tool_flow_id, step.step_order)

        duckdb = _get_duckdb()
        try:
            conn.execute(
                f"INSERT INTO tool_flow_steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    step.id,
                    step.tool_flow_id,
                    step.step_order,
                    step.system_tool_fn,
                    step.feedback_step,
                    step.next_tool,
                    json.dumps(step.metadata),
                ],
            )
        except duckdb.ConstraintException as e:
            if "step_order" in str(e) or "tool_flow_id" in str(e):
                raise DuplicateStepOrderError(step.tool_flow_id, step.step_order)
            raise DuplicateRowError(
                "tool_flow_steps", step.id, f"tool_flow_steps row '{step.id}' already exists: {e}"
            )

    def insert_step(self, step: ToolFlowStep) -> ToolFlowStep:
        """Insert a step. Raises DuplicateStepOrderError if its order is taken."""
        with self._transaction() as conn:
            self._insert_step_row(conn, step)
        return step

    def get_steps(self, tool_flow_id: str) -> List[ToolFlowStep]:
        """Steps of a flow ordered by step_order, then id."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_STEP_COLUMNS} FROM tool_flow_steps WHERE tool_flow_id = ? "
                "ORDER BY step_order, id",
                [tool_flow_id],
            ).fetchall()
        return [self._to_step(r) for r in rows]

    def insert_flow_with_steps(self, flow: ToolFlow, steps: Sequence[ToolFlowStep]) -> ToolFlow:
        """Write a flow and its steps atomically."""
        with self._atomic() as conn:
            self._insert_flow_row(conn, flow)
            for step in steps:
                self._insert_step_row(conn, step)
        logger.debug(
            "Inserted tool flow %s (%s) with %d steps into %s",
            flow.id,
            flow.tool_name,
            len(steps),
            self.name,
        )
        return flow

    # =========================================================================
    # Feedback steps
    # =========================================================================

    def insert_feedback_step(self, feedback_step: FeedbackStep) -> FeedbackStep:
        with self._transaction() as conn:
            self._insert(
                conn,
                "feedback_steps",
                f"{feedback_step.name}@{feedback_step.scope_key}",
                f"INSERT INTO feedback_steps ({_FEEDBACK_COLUMNS}, scope_key) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    feedback_step.id,
                    feedback_step.name,
                    feedback_step.description,
                    feedback_step.template_content,
                    json.dumps(feedback_step.variable_schema.to_json_schema()),
                    feedback_step.is_global,
                    feedback_step.workspace_id,
                    feedback_step.scope_key,
                ],
            )
        return feedback_step

    def get_feedback_step(self, feedback_step_id: str) -> Optional[FeedbackStep]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_FEEDBACK_COLUMNS} FROM feedback_steps WHERE id = ?", [feedback_step_id]
            ).fetchone()
        return self._to_feedback_step(row) if row else None

    def find_feedback_step(
        self, name: str, workspace_id: Optional[str] = None
    ) -> Optional[FeedbackStep]:
        """Find a template by name in one scope (a workspace, or global)."""
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_FEEDBACK_COLUMNS} FROM feedback_steps WHERE name = ? AND scope_key = ?",
                [name, scope_key(workspace_id)],
            ).fetchone()
        return self._to_feedback_step(row) if row else None

    def list_feedback_steps(self, workspace_id: Optional[str] = None) -> List[FeedbackStep]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_FEEDBACK_COLUMNS} FROM feedback_steps WHERE scope_key = ? ORDER BY name",
                [scope_key(workspace_id)],
            ).fetchall()
        return [self._to_feedback_step(r) for r in rows]

    def update_feedback_step(
        self,
        feedback_step_id: str,
        template_content: Optional[str] = None,
        description: Optional[str] = None,
        variable_schema: Optional[VariableSchema] = None,
    ) -> Optional[FeedbackStep]:
        """Edit a template in place. Cached bundles are not invalidated."""
        assignments = []
        params: List[Any] = []
        if template_content is not None:
            assignments.append("template_content = ?")
            params.append(template_content)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        if variable_schema is not None:
            assignments.append("variable_schema = ?")
            params.append(json.dumps(variable_schema.to_json_schema()))
        if not assignments:
            return self.get_feedback_step(feedback_step_id)

        with self._transaction() as conn:
            conn.execute(
                f"UPDATE feedback_steps SET {', '.join(assignments)}, updated_at = now() WHERE id = ?",
                params + [feedback_step_id],
            )
        return self.get_feedback_step(feedback_step_id)

    def upsert_feedback_step(self, feedback_step: FeedbackStep) -> FeedbackStep:
        """Insert a template, or edit the existing one with the same name and scope.

        The existing row keeps its id.
        """
        with self._lock:
            existing = self.find_feedback_step(feedback_step.name, feedback_step.workspace_id)
            if existing is None:
                return self.insert_feedback_step(feedback_step)
            updated = self.update_feedback_step(
                existing.id,
                template_content=feedback_step.template_content,
                description=feedback_step.description,
                variable_schema=feedback_step.variable_schema,
            )
        logger.debug("Updated feedback step %s in %s", feedback_step.name, self.name)
        return updated
