"""
seed.py - Load default tool flows and templates into the global store.

Reads default_flows.yaml (or another file in the same format) and inserts
every feedback step and tool flow that is not already present. Existing rows
are never modified, so seeding is safe to repeat after an upgrade.

Usage:
    python -m taskpilot.config.seed seed [--db-path PATH] [--file FLOWS.yaml]
    python -m taskpilot.config.seed list [--db-path PATH]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..runtime.db import FlowDB
from ..runtime.errors import InvalidRowError
from ..runtime.types import (
    FeedbackStep,
    ToolFlow,
    ToolFlowStep,
    parse_metadata,
    parse_variable_schema,
)

logger = logging.getLogger(__name__)

DEFAULT_FLOWS_FILE = Path(__file__).parent / "default_flows.yaml"


@dataclass
class SeedData:
    feedback_steps: List[FeedbackStep] = field(default_factory=list)
    flows: List[Tuple[ToolFlow, List[ToolFlowStep]]] = field(default_factory=list)


@dataclass
class SeedReport:
    feedback_steps_added: List[str] = field(default_factory=list)
    flows_added: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{len(self.flows_added)} flows added, "
            f"{len(self.feedback_steps_added)} feedback steps added, "
            f"{len(self.skipped)} skipped"
        )


def _require(entry: Dict[str, Any], key: str, table: str) -> Any:
    value = entry.get(key)
    if value is None or value == "":
        raise InvalidRowError(table, str(entry.get("id", "?")), f"missing '{key}'")
    return value


def _parse_steps(flow_id: str, entries: List[Dict[str, Any]]) -> List[ToolFlowStep]:
    steps = []
    for entry in entries or []:
        order = int(_require(entry, "step_order", "tool_flow_steps"))
        step_id = entry.get("id") or f"{flow_id}_step_{order}"
        steps.append(
            ToolFlowStep(
                id=step_id,
                tool_flow_id=flow_id,
                step_order=order,
                system_tool_fn=_require(entry, "system_tool_fn", "tool_flow_steps"),
                feedback_step=entry.get("feedback_step"),
                next_tool=entry.get("next_tool"),
                metadata=parse_metadata(entry.get("metadata"), step_id),
            )
        )
    return steps


def load_seed_file(path: Path = DEFAULT_FLOWS_FILE) -> SeedData:
    """Parse a flows YAML file into rows. Raises InvalidRowError on bad entries."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    seed = SeedData()
    for entry in data.get("feedback_steps", []) or []:
        step_id = _require(entry, "id", "feedback_steps")
        seed.feedback_steps.append(
            FeedbackStep(
                id=step_id,
                name=_require(entry, "name", "feedback_steps"),
                template_content=_require(entry, "template_content", "feedback_steps"),
                description=entry.get("description") or "",
                variable_schema=parse_variable_schema(entry.get("variable_schema"), step_id),
            )
        )

    for entry in data.get("tool_flows", []) or []:
        flow_id = _require(entry, "id", "tool_flows")
        flow = ToolFlow(
            id=flow_id,
            tool_name=_require(entry, "tool_name", "tool_flows"),
            description=entry.get("description") or "",
            feedback_step_id=entry.get("feedback_step_id"),
            next_tool=entry.get("next_tool"),
        )
        seed.flows.append((flow, _parse_steps(flow_id, entry.get("steps"))))

    logger.debug(
        "Loaded %d flows and %d feedback steps from %s",
        len(seed.flows),
        len(seed.feedback_steps),
        path,
    )
    return seed


def seed_global_flows(db: FlowDB, path: Optional[Path] = None) -> SeedReport:
    """Insert default rows that the global store does not have yet."""
    seed = load_seed_file(path or DEFAULT_FLOWS_FILE)
    report = SeedReport()

    for feedback_step in seed.feedback_steps:
        if db.get_feedback_step(feedback_step.id) or db.find_feedback_step(feedback_step.name):
            report.skipped.append(feedback_step.id)
            continue
        db.insert_feedback_step(feedback_step)
        report.feedback_steps_added.append(feedback_step.id)

    for flow, steps in seed.flows:
        # At most one global flow per tool name
        if db.get_tool_flow(flow.id) or db.find_tool_flow(flow.tool_name):
            report.skipped.append(flow.id)
            continue
        db.insert_flow_with_steps(flow, steps)
        report.flows_added.append(flow.id)

    logger.info("Seeded global store %s: %s", db.name, report.summary())
    return report


# =============================================================================
# CLI
# =============================================================================


def main() -> None:
    """CLI entry point for seeding the global store."""
    import argparse
    import sys

    from .runtime_config import get_runtime_config

    config = get_runtime_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="TaskPilot default flow seeding")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    seed_parser = subparsers.add_parser("seed", help="Insert missing default flows")
    seed_parser.add_argument("--db-path", type=Path, default=None, help="Global store path")
    seed_parser.add_argument("--file", type=Path, default=None, help="Flows YAML file")

    list_parser = subparsers.add_parser("list", help="List global tool flows")
    list_parser.add_argument("--db-path", type=Path, default=None, help="Global store path")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    db = FlowDB(args.db_path or config.global_db_path, end_sentinel=config.end_sentinel)
    try:
        if args.command == "seed":
            report = seed_global_flows(db, args.file)
            print(report.summary())
        elif args.command == "list":
            for flow in db.list_tool_flows():
                steps = db.get_steps(flow.id)
                print(f"{flow.tool_name:32} {flow.id:24} steps={len(steps)} next={flow.next_tool or '-'}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
