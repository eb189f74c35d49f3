"""Operator CLI for TreeFlows.

Usage: treeflow <command> [options]

    init-db                      create the tables
    seed-demo [--force]          create the "Onboarding v1" demo flow
    list [--active]              list TreeFlows
    validate FLOW                run activation checks
    activate FLOW                validate, then mark active
    export FLOW [-o FILE]        dump the JSON structure
    import FILE [--activate]     rebuild a TreeFlow from a JSON structure
    mermaid FLOW                 print a Mermaid flowchart of the wiring
    route FLOW --verdict V       run one routing decision

FLOW is a TreeFlow id or slug.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from sqlalchemy.orm import Session

from treeflow.core.logging import bind_session_id, setup_logging
from treeflow.db import repository
from treeflow.db.models import CompletionVerdict, TreeFlow
from treeflow.db.session import db_session, db_transaction, init_db
from treeflow.graph import (
    MappingConditionEvaluator,
    StepRouter,
    TreeFlowDocument,
    TreeFlowEditor,
    TreeFlowError,
    TreeFlowValidationError,
    TreeFlowValidator,
    export_tree_flow,
    import_tree_flow,
)
from treeflow.seed import seed_onboarding_flow
from treeflow.settings import get_settings, is_development_mode
from treeflow.utils.mermaid import render_mermaid

console = Console()
err_console = Console(stderr=True)


def _load_tree_flow(session: Session, ref: str) -> TreeFlow:
    try:
        tree_flow_id = UUID(ref)
    except ValueError:
        found = repository.find_tree_flows_by_slug(session, ref)
        if len(found) > 1:
            ids = ", ".join(str(t.id) for t in found)
            raise LookupError(f"Slug '{ref}' matches {len(found)} TreeFlows ({ids}); use an id")
        tree_flow = repository.get_tree_flow(session, found[0].id) if found else None
    else:
        tree_flow = repository.get_tree_flow(session, tree_flow_id)
    if tree_flow is None:
        raise LookupError(f"TreeFlow '{ref}' not found")
    return tree_flow


def cmd_init_db(_args: argparse.Namespace) -> int:
    init_db()
    console.print(f"[green]Tables ready[/green] at {escape(get_settings().sqlalchemy_database_url)}")
    return 0


def cmd_seed_demo(args: argparse.Namespace) -> int:
    if not (args.force or is_development_mode()):
        err_console.print("[yellow]Refusing to seed outside DEVELOPMENT_MODE; pass --force[/yellow]")
        return 1
    init_db()
    with db_transaction() as session:
        tree_flow = seed_onboarding_flow(session)
        tree_flow_id, label = tree_flow.id, str(tree_flow)
    console.print(f"[green]Seeded[/green] {escape(label)} ({tree_flow_id})")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with db_session() as session:
        tree_flows = repository.list_tree_flows(session, active_only=args.active)
        table = Table(title="TreeFlows")
        table.add_column("id")
        table.add_column("slug")
        table.add_column("name")
        table.add_column("version")
        table.add_column("rev", justify="right")
        table.add_column("steps", justify="right")
        table.add_column("active")
        for tree_flow in tree_flows:
            table.add_row(
                str(tree_flow.id),
                tree_flow.slug or "",
                escape(tree_flow.name),
                tree_flow.version,
                str(tree_flow.revision),
                str(repository.count_steps(session, tree_flow.id)),
                "yes" if tree_flow.is_active else "no",
            )
    console.print(table)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    with db_session() as session:
        tree_flow = _load_tree_flow(session, args.flow)
        report = TreeFlowValidator().validate(tree_flow)
        label = str(tree_flow)
    for error in report.errors:
        console.print(f"[red]error[/red] {escape(error)}")
    for warning in report.warnings:
        console.print(f"[yellow]warning[/yellow] {escape(warning)}")
    if report.is_valid:
        console.print(f"[green]{escape(label)} is valid[/green]")
        return 0
    return 1


def cmd_activate(args: argparse.Namespace) -> int:
    try:
        with db_transaction() as session:
            tree_flow = _load_tree_flow(session, args.flow)
            TreeFlowEditor(session).activate(tree_flow)
            label = str(tree_flow)
    except TreeFlowValidationError as e:
        for error in e.report.errors:
            console.print(f"[red]error[/red] {escape(error)}")
        return 1
    console.print(f"[green]Activated[/green] {escape(label)}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    with db_session() as session:
        document = export_tree_flow(_load_tree_flow(session, args.flow))
    payload = document.model_dump_json(indent=2)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
        err_console.print(f"Wrote {escape(args.output)}")
    else:
        print(payload)
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    try:
        raw = Path(args.file).read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Cannot read {escape(args.file)}[/red]: {escape(str(e))}")
        return 1
    try:
        document = TreeFlowDocument.model_validate_json(raw)
    except ValidationError as e:
        err_console.print(f"[red]Invalid TreeFlow document[/red]: {escape(str(e))}")
        return 1

    init_db()
    with db_transaction() as session:
        tree_flow = import_tree_flow(session, document, created_by=args.created_by)
        if args.activate:
            TreeFlowEditor(session).activate(tree_flow)
        tree_flow_id, label = tree_flow.id, str(tree_flow)
    console.print(f"[green]Imported[/green] {escape(label)} ({tree_flow_id})")
    return 0


def cmd_mermaid(args: argparse.Namespace) -> int:
    with db_session() as session:
        text = render_mermaid(_load_tree_flow(session, args.flow))
    print(text, end="")
    return 0


def cmd_route(args: argparse.Namespace) -> int:
    state = {condition: True for condition in args.true or []}
    router = StepRouter(MappingConditionEvaluator())
    with db_session() as session, bind_session_id(args.session_id):
        tree_flow = _load_tree_flow(session, args.flow)
        if args.step:
            step = tree_flow.step_by_slug(args.step)
            if step is None:
                raise LookupError(f"Step '{args.step}' not found in '{tree_flow.name}'")
        else:
            step = router.start(tree_flow)
        outcome = router.route(step, args.verdict, state)

        table = Table(title=f"Routing from {escape(step.name)}")
        table.add_column("field")
        table.add_column("value")
        table.add_row("status", outcome.status.value)
        table.add_row("verdict", outcome.verdict.value)
        table.add_row(
            "output", escape(outcome.selected_output.name) if outcome.selected_output else "-"
        )
        table.add_row("next step", escape(outcome.next_step.name) if outcome.next_step else "-")
        table.add_row(
            "guard rejected", ", ".join(escape(o.name) for o in outcome.rejected_outputs) or "-"
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treeflow",
        description="Author, check and exercise TreeFlow decision graphs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("seed-demo", help="Create the Onboarding v1 demo flow")
    p.add_argument("--force", action="store_true", help="Seed even outside DEVELOPMENT_MODE")
    p.set_defaults(func=cmd_seed_demo)

    p = sub.add_parser("list", help="List TreeFlows")
    p.add_argument("--active", action="store_true", help="Only active TreeFlows")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("validate", help="Run activation checks")
    p.add_argument("flow", help="TreeFlow id or slug")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("activate", help="Validate and activate a TreeFlow")
    p.add_argument("flow", help="TreeFlow id or slug")
    p.set_defaults(func=cmd_activate)

    p = sub.add_parser("export", help="Dump the JSON structure of a TreeFlow")
    p.add_argument("flow", help="TreeFlow id or slug")
    p.add_argument("-o", "--output", type=str, default=None, help="Write to a file")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Create a TreeFlow from a JSON structure")
    p.add_argument("file", type=str, help="Path to an exported JSON document")
    p.add_argument("--activate", action="store_true", help="Activate after import")
    p.add_argument("--created-by", type=str, default="cli", help="Author recorded on the flow")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("mermaid", help="Print a Mermaid flowchart")
    p.add_argument("flow", help="TreeFlow id or slug")
    p.set_defaults(func=cmd_mermaid)

    p = sub.add_parser("route", help="Run one routing decision")
    p.add_argument("flow", help="TreeFlow id or slug")
    p.add_argument("--step", type=str, default=None, help="Step slug (default: first step)")
    p.add_argument(
        "--verdict",
        choices=[v.value for v in CompletionVerdict],
        default=CompletionVerdict.FULLY_COMPLETED.value,
        help="Completion verdict of the step",
    )
    p.add_argument(
        "--true",
        action="append",
        metavar="CONDITION",
        help="Conditional text (or output slug) that holds; repeatable",
    )
    p.add_argument("--session-id", type=str, default=None, help="Session id for log records")
    p.set_defaults(func=cmd_route)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(get_settings().log_level, stream="ext://sys.stderr")
    try:
        return args.func(args)
    except (LookupError, TreeFlowError) as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
