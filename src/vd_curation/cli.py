"""
Command-line interface module for VD Curation.
Handles argument parsing, logging setup and dispatch to the curation pipeline.
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table as RichTable

from .config import load_config
from .dbsnp import DbSnpClient
from .diff import DiffEngine
from .exceptions import CurationError, AnnotationError
from .expert import ExpertCurationOverlay
from .nomenclature import write_nomenclature_template, apply_nomenclature
from .normalizer import format_position
from .pipeline import BulkAnnotationPipeline
from .release import ReleaseController
from .stats import diff_stats
from .store import Annotated, ManualBlank, Table, VariantStore

console = Console()
log = logging.getLogger("vd-curation")


def parse_args(argv: Optional[List[str]] = None):
    """
    Parse command-line arguments for VD Curation.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(prog="vd-curate", description="Variant curation and release pipeline")

    parser.add_argument("--config", type=str, help="Path to JSON configuration file")
    parser.add_argument("--db", type=str, help="DuckDB database path (overrides configuration)")
    parser.add_argument("--user", type=str, help="Curator name recorded in the activity log")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("normalize", help="Print the canonical form of a genomic position")
    p.add_argument("variation")
    p.add_argument("--external", action="store_true", help="Format as annotation tool input")

    p = sub.add_parser("create", help="Add a new variant to the queue")
    p.add_argument("variation")
    p.add_argument("--manual", action="store_true", help="Skip annotation and use placeholder values")
    p.add_argument("--dbsnp", action="store_true", help="Look up missing dbSNP ids")

    p = sub.add_parser("show", help="Show a variant (queue first, then live)")
    p.add_argument("id", type=int)
    p.add_argument("--live", action="store_true", help="Only read the live table")

    p = sub.add_parser("edit", help="Stage field edits for a variant")
    p.add_argument("id", type=int)
    p.add_argument("assignments", nargs="+", metavar="FIELD=VALUE")

    p = sub.add_parser("review", help="Update a variant's review record")
    p.add_argument("id", type=int)
    p.add_argument("--confirm", action="store_true", help="Confirm for release")
    p.add_argument("--unconfirm", action="store_true", help="Withdraw release confirmation")
    p.add_argument("--delete", action="store_true", help="Schedule for deletion")
    p.add_argument("--keep", action="store_true", help="Cancel scheduled deletion")
    p.add_argument("--comments", type=str, help="Comments for the informatics team")

    p = sub.add_parser("diff", help="Show unreleased changes")
    p.add_argument("id", type=int, nargs="?")

    p = sub.add_parser("discard", help="Discard all staged changes for a variant")
    p.add_argument("id", type=int)

    p = sub.add_parser("release", help="Release queued changes")
    p.add_argument("--all", action="store_true", help="Release unconfirmed changes too")
    p.add_argument("--version", type=int, help="Version number to record")
    p.add_argument("--apply-expert", action="store_true", help="Apply expert curations first")

    sub.add_parser("versions", help="Show version history")

    p = sub.add_parser("stats", help="Per-gene release statistics")
    p.add_argument("--output", type=str, help="Write the statistics to a CSV file")

    p = sub.add_parser("expert-load", help="Load an expert curation CSV")
    p.add_argument("path")

    sub.add_parser("expert-apply", help="Apply expert curations to the queue")

    p = sub.add_parser("pipeline-submit", help="Run the bulk annotation pipeline on a genes file")
    p.add_argument("genes_file")
    p.add_argument("--wait", action="store_true", help="Block until the job finishes")

    p = sub.add_parser("pipeline-status", help="Show a bulk annotation job's status")
    p.add_argument("job_id")

    p = sub.add_parser("nomenclature-export", help="Write the disease rename sheet")
    p.add_argument("path")

    p = sub.add_parser("nomenclature-apply", help="Apply a completed disease rename sheet")
    p.add_argument("path")

    return parser.parse_args(argv)


def setup_logging(verbose: bool = False):
    """Configure rich console logging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def _print_record(title: str, record: dict):
    table = RichTable(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in record.items():
        if value is not None:
            table.add_row(key, str(value))
    console.print(table)


def _print_frame(title: str, frame):
    table = RichTable(title=title)
    for column in frame.columns:
        table.add_column(str(column))
    for row in frame.itertuples(index=False):
        table.add_row(*["" if value is None else str(value) for value in row])
    console.print(table)


def _parse_assignments(assignments: List[str]) -> dict:
    fields = {}
    for assignment in assignments:
        if "=" not in assignment:
            raise CurationError("Edits must look like FIELD=VALUE", assignment)
        key, value = assignment.split("=", 1)
        fields[key.strip()] = value
    return fields


def run_command(args, store: VariantStore) -> int:
    """Dispatch a parsed command. Returns the process exit code."""
    command = args.command

    if command == "create":
        if args.dbsnp:
            store.dbsnp = DbSnpClient(store.config)
        mode = ManualBlank() if args.manual else Annotated()
        variant_id = store.create_variant(args.variation, mode)
        console.print(f"Created variant [bold]{variant_id}[/bold]")

    elif command == "show":
        table = Table.LIVE if args.live else Table.QUEUE
        row = store.get_by_id(args.id, table)
        if row is None:
            console.print(f"[red]Variant {args.id} not found[/red]")
            return 1
        _print_record(f"Variant {args.id}", row)
        review = store.get_review(args.id)
        if review is not None:
            _print_record("Review", review)

    elif command == "edit":
        if store.update_queue(args.id, _parse_assignments(args.assignments)):
            console.print(f"Staged edits for variant {args.id}")
        else:
            console.print("No changes to stage")

    elif command == "review":
        fields = {}
        if args.confirm or args.unconfirm:
            fields["confirmed_for_release"] = args.confirm
        if args.delete or args.keep:
            fields["scheduled_for_deletion"] = args.delete
        if args.comments is not None:
            fields["informatics_comments"] = args.comments
        store.update_review(args.id, fields)
        _print_record("Review", store.get_review(args.id))

    elif command == "diff":
        changes = DiffEngine(store).unreleased_changes(args.id)
        if not changes:
            console.print("No unreleased changes")
            return 0
        for variant_id, result in changes.items():
            label = " (new)" if result.is_new else ""
            table = RichTable(title=f"{variant_id}: {result.name}{label}")
            table.add_column("Field", style="cyan")
            table.add_column("Live")
            table.add_column("Queue", style="green")
            for name, change in result.changes.items():
                table.add_row(name, str(change.live_value), str(change.queue_value))
            console.print(table)

    elif command == "discard":
        store.remove_all_changes(args.id)
        console.print(f"Discarded all changes for variant {args.id}")

    elif command == "release":
        overlay = ExpertCurationOverlay(store) if args.apply_expert else None
        controller = ReleaseController(store, overlay=overlay)
        summary = controller.release(confirmed_only=not args.all, version=args.version)
        console.print(
            f"Released version [bold]{summary.version}[/bold]: {len(summary.updated_ids)} updated, "
            f"{len(summary.deleted_ids)} deleted; {summary.variants} variants in {summary.genes} genes"
        )

    elif command == "versions":
        _print_frame("Versions", ReleaseController(store).versions())

    elif command == "stats":
        frame = diff_stats(store)
        if args.output:
            frame.to_csv(args.output, index=False)
            console.print(f"Wrote statistics for {len(frame)} genes to {args.output}")
        else:
            _print_frame("Release statistics", frame)

    elif command == "expert-load":
        total = ExpertCurationOverlay(store).load_csv(args.path)
        console.print(f"{total} expert curations stored")

    elif command == "expert-apply":
        counts = ExpertCurationOverlay(store).apply()
        console.print(
            f"{counts['updated']} queued variants updated, "
            f"{counts['scheduled_for_deletion']} scheduled for deletion"
        )

    elif command == "pipeline-submit":
        pipeline = BulkAnnotationPipeline(store)
        job_id = pipeline.submit(args.genes_file)
        console.print(f"Submitted job [bold]{job_id}[/bold]")
        # The CLI process owns the worker thread, so it waits for the job either way
        status = pipeline.wait(job_id) if args.wait else None
        pipeline.shutdown(wait=True)
        if status is not None:
            _print_record(f"Job {job_id}", status)

    elif command == "pipeline-status":
        _print_record(f"Job {args.job_id}", BulkAnnotationPipeline(store).poll(args.job_id))

    elif command == "nomenclature-export":
        count = write_nomenclature_template(store, args.path)
        console.print(f"Wrote {count} disease names to {args.path}")

    elif command == "nomenclature-apply":
        count = apply_nomenclature(store, args.path)
        console.print(f"Renamed diseases on {count} queued variants")

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "normalize":
        try:
            console.print(format_position(args.variation, for_external_tool=args.external))
        except CurationError as e:
            log.error(str(e))
            return 2
        return 0

    try:
        config = load_config(args.config)
        if args.db:
            config.db_path = args.db
        if config.db_path != ":memory:":
            Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)

        store = VariantStore(config, user=args.user)
    except CurationError as e:
        log.error(str(e))
        return 2

    try:
        return run_command(args, store)
    except AnnotationError as e:
        log.error(f"[{e.tag}] {e}")
        return 1
    except CurationError as e:
        log.error(str(e))
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
