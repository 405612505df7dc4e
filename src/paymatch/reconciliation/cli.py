#!/usr/bin/env python3
"""Command-line interface for reconciliation tools.

This CLI admits parsed payment rows, shows the reconciliation summary and
review queue, and applies manual resolutions.

Usage:
    python -m paymatch.reconciliation.cli admit statement.json
    python -m paymatch.reconciliation.cli admit webhooks.json --paystack
    python -m paymatch.reconciliation.cli queue --student std_001 --format text
    python -m paymatch.reconciliation.cli resolve approve TXN_ID --actor bursar
    python -m paymatch.reconciliation.cli reference 42 std_001 --attempts 3
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, List, Optional

from ..config import ReconciliationSettings
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..exceptions import (
    InvalidReasonCodeError,
    MalformedCandidateError,
    NotFoundError,
    ReconciliationError,
    ResolutionConflictError,
    TransientIngestionError,
)
from .gateway import normalize_paystack_event
from .models import ResolutionAction, TransactionCandidate
from .references import ReferenceCodec
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2


def load_rows(path: str) -> List[dict]:
    """Load a JSON file holding one row object or a list of them.

    Raises:
        ValueError: If the file is not a JSON object or list of objects.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(row, dict) for row in data):
        raise ValueError(f"{path} must contain a JSON object or a list of objects")
    return data


def emit(output: str, output_file: Optional[str] = None) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def run_in_session(
    work: Callable[[ReconciliationService], Awaitable[int]],
    settings: Optional[ReconciliationSettings] = None,
    database_url: Optional[str] = None,
) -> int:
    """Run one unit of work against the configured database and commit it.

    Args:
        work: Coroutine function receiving the service and returning an exit code.
        settings: Optional settings; loaded from the environment if omitted.
        database_url: Optional database URL; DATABASE_URL if omitted.

    Returns:
        Exit code from ``work``; the session is rolled back on error.
    """
    engine = create_async_engine(database_url=database_url or get_database_url())

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)

    try:
        async with session_factory() as session:
            try:
                code = await work(ReconciliationService(session, settings))
                await session.commit()
                return code
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()


def _admit_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    rows = load_rows(args.file)

    async def work(service: ReconciliationService) -> int:
        # each row is its own unit of work
        results: List[Any] = []
        malformed = 0
        failed = 0
        for index, row in enumerate(rows):
            try:
                if args.paystack:
                    candidate = normalize_paystack_event(row, source=service.settings.gateway_source)
                    if candidate is None:
                        continue
                else:
                    candidate = TransactionCandidate.from_row(row)
                result = await service.admit(candidate)
                await service.session.commit()
            except MalformedCandidateError as e:
                malformed += 1
                logger.warning(f"Row {index} rejected: {e}")
                results.append({"row": index, "error": e.code, "field": e.field})
                continue
            except TransientIngestionError as e:
                await service.session.rollback()
                failed += 1
                logger.error(f"Row {index} not admitted: {e}")
                results.append({"row": index, "error": e.code})
                continue
            results.append({"row": index, **result.model_dump(mode="json")})

        emit(json.dumps(results, indent=2), args.output)
        logger.info(
            f"Admitted {len(results) - malformed - failed} of {len(rows)} rows "
            f"({malformed} malformed, {failed} failed)"
        )
        if failed:
            return EXIT_FAILURE
        return EXIT_USAGE if malformed else EXIT_OK

    return work


def _summary_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    async def work(service: ReconciliationService) -> int:
        summary = await service.summary()
        emit(service.generate_report(summary=summary, format=args.format), args.output)
        return EXIT_OK

    return work


def _queue_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    async def work(service: ReconciliationService) -> int:
        rows = await service.list_exceptions(
            status=None if args.status == "all" else args.status,
            assignee=args.assignee,
            student_id=args.student,
            reason=args.reason,
            limit=args.limit,
            offset=args.offset,
        )
        emit(service.generate_report(exceptions=rows, format=args.format), args.output)
        return EXIT_OK

    return work


def _resolve_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    action = ResolutionAction(args.action)

    async def work(service: ReconciliationService) -> int:
        if len(args.ids) == 1:
            result = await service.resolve(args.ids[0], action, args.actor, args.obligation)
            emit(json.dumps(result.model_dump(mode="json"), indent=2), args.output)
            return EXIT_OK

        report = await service.bulk_resolve(args.ids, action, args.actor)
        emit(service.generate_report(bulk=report, format=args.format), args.output)
        if report.errors:
            return EXIT_FAILURE
        return EXIT_USAGE if report.conflicts or report.not_found else EXIT_OK

    return work


def _assign_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    async def work(service: ReconciliationService) -> int:
        exception = await service.queue.assign(args.exception_id, args.assignee or None, args.actor)
        emit(json.dumps(exception.to_dict(), indent=2), args.output)
        return EXIT_OK

    return work


def _rematch_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    async def work(service: ReconciliationService) -> int:
        outcomes = await service.rematch_unmatched(limit=args.limit)
        emit(json.dumps(outcomes, indent=2), args.output)
        return EXIT_OK

    return work


def _history_command(args: argparse.Namespace) -> Callable[[ReconciliationService], Awaitable[int]]:
    async def work(service: ReconciliationService) -> int:
        events = await service.history(args.transaction_id)
        emit(json.dumps([e.to_dict() for e in events], indent=2), args.output)
        return EXIT_OK

    return work


COMMANDS = {
    "admit": _admit_command,
    "summary": _summary_command,
    "queue": _queue_command,
    "resolve": _resolve_command,
    "assign": _assign_command,
    "rematch": _rematch_command,
    "history": _history_command,
}


def run_reference(args: argparse.Namespace, settings: ReconciliationSettings) -> int:
    """Print the generated references for an item and student; no database needed."""
    codec = ReferenceCodec.from_settings(settings)
    for reference in codec.generate_candidates(args.item, args.student, args.attempts):
        print(reference)
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="paymatch",
        description="Student payment reconciliation tools.",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Report format (default: json)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    admit_parser = subparsers.add_parser("admit", help="Admit payment rows from a JSON file")
    admit_parser.add_argument("file", help="JSON file with one row object or a list of rows")
    admit_parser.add_argument(
        "--paystack",
        action="store_true",
        help="Treat entries as Paystack event payloads",
    )

    subparsers.add_parser("summary", help="Show transaction counts by status")

    queue_parser = subparsers.add_parser("queue", help="List review queue items")
    queue_parser.add_argument("--status", choices=["open", "resolved", "all"], default="open")
    queue_parser.add_argument("--assignee", help="Only items assigned to this reviewer")
    queue_parser.add_argument("--student", help="Only items for this student id")
    queue_parser.add_argument("--reason", help="Only items carrying this reason code")
    queue_parser.add_argument("--limit", type=int, default=100)
    queue_parser.add_argument("--offset", type=int, default=0)

    resolve_parser = subparsers.add_parser("resolve", help="Apply a manual action to transactions")
    resolve_parser.add_argument("action", choices=[a.value for a in ResolutionAction])
    resolve_parser.add_argument(
        "ids", nargs="+", help="Transaction id, or several exception or transaction ids for a bulk action",
    )
    resolve_parser.add_argument("--actor", required=True, help="Reviewer performing the action")
    resolve_parser.add_argument(
        "--obligation",
        help="Target obligation id for approve (single transaction only)",
    )

    assign_parser = subparsers.add_parser("assign", help="Assign a queue item to a reviewer")
    assign_parser.add_argument("exception_id", help="Exception id")
    assign_parser.add_argument("assignee", help="Reviewer; empty string to unassign")
    assign_parser.add_argument("--actor", required=True, help="Who is assigning")

    rematch_parser = subparsers.add_parser("rematch", help="Re-run matching for unmatched transactions")
    rematch_parser.add_argument("--limit", type=int, default=100)

    history_parser = subparsers.add_parser("history", help="Show audit events for a transaction")
    history_parser.add_argument("transaction_id", help="Transaction id")

    reference_parser = subparsers.add_parser("reference", help="Print generated payment references")
    reference_parser.add_argument("item", help="Payment item id")
    reference_parser.add_argument("student", help="Student id")
    reference_parser.add_argument("--attempts", type=int, default=1, help="Number of attempts (1-12)")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code: 0 on success, 1 on usage errors or conflicts, 2 on failure.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_USAGE

    settings = ReconciliationSettings.from_env()

    if parsed_args.command == "reference":
        return run_reference(parsed_args, settings)

    if parsed_args.command == "resolve" and parsed_args.obligation and len(parsed_args.ids) > 1:
        logger.error("--obligation can only be used with a single transaction id")
        return EXIT_USAGE

    try:
        work = COMMANDS[parsed_args.command](parsed_args)
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return EXIT_USAGE

    try:
        return asyncio.run(run_in_session(work, settings))
    except (ResolutionConflictError, NotFoundError, MalformedCandidateError, InvalidReasonCodeError) as e:
        logger.error(f"{e.code}: {e}")
        return EXIT_USAGE
    except ReconciliationError as e:
        logger.error(f"{e.code}: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
