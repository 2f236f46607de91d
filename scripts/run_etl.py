"""
Command line entry point for the ETL engine

    python scripts/run_etl.py ingest --org T1 data/desvio.csv
    python scripts/run_etl.py retry-queue [--org T1]
    python scripts/run_etl.py sweep-locks
    python scripts/run_etl.py dlq-requeue [--org T1]
    python scripts/run_etl.py maintenance [--org T1]
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.runner import build_runner, session_processor
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from models.base import DuplicatePolicy, FactType

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Feedlot ETL jobs")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("ingest", help="Upload a CSV file and process its first run")
    ingest.add_argument("path")
    ingest.add_argument("--org", required=True, dest="organization_id")
    ingest.add_argument("--fact-type", choices=[t.value for t in FactType], default=None)
    ingest.add_argument("--user", dest="uploaded_by", default="cli")
    ingest.add_argument("--policy", choices=[p.value for p in DuplicatePolicy], default=DuplicatePolicy.BLOCK.value)
    ingest.add_argument("--reason", default=None, help="Reason recorded for forced reprocessing")
    ingest.add_argument("--skip-validation", action="store_true")

    for name, help_text in (
        ("retry-queue", "Process runs whose retry is due"),
        ("dlq-requeue", "Re-arm dead-letter entries marked for retry"),
        ("maintenance", "Retention cleanup and alert checks"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--org", dest="organization_id", default=None)

    commands.add_parser("sweep-locks", help="Release stale locks and fail abandoned runs")
    return parser


async def run_command(args: argparse.Namespace) -> dict:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with AsyncSessionLocal() as session:
            runner = build_runner(SqlAlchemyStore(session), worker_id="cli")

            if args.command == "ingest":
                decision, result = await runner.ingest_file(
                    args.organization_id,
                    args.path,
                    fact_type=args.fact_type,
                    uploaded_by=args.uploaded_by,
                    duplicate_policy=DuplicatePolicy(args.policy),
                    reason=args.reason,
                    skip_validation=args.skip_validation,
                )
                summary = {"created": decision.created, "message": decision.message}
                if decision.created:
                    run = await runner.service.get_run(decision.run.id)
                    summary.update({
                        "file_id": decision.file.id,
                        "run_id": run["id"],
                        "state": run["current_state"],
                        "success": result.success,
                        "error": result.error,
                        "next_retry_at": result.next_retry_at,
                        "moved_to_dlq": result.moved_to_dlq,
                    })
                return summary

            if args.command == "retry-queue":
                return await runner.process_retry_queue(
                    args.organization_id, processor=session_processor(AsyncSessionLocal)
                )
            if args.command == "sweep-locks":
                return await runner.service.recover_stale_runs()
            if args.command == "dlq-requeue":
                return await runner.service.retry.process_marked_dlq_entries(args.organization_id)
            if args.command == "maintenance":
                return await runner.service.run_maintenance(args.organization_id)
            raise ValueError(f"Unknown command: {args.command}")
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        summary = asyncio.run(run_command(args))
    except ETLException as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(summary, indent=2, default=str))
    if args.command == "ingest" and summary.get("created") and not summary.get("success"):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
