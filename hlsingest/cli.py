"""Command-line interface for the ingest service.

Run with: hlsingest <command> [options]

Exit codes: 0 success, 1 other ingest error, 2 asset already exists,
3 invalid request, 4 asset busy, 5 unknown asset.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from hlsingest.core.config import settings
from hlsingest.core.database import create_engine, create_session_factory, init_db
from hlsingest.core.logging import setup_logging
from hlsingest.core.storage import StorageService
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import (
    AssetAlreadyExists,
    AssetBusy,
    IngestError,
    UnknownAsset,
)
from hlsingest.modules.ingest.orchestrator import IngestOrchestrator, IngestWorker
from hlsingest.modules.ingest.repository import StateStore
from hlsingest.modules.ingest.schemas import SubmitRequest
from hlsingest.modules.ingest.service import AssetService

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ALREADY_EXISTS = 2
EXIT_INVALID = 3
EXIT_BUSY = 4
EXIT_UNKNOWN = 5

ERROR_EXIT_CODES = {
    AssetAlreadyExists: EXIT_ALREADY_EXISTS,
    AssetBusy: EXIT_BUSY,
    UnknownAsset: EXIT_UNKNOWN,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hlsingest", description="HLS ingest pipeline")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Register a source video")
    submit.add_argument("--asset-id", required=True)
    submit.add_argument("--source", required=True, help="Source URI or path")
    submit.add_argument("--ladder", help="Comma-separated rendition labels, e.g. 360p,720p")
    submit.add_argument(
        "--dispatch", action="store_true", help="Queue a Celery task instead of waiting for a polling worker"
    )

    for name, help_text in (
        ("status", "Show the status of an asset"),
        ("cancel", "Request cancellation of an asset"),
        ("delete", "Delete a terminal asset and its outputs"),
        ("retry", "Re-queue a FAILED asset"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--asset-id", dest="asset_id", required=True)

    sub.add_parser("stats", help="Asset counts by status")

    worker = sub.add_parser("worker", help="Run a polling ingest worker")
    worker.add_argument("--once", action="store_true", help="Exit when nothing is left to process")
    worker.add_argument("--max-assets", type=int, default=None, help="Assets processed concurrently")

    sub.add_parser("init-db", help="Create database tables")
    return parser


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _parse_ladder(value: Optional[str]) -> Optional[list[str]]:
    if value is None:
        return None
    return value.split(",")


async def _run_service_command(
    args: argparse.Namespace,
    factory: async_sessionmaker,
    storage: StorageService,
    config: PipelineConfig,
) -> int:
    dispatcher = None
    if getattr(args, "dispatch", False):
        from hlsingest.modules.ingest.tasks import dispatch_ingest

        dispatcher = dispatch_ingest

    async with factory() as session:
        service = AssetService(session, storage=storage, dispatcher=dispatcher, config=config)
        if args.command == "submit":
            request = SubmitRequest(
                asset_id=args.asset_id,
                source_handle=args.source,
                ladder=_parse_ladder(args.ladder),
            )
            view = await service.submit(request)
        elif args.command == "status":
            view = await service.get_status(args.asset_id)
        elif args.command == "cancel":
            view = await service.cancel(args.asset_id)
        elif args.command == "retry":
            view = await service.retry(args.asset_id)
        elif args.command == "delete":
            await service.delete(args.asset_id)
            _print({"asset_id": args.asset_id, "deleted": True})
            return EXIT_OK
        else:
            view = await service.get_stats()
    _print(view.model_dump(mode="json"))
    return EXIT_OK


async def _run_worker(
    args: argparse.Namespace,
    factory: async_sessionmaker,
    storage: StorageService,
    config: PipelineConfig,
) -> int:
    orchestrator = IngestOrchestrator(StateStore(factory), storage, config)
    worker = IngestWorker(orchestrator, max_concurrent_assets=args.max_assets)
    if args.once:
        await worker.run_until_idle()
        return EXIT_OK

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await worker.run_forever(stop_event)
    return EXIT_OK


async def _main(
    args: argparse.Namespace,
    session_factory: Optional[async_sessionmaker],
    storage: Optional[StorageService],
    config: Optional[PipelineConfig],
) -> int:
    engine = None
    if session_factory is None or args.command == "init-db":
        engine = create_engine(args.database_url)
        session_factory = session_factory or create_session_factory(engine)
    storage = storage or StorageService()
    config = config or PipelineConfig.from_settings()
    try:
        if args.command == "init-db":
            await init_db(engine)
            _print({"initialized": True})
            return EXIT_OK
        if args.command == "worker":
            return await _run_worker(args, session_factory, storage, config)
        return await _run_service_command(args, session_factory, storage, config)
    finally:
        if engine is not None:
            await engine.dispose()


def main(
    argv: Optional[list[str]] = None,
    session_factory: Optional[async_sessionmaker] = None,
    storage: Optional[StorageService] = None,
    config: Optional[PipelineConfig] = None,
) -> int:
    """Entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    # stdout carries the JSON result
    setup_logging(
        level=args.log_level,
        json_format=settings.LOG_JSON,
        include_stack_trace=False,
        stream=sys.stderr,
    )

    try:
        return asyncio.run(_main(args, session_factory, storage, config))
    except ValidationError as e:
        _print({"error_kind": "InvalidRequest", "message": str(e)})
        return EXIT_INVALID
    except IngestError as e:
        _print({"error_kind": e.kind.value, "message": str(e)})
        return ERROR_EXIT_CODES.get(type(e), EXIT_ERROR)


if __name__ == "__main__":
    sys.exit(main())
