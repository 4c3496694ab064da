"""Command line entry point: python -m newsdigest {init-db,run-once,serve}."""

import argparse
import asyncio
import json
import sys

from newsdigest.core.db import create_all, dispose_engine, get_session_factory
from newsdigest.core.logging import get_logger, setup_logging
from newsdigest.core.settings import get_settings
from newsdigest.ingestor.feeds import load_feeds
from newsdigest.orchestrator.cycle import STATUS_COMPLETED, build_orchestrator

logger = get_logger("newsdigest.cli")


async def _init_db() -> None:
    await create_all()
    await dispose_engine()
    logger.info("Database schema created")


async def _run_once(feeds_path: str) -> dict:
    settings = get_settings()
    await create_all()
    orchestrator = build_orchestrator(settings, load_feeds(feeds_path), get_session_factory())
    try:
        report = await orchestrator.run_cycle()
    finally:
        await orchestrator.aclose()
        await dispose_engine()
    return report.as_dict()


def main(argv=None) -> int:
    """CLI entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(prog="newsdigest", description="News digest pipeline")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")

    run_once = subparsers.add_parser("run-once", help="Run a single digest cycle and exit")
    run_once.add_argument(
        "--feeds",
        default=settings.feeds_config_path,
        help=f"Feed list YAML (default: {settings.feeds_config_path})",
    )

    serve = subparsers.add_parser("serve", help="Run the scheduler and HTTP API")
    serve.add_argument("--host", default=settings.service_host)
    serve.add_argument("--port", type=int, default=settings.service_port)

    args = parser.parse_args(argv)

    if args.verbose:
        settings.log_level = "DEBUG"
    setup_logging("cli" if args.command != "serve" else None, settings)

    if args.command == "init-db":
        asyncio.run(_init_db())
        return 0

    if args.command == "run-once":
        result = asyncio.run(_run_once(args.feeds))
        print(json.dumps(result, indent=2, default=str))
        return 0 if result["status"] == STATUS_COMPLETED else 1

    import uvicorn
    from newsdigest.orchestrator.app import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
