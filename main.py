"""Entry point: serve the API, or run one batch for a tenant from the shell.

    python main.py                         # API server (auto-reload in debug)
    python main.py process <tenant_id>     # process the tenant's backlog
    python main.py retry <tenant_id> [--reason "service unavailable"]
"""
import argparse
import asyncio

import uvicorn

from pricebook.config import settings


async def run_batch(tenant_id: str, retry: bool = False, reason: str | None = None):
    """Run the pipeline once against the configured database."""
    from ai.extraction import build_extractor
    from pricebook.db import AsyncSessionMaker, engine
    from pricebook.logging_config import setup_logging
    from pricebook.pipelines.processing import QuoteIngestionPipeline
    from pricebook.sql_store import SqlQuoteStore

    setup_logging()
    pipeline = QuoteIngestionPipeline(SqlQuoteStore(AsyncSessionMaker), build_extractor())
    try:
        if retry:
            result = await pipeline.retry_failed(tenant_id, reason=reason)
        else:
            result = await pipeline.process_pending_for_tenant(tenant_id)
    finally:
        await engine.dispose()
    print(f"{result.succeeded} quoted, {result.failed} failed, {result.skipped} skipped")


def serve():
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else 'SQLite'}")
    print(f"Extraction backend: {settings.extraction.backend.value}")
    print("-" * 50)

    uvicorn.run(
        "pricebook.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        reload_dirs=["pricebook", "ai", "config"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Supplier price book")
    sub = parser.add_subparsers(dest="command")
    process = sub.add_parser("process", help="process pending messages of a tenant")
    process.add_argument("tenant_id")
    retry = sub.add_parser("retry", help="reopen failed messages of a tenant and reprocess")
    retry.add_argument("tenant_id")
    retry.add_argument("--reason", default=None, help="only messages that failed with this error")
    args = parser.parse_args()

    if args.command == "process":
        asyncio.run(run_batch(args.tenant_id))
    elif args.command == "retry":
        asyncio.run(run_batch(args.tenant_id, retry=True, reason=args.reason))
    else:
        serve()
