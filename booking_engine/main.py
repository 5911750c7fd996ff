import os
import sys
import argparse
import time

import uvicorn
from fastapi import Request
from fastapi_sqlalchemy import DBSessionMiddleware, db
from prometheus_client import Counter, Histogram
from alembic import command
from alembic.config import Config
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.cache_checker import check_and_sync_cache
from .app.materializer import materialize_pending_windows
from .app.models import Base
from .app.dependencies import DATABASE_URL, create_db_engine, get_redis_client, get_slot_cache

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')

app = create_app()

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=request.url.path).observe(time.time() - start_time)

    return response


# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")


def start_server():
    uvicorn.run(app, host="0.0.0.0", port=8000)


def init_db_session():
    # fastapi_sqlalchemy only binds its session factory when the middleware is built,
    # which the server does lazily; CLI modes need it up front.
    DBSessionMiddleware(app, custom_engine=create_db_engine(DATABASE_URL))


def create_tables():
    print(f"Using database URL: {DATABASE_URL}")
    engine = create_db_engine(DATABASE_URL)
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def run_migrations(action, revision=None, message=None, database_url=None):
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', database_url or DATABASE_URL)
    alembic_cfg.set_main_option('script_location', MIGRATIONS_DIR)

    if action == "upgrade":
        command.upgrade(alembic_cfg, "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print("Invalid action specified for migrations.")


def clear_redis_cache():
    redis_client = get_redis_client()
    redis_client.flushall()
    print("Redis cache cleared successfully.")


def materialize_pending(limit):
    """Retry accepted windows whose slots were never (or only partly) materialized."""
    init_db_session()
    with db():
        results = materialize_pending_windows(db.session, cache=get_slot_cache(), limit=limit)
    failed = [result.window_id for result in results if not result.success]
    print(f"Materialized {len(results) - len(failed)} window(s), {len(failed)} failed: {failed}")
    return 1 if failed else 0


def main():
    parser = argparse.ArgumentParser(description="Slot Scheduling and Booking Engine")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'cache-sync', 'create-tables', 'migrate', 'clear-cache', 'materialize-pending'],
        required=True,
        help="Mode to run the application in. Choices are 'server' to start the FastAPI server, 'cache-sync' to verify cached slot listings against the database, 'create-tables' to create the database tables, 'migrate' to manage database migrations, 'clear-cache' to clear all Redis caches, or 'materialize-pending' to retry accepted windows whose slots are missing."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Action to perform with Alembic migrations. Required if mode is 'migrate'."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Specify the revision for downgrade or other Alembic commands where needed."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Message to use with the 'revision' action in Alembic."
    )

    parser.add_argument(
        '--limit',
        type=int,
        default=100,
        help="Maximum number of windows to retry in 'materialize-pending' mode."
    )

    args = parser.parse_args()

    if args.mode == 'server':
        start_server()
    elif args.mode == 'cache-sync':
        init_db_session()
        check_and_sync_cache()
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'clear-cache':
        clear_redis_cache()
    elif args.mode == 'materialize-pending':
        sys.exit(materialize_pending(args.limit))


if __name__ == "__main__":
    main()
