# Copyright (c) 2025 Efstratios Goudelis
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

import asyncio
import concurrent.futures
import os
from contextlib import asynccontextmanager
from typing import Optional, Set

import socketio
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from common.arguments import arguments
from common.logger import logger
from db import AsyncSessionLocal
from obscalc import __version__
from obscalc.compute import ObservationCalculator
from obscalc.events import change_notifier, run_socketio_bridge, set_socketio_instance
from obscalc.remote import ItcHttpClient, TelluricCatalogHttpClient
from obscalc.retry import RetryPolicy
from obscalc.service import ObscalcService
from obscalc.telluric import TelluricResolver
from obscalc.worker import ObscalcWorkerPool
from server.scheduler import start_scheduler, stop_scheduler

# Long running tasks owned by the lifespan
background_tasks: Set[asyncio.Task] = set()

obscalc_service = ObscalcService(AsyncSessionLocal, RetryPolicy.for_obscalc(arguments))

itc_client: Optional[ItcHttpClient] = (
    ItcHttpClient(arguments.itc_url, timeout=arguments.remote_timeout) if arguments.itc_url else None
)

worker_pool = ObscalcWorkerPool(
    obscalc_service,
    ObservationCalculator(itc_client=itc_client),
    workers=arguments.workers,
    poll_interval=arguments.poll_interval,
    compute_timeout=arguments.compute_timeout,
)

telluric_resolver: Optional[TelluricResolver] = None
if arguments.telluric_catalog_url:
    telluric_resolver = TelluricResolver(
        AsyncSessionLocal,
        TelluricCatalogHttpClient(arguments.telluric_catalog_url, timeout=arguments.remote_timeout),
        RetryPolicy.for_telluric(arguments),
        batch_size=arguments.telluric_batch_size,
    )


def _track(task: asyncio.Task):
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)


@asynccontextmanager
async def lifespan(fastapiapp: FastAPI):
    """Custom lifespan for FastAPI."""
    logger.info("FastAPI lifespan startup...")
    set_socketio_instance(sio)
    _track(asyncio.create_task(run_socketio_bridge(change_notifier), name="socketio-bridge"))

    await worker_pool.start()
    if telluric_resolver is not None:
        await telluric_resolver.start()
    else:
        logger.info("No telluric catalog configured, telluric resolution is off")

    # Start the background task scheduler
    start_scheduler(AsyncSessionLocal, telluric_resolver)

    try:
        yield
    finally:
        logger.info("FastAPI lifespan cleanup...")
        stop_scheduler()
        if telluric_resolver is not None:
            await telluric_resolver.stop()
        await worker_pool.stop()
        for task in list(background_tasks):
            task.cancel()
        await asyncio.gather(*background_tasks, return_exceptions=True)


sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    logger=False,
    engineio_logger=False,
)
app = FastAPI(
    lifespan=lifespan,
    title="Observation Calculation API",
    description="Cached per-observation calculations with background recomputation",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/version")
async def get_version():
    """Return the current version information of the application."""
    return {"version": __version__}


@app.get("/api/health")
async def get_health():
    try:
        return {
            "workers_running": worker_pool.running,
            "telluric_resolution": telluric_resolver is not None,
            "subscribers": change_notifier.subscriber_count(),
        }
    except Exception as e:
        logger.error(f"Error reading health information: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


async def init_db():
    """Initialize database and run migrations."""
    logger.info("Initializing database...")

    db_dir = os.path.dirname(os.path.abspath(arguments.db))
    os.makedirs(db_dir, exist_ok=True)
    logger.info(f"Ensured directory exists: {db_dir}")

    logger.info("Running database migrations...")
    try:
        from db.migrations import run_migrations

        # Run migrations in a thread pool to avoid event loop conflicts
        loop = asyncio.get_running_loop()
        with concurrent.futures.ThreadPoolExecutor() as executor:
            await loop.run_in_executor(executor, run_migrations, arguments.db)

        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Error running database migrations: {e}")
        logger.exception(e)
        raise

    logger.info("Database initialized.")
