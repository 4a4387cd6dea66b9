from __future__ import annotations
from dotenv import load_dotenv
load_dotenv()  # Load .env file before importing gateway modules

import time
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from gateway import config
from gateway.routes import router, get_service
from gateway.service import create_central
from gateway.sensors.manager import start_sensor_workers, stop_sensor_workers

# Configure logging to show all INFO level logs from our modules
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(name)s: %(message)s'
)
logging.getLogger("gateway").setLevel(logging.INFO)
# bleak is chatty at INFO on BlueZ
logging.getLogger("bleak").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log request and response information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"

        # OPTIONS requests are handled by CORS middleware, just log and pass through
        if request.method == "OPTIONS":
            logger.debug(f"OPTIONS request: {request.url.path} from {client_ip}")
            return await call_next(request)

        query_params = dict(request.query_params) if request.query_params else None
        logger.info(
            f"Request: {request.method} {request.url.path} | "
            f"IP: {client_ip} | "
            f"Query: {query_params}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} | "
            f"Status: {response.status_code} | "
            f"Time: {process_time:.3f}s"
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    service = get_service()
    # a storage failure here is fatal: let it propagate and stop the server
    service.store.initialize()
    if config.SCHEDULER_ENABLED:
        start_sensor_workers(
            create_central(service.mode),
            service.registry,
            service.store,
            event_timeout_s=config.EVENT_TIMEOUT_S,
            inspect_interval_s=config.INSPECT_INTERVAL_S,
            poll_interval_s=config.POLL_INTERVAL_S,
            storage_backoff_s=config.STORAGE_BACKOFF_S,
        )
    else:
        logger.info("Sensor scheduler disabled, serving stored data only")
    try:
        yield
    finally:
        if config.SCHEDULER_ENABLED:
            stop_sensor_workers()


def create_app() -> FastAPI:
    app = FastAPI(title="BLE Sensor Gateway", version="0.1.0", lifespan=lifespan)

    # Request logging middleware (add first so it wraps everything)
    app.add_middleware(LoggingMiddleware)

    # CORS for local web dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
