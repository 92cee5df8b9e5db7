"""FastAPI integration: the app lifespan owns a Client; handlers publish through it.

GET /api/v1/health, GET /api/v1/stats, POST /api/v1/publish.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from durable_pubsub.client import Client
from durable_pubsub.config import ClientOptions
from durable_pubsub.dispatcher import Callback
from durable_pubsub.errors import ConfigurationError, ErrorHandler
from durable_pubsub.observability import get_logger
from durable_pubsub.protocol import (
    ERROR_BAD_REQUEST,
    ERROR_NOT_STARTED,
    HealthResponse,
    PublishAccepted,
    error_body,
    stats_response,
)
from durable_pubsub.store import Store

logger = get_logger("server")

router = APIRouter(prefix="/api/v1")


class ClientNotStarted(Exception):
    pass


def get_client(request: Request) -> Client:
    """Dependency giving handlers the app's client, e.g. ``client.publish(...)``."""
    client: Optional[Client] = getattr(request.app.state, "pubsub", None)
    if client is None or not client.started:
        raise ClientNotStarted()
    return client


async def _not_started_handler(request: Request, exc: ClientNotStarted) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content=error_body(ERROR_NOT_STARTED, "pub/sub client is not running"),
    )


# ---- Health ----

@router.get("/health")
async def health(request: Request, client: Client = Depends(get_client)) -> JSONResponse:
    """GET /health → { uptime_sec, identity, policy, producers, pending_dispatch }."""
    info = client.describe()
    body = HealthResponse(
        uptime_sec=time.time() - request.app.state.started_at,
        identity=info["identity"],
        policy=info["policy"],
        producers=info["producers"],
        pending_dispatch=info["pending_dispatch"],
    ).to_dict()
    return JSONResponse(content=body, status_code=200)


# ---- Stats ----

@router.get("/stats")
async def stats(client: Client = Depends(get_client)) -> JSONResponse:
    """GET /stats → { counters: {...}, gauges: {...} }."""
    return JSONResponse(content=stats_response(client.metrics.snapshot()), status_code=200)


# ---- Publish ----

class PublishBody(BaseModel):
    action: str
    payload: str


@router.post("/publish")
async def publish(body: PublishBody, client: Client = Depends(get_client)) -> JSONResponse:
    """POST /publish { action, payload } → 202; fan-out runs after the response."""
    try:
        client.publish(body.action, body.payload)
    except ConfigurationError as e:
        return JSONResponse(content=error_body(ERROR_BAD_REQUEST, str(e)), status_code=400)
    return JSONResponse(content=PublishAccepted(action=body.action).to_dict(), status_code=202)


def create_app(
    options: Optional[ClientOptions] = None,
    *,
    callback: Optional[Callback] = None,
    store: Optional[Store] = None,
    on_error: Optional[ErrorHandler] = None,
    title: str = "durable_pubsub",
) -> FastAPI:
    """
    Build an app whose lifespan starts a Client (subscribing from
    options.subscribe_to when a callback is given) and stops it on shutdown.
    Options default to the environment (see ClientOptions.from_env).
    """
    if options is None:
        options = ClientOptions.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = Client(options, store=store, callback=callback, on_error=on_error)
        app.state.started_at = time.time()
        await client.start()
        app.state.pubsub = client
        logger.info("app_started", extra={"identity": client.identity})
        try:
            yield
        finally:
            await client.stop()
            app.state.pubsub = None

    app = FastAPI(title=title, lifespan=lifespan)
    app.add_exception_handler(ClientNotStarted, _not_started_handler)
    app.include_router(router)
    return app
