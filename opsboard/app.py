import asyncio
import json
import logging
import os
import time
import uuid

from fastapi import FastAPI, Request
from mangum import Mangum

from opsboard.routers import billing_router, identity_router

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("opsboard.backend")


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"))


def create_app() -> FastAPI:
    app = FastAPI(
        title="Opsboard Billing",
        version=os.environ.get("VERSION", "dev"),
    )

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        request_id = (
            request.headers.get("x-correlation-id")
            or request.headers.get("x-request-id")
            or str(uuid.uuid4())
        )
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        logger.info(
            _json_log(
                {
                    "event": "request",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "elapsed_ms": round(elapsed_ms, 2),
                }
            )
        )
        return response

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/version")
    async def version():
        return {"version": os.environ.get("VERSION", "dev")}

    app.include_router(identity_router)
    app.include_router(billing_router)

    return app


app = create_app()

_lambda_adapter = None


def _get_lambda_adapter():
    global _lambda_adapter
    if _lambda_adapter is not None:
        return _lambda_adapter

    # Mangum needs an event loop to exist when the adapter is built.
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())

    _lambda_adapter = Mangum(app, lifespan="off")
    return _lambda_adapter


# Lambda entrypoint behind API Gateway HTTP API.
def handler(event, context):
    return _get_lambda_adapter()(event, context)
