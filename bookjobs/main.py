import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .engine import JobEngine
from .metrics import metrics_response, request_latency_seconds


def create_app(engine: JobEngine) -> FastAPI:
    """Operational surface for a process hosting the engine: health, readiness, metrics."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(title="bookjobs engine", lifespan=lifespan)
    app.state.engine = engine

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = time.time()
        try:
            response = await call_next(request)
            return response
        finally:
            request_latency_seconds.observe(time.time() - start)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        status = engine.queue_status()
        return {
            "ready": engine.running,
            "queue_length": status.queue_length,
            "active_requests": status.active_requests,
        }

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app
