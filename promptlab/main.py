import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import jobs as jobs_api
from .config import configure_logging, get_settings
from .errors import install_error_handlers
from .metrics import metrics_response, request_latency_seconds
from .services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Pass ``services`` to reuse clients owned by the caller."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        settings = get_settings()
        configure_logging(settings.log_level)
        app.state.services = build_services(settings)
        logger.info("api started (testing=%s)", settings.testing)
        try:
            yield
        finally:
            await app.state.services.close()

    app = FastAPI(title="PromptLab Generation API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.include_router(jobs_api.router)
    install_error_handlers(app)

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
    async def readyz(request: Request):
        try:
            await request.app.state.services.redis.ping()
        except Exception as exc:
            logger.warning("readiness check failed: %s", exc)
            return JSONResponse(status_code=503, content={"ready": False})
        return {"ready": True}

    @app.get("/metrics")
    async def metrics():
        return metrics_response()

    return app


app = create_app()
