"""FastAPI application setup and service lifecycle for the weather alert engine."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request

from app import config
from app.api import error_response, router as api_router
from app.errors import WeatherServiceError
from app.services import Services, build_services
from utils.logging_utils import get_tagged_logger, setup_logging

logger = get_tagged_logger(__name__, tag="app/main")


def create_app(services: Services | None = None, *, start_scheduler: bool = True) -> FastAPI:
    """Build the app; pass `services` to inject prebuilt instances (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = config.settings
        setup_logging(level=settings.log_level, job_name=settings.job_name)
        built = services or build_services(settings)
        app.state.services = built
        if start_scheduler:
            built.start()
        try:
            yield
        finally:
            built.shutdown()

    app = FastAPI(title="Weather Alert Engine", lifespan=lifespan)

    @app.exception_handler(WeatherServiceError)
    async def handle_weather_error(request: Request, exc: WeatherServiceError):
        logger.warning(
            f"{request.url.path} failed: {type(exc).__name__}: {exc}",
            extra={"path": request.url.path, "error_type": type(exc).__name__, "error": str(exc)},
        )
        return error_response(exc)

    @app.get("/health")
    def health(request: Request):
        """Liveness plus a few counters from the shared pipeline."""
        built: Services = request.app.state.services
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": built.scheduler.running,
            "evaluation_running": built.evaluator.is_running,
            "cache_size": built.cache.size(),
        }

    app.include_router(api_router, prefix="/v1")
    return app


app = create_app()
