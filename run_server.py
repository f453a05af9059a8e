import os

import uvicorn

from app.config import settings
from app.services import build_services
from utils.logging_utils import get_tagged_logger, setup_logging

logger = get_tagged_logger(__name__, tag="server")


def maybe_check_provider() -> None:
    """
    Optionally verify the Tomorrow.io API key before serving. Controlled by:
    - WEATHER_SKIP_PROVIDER_CHECK=true to skip entirely (useful in dev/tests)
    - WEATHER_TOMORROW_API_KEY for the key under test.
    The check spends one call from the provider quota.
    """
    if settings.skip_provider_check:
        logger.info("Skipping provider preflight (WEATHER_SKIP_PROVIDER_CHECK=true)")
        return

    services = build_services(settings)
    try:
        ok = services.weather_client.validate_config()
    finally:
        services.shutdown()
    if not ok:
        logger.error("Provider preflight failed; set WEATHER_SKIP_PROVIDER_CHECK=true to bypass during dev/tests.")
        raise SystemExit(1)
    logger.info("Provider preflight passed")


if __name__ == "__main__":
    setup_logging(level=settings.log_level, job_name=settings.job_name)
    maybe_check_provider()

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=False,
    )
