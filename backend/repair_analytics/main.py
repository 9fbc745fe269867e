import logging

from fastapi import FastAPI

from .config import get_settings
from .logging_config import configure_logging
from .metrics import metrics
from .routers import analytics


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    if settings.use_db_repositories:
        from .db import init_db

        try:
            init_db()
        except Exception:
            # Do not block startup if the database is temporarily unavailable.
            logging.getLogger(__name__).exception("init_db_failed_startup_continue")

    app = FastAPI(
        title="Repair Shop Analytics Backend",
        description="Stage-time, work-session and funnel analytics for repair tickets.",
        version="0.1.0",
    )

    logging.getLogger(__name__).info(
        "app_config_summary",
        extra={
            "use_db_repositories": settings.use_db_repositories,
            "reporting_timezone": settings.reporting.timezone,
            "owner_token_configured": bool(settings.owner_dashboard_token),
        },
    )

    app.include_router(analytics.router, prefix="/v1", tags=["analytics"])

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics() -> dict:
        return metrics.as_dict()

    return app


app = create_app()
