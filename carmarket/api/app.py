import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carmarket.api.routes import router
from carmarket.database.db import init_db
from carmarket.config.settings import get_settings

settings = get_settings()


def create_app() -> FastAPI:
    # Disable Swagger/ReDoc in production
    docs_kwargs = {}
    if settings.is_production:
        docs_kwargs = {"docs_url": None, "redoc_url": None}

    app = FastAPI(
        title="Carmarket API",
        description="Vehicle listings with registration-based enrichment",
        version="0.1.0",
        **docs_kwargs,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    def health_check():
        return {"status": "ok", "version": "0.1.0"}

    @app.on_event("startup")
    def on_startup():
        logging.basicConfig(level=settings.log_level.upper())
        settings.validate_production()
        if not settings.is_production:
            init_db()  # Production runs: alembic upgrade head

    return app


app = create_app()
