# billkit/main.py
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from .api.v1 import billing as billing_routes
from .core.config import configure_logging, settings
from .core.database import create_engine, create_tables
from .engine import BillingEngine, create_billing_from_settings


def create_app(billing: Optional[BillingEngine] = None) -> FastAPI:
    """
    Standalone app serving the billing router.

    Pass an engine to mount it as is; otherwise one is built from settings
    and its tables are created on startup.
    """
    configure_logging()

    # Initialize Sentry for error tracking
    if settings.ENVIRONMENT == "production" and settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if billing is None:
        db_engine = create_engine()
        billing = create_billing_from_settings(db_engine=db_engine)

        # Create tables on startup
        @app.on_event("startup")
        async def startup():
            await create_tables(db_engine)

        @app.on_event("shutdown")
        async def shutdown():
            await db_engine.dispose()

    app.state.billing = billing
    app.include_router(billing_routes.router, prefix=settings.API_PREFIX)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": settings.VERSION}

    return app
