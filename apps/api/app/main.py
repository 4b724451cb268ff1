import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .db import DatabaseManager
from .metrics import get_metrics_collector
from .middleware.error import register_error_handlers
from .middleware.request import LoggingMiddleware, MetricsMiddleware, RequestIDMiddleware
from .middleware.tracing import TraceContextMiddleware
from .routes import examples, health, users
from .settings import Settings, get_settings
from .spans import Spans
from .telemetry import TelemetryService

logger = logging.getLogger(__name__)

basic_auth = HTTPBasic(auto_error=False)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )


def _check_metrics_auth(settings: Settings, credentials: Optional[HTTPBasicCredentials]) -> None:
    if not settings.metrics_auth:
        return
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    try:
        expected_user, expected_pass = settings.metrics_auth.split(":", 1)
    except ValueError:  # pragma: no cover - misconfiguration guard
        raise HTTPException(status_code=500, detail="Metrics authentication misconfigured")

    user_ok = secrets.compare_digest(credentials.username, expected_user)
    pass_ok = secrets.compare_digest(credentials.password, expected_pass)
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


def create_app(
    settings: Optional[Settings] = None,
    telemetry: Optional[TelemetryService] = None,
) -> FastAPI:
    """Build the API with its telemetry, database and middleware stack."""
    settings = settings or get_settings()
    configure_logging(settings)

    telemetry = telemetry or TelemetryService(settings)
    db = DatabaseManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        telemetry.start()
        db.create_tables()
        try:
            yield
        finally:
            telemetry.shutdown()
            db.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.telemetry = telemetry
    app.state.db = db
    app.state.spans = Spans(telemetry, db_system=db.dialect)

    register_error_handlers(app)

    # Added innermost first: logging sees the active trace, request ids wrap both
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        TraceContextMiddleware,
        telemetry=telemetry,
        excluded_prefixes=settings.trace_excluded_prefixes,
        exclude_static_files=settings.trace_exclude_static_files,
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/metrics", include_in_schema=False)
    def get_metrics(request: Request, credentials: HTTPBasicCredentials = Depends(basic_auth)):
        """Prometheus metrics endpoint with optional basic auth."""
        _check_metrics_auth(request.app.state.settings, credentials)
        return get_metrics_collector().get_metrics_response()

    app.include_router(health.router)
    app.include_router(users.router)
    app.include_router(examples.router)

    return app


app = create_app()
