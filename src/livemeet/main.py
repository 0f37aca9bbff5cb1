"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and meeting service wiring,
the domain error handler, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.livemeet.config import Settings, get_settings
from src.livemeet.core.database import close_db, get_session, init_db
from src.livemeet.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.livemeet.api.errors import meeting_error_handler
from src.livemeet.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.livemeet.api.v1.router import router as v1_router
from src.livemeet.meetings.errors import MeetingError
from src.livemeet.meetings.lifecycle import MeetingLifecycleManager
from src.livemeet.meetings.recording.capture_client import CaptureClient
from src.livemeet.meetings.recording.coordinator import RecordingCoordinator
from src.livemeet.meetings.recording.vod_client import VodClient
from src.livemeet.meetings.repository import MeetingRepository


def build_meeting_manager(settings: Settings) -> MeetingLifecycleManager:
    """Wire repository, external clients, and coordinators from settings.

    The capture client is always built because recording start/stop
    surface its failures to the caller. Room management and VOD
    registration are skipped when their services are not configured.
    """
    repository = MeetingRepository(session_factory=get_session)
    capture_client = CaptureClient(
        base_url=settings.CAPTURE_SERVICE_URL,
        api_key=settings.CAPTURE_SERVICE_API_KEY,
        api_secret=settings.CAPTURE_SERVICE_API_SECRET,
    )
    vod_client = None
    if settings.VOD_SERVICE_URL:
        vod_client = VodClient(
            base_url=settings.VOD_SERVICE_URL,
            api_key=settings.VOD_SERVICE_API_KEY,
        )

    recording = RecordingCoordinator(
        repository=repository,
        capture_client=capture_client,
        vod_client=vod_client,
        output_prefix=settings.RECORDINGS_OUTPUT_PREFIX,
        public_base_url=settings.RECORDINGS_PUBLIC_BASE_URL,
    )
    return MeetingLifecycleManager(
        repository=repository,
        recording=recording,
        signaling=capture_client if settings.CAPTURE_SERVICE_URL else None,
        invite_code_length=settings.INVITE_CODE_LENGTH,
        default_max_participants=settings.DEFAULT_MAX_PARTICIPANTS,
        room_max_participants=settings.SIGNALING_ROOM_MAX_PARTICIPANTS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and Sentry on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Meeting Service ──────────────────────────────────────────────────
    # Failure-tolerant: endpoints answer 503 while meeting_manager is None.
    try:
        app.state.meeting_manager = build_meeting_manager(settings)
        log.info(
            "meetings.service_initialized",
            capture_configured=bool(settings.CAPTURE_SERVICE_URL),
            vod_configured=bool(settings.VOD_SERVICE_URL),
        )
    except Exception:
        log.warning("meetings.service_init_failed", exc_info=True)
        app.state.meeting_manager = None

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="LiveMeet API",
        version="0.1.0",
        description="Meeting lifecycle, admission, attendance, and recording control",
        lifespan=lifespan,
    )

    app.add_exception_handler(MeetingError, meeting_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
