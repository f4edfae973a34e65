from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncIterator, Optional
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import Settings
from ..domain.errors import PersistenceError
from ..domain.models import HealthResponse
from ..infrastructure.storage import Storage, select_storage
from ..observability.metrics import metrics_middleware_factory
from ..security.auth import ensure_admin
from ..services.gateway import ProviderGateway, build_gateway
from ..services.model_router import ModelRouter
from .routers.admin import router as admin_router
from .routers.assistants import router as assistants_router
from .routers.auth import router as auth_router
from .routers.chat import router as chat_router
from .routers.images import router as images_router
from .routers.studio import router as studio_router
from .routers.transcripts import router as transcripts_router
from .routers.usage import router as usage_router
from .routers.users import router as users_router

load_dotenv()  # Load environment variables from .env if present (GEMINI_API_KEY, JWT_SECRET, etc.)

logger = logging.getLogger("vision.api")

API_NAME = "Vision Studio API"
API_VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    gateway: Optional[ProviderGateway] = None,
) -> FastAPI:
    """Build the application; injected collaborators skip startup selection."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = app.state.storage is None
        if owned:
            app.state.storage = await select_storage(settings)
        version = await app.state.storage.migrate()
        logger.info("storage_ready", extra={"backend": app.state.storage.name, "schema_version": version})
        await ensure_admin(app.state.storage, settings)
        try:
            yield
        finally:
            if owned:
                await app.state.storage.close()

    app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage
    app.state.gateway = gateway or build_gateway(settings)
    app.state.model_router = ModelRouter()

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(studio_router)
    app.include_router(images_router)
    app.include_router(chat_router)
    app.include_router(assistants_router)
    app.include_router(transcripts_router)
    app.include_router(usage_router)
    app.include_router(admin_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"name": API_NAME, "version": API_VERSION}

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        store: Optional[Storage] = request.app.state.storage
        components = {
            "api": "ok",
            "ai": "ok" if request.app.state.gateway.available else "unavailable",
            "storage": store.name if store is not None else "not-ready",
        }
        status_value = "ok"
        if store is not None:
            try:
                components["schema_version"] = str(await store.schema_version())
            except PersistenceError:
                components["schema_version"] = "unknown"
                status_value = "degraded"
        return HealthResponse(
            status=status_value,
            timestamp=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            components=components,
        )

    @app.get("/metrics")
    def metrics() -> Response:
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
