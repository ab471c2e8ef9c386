from dotenv import load_dotenv
load_dotenv()  # Load environment variables before other imports

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from sitechat.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from sitechat.core.config import Settings, load_settings
from sitechat.core.database import create_db_engine, create_session_factory, init_db
from sitechat.core.errors import register_exception_handlers
from sitechat.core.llm import get_chat_provider
from sitechat.core.logging_config import RequestContextMiddleware, configure_logging, get_logger
from sitechat.services.assets import AssetStore
from sitechat.services.auth import AuthService
from sitechat.services.orchestrator import BotOrchestrator
from sitechat.services.pipeline import MessagePipeline
from sitechat.services.registry import SessionRegistry
from sitechat.services.room_queue import RoomLocks, RoomTaskQueue

logger = get_logger(__name__)

# Marks "build the provider from settings"; None means no provider at all
_FROM_SETTINGS: Any = object()


def create_app(settings: Optional[Settings] = None, provider: Any = _FROM_SETTINGS) -> FastAPI:
    """
    Build the chat service application.

    Args:
        settings: Configuration (loaded from YAML/env when omitted)
        provider: Completion provider override; None disables the bot

    Returns:
        The FastAPI app with its real-time services in app.state
    """
    settings = settings or load_settings()
    configure_logging(json_format=settings.log_format.lower() == "json", log_level=settings.log_level)

    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    if provider is _FROM_SETTINGS:
        provider = get_chat_provider(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting chat service")
        init_db(engine)
        app.state.assets.ensure_dir()
        logger.info("Database tables created")

        yield

        # Let replies already in flight be posted before closing
        try:
            await asyncio.wait_for(app.state.task_queue.drain(), timeout=settings.provider_timeout + 5)
        except asyncio.TimeoutError:
            logger.warning("Pending bot replies abandoned at shutdown")
            await app.state.task_queue.shutdown()
        engine.dispose()
        logger.info("Chat service stopped")

    app = FastAPI(title="Site Chat", version="0.1.0", lifespan=lifespan)

    # Add request context middleware for logging (must be added before CORS)
    app.add_middleware(RequestContextMiddleware)

    origins = [settings.frontend_url] if settings.frontend_url else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    registry = SessionRegistry(session_factory)
    locks = RoomLocks()
    task_queue = RoomTaskQueue()
    assets = AssetStore(settings.upload_dir, settings.max_upload_bytes)
    breaker = CircuitBreaker(
        "provider",
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        ),
    )
    orchestrator = BotOrchestrator(
        session_factory,
        registry,
        locks,
        assets,
        provider,
        breaker,
        timeout=settings.provider_timeout,
        inline_images=settings.inline_images,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.auth_service = AuthService(settings)
    app.state.assets = assets
    app.state.registry = registry
    app.state.task_queue = task_queue
    app.state.orchestrator = orchestrator
    app.state.pipeline = MessagePipeline(session_factory, registry, orchestrator, locks, task_queue)

    from sitechat.api.endpoints import auth, sessions, upload, websocket

    app.include_router(auth.router, prefix="/api", tags=["auth"])
    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(upload.router, prefix="/api", tags=["upload"])
    app.include_router(websocket.router, tags=["websocket"])

    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sitechat.main:app", host="0.0.0.0", port=3001, reload=True)
