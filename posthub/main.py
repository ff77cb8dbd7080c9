import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from posthub.config import Settings, settings
from posthub.container import Container, build_container
from posthub import database
from posthub.errors import CacheUnavailable, PosthubError
from posthub.middleware import TimingMiddleware
from posthub.routers import metrics, posts, ws

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PosthubError)
    async def posthub_error_handler(request: Request, exc: PosthubError):
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())


def create_app(
    config: Settings = settings,
    engine: AsyncEngine | None = None,
    container: Container | None = None,
) -> FastAPI:
    """
    Build the application.  Tests pass a ready *container*; otherwise one is
    built on *engine*, defaulting to the configured database.
    """
    logging.basicConfig(level=config.LOG_LEVEL)

    if container is None:
        if engine is None:
            engine = database.engine
        container = build_container(config, database.make_session_factory(engine))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if engine is not None and config.APP_ENV == "development":
            await database.create_schema(engine)
        await container.cache.connect()  # degrades to store-only if Redis is down
        await container.workers.start()
        yield
        # Shutdown
        await container.workers.stop()
        await container.gateway.close()
        await container.cache.disconnect()

    app = FastAPI(
        title="Posthub",
        description="Posts with cache-aside reads, queued notifications and live updates",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(posts.router)
    app.include_router(metrics.router)
    app.include_router(ws.router)

    @app.get("/health")
    async def health():
        try:
            await container.cache.ping()
            cache_status = "ok"
        except CacheUnavailable as exc:
            cache_status = f"degraded: {exc.message}"
        return {"status": "healthy", "cache": cache_status, "version": "1.0.0"}

    return app


app = create_app()
