from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from reelstore.api.v1 import get_api_router
from reelstore.core.cache import get_cache
from reelstore.core.config import get_settings
from reelstore.core.db import create_engine, create_schema, create_session_factory
from reelstore.core.logging import configure_logging, get_logger, level_from_name
from reelstore.core.storage import get_storage
from reelstore.db.store import MetadataStore
from reelstore.ingest.transcode import get_transcoder
from reelstore.services.rewards import get_reward_ledger

logger = get_logger(component="app")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(level=level_from_name(settings.log_level))
    storage = get_storage(settings)
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cache = get_cache(settings)
        app.state.settings = settings
        app.state.storage = storage
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.metadata_store = MetadataStore(session_factory)
        app.state.cache = cache
        app.state.transcoder = get_transcoder(settings)
        app.state.rewards = get_reward_ledger(settings)

        await asyncio.to_thread(storage.ensure_container)
        if settings.create_schema_on_startup:
            await create_schema(engine)
        logger.info(
            "app_started",
            environment=settings.environment,
            storage_backend=settings.storage_backend,
            cache_backend=settings.cache_backend,
        )
        try:
            yield
        finally:
            await cache.close()
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )
    app.include_router(get_api_router())
    return app


app = create_app()


__all__ = ["app", "create_app"]
