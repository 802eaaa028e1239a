"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from webp_delivery.api.media import media_router
from webp_delivery.api.routes import router
from webp_delivery.bulk import BulkConversionJob, get_bulk_job
from webp_delivery.cache import CacheStore, get_cache_store
from webp_delivery.config import (
    ADMIN_TOKEN,
    CORS_ORIGINS,
    SESSION_MAX_AGE,
    SESSION_SECRET,
    SITE_DIR,
    logger as config_logger,
)
from webp_delivery.db import dispose_engine, init_db
from webp_delivery.rewrite import HtmlRewriter, WebpRewriteMiddleware

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not ADMIN_TOKEN:
        config_logger.warning("ADMIN_TOKEN not set; bulk endpoints rely on the host environment for authorization")
    config_logger.info("WebP delivery service started")
    yield
    dispose_engine()
    config_logger.info("WebP delivery service shutting down")


def create_app(
    store: Optional[CacheStore] = None,
    bulk_job: Optional[BulkConversionJob] = None,
    site_dir: Optional[Path] = SITE_DIR,
) -> FastAPI:
    """Build the app. Passing a store (and job) replaces the process-wide singletons, e.g. in tests."""
    app = FastAPI(
        title="WebP Delivery",
        description="On-demand WebP conversion, cached delivery and bulk pre-conversion of an image library.",
        version="1.0.0",
        lifespan=lifespan,
    )
    rewriter_factory = None
    if store is not None:
        job = bulk_job or BulkConversionJob(store)
        app.dependency_overrides[get_cache_store] = lambda: store
        app.dependency_overrides[get_bulk_job] = lambda: job

        def rewriter_factory() -> HtmlRewriter:
            return HtmlRewriter(store)

    # Middleware added last runs first: sessions must wrap the rewriter.
    app.add_middleware(WebpRewriteMiddleware, rewriter_factory=rewriter_factory)
    app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, max_age=SESSION_MAX_AGE, same_site="lax")
    if CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(router)
    app.include_router(media_router)
    if site_dir is not None and Path(site_dir).is_dir():
        app.mount("/", StaticFiles(directory=str(site_dir), html=True), name="site")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from webp_delivery.config import DEBUG, HOST, PORT
    uvicorn.run("webp_delivery.main:app", host=HOST, port=PORT, reload=DEBUG)
