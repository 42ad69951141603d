from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .backends import DurableBackend
from .cache import TieredCache
from .classifier import RemoteClassifier
from .config import Settings, load_env
from .db import make_engine
from .housekeeping import run_cleanup, start_sweeper
from .links import extract_links, unshorten_url
from .logutil import configure_logging
from .metrics import PipelineMetrics
from .models import (
    AnalyzeRequest,
    AnalyzeResponse,
    CleanupResponse,
    ExtractLinksResponse,
    LinkRequest,
    UnshortenResponse,
)
from .pipeline import VerdictPipeline
from .sessions import SessionStore
from .whitelist import WhitelistIndex


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    link_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the service. ``transport`` reaches the ML service, ``link_transport`` the open web."""
    if settings is None:
        load_env()
        settings = Settings.from_env()
    configure_logging(settings.log_level)

    metrics = PipelineMetrics()
    engine = make_engine(settings.database_url)
    cache = TieredCache.from_settings(settings, DurableBackend(engine), metrics=metrics)
    whitelist = WhitelistIndex(settings.manual_whitelist, cutoff_rank=settings.whitelist_cutoff_rank)
    classifier = RemoteClassifier.from_settings(settings, transport=transport, metrics=metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await cache.open()
        sessions = SessionStore(engine, engine_version=settings.engine_version) if cache.durable_available else None
        app.state.sessions = sessions
        app.state.pipeline = VerdictPipeline(
            whitelist,
            cache,
            classifier,
            sessions=sessions,
            metrics=metrics,
            concurrency=settings.resolve_concurrency,
        )

        # The index answers "not whitelisted" until the dataset finishes loading.
        loader = asyncio.create_task(whitelist.load_csv(settings.whitelist_path), name="whitelist-load")
        await cache.cleanup_non_cacheable()
        sweeper = start_sweeper(cache, settings.cache_sweep_interval_s)
        logger.info("DEVScan agent ready (cache backend: %s)", cache.backend_name)
        try:
            yield
        finally:
            tasks = [t for t in (loader, sweeper) if t is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            engine.dispose()

    app = FastAPI(title="DEVScan Agent", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = cache
    app.state.whitelist = whitelist
    app.state.classifier = classifier
    app.state.metrics = metrics
    app.state.link_transport = link_transport

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok", "message": "Server is running."}

    @app.get("/api/health")
    def api_health():
        return {"status": "ok", "message": "API is ready for extension requests."}

    @app.get("/health/ml")
    async def ml_health(request: Request):
        result = await request.app.state.classifier.health()
        return JSONResponse(
            status_code=200 if result.status == "healthy" else 503,
            content={
                "ml_service": result.model_dump(exclude_none=True),
                "server_status": "ok",
                "timestamp": _now_iso(),
            },
        )

    @app.post("/api/extension/analyze", response_model=AnalyzeResponse)
    async def analyze_links(req: AnalyzeRequest, request: Request):
        if not req.links:
            return JSONResponse(status_code=400, content={"error": "links array is required"})

        state = request.app.state
        sessions: SessionStore | None = state.sessions
        session_id = None
        already_processed: set[str] = set()
        if sessions is not None:
            session_id = await sessions.get_or_create_session(req.session_id, req.browser_info, req.domain)
            already_processed = await sessions.processed_links_for_page(session_id, req.page_url, req.page_refreshed)

        result = await state.pipeline.resolve_many(
            req.links, session_id, already_processed, page_url=req.page_url
        )
        return AnalyzeResponse(
            success=True,
            verdicts=result.verdicts,
            session_ID=session_id,
            processed=len(result.verdicts),
            newLinks=result.new_count,
            cachedLinks=result.cached_count,
        )

    @app.get("/api/extension/test-whitelist")
    def test_whitelist(request: Request, url: str = ""):
        if not url:
            raise HTTPException(status_code=400, detail="URL parameter required")
        result = request.app.state.whitelist.is_whitelisted(url)
        return {"success": True, "url": url, "whitelistResult": result.model_dump()}

    @app.get("/api/extension/whitelist-stats")
    def whitelist_stats(request: Request):
        index: WhitelistIndex = request.app.state.whitelist
        return {
            "success": True,
            "stats": {
                "loaded": index.loaded,
                "ranked_domains": index.ranked_count,
                "manual_domains": len(index.manual_domains),
                "cutoff_rank": index.cutoff_rank,
            },
        }

    @app.post("/api/maintenance/cleanup", response_model=CleanupResponse)
    async def maintenance_cleanup(request: Request):
        expired, non_cacheable = await run_cleanup(request.app.state.cache)
        return CleanupResponse(expired_removed=expired, non_cacheable_removed=non_cacheable)

    @app.get("/api/metrics")
    def get_metrics(request: Request):
        cache: TieredCache = request.app.state.cache
        return {"cache_backend": cache.backend_name, **request.app.state.metrics.snapshot()}

    @app.post("/api/unshortened-links", response_model=UnshortenResponse)
    async def unshortened_link(req: LinkRequest, request: Request):
        return await unshorten_url(req.url, transport=request.app.state.link_transport)

    @app.post("/api/extract-links", response_model=ExtractLinksResponse)
    async def extract_page_links(req: LinkRequest, request: Request):
        return await extract_links(req.url, transport=request.app.state.link_transport)

    return app


app = create_app()
