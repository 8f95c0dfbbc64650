import json
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from discovery.config import DiscoveryConfig, load_config
from discovery.constants import MAX_PAGE_SIZE
from discovery.engine import DiscoveryEngine
from discovery.errors import ConfigurationError, InvalidState, RateLimited, StoreUnavailable
from discovery.logging_config import configure_logging
from discovery.models import FeedMode, FeedPage
from discovery.store import InMemoryContentStore, InMemorySocialGraph, load_dump

logger = logging.getLogger(__name__)


class ContentRequest(BaseModel):
    text: str = Field(min_length=1)
    geo_tag: Optional[str] = None
    is_political: bool = False


class EngagementRequest(BaseModel):
    likes: int = Field(default=0, ge=0)
    replies: int = Field(default=0, ge=0)
    shares: int = Field(default=0, ge=0)


def build_default_engine(config: Optional[DiscoveryConfig] = None) -> DiscoveryEngine:
    """In-memory engine, seeded from ``$DISCOVERY_DUMP`` when it points at a dump."""
    config = config or load_config()
    dump = os.environ.get("DISCOVERY_DUMP")
    if dump and Path(dump).exists():
        store, graph = load_dump(Path(dump))
    else:
        store = InMemoryContentStore()
        graph = InMemorySocialGraph()
    return DiscoveryEngine(config, store, graph)


def page_to_dict(page: FeedPage) -> dict[str, Any]:
    return {
        "items": [i.to_dict(include_embedding=False) for i in page.items],
        "mode": page.mode.value,
        "cursor": page.cursor,
        "topic_id": page.topic_id,
        "topic_ended": page.topic_ended,
        "ended_topic_id": page.ended_topic_id,
        "algorithm": page.algorithm,
        "weights": page.weights,
        "stats": page.stats,
        "has_more": page.has_more,
        "outage": page.outage,
    }


def create_app(engine: Optional[DiscoveryEngine] = None, start_cadence: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.engine is None:
            configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
            app.state.engine = build_default_engine()
        if start_cadence:
            app.state.engine.start()
        yield
        await app.state.engine.stop()

    app = FastAPI(title="Semantic Discovery API", lifespan=lifespan)
    app.state.engine = engine
    app.state.topic_memo = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_engine() -> DiscoveryEngine:
        return app.state.engine

    def cache_header(response: Response) -> None:
        seconds = get_engine().config.response_cache_seconds
        response.headers["Cache-Control"] = f"private, max-age={seconds}"

    @app.get("/health")
    def health(response: Response):
        cache_header(response)
        return {"status": "ok"}

    @app.get("/trending-topics")
    async def trending_topics(response: Response, region: Optional[str] = None):
        cache_header(response)
        eng = get_engine()
        now = time.time()
        memo = app.state.topic_memo
        hit = memo.get(region)
        if hit is not None and hit[0] > now:
            return hit[1]
        topics = await eng.trending_topics(region=region)
        payload = {"topics": [t.to_dict() for t in topics]}
        for key in [k for k, (expires, _) in memo.items() if expires <= now]:
            del memo[key]
        memo[region] = (now + eng.config.response_cache_seconds, payload)
        return payload

    @app.post("/topics/refresh")
    async def refresh_topics(x_user_id: str = Header(...)):
        try:
            snapshot = await get_engine().refresh_topics(x_user_id)
        except RateLimited as e:
            raise HTTPException(
                status_code=429,
                detail=str(e),
                headers={"Retry-After": str(max(1, int(e.retry_after + 0.999)))},
            )
        app.state.topic_memo.clear()
        if snapshot is None:
            return {"status": "skipped", "reason": "run in progress"}
        return {"status": "published", "topics": len(snapshot.topics)}

    @app.post("/topics/exit")
    def exit_topic(x_user_id: str = Header(...)):
        get_engine().exit_topic(x_user_id)
        return {}

    @app.post("/topics/{topic_id}/enter")
    async def enter_topic(topic_id: str, x_user_id: str = Header(...)):
        try:
            cursor = await get_engine().enter_topic(x_user_id, topic_id)
        except InvalidState as e:
            return JSONResponse(
                status_code=409,
                content={
                    "error": "invalid_state",
                    "detail": str(e),
                    "mode": FeedMode.DEFAULT.value,
                    "topic_id": e.topic_id,
                },
            )
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"pagination_cursor": cursor, "mode": FeedMode.TOPIC.value, "topic_id": topic_id}

    @app.get("/feed/page")
    async def feed_page(
        response: Response,
        x_user_id: str = Header(...),
        page_size: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
        weights: Optional[str] = None,
        seed: Optional[int] = None,
    ):
        cache_header(response)
        eng = get_engine()
        overrides = None
        if weights:
            try:
                overrides = json.loads(weights)
            except json.JSONDecodeError:
                raise HTTPException(status_code=422, detail="weights must be a JSON object")
            if not isinstance(overrides, dict):
                raise HTTPException(status_code=422, detail="weights must be a JSON object")
        try:
            resolved = eng.resolve_weights(overrides)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            page = await eng.get_page(x_user_id, page_size=page_size, weights=resolved, seed=seed)
        except StoreUnavailable as e:
            logger.error("Feed outage for %s: %s", x_user_id, e)
            page = FeedPage(items=[], mode=FeedMode.DEFAULT, outage=True)
        return page_to_dict(page)

    @app.post("/content", status_code=201)
    async def submit_content(req: ContentRequest, x_user_id: str = Header(...)):
        try:
            item = await get_engine().submit_content(
                x_user_id, req.text, geo_tag=req.geo_tag, is_political=req.is_political
            )
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return item.to_dict(include_embedding=False)

    @app.post("/content/{content_id}/engagement")
    async def record_engagement(content_id: str, req: EngagementRequest):
        try:
            item = await get_engine().record_engagement(
                content_id, req.likes, req.replies, req.shares
            )
        except KeyError:
            raise HTTPException(status_code=404, detail="Content not found")
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return item.to_dict(include_embedding=False)

    @app.delete("/content/{content_id}", status_code=204)
    async def delete_content(content_id: str):
        try:
            await get_engine().delete_content(content_id)
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return Response(status_code=204)

    return app


app = create_app()
