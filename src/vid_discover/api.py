"""Vid-Discover REST API: FastAPI wrapper around the suggestion pipeline."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .background_tasks import quota_reset_loop, suggestion_cleanup_loop
from .config import ApiSettings, CurationSettings
from .curator import SuggestionCurator
from .db import Database
from .discovery import DiscoveryOrchestrator
from .notifications import Notifier
from .quota import QuotaLedger
from .youtube import YouTubeClient

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_USER = os.getenv("VID_DISCOVER_USER", "default")

db: Database
notifier: Notifier
ledger: QuotaLedger
curator: SuggestionCurator


@asynccontextmanager
async def lifespan(app: FastAPI):
    global db, notifier, ledger, curator
    settings = CurationSettings()
    api_settings = ApiSettings.from_env()

    db = Database(expiry_days=settings.suggestion_expiry_days)
    notifier = Notifier()
    ledger = QuotaLedger(api_settings, notifier=notifier, store=db)
    client = YouTubeClient(ledger, api_settings, notifier=notifier)
    orchestrator = DiscoveryOrchestrator(db, client, settings)
    curator = SuggestionCurator(db, orchestrator, ledger=ledger, notifier=notifier, settings=settings)

    tasks = [
        asyncio.create_task(quota_reset_loop(ledger, notifier)),
        asyncio.create_task(suggestion_cleanup_loop(curator)),
    ]
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="Vid Discover", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Suggestions ---


class GenerateRequest(BaseModel):
    threshold: float | None = Field(default=None, ge=0)


@app.post("/api/suggestions/generate")
async def generate_suggestions(req: GenerateRequest, user_id: str = DEFAULT_USER):
    result = await curator.generate(user_id, req.threshold)
    return {"message": result.summary_message(), **result.model_dump()}


@app.get("/api/suggestions")
async def list_suggestions(
    user_id: str = DEFAULT_USER,
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
):
    suggestions = curator.list_pending(user_id, limit, offset)
    return {"suggestions": [s.model_dump() for s in suggestions]}


def _review_failed(user_id: str, suggestion_id: int) -> HTTPException:
    suggestion = db.get_suggestion(suggestion_id, user_id)
    if suggestion is None:
        return HTTPException(status_code=404, detail="Suggestion not found")
    return HTTPException(status_code=409, detail=f"Suggestion already {suggestion.status.value}")


@app.post("/api/suggestions/{suggestion_id}/approve")
async def approve_suggestion(suggestion_id: int, user_id: str = DEFAULT_USER):
    if not curator.approve(user_id, suggestion_id):
        raise _review_failed(user_id, suggestion_id)
    return {"status": "success"}


@app.post("/api/suggestions/{suggestion_id}/deny")
async def deny_suggestion(suggestion_id: int, user_id: str = DEFAULT_USER):
    if not curator.deny(user_id, suggestion_id):
        raise _review_failed(user_id, suggestion_id)
    return {"status": "success"}


@app.post("/api/suggestions/cleanup")
async def cleanup_suggestions():
    return {"removed": curator.cleanup_expired()}


@app.get("/api/suggestions/analytics")
async def suggestion_analytics(user_id: str = DEFAULT_USER):
    return curator.analytics(user_id).model_dump()


# --- Topics & Sources ---


class TopicRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)


@app.get("/api/topics")
async def get_topics(user_id: str = DEFAULT_USER):
    return {"topics": [t.model_dump() for t in db.get_user_topics(user_id)]}


@app.post("/api/topics")
async def add_topic(req: TopicRequest, user_id: str = DEFAULT_USER):
    return db.add_topic(user_id, req.name).model_dump()


@app.delete("/api/topics/{topic_id}")
async def remove_topic(topic_id: int, user_id: str = DEFAULT_USER):
    db.remove_topic(user_id, topic_id)
    return {"status": "success"}


class SourceRequest(BaseModel):
    source_id: str
    name: str = ""


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)


@app.get("/api/sources")
async def get_sources(user_id: str = DEFAULT_USER):
    return {"sources": [s.model_dump() for s in db.get_user_sources(user_id)]}


@app.post("/api/sources")
async def add_source(req: SourceRequest, user_id: str = DEFAULT_USER):
    return db.add_source(user_id, req.source_id, req.name).model_dump()


@app.put("/api/sources/{source_id}/rating")
async def rate_source(source_id: str, req: RatingRequest, user_id: str = DEFAULT_USER):
    withdrawn = db.rate_source(user_id, source_id, req.rating)
    return {"status": "success", "withdrawn_suggestions": withdrawn}


@app.delete("/api/sources/{source_id}")
async def remove_source(source_id: str, user_id: str = DEFAULT_USER):
    db.remove_source(user_id, source_id)
    return {"status": "success"}


# --- Quota ---


@app.get("/api/quota")
async def quota_status():
    status = ledger.status()
    return {**status.model_dump(), "remaining": status.remaining, "usage_percent": status.usage_percent}


@app.get("/api/quota/estimate")
async def quota_estimate(user_id: str = DEFAULT_USER):
    sources = [s for s in db.get_sources_due_for_check(user_id) if s.rating != 1]
    topics = db.get_user_topics(user_id)
    estimate = ledger.estimate_suggestion_cost(len(sources), len(topics))
    return {
        **estimate.model_dump(),
        "total_cost": estimate.total_cost,
        "exceeds_remaining": estimate.exceeds_remaining,
        "projected_usage_percent": estimate.projected_usage_percent,
    }


@app.get("/api/quota/usage")
async def quota_usage(limit: int = Query(default=50, le=500)):
    return {
        "operations": {name: stats.model_dump() for name, stats in ledger.usage_statistics().items()},
        "recent_calls": [call.model_dump() for call in ledger.recent_calls(limit)],
    }


@app.get("/api/notifications")
async def get_notifications(limit: int = Query(default=20, le=100)):
    return {"notifications": [n.model_dump() for n in notifier.recent(limit)]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
