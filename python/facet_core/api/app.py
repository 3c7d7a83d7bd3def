"""
FACET orchestrator: FastAPI application entry point.

- /api/respond: answer one message through the orchestration engine
- /health: SLA health
- /api/sla/*: compliance statistics, dashboard, recommendations
- /api/cache/*: cache analytics and the explicit warming job
- /api/users/{user_id}/preferences/invalidate: preference-change hook
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from facet_core.config.settings import get_settings
from facet_core.di_container import get_container, shutdown_container
from facet_core.exceptions import InvalidRequestError
from facet_core.logging_setup import configure_logging
from facet_core.middleware.request_id import RequestIDMiddleware
from facet_core.models import MAX_MESSAGE_LENGTH

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PreferencesModel(BaseModel):
    speed: Optional[str] = None
    transparency: Optional[str] = None


class RespondRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    user_id: str = Field(alias="userId", min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    urgency_hint: Optional[str] = Field(default=None, alias="urgencyHint")
    preferences: PreferencesModel = Field(default_factory=PreferencesModel)
    cultural_context: Optional[str] = Field(default=None, alias="culturalContext")
    risk_history: List[float] = Field(default_factory=list, alias="riskHistory")


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("%s %s starting up", settings.app_name, settings.app_version)
    container = get_container()
    logger.info("DI container ready: %s", container.status())
    yield
    await shutdown_container()
    logger.info("%s shutting down", settings.app_name)


app = FastAPI(
    title="FACET Orchestrator",
    version="1.0.0",
    description="Adaptive orchestration engine for time-boxed conversational analysis",
    lifespan=lifespan,
)


def _cors_origins() -> List[str]:
    settings = get_settings()
    if settings.environment == "development":
        return ["*"]
    return settings.cors_origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request, exc: InvalidRequestError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.post("/api/respond")
async def respond(req: RespondRequest) -> Dict[str, Any]:
    """Answer one message.  Internal faults still produce a reply."""
    payload = req.model_dump(by_alias=True, exclude_none=True)
    payload["preferences"] = req.preferences.model_dump(exclude_none=True)
    return await get_container().engine.respond(payload)


@app.get("/health")
async def health():
    """Healthy while SLA compliance over the last hour is at least 95%."""
    container = get_container()
    healthy = container.monitor.is_system_healthy()
    body = {
        "status": "healthy" if healthy else "degraded",
        "active_sessions": container.monitor.dashboard()["active_sessions"],
        "shared_cache_available": container.cache.shared.available,
        "services": container.status(),
    }
    if not healthy:
        return JSONResponse(content=body, status_code=503)
    return body


@app.get("/api/sla/statistics")
async def sla_statistics(timeframe_hours: float = Query(default=24.0, gt=0)):
    return get_container().monitor.statistics(timeframe_hours).to_dict()


@app.get("/api/sla/dashboard")
async def sla_dashboard():
    return get_container().monitor.dashboard()


@app.get("/api/sla/recommendations")
async def sla_recommendations(timeframe_hours: float = Query(default=24.0, gt=0)):
    return {"recommendations": get_container().monitor.optimization_recommendations(timeframe_hours)}


@app.get("/api/cache/analytics")
async def cache_analytics():
    return get_container().cache.analytics()


@app.post("/api/cache/warm")
async def cache_warm():
    report = await get_container().cache.run_warming_job()
    return report.to_dict()


@app.post("/api/users/{user_id}/preferences/invalidate")
async def invalidate_preferences(user_id: str):
    removed = await get_container().cache.invalidate_user_preferences(user_id)
    return {"user_id": user_id, "invalidated": removed}
