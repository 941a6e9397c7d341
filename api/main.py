"""
FastAPI Application — Campaign control surface and engine lifecycle.

Provides:
- Campaign control: start, pause, trigger (manual sweep)
- Aggregated stats for campaigns and the job queue
- Health check with channel metrics
- Lifespan hook that starts and stops the engine runtime
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from core.control import CampaignNotFoundError, CampaignStateError
from core.runtime import EngineRuntime

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StartCampaignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")


def _runtime(request: Request) -> EngineRuntime:
    return request.app.state.runtime


def _campaign_summary(campaign) -> dict[str, Any]:
    return {
        "id": campaign.id,
        "status": campaign.status.value,
        "started_at": campaign.started_at.isoformat() if campaign.started_at else None,
    }


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(runtime: Optional[EngineRuntime] = None, background: bool = True) -> FastAPI:
    """
    Build the API. Without an explicit runtime one is built from settings
    when the app starts. ``background=False`` leaves the tickers off so the
    caller drives sweeps and ticks.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = EngineRuntime()
        await app.state.runtime.start(background=background)
        logger.info("outreach_api_started", app=app.state.runtime.settings.app_name)
        yield
        await app.state.runtime.stop()
        logger.info("outreach_api_stopped")

    app = FastAPI(
        title="Outreach Engine API",
        description="Campaign sequence execution engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        rt = _runtime(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dispatcher_busy": rt.dispatcher.busy,
            "channels": await rt.senders.health(),
        }

    # ══════════════════════════════════════════════════════════
    #  CAMPAIGN CONTROL
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/campaigns/{campaign_id}/start")
    async def start_campaign(campaign_id: str, request: Request, req: Optional[StartCampaignRequest] = None):
        scheduled_at = req.scheduled_at if req else None
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        try:
            campaign = await _runtime(request).control.start(campaign_id, scheduled_at)
        except CampaignNotFoundError as e:
            raise HTTPException(404, str(e))
        except CampaignStateError as e:
            raise HTTPException(400, str(e))
        return _campaign_summary(campaign)

    @app.post("/api/v1/campaigns/{campaign_id}/pause")
    async def pause_campaign(campaign_id: str, request: Request):
        try:
            campaign = await _runtime(request).control.pause(campaign_id)
        except CampaignNotFoundError as e:
            raise HTTPException(404, str(e))
        except CampaignStateError as e:
            raise HTTPException(400, str(e))
        return _campaign_summary(campaign)

    @app.post("/api/v1/campaigns/{campaign_id}/trigger")
    async def trigger_campaign(campaign_id: str, request: Request):
        try:
            report = await _runtime(request).control.trigger(campaign_id)
        except CampaignNotFoundError as e:
            raise HTTPException(404, str(e))
        except CampaignStateError as e:
            raise HTTPException(400, str(e))
        return report.to_dict()

    # ══════════════════════════════════════════════════════════
    #  STATS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/campaigns/{campaign_id}/stats")
    async def campaign_stats(campaign_id: str, request: Request):
        try:
            return await _runtime(request).control.stats(campaign_id)
        except CampaignNotFoundError as e:
            raise HTTPException(404, str(e))

    @app.get("/api/v1/queue/stats")
    async def queue_stats(request: Request, tenant_id: Optional[str] = None):
        return await _runtime(request).queue.stats(tenant_id)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
