"""
Lead Sentinel — API Server
FastAPI app exposing the lead batch trigger and scheduler health.
Runs the embedded lead-polling scheduler on startup.
"""
import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config.settings import config
from triggers.embedded_scheduler import get_scheduler_status, start_scheduler, stop_scheduler
from triggers.lead_email_trigger import process_lead_emails

logger = logging.getLogger("sentinel.dashboard")

# ============================================================
# Authentication
# ============================================================


async def verify_api_key(x_sentinel_key: str = Header(None, alias="X-Sentinel-Key")):
    """Validate API key from X-Sentinel-Key header."""
    if not config.outputs.api_key:
        logger.error("SENTINEL_API_KEY not configured — API disabled")
        raise HTTPException(
            status_code=503,
            detail="API key not configured — service disabled",
        )
    if x_sentinel_key != config.outputs.api_key:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "X-Sentinel-Key"},
        )


# ============================================================
# Logging: module-level so uvicorn outputs.dashboard:app picks it up
# ============================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)

# ============================================================
# App setup
# ============================================================

app = FastAPI(
    title="Lead Sentinel",
    description="Lead-ingestion batch trigger for the sales mailbox",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.outputs.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Sentinel-Key"],
)


class ProcessRequest(BaseModel):
    dry_run: bool = Field(False, alias="dryRun")


# ============================================================
# Startup
# ============================================================

@app.on_event("startup")
async def startup():
    """Create tables and start the lead scheduler."""
    logger.info("Lead Sentinel starting...")
    try:
        from models.leads import ensure_tables
        ensure_tables()
    except Exception as e:
        logger.warning(f"Lead tables not verified on startup (will retry per message): {e}")

    if not config.triggers.scheduler_enabled:
        logger.info("Lead scheduler disabled (LEADS_SCHEDULER_ENABLED=false)")
        return
    try:
        start_scheduler()
        logger.info("Lead scheduler started (BackgroundScheduler)")
    except Exception as e:
        logger.error(f"Scheduler failed to start: {e}")


@app.on_event("shutdown")
async def shutdown():
    """Graceful shutdown of scheduler."""
    try:
        stop_scheduler()
        logger.info("Lead scheduler stopped")
    except Exception as e:
        logger.warning(f"Scheduler shutdown error: {e}")


# ============================================================
# Health
# ============================================================

@app.get("/health", tags=["health"])
async def health():
    """Liveness probe (no auth)."""
    return {"status": "ok"}


@app.get("/api/scheduler-status", tags=["health"], dependencies=[Depends(verify_api_key)])
async def scheduler_status():
    """Return scheduler health and registered jobs."""
    return get_scheduler_status()


# ============================================================
# Leads
# ============================================================

@app.post("/api/leads/process", tags=["leads"], dependencies=[Depends(verify_api_key)])
async def process_leads(req: Optional[ProcessRequest] = None):
    """
    Run one lead batch. Always 200: the body carries success/errorType.
    The batch blocks on Gmail and PostgreSQL, so it runs off the event loop.
    """
    dry_run = bool(req and req.dry_run)
    result = await asyncio.to_thread(process_lead_emails, dry_run=dry_run)
    if not result.get("success"):
        logger.warning(f"Lead batch failed: {result.get('errorType')}: {result.get('message')}")
    return result
