"""
InvoLex Billing Engine - Automation Router

Auto-pilot toggle and auto-sync threshold.
"""

from fastapi import APIRouter
from typing import Optional
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"])

# Billing engine - set by main app
engine = None

def set_dependencies(billing_engine):
    global engine
    engine = billing_engine


class AutopilotUpdate(BaseModel):
    enabled: bool
    auto_sync_threshold: Optional[float] = None


def _autopilot_status():
    return {
        "enabled": engine.settings.autopilot_enabled,
        "auto_sync_threshold": engine.settings.auto_sync_threshold,
        "worker": engine.autopilot.status(),
    }


@router.get("/autopilot")
async def get_autopilot():
    return _autopilot_status()


@router.put("/autopilot")
async def update_autopilot(update: AutopilotUpdate):
    """Turn auto-pilot on or off; the threshold is clamped to [0.7, 1.0]."""
    if update.auto_sync_threshold is not None:
        engine.set_threshold(update.auto_sync_threshold)
    await engine.set_autopilot(update.enabled)
    logger.info("Auto-pilot %s (threshold %.2f)", "enabled" if update.enabled else "disabled",
                engine.settings.auto_sync_threshold)
    return _autopilot_status()
