"""
Email automation API router
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from rescrub.database import get_db
from rescrub.dependencies import get_notifier
from rescrub.pipeline.notifier import Notifier
from rescrub.pipeline.scheduler import EmailAutomationScheduler
from rescrub.schemas import AutomationStats, SweepReport, to_naive_utc

router = APIRouter()


# ── POST /api/scheduler/run ─────────────────────────────────────────────────
@router.post("/scheduler/run", response_model=SweepReport)
def run_sweep(
    now: Optional[datetime] = None,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Run one sweep immediately: timeouts, follow-ups, packet delivery"""
    return EmailAutomationScheduler(notifier=notifier).run(to_naive_utc(now), db=db)


# ── GET /api/scheduler/stats ────────────────────────────────────────────────
@router.get("/scheduler/stats", response_model=AutomationStats)
def get_automation_stats(
    request: Request,
    days: int = Query(default=1, ge=1, le=365),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Pending automation work and messages sent in the last days"""
    scheduler = getattr(request.app.state, "scheduler", None) or EmailAutomationScheduler(notifier=notifier)
    return scheduler.automation_stats(db, days)
