"""
Deletion request API router
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rescrub.database import get_db
from rescrub.dependencies import get_campaign, http_error
from rescrub.exceptions import RescrubError
from rescrub.models import DeletionRequestModel, RequestTimelineModel
from rescrub.pipeline.campaign import CampaignManager
from rescrub.pipeline.decision import DecisionEngine
from rescrub.pipeline.records import get_request, transform_request, transform_timeline
from rescrub.schemas import (
    CampaignStatus,
    Decision,
    DecisionStats,
    DeletionRequestCreate,
    DeletionRequestResponse,
    InboundMessageCreate,
    ProcessingOutcome,
    RequestStatus,
    TimelineEvent,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# ── POST /api/requests ───────────────────────────────────────────────────────
@router.post("/requests", response_model=DeletionRequestResponse)
def create_deletion_request(
    req: DeletionRequestCreate,
    campaign: CampaignManager = Depends(get_campaign),
):
    """Create a deletion request (PENDING)"""
    return transform_request(campaign.create_request(req))


# ── GET /api/requests ────────────────────────────────────────────────────────
@router.get("/requests", response_model=List[DeletionRequestResponse])
def list_deletion_requests(
    status: Optional[RequestStatus] = None,
    db: Session = Depends(get_db),
):
    query = db.query(DeletionRequestModel)
    if status:
        query = query.filter(DeletionRequestModel.status == status.value)
    requests = query.order_by(DeletionRequestModel.created_at.desc()).all()
    return [transform_request(r) for r in requests]


# ── GET /api/requests/{request_id} ──────────────────────────────────────────
@router.get("/requests/{request_id}", response_model=DeletionRequestResponse)
def get_deletion_request(
    request_id: str,
    db: Session = Depends(get_db),
):
    try:
        return transform_request(get_request(db, request_id))
    except RescrubError as e:
        raise http_error(e)


# ── POST /api/requests/{request_id}/send ────────────────────────────────────
@router.post("/requests/{request_id}/send", response_model=DeletionRequestResponse)
def send_deletion_request(
    request_id: str,
    campaign: CampaignManager = Depends(get_campaign),
):
    """Send the initial letter to the operator"""
    try:
        return transform_request(campaign.send_initial(request_id))
    except RescrubError as e:
        raise http_error(e)


# ── POST /api/requests/{request_id}/messages ────────────────────────────────
@router.post("/requests/{request_id}/messages", response_model=ProcessingOutcome)
def receive_operator_message(
    request_id: str,
    message: InboundMessageCreate,
    campaign: CampaignManager = Depends(get_campaign),
):
    """Process an operator reply: analysis, evidence, decision"""
    try:
        outcome = campaign.receive_message(request_id, message)
    except RescrubError as e:
        raise http_error(e)
    logger.info("Processed reply for %s: %s", request_id, outcome.decision.action.value)
    return outcome


# ── GET /api/requests/{request_id}/decisions ────────────────────────────────
@router.get("/requests/{request_id}/decisions", response_model=List[Decision])
def list_decisions(
    request_id: str,
    db: Session = Depends(get_db),
):
    try:
        get_request(db, request_id)
    except RescrubError as e:
        raise http_error(e)
    return DecisionEngine(db).history(request_id)


# ── GET /api/requests/{request_id}/timeline ─────────────────────────────────
@router.get("/requests/{request_id}/timeline", response_model=List[TimelineEvent])
def get_request_timeline(
    request_id: str,
    db: Session = Depends(get_db),
):
    try:
        get_request(db, request_id)
    except RescrubError as e:
        raise http_error(e)
    events = db.query(RequestTimelineModel).filter(
        RequestTimelineModel.request_id == request_id
    ).order_by(RequestTimelineModel.occurred_at).all()
    return [transform_timeline(e) for e in events]


# ── GET /api/requests/{request_id}/status ───────────────────────────────────
@router.get("/requests/{request_id}/status", response_model=CampaignStatus)
def get_campaign_status(
    request_id: str,
    campaign: CampaignManager = Depends(get_campaign),
):
    """Progress of a request and the next scheduled action"""
    try:
        return campaign.campaign_status(request_id)
    except RescrubError as e:
        raise http_error(e)


# ── GET /api/decisions/stats ────────────────────────────────────────────────
@router.get("/decisions/stats", response_model=DecisionStats)
def get_decision_stats(
    days: int = Query(default=7, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return DecisionEngine(db).decision_stats(days)
