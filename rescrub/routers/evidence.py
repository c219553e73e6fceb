"""
Evidence and escalation packet API router
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rescrub.database import get_db
from rescrub.dependencies import get_evidence, http_error
from rescrub.exceptions import RescrubError
from rescrub.pipeline.evidence import EvidenceCollector
from rescrub.pipeline.records import get_request
from rescrub.schemas import (
    ArchiveResponse,
    ChainVerification,
    EscalationPacket,
    EvidenceRecord,
    EvidenceVerification,
    PacketStatus,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# ── GET /api/requests/{request_id}/evidence ─────────────────────────────────
@router.get("/requests/{request_id}/evidence", response_model=List[EvidenceRecord])
def list_evidence(
    request_id: str,
    db: Session = Depends(get_db),
    collector: EvidenceCollector = Depends(get_evidence),
):
    try:
        get_request(db, request_id)
    except RescrubError as e:
        raise http_error(e)
    return collector.list_records(request_id)


# ── POST /api/requests/{request_id}/evidence/verify ───────────────────────
@router.post("/requests/{request_id}/evidence/verify", response_model=ChainVerification)
def verify_evidence_chain(
    request_id: str,
    db: Session = Depends(get_db),
    collector: EvidenceCollector = Depends(get_evidence),
):
    """Check linkage and digests of the whole evidence chain of a request"""
    try:
        get_request(db, request_id)
    except RescrubError as e:
        raise http_error(e)
    return collector.verify_chain(request_id)


# ── POST /api/evidence/{record_id}/verify ───────────────────────────────────
@router.post("/evidence/{record_id}/verify", response_model=EvidenceVerification)
def verify_evidence(
    record_id: str,
    collector: EvidenceCollector = Depends(get_evidence),
):
    """Recompute the digests of one record"""
    try:
        problem = collector.check_integrity(record_id)
    except RescrubError as e:
        raise http_error(e)
    return EvidenceVerification(
        record_id=record_id,
        valid=problem is None,
        tamper_suspected=problem is not None,
        reason=problem.reason if problem else None,
    )


# ── POST /api/evidence/archive ──────────────────────────────────────────────
@router.post("/evidence/archive", response_model=ArchiveResponse)
def archive_evidence(
    days: Optional[int] = None,
    collector: EvidenceCollector = Depends(get_evidence),
):
    """Move payloads past the retention window to cold storage"""
    return ArchiveResponse(archived=collector.archive_older_than(days))


# ── GET /api/packets ────────────────────────────────────────────────────────
@router.get("/packets", response_model=List[EscalationPacket])
def list_packets(
    status: Optional[PacketStatus] = None,
    collector: EvidenceCollector = Depends(get_evidence),
):
    return collector.list_packets(status)


# ── POST /api/packets/{packet_id}/finalize ──────────────────────────────────
@router.post("/packets/{packet_id}/finalize", response_model=EscalationPacket)
def finalize_packet(
    packet_id: str,
    collector: EvidenceCollector = Depends(get_evidence),
):
    """Retry validation of a blocked DRAFT packet"""
    try:
        return collector.finalize_packet(packet_id)
    except RescrubError as e:
        raise http_error(e)
