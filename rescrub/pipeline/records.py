"""
Row <-> schema conversion and timeline helpers shared by the pipeline and routers.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from rescrub.exceptions import RequestNotFoundError
from rescrub.models import (
    DecisionModel,
    DeletionRequestModel,
    EscalationPacketModel,
    EvidenceRecordModel,
    RequestTimelineModel,
)
from rescrub.schemas import (
    Decision,
    DeletionRequestResponse,
    EscalationPacket,
    EvidenceRecord,
    TimelineEvent,
)


def get_request(db: Session, request_id: str, refresh: bool = False) -> DeletionRequestModel:
    request = db.query(DeletionRequestModel).filter(DeletionRequestModel.id == request_id).first()
    if not request:
        raise RequestNotFoundError(request_id)
    if refresh:
        db.refresh(request)
    return request


def add_timeline(db: Session, request_id: str, event: str, note: Optional[str] = None,
                 occurred_at: Optional[datetime] = None) -> RequestTimelineModel:
    entry = RequestTimelineModel(
        id=str(uuid.uuid4()),
        request_id=request_id,
        event=event,
        note=note,
        occurred_at=occurred_at or datetime.utcnow(),
    )
    db.add(entry)
    return entry


def transform_request(model: DeletionRequestModel) -> DeletionRequestResponse:
    """DeletionRequestModel -> DeletionRequestResponse"""
    return DeletionRequestResponse(
        id=model.id,
        tracking_id=model.tracking_id,
        subject_ref=model.subject_ref,
        broker_ref=model.broker_ref,
        operator_email=model.operator_email,
        status=model.status,
        follow_up_count=model.follow_up_count,
        violation_type=model.violation_type,
        created_at=model.created_at,
        first_sent_at=model.first_sent_at,
        last_contact_at=model.last_contact_at,
        completed_at=model.completed_at,
        escalated_at=model.escalated_at,
        next_follow_up_at=model.next_follow_up_at,
    )


def transform_decision(model: DecisionModel) -> Decision:
    return Decision(
        id=model.id,
        request_id=model.request_id,
        analysis_id=model.analysis_id,
        action=model.action,
        confidence=model.confidence,
        rule=model.rule,
        reason=model.reason,
        violation_type=model.violation_type,
        from_status=model.from_status,
        to_status=model.to_status,
        created_at=model.created_at,
    )


def transform_evidence(model: EvidenceRecordModel) -> EvidenceRecord:
    return EvidenceRecord(
        id=model.id,
        request_id=model.request_id,
        message_id=model.message_id,
        document_type=model.document_type,
        content_hash=model.content_hash,
        hash_algorithm=model.hash_algorithm,
        previous_hash=model.previous_hash,
        chain_hash=model.chain_hash,
        signature=model.signature,
        signature_algorithm=model.signature_algorithm,
        archived=model.archived,
        tamper_suspected=model.tamper_suspected,
        created_at=model.created_at,
        archived_at=model.archived_at,
    )


def transform_packet(model: EscalationPacketModel) -> EscalationPacket:
    return EscalationPacket(
        id=model.id,
        request_id=model.request_id,
        decision_id=model.decision_id,
        evidence_ids=model.evidence_ids_json or [],
        manifest_hash=model.manifest_hash,
        letter_subject=model.letter_subject,
        letter_body=model.letter_body,
        status=model.status,
        blocked_reason=model.blocked_reason,
        created_at=model.created_at,
        finalized_at=model.finalized_at,
        sent_at=model.sent_at,
    )


def transform_timeline(model: RequestTimelineModel) -> TimelineEvent:
    return TimelineEvent(
        id=model.id,
        request_id=model.request_id,
        event=model.event,
        note=model.note,
        occurred_at=model.occurred_at,
    )
