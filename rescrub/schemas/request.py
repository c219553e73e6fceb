"""
API schemas for deletion requests
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator

from rescrub.schemas.base import (
    AnalysisResult,
    Decision,
    EscalationPacket,
    EvidenceRecord,
    PacketStatus,
    RequestStatus,
    ViolationType,
    to_naive_utc,
)


class DeletionRequestCreate(BaseModel):
    """Create a deletion request"""
    subject_ref: str
    broker_ref: str
    operator_email: str
    subject_email: Optional[str] = None


class DeletionRequestResponse(BaseModel):
    """Deletion request"""
    id: str
    tracking_id: str
    subject_ref: str
    broker_ref: str
    operator_email: str
    status: RequestStatus
    follow_up_count: int
    violation_type: Optional[ViolationType] = None
    created_at: datetime
    first_sent_at: Optional[datetime] = None
    last_contact_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    next_follow_up_at: Optional[datetime] = None


class InboundMessageCreate(BaseModel):
    """Operator reply, already extracted from the mail by the ingestion side"""
    content: str
    channel: str = Field(default="email", description="email|other")
    received_at: Optional[datetime] = None
    headers: dict[str, str] = Field(default_factory=dict)
    external_id: Optional[str] = None

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class ProcessingOutcome(BaseModel):
    """Result of processing one inbound message"""
    request: DeletionRequestResponse
    analysis: AnalysisResult
    decision: Decision
    evidence: EvidenceRecord
    packet: Optional[EscalationPacket] = None


class TimelineEvent(BaseModel):
    """Timeline event"""
    id: str
    request_id: str
    event: str
    note: Optional[str] = None
    occurred_at: datetime


class EvidenceVerification(BaseModel):
    record_id: str
    valid: bool
    tamper_suspected: bool
    reason: Optional[str] = None


class ArchiveResponse(BaseModel):
    archived: int


class SweepReport(BaseModel):
    """Summary of one email-automation sweep"""
    ran_at: datetime
    escalated: List[str] = Field(default_factory=list)
    follow_ups_sent: List[str] = Field(default_factory=list)
    escalations_sent: List[str] = Field(default_factory=list)
    subjects_notified: List[str] = Field(default_factory=list)
    failures: List[str] = Field(default_factory=list)


class ChainVerification(BaseModel):
    """Linkage walk over one request's evidence chain"""
    request_id: str
    valid: bool
    records: int
    problems: List[str] = Field(default_factory=list)


class DecisionStats(BaseModel):
    since: datetime
    total_decisions: int
    by_action: dict[str, int] = Field(default_factory=dict)
    by_rule: dict[str, int] = Field(default_factory=dict)
    average_confidence: float
    escalation_rate: float = Field(..., description="Share of escalations, 0..1")
    confidence_distribution: dict[str, int] = Field(
        default_factory=dict, description="high >= 0.8, medium >= 0.5, low"
    )


class AutomationStats(BaseModel):
    is_running: bool
    since: datetime
    pending_follow_ups: int
    pending_escalations: int
    packets_awaiting_delivery: int
    sent_by_kind: dict[str, int] = Field(default_factory=dict)


class CampaignStatus(BaseModel):
    """Progress of one deletion request"""
    request: DeletionRequestResponse
    is_open: bool
    next_action: Optional[str] = None
    next_action_due: Optional[datetime] = None
    response_deadline: Optional[datetime] = None
    days_remaining: Optional[int] = None
    follow_ups_sent: int
    follow_ups_remaining: int
    messages_received: int
    evidence_records: int
    decisions: int
    packet_status: Optional[PacketStatus] = None
    last_activity: Optional[datetime] = None
