"""
Canonical models for the deletion-request pipeline.

Every pipeline stage produces and consumes these Pydantic v2 models; the
SQLAlchemy rows in ``rescrub.models`` are converted at the edges.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class RequestStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    COMPLETED = "COMPLETED"
    ESCALATED = "ESCALATED"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.ESCALATED})


class Classification(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    UNCERTAIN = "UNCERTAIN"


class ResponseType(str, Enum):
    """Detailed operator reply type, finer than the classification."""
    POSITIVE_CONFIRMATION = "POSITIVE_CONFIRMATION"
    REJECTION = "REJECTION"
    PARTIAL_COMPLIANCE = "PARTIAL_COMPLIANCE"
    CLARIFICATION_REQUEST = "CLARIFICATION_REQUEST"
    AUTO_GENERATED = "AUTO_GENERATED"
    UNKNOWN = "UNKNOWN"


class ViolationType(str, Enum):
    REFUSAL_TO_DELETE = "REFUSAL_TO_DELETE"
    PARTIAL_DELETION = "PARTIAL_DELETION"
    NO_RESPONSE_TIMEOUT = "NO_RESPONSE_TIMEOUT"
    INVALID_JUSTIFICATION = "INVALID_JUSTIFICATION"


class DecisionAction(str, Enum):
    AUTO_CLOSE = "AUTO_CLOSE"
    ESCALATE_TO_REGULATOR = "ESCALATE_TO_REGULATOR"
    WAIT = "WAIT"


class DocumentType(str, Enum):
    EMAIL_EVIDENCE = "EMAIL_EVIDENCE"
    DELAY_VIOLATION_PROOF = "DELAY_VIOLATION_PROOF"


class PacketStatus(str, Enum):
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"
    SENT = "SENT"


class OutboundKind(str, Enum):
    INITIAL = "INITIAL"
    FOLLOW_UP = "FOLLOW_UP"
    ESCALATION = "ESCALATION"
    SUBJECT_NOTICE = "SUBJECT_NOTICE"


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; offset-aware input is converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Evidence(BaseModel):
    """A verbatim quote from the operator reply that supports a classification."""
    quote: str = Field(..., description="Exact snippet from the message")
    location: str = Field(..., description="e.g. 'line 5'")


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------

class InboundMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    content: str
    channel: str = "email"
    received_at: datetime
    headers: dict[str, str] = Field(default_factory=dict)
    external_id: Optional[str] = None

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class AnalysisResult(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message_id: str
    request_id: str
    classification: Classification
    response_type: ResponseType = ResponseType.UNKNOWN
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence_found: bool = False
    requires_escalation: bool = False
    violation_type: Optional[ViolationType] = None
    language: str = "ru"
    matched_rules: list[str] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)


class Decision(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    analysis_id: Optional[str] = None
    action: DecisionAction
    confidence: float = Field(..., ge=0.0, le=1.0)
    rule: str
    reason: str
    violation_type: Optional[ViolationType] = None
    from_status: RequestStatus
    to_status: RequestStatus
    created_at: datetime


class EvidenceRecord(BaseModel):
    id: str
    request_id: str
    message_id: Optional[str] = None
    document_type: DocumentType
    content_hash: str
    hash_algorithm: str
    previous_hash: Optional[str] = None
    chain_hash: str
    signature: Optional[str] = None
    signature_algorithm: str
    archived: bool = False
    tamper_suspected: bool = False
    created_at: datetime
    archived_at: Optional[datetime] = None


class EscalationPacket(BaseModel):
    id: str
    request_id: str
    decision_id: Optional[str] = None
    evidence_ids: list[str] = Field(default_factory=list)
    manifest_hash: str
    letter_subject: str
    letter_body: str
    status: PacketStatus
    blocked_reason: Optional[str] = None
    created_at: datetime
    finalized_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


class OutboundMessage(BaseModel):
    """Message handed to the notification collaborator."""
    request_id: str
    kind: OutboundKind
    recipient: str
    subject: str
    body: str
    offset_days: Optional[int] = None
    attachments: list[str] = Field(default_factory=list)
