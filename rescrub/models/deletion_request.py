"""
Deletion request models
"""
from sqlalchemy import Column, String, Text, JSON, DateTime, Integer, Float, Boolean
from datetime import datetime
from rescrub.database import Base


class DeletionRequestModel(Base):
    """Deletion request sent to one data-broker operator on behalf of one subject"""
    __tablename__ = "deletion_requests"

    id = Column(String, primary_key=True)
    tracking_id = Column(String, nullable=False, unique=True)  # shown to the user, put into mail headers
    subject_ref = Column(String, nullable=False, index=True)
    subject_email = Column(String)
    broker_ref = Column(String, nullable=False, index=True)
    operator_email = Column(String, nullable=False)

    # PENDING, SENT, AWAITING_RESPONSE, COMPLETED, ESCALATED
    status = Column(String, nullable=False, default="PENDING", index=True)
    violation_type = Column(String)

    first_sent_at = Column(DateTime)
    last_contact_at = Column(DateTime)
    completed_at = Column(DateTime)
    escalated_at = Column(DateTime)

    # Follow-up bookkeeping
    follow_up_count = Column(Integer, nullable=False, default=0)
    last_follow_up_offset = Column(Integer, nullable=False, default=0)
    next_follow_up_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class InboundMessageModel(Base):
    """Operator reply"""
    __tablename__ = "inbound_messages"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    external_id = Column(String, index=True)  # Message-ID header
    content = Column(Text, nullable=False)
    channel = Column(String, nullable=False, default="email")  # email, other
    headers_json = Column(JSON)
    received_at = Column(DateTime, nullable=False)


class AnalysisResultModel(Base):
    """Response analyzer output for one message"""
    __tablename__ = "analysis_results"

    id = Column(String, primary_key=True)
    message_id = Column(String, nullable=False, unique=True)
    request_id = Column(String, nullable=False, index=True)
    classification = Column(String, nullable=False)  # POSITIVE, NEGATIVE, UNCERTAIN
    response_type = Column(String, nullable=False)
    confidence = Column(Float, nullable=False)
    evidence_found = Column(Boolean, nullable=False, default=False)
    requires_escalation = Column(Boolean, nullable=False, default=False)
    violation_type = Column(String)
    language = Column(String)
    result_json = Column(JSON, nullable=False)  # full AnalysisResult incl. evidence quotes
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DecisionModel(Base):
    """Decision engine output, append-only"""
    __tablename__ = "decisions"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    analysis_id = Column(String)  # null for timeout decisions
    action = Column(String, nullable=False)  # AUTO_CLOSE, ESCALATE_TO_REGULATOR, WAIT
    confidence = Column(Float, nullable=False)
    rule = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    violation_type = Column(String)
    from_status = Column(String, nullable=False)
    to_status = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RequestTimelineModel(Base):
    """Deletion request timeline"""
    __tablename__ = "request_timelines"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)  # CREATED, SENT, RESPONSE_RECEIVED, FOLLOW_UP_SENT, COMPLETED, ESCALATED ...
    note = Column(Text)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OutboundMessageModel(Base):
    """Everything handed to the notification collaborator"""
    __tablename__ = "outbound_messages"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # INITIAL, FOLLOW_UP, ESCALATION, SUBJECT_NOTICE
    offset_days = Column(Integer)
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body_text = Column(Text, nullable=False)
    provider_message_id = Column(String)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
