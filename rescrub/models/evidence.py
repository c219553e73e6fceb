"""
Evidence and escalation packet models
"""
from sqlalchemy import Column, String, Text, JSON, DateTime, Boolean, Integer
from datetime import datetime
from rescrub.database import Base


class EvidenceRecordModel(Base):
    """Retained, hash-verifiable artifact. Rows are never deleted."""
    __tablename__ = "evidence_records"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    message_id = Column(String, index=True)
    document_type = Column(String, nullable=False)  # EMAIL_EVIDENCE, DELAY_VIOLATION_PROOF

    # Canonical payload; moved to cold storage on archival
    payload = Column(Text)
    archive_path = Column(String)

    # Integrity
    content_hash = Column(String(64), nullable=False)
    hash_algorithm = Column(String, nullable=False)
    previous_hash = Column(String(64))
    chain_position = Column(Integer, nullable=False, default=1)
    chain_hash = Column(String(64), nullable=False)

    # Optional asymmetric signature over the digest
    signature = Column(Text)
    signature_algorithm = Column(String, nullable=False)
    signer_certificate_json = Column(JSON)

    archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime)
    tamper_suspected = Column(Boolean, nullable=False, default=False)
    quarantined_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EscalationPacketModel(Base):
    """Evidence bundle plus regulator letter"""
    __tablename__ = "escalation_packets"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    decision_id = Column(String)
    evidence_ids_json = Column(JSON, nullable=False)  # references, no ownership
    manifest_json = Column(JSON, nullable=False)
    manifest_hash = Column(String(64), nullable=False)
    letter_subject = Column(String, nullable=False)
    letter_body = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="DRAFT")  # DRAFT, FINALIZED, SENT
    blocked_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finalized_at = Column(DateTime)
    sent_at = Column(DateTime)
    subject_notice_pending = Column(Boolean, nullable=False, default=False)
    subject_notified_at = Column(DateTime)
