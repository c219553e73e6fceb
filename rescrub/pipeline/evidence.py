"""
Evidence collection with HMAC-SHA256 digests and a per-request hash chain.

Each record stores the canonical JSON payload it was hashed from. The first
record of a request chains from ``genesis``; every later record chains from
its predecessor's chain hash. Records are never corrected or deleted: a
digest mismatch quarantines the record for audit review instead.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from rescrub.config import Settings, evidence_secret, settings
from rescrub.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    SignatureValidationFailure,
    TamperSuspectedError,
)
from rescrub.models import (
    DeletionRequestModel,
    EscalationPacketModel,
    EvidenceRecordModel,
    RequestTimelineModel,
)
from rescrub.pipeline.crypto import Certificate, CryptoValidator, EvidenceSigner
from rescrub.pipeline.letters import escalation_letter
from rescrub.pipeline.records import add_timeline, transform_evidence, transform_packet
from rescrub.schemas import (
    ChainVerification,
    Decision,
    DocumentType,
    EscalationPacket,
    EvidenceRecord,
    InboundMessage,
    PacketStatus,
)

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "hmac-sha256"
GENESIS = "genesis"


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EvidenceCollector:
    def __init__(
        self,
        db: Session,
        cfg: Settings = settings,
        signer: Optional[EvidenceSigner] = None,
        validator: Optional[CryptoValidator] = None,
    ):
        self.db = db
        self.cfg = cfg
        self.secret = evidence_secret(cfg).encode("utf-8")
        self.signer = signer if signer is not None else EvidenceSigner.from_settings(cfg)
        self.validator = validator if validator is not None else CryptoValidator.from_settings(cfg)
        self.archive_dir = Path(cfg.EVIDENCE_ARCHIVE_DIR)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def digest(self, data: bytes) -> str:
        return hmac.new(self.secret, data, hashlib.sha256).hexdigest()

    def chain_digest(self, previous_hash: Optional[str], content_hash: str) -> str:
        return self.digest(f"{previous_hash or GENESIS}:{content_hash}".encode("utf-8"))

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def collect(self, message: InboundMessage) -> EvidenceRecord:
        """Record an inbound message. Collecting the same message twice returns the stored record."""
        existing = (
            self.db.query(EvidenceRecordModel)
            .filter(
                EvidenceRecordModel.message_id == message.id,
                EvidenceRecordModel.document_type == DocumentType.EMAIL_EVIDENCE.value,
            )
            .first()
        )
        if existing:
            logger.info("Evidence for message %s already collected as %s", message.id, existing.id)
            return transform_evidence(existing)

        payload = {
            "message_id": message.id,
            "request_id": message.request_id,
            "channel": message.channel,
            "content": message.content,
            "received_at": _iso(message.received_at),
            "headers": message.headers,
            "external_id": message.external_id,
        }
        row = self._store(message.request_id, message.id, DocumentType.EMAIL_EVIDENCE, payload)
        return transform_evidence(row)

    def collect_timeout_proof(
        self, request: DeletionRequestModel, now: Optional[datetime] = None
    ) -> EvidenceRecord:
        """Record proof that the operator stayed silent past the statutory window."""
        now = now or datetime.utcnow()
        timeline = (
            self.db.query(RequestTimelineModel)
            .filter(RequestTimelineModel.request_id == request.id)
            .order_by(RequestTimelineModel.occurred_at)
            .all()
        )
        payload = {
            "request_id": request.id,
            "tracking_id": request.tracking_id,
            "broker_ref": request.broker_ref,
            "operator_email": request.operator_email,
            "first_sent_at": _iso(request.first_sent_at),
            "last_contact_at": _iso(request.last_contact_at),
            "follow_up_count": request.follow_up_count,
            "deadline_days": self.cfg.RESPONSE_DEADLINE_DAYS,
            "detected_at": _iso(now),
            "timeline": [
                {"event": t.event, "occurred_at": _iso(t.occurred_at)} for t in timeline
            ],
        }
        row = self._store(request.id, None, DocumentType.DELAY_VIOLATION_PROOF, payload, now)
        return transform_evidence(row)

    def _store(
        self,
        request_id: str,
        message_id: Optional[str],
        document_type: DocumentType,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EvidenceRecordModel:
        data = canonical_json(payload)
        content_hash = self.digest(data)

        last = (
            self.db.query(EvidenceRecordModel)
            .filter(EvidenceRecordModel.request_id == request_id)
            .order_by(EvidenceRecordModel.chain_position.desc())
            .first()
        )
        previous_hash = last.chain_hash if last else None

        row = EvidenceRecordModel(
            id=str(uuid.uuid4()),
            request_id=request_id,
            message_id=message_id,
            document_type=document_type.value,
            payload=data.decode("utf-8"),
            content_hash=content_hash,
            hash_algorithm=HASH_ALGORITHM,
            previous_hash=previous_hash,
            chain_position=(last.chain_position + 1) if last else 1,
            chain_hash=self.chain_digest(previous_hash, content_hash),
            signature_algorithm=HASH_ALGORITHM,
            created_at=now or datetime.utcnow(),
        )
        if self.signer:
            row.signature = self.signer.sign_digest(content_hash)
            row.signature_algorithm = self.signer.algorithm
            if self.signer.certificate:
                row.signer_certificate_json = self.signer.certificate.model_dump(mode="json")

        self.db.add(row)
        add_timeline(self.db, request_id, "EVIDENCE_COLLECTED", document_type.value, occurred_at=row.created_at)
        self.db.commit()
        logger.info(
            "Collected %s evidence %s for request %s (chain position %d)",
            document_type.value, row.id, request_id, row.chain_position,
        )
        return row

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def _row(self, record: Union[EvidenceRecord, EvidenceRecordModel, str]) -> EvidenceRecordModel:
        if isinstance(record, EvidenceRecordModel):
            return record
        record_id = record if isinstance(record, str) else record.id
        row = self.db.get(EvidenceRecordModel, record_id)
        if row is None:
            raise NotFoundError(f"Evidence record not found: {record_id}")
        return row

    def load_payload(self, record: Union[EvidenceRecord, EvidenceRecordModel, str]) -> bytes:
        row = self._row(record)
        if row.archived:
            return Path(row.archive_path).read_bytes()
        return (row.payload or "").encode("utf-8")

    def check_integrity(
        self, record: Union[EvidenceRecord, EvidenceRecordModel, str]
    ) -> Optional[TamperSuspectedError]:
        """Recompute the digests; returns the problem instead of raising it.

        A mismatch flags and quarantines the record. Nothing is repaired.
        """
        row = self._row(record)
        try:
            data = self.load_payload(row)
        except OSError as exc:
            return self._quarantine(row, f"archived payload unreadable: {exc}")

        if not hmac.compare_digest(self.digest(data), row.content_hash):
            return self._quarantine(row, "content hash mismatch")
        if not hmac.compare_digest(self.chain_digest(row.previous_hash, row.content_hash), row.chain_hash):
            return self._quarantine(row, "chain hash mismatch")
        return None

    def verify(self, record: Union[EvidenceRecord, EvidenceRecordModel, str]) -> bool:
        return self.check_integrity(record) is None

    def verify_chain(self, request_id: str) -> ChainVerification:
        """Walk a request's records in chain order.

        Each record must sit right after its predecessor and carry the
        predecessor's chain hash. A removed or replaced record breaks the link
        of the record after it, which is quarantined along with any record
        whose own digests fail.
        """
        rows = (
            self.db.query(EvidenceRecordModel)
            .filter(EvidenceRecordModel.request_id == request_id)
            .order_by(EvidenceRecordModel.chain_position)
            .all()
        )
        problems: list[TamperSuspectedError] = []
        previous: Optional[EvidenceRecordModel] = None
        for row in rows:
            expected_position = previous.chain_position + 1 if previous else 1
            expected_hash = previous.chain_hash if previous else None
            if row.chain_position != expected_position:
                problems.append(self._quarantine(
                    row, f"chain position {row.chain_position}, expected {expected_position}"
                ))
            elif row.previous_hash != expected_hash:
                problems.append(self._quarantine(row, "previous hash does not match predecessor"))
            else:
                problem = self.check_integrity(row)
                if problem:
                    problems.append(problem)
            previous = row

        if problems:
            logger.warning("Evidence chain for %s broken in %d place(s)", request_id, len(problems))
        return ChainVerification(
            request_id=request_id,
            valid=not problems,
            records=len(rows),
            problems=[f"{p.record_id}: {p.reason}" for p in problems],
        )

    def _quarantine(self, row: EvidenceRecordModel, reason: str) -> TamperSuspectedError:
        if not row.tamper_suspected:
            row.tamper_suspected = True
            row.quarantined_at = datetime.utcnow()
            add_timeline(self.db, row.request_id, "EVIDENCE_QUARANTINED", f"{row.id}: {reason}")
            self.db.commit()
        logger.warning("Evidence %s quarantined: %s", row.id, reason)
        return TamperSuspectedError(row.id, reason)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def archive_older_than(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Move payloads past the retention window to cold storage. Returns the count moved."""
        days = self.cfg.EVIDENCE_RETENTION_DAYS if days is None else days
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=days)

        rows = (
            self.db.query(EvidenceRecordModel)
            .filter(
                EvidenceRecordModel.archived.is_(False),
                EvidenceRecordModel.tamper_suspected.is_(False),
                EvidenceRecordModel.created_at < cutoff,
            )
            .all()
        )
        moved = 0
        for row in rows:
            # never carry a tampered payload into cold storage
            if self.check_integrity(row) is not None:
                continue
            target = self.archive_dir / row.request_id / f"{row.id}.json"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(row.payload.encode("utf-8"))
            row.archive_path = str(target)
            row.payload = None
            row.archived = True
            row.archived_at = now
            moved += 1
        self.db.commit()
        logger.info("Archived %d evidence record(s) older than %s", moved, cutoff)
        return moved

    def list_records(self, request_id: str) -> list[EvidenceRecord]:
        rows = (
            self.db.query(EvidenceRecordModel)
            .filter(EvidenceRecordModel.request_id == request_id)
            .order_by(EvidenceRecordModel.chain_position)
            .all()
        )
        return [transform_evidence(r) for r in rows]

    # ------------------------------------------------------------------
    # Escalation packets
    # ------------------------------------------------------------------

    def _validate_signatures(self, rows: list[EvidenceRecordModel]) -> None:
        for row in rows:
            if not row.signature:
                continue  # HMAC-only evidence
            if not row.signer_certificate_json:
                raise SignatureValidationFailure(f"Evidence {row.id} is signed but has no signer certificate")
            certificate = Certificate(**row.signer_certificate_json)
            self.validator.require_valid(row, certificate)

    def build_escalation_packet(
        self,
        request: DeletionRequestModel,
        decision: Decision,
        now: Optional[datetime] = None,
    ) -> EscalationPacket:
        """Bundle verified evidence and the regulator letter.

        The request chain is verified first and quarantined records are left
        out. If a signature does not validate the packet stays DRAFT with
        ``blocked_reason`` set and ``SignatureValidationFailure`` is raised.
        """
        now = now or datetime.utcnow()
        chain = self.verify_chain(request.id)
        rows = (
            self.db.query(EvidenceRecordModel)
            .filter(EvidenceRecordModel.request_id == request.id)
            .order_by(EvidenceRecordModel.chain_position)
            .all()
        )
        usable = [r for r in rows if not r.tamper_suspected]
        excluded = len(rows) - len(usable)
        if excluded:
            logger.warning("Excluded %d quarantined record(s) from packet for %s", excluded, request.id)

        violation = decision.violation_type.value if decision.violation_type else request.violation_type
        manifest = {
            "request_id": request.id,
            "tracking_id": request.tracking_id,
            "decision_id": decision.id,
            "violation_type": violation,
            "created_at": _iso(now),
            "chain_intact": chain.valid,
            "evidence": [
                {
                    "id": r.id,
                    "document_type": r.document_type,
                    "content_hash": r.content_hash,
                    "chain_hash": r.chain_hash,
                    "signature_algorithm": r.signature_algorithm,
                }
                for r in usable
            ],
        }
        manifest_hash = self.digest(canonical_json(manifest))
        letter_subject, letter_body = escalation_letter(request, violation, usable, manifest_hash, now)

        packet = EscalationPacketModel(
            id=str(uuid.uuid4()),
            request_id=request.id,
            decision_id=decision.id,
            evidence_ids_json=[r.id for r in usable],
            manifest_json=manifest,
            manifest_hash=manifest_hash,
            letter_subject=letter_subject,
            letter_body=letter_body,
            status=PacketStatus.DRAFT.value,
            created_at=now,
        )
        self.db.add(packet)
        self._finalize(packet, usable, now)
        return transform_packet(packet)

    def finalize_packet(self, packet_id: str, now: Optional[datetime] = None) -> EscalationPacket:
        """Retry signature validation on a blocked DRAFT packet."""
        packet = self.get_packet_row(packet_id)
        if packet.status != PacketStatus.DRAFT.value:
            return transform_packet(packet)
        rows = (
            self.db.query(EvidenceRecordModel)
            .filter(EvidenceRecordModel.id.in_(packet.evidence_ids_json or []))
            .order_by(EvidenceRecordModel.chain_position)
            .all()
        )
        for row in rows:
            problem = self.check_integrity(row)
            if problem:
                packet.blocked_reason = str(problem)
                self.db.commit()
                raise SignatureValidationFailure(str(problem))
        self._finalize(packet, rows, now or datetime.utcnow())
        return transform_packet(packet)

    def _finalize(self, packet: EscalationPacketModel, rows: list[EvidenceRecordModel], now: datetime) -> None:
        try:
            self._validate_signatures(rows)
        except SignatureValidationFailure as exc:
            packet.blocked_reason = str(exc)
            add_timeline(self.db, packet.request_id, "PACKET_BLOCKED", str(exc), occurred_at=now)
            self.db.commit()
            logger.warning("Escalation packet %s blocked: %s", packet.id, exc)
            raise
        packet.status = PacketStatus.FINALIZED.value
        packet.blocked_reason = None
        packet.finalized_at = now
        add_timeline(self.db, packet.request_id, "PACKET_FINALIZED", packet.manifest_hash, occurred_at=now)
        self.db.commit()
        logger.info("Escalation packet %s finalized with %d record(s)", packet.id, len(rows))

    def get_packet_row(self, packet_id: str) -> EscalationPacketModel:
        packet = self.db.get(EscalationPacketModel, packet_id)
        if packet is None:
            raise NotFoundError(f"Escalation packet not found: {packet_id}")
        return packet

    def list_packets(self, status: Optional[PacketStatus] = None) -> list[EscalationPacket]:
        query = self.db.query(EscalationPacketModel)
        if status:
            query = query.filter(EscalationPacketModel.status == status.value)
        return [transform_packet(p) for p in query.order_by(EscalationPacketModel.created_at).all()]

    def mark_packet_sent(
        self, packet_id: str, now: Optional[datetime] = None, notify_subject: bool = False
    ) -> EscalationPacket:
        packet = self.get_packet_row(packet_id)
        if packet.status != PacketStatus.FINALIZED.value:
            raise InvalidStateTransitionError(packet.status, "SEND_PACKET")
        packet.status = PacketStatus.SENT.value
        packet.sent_at = now or datetime.utcnow()
        packet.subject_notice_pending = notify_subject
        add_timeline(self.db, packet.request_id, "ESCALATION_SENT", packet.id, occurred_at=packet.sent_at)
        self.db.commit()
        return transform_packet(packet)

    def pending_subject_notices(self) -> list[str]:
        """Ids of sent packets whose subject notice has not gone out yet."""
        rows = (
            self.db.query(EscalationPacketModel.id)
            .filter(
                EscalationPacketModel.status == PacketStatus.SENT.value,
                EscalationPacketModel.subject_notice_pending.is_(True),
            )
            .order_by(EscalationPacketModel.sent_at)
            .all()
        )
        return [row.id for row in rows]

    def mark_subject_notified(self, packet_id: str, now: Optional[datetime] = None) -> None:
        packet = self.get_packet_row(packet_id)
        packet.subject_notice_pending = False
        packet.subject_notified_at = now or datetime.utcnow()
        add_timeline(self.db, packet.request_id, "SUBJECT_NOTIFIED", packet.id, occurred_at=packet.subject_notified_at)
        self.db.commit()
