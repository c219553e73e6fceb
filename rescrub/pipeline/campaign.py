"""
Campaign manager: drives one deletion request through the pipeline.

receive_message: analyze -> store message and analysis -> collect evidence
-> decide -> build the escalation packet when the decision escalates.
All work on a request happens under that request's lock.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rescrub.config import Settings, settings
from rescrub.exceptions import (
    InvalidStateTransitionError,
    RescrubError,
    SignatureValidationFailure,
)
from rescrub.models import (
    AnalysisResultModel,
    DecisionModel,
    DeletionRequestModel,
    EscalationPacketModel,
    EvidenceRecordModel,
    InboundMessageModel,
    OutboundMessageModel,
    RequestTimelineModel,
)
from rescrub.pipeline.analyzer import ResponseAnalyzer
from rescrub.pipeline.crypto import CryptoValidator, EvidenceSigner
from rescrub.pipeline.decision import (
    TIMEOUT_RULE,
    DecisionEngine,
    RequestEvent,
    apply_transition,
    follow_up_due_dates,
    next_status,
)
from rescrub.pipeline.evidence import EvidenceCollector
from rescrub.pipeline.letters import initial_letter
from rescrub.pipeline.locks import RequestLockRegistry, request_locks
from rescrub.pipeline.notifier import LoggingNotifier, Notifier, send_with_retry
from rescrub.pipeline.records import (
    add_timeline,
    get_request,
    transform_decision,
    transform_packet,
    transform_request,
)
from rescrub.schemas import (
    TERMINAL_STATUSES,
    CampaignStatus,
    Decision,
    DecisionAction,
    DeletionRequestCreate,
    DocumentType,
    EscalationPacket,
    InboundMessage,
    InboundMessageCreate,
    OutboundKind,
    OutboundMessage,
    PacketStatus,
    ProcessingOutcome,
    RequestStatus,
)

logger = logging.getLogger(__name__)

REPLY_STATUSES = (RequestStatus.SENT.value, RequestStatus.AWAITING_RESPONSE.value)


def new_tracking_id() -> str:
    return "RS-" + uuid.uuid4().hex[:8].upper()


class CampaignManager:
    def __init__(
        self,
        db: Session,
        cfg: Settings = settings,
        analyzer: Optional[ResponseAnalyzer] = None,
        notifier: Optional[Notifier] = None,
        signer: Optional[EvidenceSigner] = None,
        validator: Optional[CryptoValidator] = None,
        locks: RequestLockRegistry = request_locks,
    ):
        self.db = db
        self.cfg = cfg
        self.locks = locks
        self.analyzer = analyzer or ResponseAnalyzer(cfg=cfg)
        self.notifier = notifier or LoggingNotifier()
        self.engine = DecisionEngine(db, cfg, locks)
        self.evidence = EvidenceCollector(db, cfg, signer=signer, validator=validator)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def create_request(self, data: DeletionRequestCreate) -> DeletionRequestModel:
        request = DeletionRequestModel(
            id=str(uuid.uuid4()),
            tracking_id=new_tracking_id(),
            subject_ref=data.subject_ref,
            subject_email=data.subject_email,
            broker_ref=data.broker_ref,
            operator_email=data.operator_email,
            status=RequestStatus.PENDING.value,
        )
        self.db.add(request)
        add_timeline(self.db, request.id, "CREATED", f"Оператор: {data.broker_ref}")
        self.db.commit()
        self.db.refresh(request)
        logger.info("Created deletion request %s (%s)", request.id, request.tracking_id)
        return request

    def dispatch(self, message: OutboundMessage, now: Optional[datetime] = None) -> str:
        """Send through the notifier and log the outbound message. Commits nothing."""
        provider_id = send_with_retry(self.notifier, message, self.cfg)
        self.db.add(OutboundMessageModel(
            id=str(uuid.uuid4()),
            request_id=message.request_id,
            kind=message.kind.value,
            offset_days=message.offset_days,
            recipient=message.recipient,
            subject=message.subject,
            body_text=message.body,
            provider_message_id=provider_id,
            sent_at=now or datetime.utcnow(),
        ))
        return provider_id

    def send_initial(self, request_id: str, now: Optional[datetime] = None) -> DeletionRequestModel:
        """Send the initial letter. A delivery failure leaves the request PENDING."""
        now = now or datetime.utcnow()
        with self.locks.hold(request_id):
            request = get_request(self.db, request_id, refresh=True)
            next_status(RequestStatus(request.status), RequestEvent.SEND)

            subject, body = initial_letter(request, now)
            self.dispatch(
                OutboundMessage(
                    request_id=request.id,
                    kind=OutboundKind.INITIAL,
                    recipient=request.operator_email,
                    subject=subject,
                    body=body,
                ),
                now,
            )
            apply_transition(self.db, request, RequestEvent.SEND, {
                "first_sent_at": now,
                "last_contact_at": now,
            })
            add_timeline(self.db, request.id, "SENT", request.operator_email, occurred_at=now)

            due = follow_up_due_dates(now, self.cfg.FOLLOW_UP_OFFSETS_DAYS)
            apply_transition(self.db, request, RequestEvent.DELIVERED, {
                "next_follow_up_at": due[0][1] if due else None,
            })
            add_timeline(self.db, request.id, "AWAITING_RESPONSE", occurred_at=now)
            self.db.commit()
            logger.info("Initial letter sent for %s", request.id)
            return request

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def receive_message(
        self,
        request_id: str,
        data: Union[InboundMessageCreate, InboundMessage],
        now: Optional[datetime] = None,
    ) -> ProcessingOutcome:
        now = now or datetime.utcnow()
        with self.locks.hold(request_id):
            request = get_request(self.db, request_id, refresh=True)
            if request.status not in REPLY_STATUSES:
                raise InvalidStateTransitionError(request.status, "RESPONSE_RECEIVED")

            if isinstance(data, InboundMessage):
                message = data
            else:
                message = InboundMessage(
                    request_id=request.id,
                    content=data.content,
                    channel=data.channel,
                    received_at=data.received_at or now,
                    headers=data.headers,
                    external_id=data.external_id,
                )

            # rejects empty content before anything is stored
            analysis = self.analyzer.analyze(message)

            self.db.add(InboundMessageModel(
                id=message.id,
                request_id=request.id,
                external_id=message.external_id,
                content=message.content,
                channel=message.channel,
                headers_json=message.headers,
                received_at=message.received_at,
            ))
            self.db.add(AnalysisResultModel(
                id=analysis.id,
                message_id=message.id,
                request_id=request.id,
                classification=analysis.classification.value,
                response_type=analysis.response_type.value,
                confidence=analysis.confidence,
                evidence_found=analysis.evidence_found,
                requires_escalation=analysis.requires_escalation,
                violation_type=analysis.violation_type.value if analysis.violation_type else None,
                language=analysis.language,
                result_json=analysis.model_dump(mode="json"),
            ))
            add_timeline(
                self.db, request.id, "RESPONSE_RECEIVED",
                f"{analysis.classification.value} ({analysis.confidence:.2f})",
                occurred_at=message.received_at,
            )
            self.db.commit()

            evidence = self.evidence.collect(message)
            decision = self.engine.make_decision(request, analysis, now=message.received_at)

            packet = None
            if decision.action == DecisionAction.ESCALATE_TO_REGULATOR:
                packet = self._build_packet(request, decision, now)

            self.db.refresh(request)
            return ProcessingOutcome(
                request=transform_request(request),
                analysis=analysis,
                decision=decision,
                evidence=evidence,
                packet=packet,
            )

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def escalate_timeouts(
        self, now: Optional[datetime] = None, failures: Optional[list[str]] = None
    ) -> list[Decision]:
        """Escalate silent requests, each with a delay-proof record and a packet.

        Packet building runs after the status change has been committed; any
        escalation still without a packet is picked up again here, so a failed
        build is retried on the next sweep.
        """
        now = now or datetime.utcnow()
        decisions = self.engine.check_timeouts(now)
        self.complete_escalations(now, failures)
        return decisions

    def unpacked_escalations(self) -> list[DecisionModel]:
        """Escalation decisions of ESCALATED requests that have no packet yet."""
        has_packet = exists().where(EscalationPacketModel.decision_id == DecisionModel.id)
        return (
            self.db.query(DecisionModel)
            .join(DeletionRequestModel, DeletionRequestModel.id == DecisionModel.request_id)
            .filter(
                DecisionModel.action == DecisionAction.ESCALATE_TO_REGULATOR.value,
                DeletionRequestModel.status == RequestStatus.ESCALATED.value,
                ~has_packet,
            )
            .order_by(DecisionModel.created_at)
            .all()
        )

    def complete_escalations(
        self, now: Optional[datetime] = None, failures: Optional[list[str]] = None
    ) -> list[EscalationPacket]:
        now = now or datetime.utcnow()
        packets: list[EscalationPacket] = []
        for row in self.unpacked_escalations():
            decision = transform_decision(row)
            with self.locks.hold(decision.request_id):
                try:
                    request = get_request(self.db, decision.request_id, refresh=True)
                    if decision.rule == TIMEOUT_RULE and not self._has_timeout_proof(request.id):
                        self.evidence.collect_timeout_proof(request, now)
                    packet = self._build_packet(request, decision, now)
                except (RescrubError, OSError, SQLAlchemyError) as exc:
                    self.db.rollback()
                    logger.error("Escalation packet for %s not built: %s", decision.request_id, exc)
                    if failures is not None:
                        failures.append(f"{decision.request_id}: escalation packet: {exc}")
                    continue
            if packet:
                packets.append(packet)
        return packets

    def _has_timeout_proof(self, request_id: str) -> bool:
        return (
            self.db.query(EvidenceRecordModel.id)
            .filter(
                EvidenceRecordModel.request_id == request_id,
                EvidenceRecordModel.document_type == DocumentType.DELAY_VIOLATION_PROOF.value,
            )
            .first()
            is not None
        )

    def _build_packet(
        self, request: DeletionRequestModel, decision: Decision, now: datetime
    ) -> Optional[EscalationPacket]:
        try:
            return self.evidence.build_escalation_packet(request, decision, now)
        except SignatureValidationFailure as exc:
            logger.error("Escalation packet for %s left in DRAFT: %s", request.id, exc)
            draft = (
                self.db.query(EscalationPacketModel)
                .filter(EscalationPacketModel.decision_id == decision.id)
                .first()
            )
            return transform_packet(draft) if draft else None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _next_action(
        self,
        request: DeletionRequestModel,
        packet: Optional[EscalationPacketModel],
        deadline: Optional[datetime],
    ) -> tuple[Optional[str], Optional[datetime]]:
        status = RequestStatus(request.status)
        if status == RequestStatus.PENDING:
            return "SEND_INITIAL", None
        if status in (RequestStatus.SENT, RequestStatus.AWAITING_RESPONSE):
            if request.next_follow_up_at and (deadline is None or request.next_follow_up_at < deadline):
                return "FOLLOW_UP", request.next_follow_up_at
            return "ESCALATE_ON_TIMEOUT", deadline
        if status == RequestStatus.ESCALATED:
            if packet is None:
                return "BUILD_PACKET", None
            if packet.status == PacketStatus.DRAFT.value:
                return "FINALIZE_PACKET", None
            if packet.status == PacketStatus.FINALIZED.value:
                return "SEND_PACKET", None
            if packet.subject_notice_pending:
                return "NOTIFY_SUBJECT", None
        return None, None

    def campaign_status(self, request_id: str, now: Optional[datetime] = None) -> CampaignStatus:
        """Where a request stands and what the pipeline will do next."""
        now = now or datetime.utcnow()
        request = get_request(self.db, request_id, refresh=True)
        is_open = RequestStatus(request.status) not in TERMINAL_STATUSES

        def count(model, *criteria) -> int:
            return self.db.query(model).filter(model.request_id == request.id, *criteria).count()

        packet = (
            self.db.query(EscalationPacketModel)
            .filter(EscalationPacketModel.request_id == request.id)
            .order_by(EscalationPacketModel.created_at.desc())
            .first()
        )
        last_event = (
            self.db.query(RequestTimelineModel.occurred_at)
            .filter(RequestTimelineModel.request_id == request.id)
            .order_by(RequestTimelineModel.occurred_at.desc())
            .first()
        )

        deadline = None
        days_remaining = None
        remaining = 0
        if is_open and request.last_contact_at:
            deadline = request.last_contact_at + timedelta(days=self.cfg.RESPONSE_DEADLINE_DAYS)
            days_remaining = max(0, (deadline - now).days)
            remaining = len(follow_up_due_dates(
                request.last_contact_at, self.cfg.FOLLOW_UP_OFFSETS_DAYS, request.last_follow_up_offset
            ))
        next_action, next_due = self._next_action(request, packet, deadline)

        return CampaignStatus(
            request=transform_request(request),
            is_open=is_open,
            next_action=next_action,
            next_action_due=next_due,
            response_deadline=deadline,
            days_remaining=days_remaining,
            follow_ups_sent=count(OutboundMessageModel, OutboundMessageModel.kind == OutboundKind.FOLLOW_UP.value),
            follow_ups_remaining=remaining,
            messages_received=count(InboundMessageModel),
            evidence_records=count(EvidenceRecordModel),
            decisions=count(DecisionModel),
            packet_status=packet.status if packet else None,
            last_activity=last_event.occurred_at if last_event else None,
        )
