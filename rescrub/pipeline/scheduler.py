"""
Email automation scheduler.

One sweep:
1. escalates requests silent past the response deadline (delay proof + packet)
   and rebuilds packets for escalations that do not have one yet,
2. sends at most one follow-up reminder per waiting request,
3. sends FINALIZED escalation packets to the regulator,
4. notifies the subject of every sent packet still waiting for it.

Failed deliveries stay due and are picked up by the next sweep.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from rescrub.config import Settings, settings
from rescrub.database import SessionLocal
from rescrub.exceptions import DeliveryError
from rescrub.models import DeletionRequestModel, EscalationPacketModel, OutboundMessageModel
from rescrub.pipeline.campaign import CampaignManager
from rescrub.pipeline.crypto import CryptoValidator, EvidenceSigner
from rescrub.pipeline.decision import follow_up_due_dates
from rescrub.pipeline.letters import follow_up_letter, subject_notice
from rescrub.pipeline.locks import RequestLockRegistry, request_locks
from rescrub.pipeline.notifier import LoggingNotifier, Notifier
from rescrub.pipeline.records import add_timeline, get_request
from rescrub.schemas import (
    AutomationStats,
    OutboundKind,
    OutboundMessage,
    PacketStatus,
    RequestStatus,
    SweepReport,
    to_naive_utc,
)

logger = logging.getLogger(__name__)


class EmailAutomationScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        cfg: Settings = settings,
        notifier: Optional[Notifier] = None,
        signer: Optional[EvidenceSigner] = None,
        validator: Optional[CryptoValidator] = None,
        locks: RequestLockRegistry = request_locks,
    ):
        self.session_factory = session_factory
        self.cfg = cfg
        self.notifier = notifier or LoggingNotifier()
        self.signer = signer
        self.validator = validator
        self.locks = locks
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _manager(self, db: Session) -> CampaignManager:
        return CampaignManager(
            db,
            self.cfg,
            notifier=self.notifier,
            signer=self.signer,
            validator=self.validator,
            locks=self.locks,
        )

    # ------------------------------------------------------------------
    # Follow-up cadence
    # ------------------------------------------------------------------

    def schedule_follow_ups(self, db: Session, request: DeletionRequestModel) -> list[datetime]:
        """Due dates of the reminders still to send; the earliest is stored on the request."""
        if request.last_contact_at is None:
            return []
        due = follow_up_due_dates(
            request.last_contact_at, self.cfg.FOLLOW_UP_OFFSETS_DAYS, request.last_follow_up_offset
        )
        request.next_follow_up_at = due[0][1] if due else None
        db.commit()
        return [at for _, at in due]

    def _send_follow_up(
        self, manager: CampaignManager, request_id: str, now: datetime, report: SweepReport
    ) -> None:
        db = manager.db
        with self.locks.hold(request_id):
            request = get_request(db, request_id, refresh=True)
            if request.status != RequestStatus.AWAITING_RESPONSE.value or request.last_contact_at is None:
                return
            due = [
                offset
                for offset, at in follow_up_due_dates(
                    request.last_contact_at, self.cfg.FOLLOW_UP_OFFSETS_DAYS, request.last_follow_up_offset
                )
                if at <= now
            ]
            if not due:
                return
            # one reminder per sweep; skipped offsets are not sent late
            offset = max(due)
            subject, body = follow_up_letter(request, offset, now)
            try:
                manager.dispatch(
                    OutboundMessage(
                        request_id=request.id,
                        kind=OutboundKind.FOLLOW_UP,
                        recipient=request.operator_email,
                        subject=subject,
                        body=body,
                        offset_days=offset,
                    ),
                    now,
                )
            except DeliveryError as exc:
                db.rollback()
                logger.error("Follow-up for %s failed: %s", request.id, exc)
                report.failures.append(f"{request.id}: follow-up: {exc}")
                return

            request.follow_up_count += 1
            request.last_follow_up_offset = offset
            add_timeline(db, request.id, "FOLLOW_UP_SENT", f"{offset} дн.", occurred_at=now)
            db.commit()
            self.schedule_follow_ups(db, request)
            report.follow_ups_sent.append(request.id)
            logger.info("Follow-up (%d days) sent for %s", offset, request.id)

    # ------------------------------------------------------------------
    # Escalation delivery
    # ------------------------------------------------------------------

    def _send_packet(
        self, manager: CampaignManager, packet_id: str, now: datetime, report: SweepReport
    ) -> None:
        db = manager.db
        packet = manager.evidence.get_packet_row(packet_id)
        with self.locks.hold(packet.request_id):
            db.refresh(packet)
            if packet.status != PacketStatus.FINALIZED.value:
                return
            request = get_request(db, packet.request_id, refresh=True)
            try:
                manager.dispatch(
                    OutboundMessage(
                        request_id=request.id,
                        kind=OutboundKind.ESCALATION,
                        recipient=self.cfg.REGULATOR_EMAIL,
                        subject=packet.letter_subject,
                        body=packet.letter_body,
                        attachments=list(packet.evidence_ids_json or []),
                    ),
                    now,
                )
            except DeliveryError as exc:
                db.rollback()
                logger.error("Escalation packet %s not delivered: %s", packet.id, exc)
                report.failures.append(f"{request.id}: escalation: {exc}")
                return
            # the subject notice goes out separately and is retried on its own
            manager.evidence.mark_packet_sent(packet.id, now, notify_subject=bool(request.subject_email))
            report.escalations_sent.append(request.id)

    def _notify_subject(
        self, manager: CampaignManager, packet_id: str, now: datetime, report: SweepReport
    ) -> None:
        db = manager.db
        packet = manager.evidence.get_packet_row(packet_id)
        with self.locks.hold(packet.request_id):
            db.refresh(packet)
            if not packet.subject_notice_pending:
                return
            request = get_request(db, packet.request_id, refresh=True)
            subject, body = subject_notice(request, now)
            try:
                manager.dispatch(
                    OutboundMessage(
                        request_id=request.id,
                        kind=OutboundKind.SUBJECT_NOTICE,
                        recipient=request.subject_email,
                        subject=subject,
                        body=body,
                    ),
                    now,
                )
            except DeliveryError as exc:
                db.rollback()
                logger.error("Subject notice for %s not delivered: %s", request.id, exc)
                report.failures.append(f"{request.id}: subject notice: {exc}")
                return
            manager.evidence.mark_subject_notified(packet.id, now)
            report.subjects_notified.append(request.id)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run(self, now: Optional[datetime] = None, db: Optional[Session] = None) -> SweepReport:
        now = to_naive_utc(now) or datetime.utcnow()
        own_session = db is None
        if own_session:
            db = self.session_factory()
        try:
            manager = self._manager(db)
            report = SweepReport(ran_at=now)

            report.escalated = [d.request_id for d in manager.escalate_timeouts(now, report.failures)]

            waiting = [
                row.id
                for row in db.query(DeletionRequestModel.id)
                .filter(
                    DeletionRequestModel.status == RequestStatus.AWAITING_RESPONSE.value,
                    DeletionRequestModel.last_contact_at.isnot(None),
                )
                .all()
            ]
            for request_id in waiting:
                self._send_follow_up(manager, request_id, now, report)

            finalized = [
                row.id
                for row in db.query(EscalationPacketModel.id)
                .filter(EscalationPacketModel.status == PacketStatus.FINALIZED.value)
                .order_by(EscalationPacketModel.created_at)
                .all()
            ]
            for packet_id in finalized:
                self._send_packet(manager, packet_id, now, report)

            for packet_id in manager.evidence.pending_subject_notices():
                self._notify_subject(manager, packet_id, now, report)

            logger.info(
                "Sweep done: %d escalated, %d follow-ups, %d packets sent, %d subjects notified, %d failures",
                len(report.escalated), len(report.follow_ups_sent), len(report.escalations_sent),
                len(report.subjects_notified), len(report.failures),
            )
            return report
        finally:
            if own_session:
                db.close()

    def automation_stats(self, db: Session, days: int = 1, now: Optional[datetime] = None) -> AutomationStats:
        """Work waiting for the next sweep and what went out in the last ``days`` days."""
        now = to_naive_utc(now) or datetime.utcnow()
        since = now - timedelta(days=days)
        cutoff = now - timedelta(days=self.cfg.RESPONSE_DEADLINE_DAYS)
        awaiting = db.query(DeletionRequestModel).filter(
            DeletionRequestModel.status == RequestStatus.AWAITING_RESPONSE.value
        )
        sent = (
            db.query(OutboundMessageModel.kind, func.count(OutboundMessageModel.id))
            .filter(OutboundMessageModel.sent_at >= since)
            .group_by(OutboundMessageModel.kind)
            .all()
        )
        return AutomationStats(
            is_running=self.is_running,
            since=since,
            pending_follow_ups=awaiting.filter(DeletionRequestModel.next_follow_up_at <= now).count(),
            pending_escalations=awaiting.filter(DeletionRequestModel.last_contact_at < cutoff).count(),
            packets_awaiting_delivery=db.query(EscalationPacketModel)
            .filter(EscalationPacketModel.status == PacketStatus.FINALIZED.value)
            .count(),
            sent_by_kind={kind: n for kind, n in sent},
        )

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.run()
            except Exception:
                # keep the loop alive, the next sweep retries
                logger.exception("Email automation sweep failed")
            self._stop.wait(interval)

    def start(self, interval: Optional[float] = None) -> None:
        if self.is_running:
            logger.info("Email automation scheduler is already running")
            return
        interval = interval if interval is not None else self.cfg.SCHEDULER_INTERVAL_SECONDS
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, args=(interval,), name="email-automation", daemon=True)
        self._thread.start()
        logger.info("Email automation scheduler started (every %s seconds)", interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Email automation scheduler stopped")
