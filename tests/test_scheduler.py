"""
Unit tests for the email automation scheduler and outbound retries.
"""
import threading
from datetime import datetime, timedelta

import pytest

from rescrub.exceptions import DeliveryError, TransientDeliveryError
from rescrub.models import EscalationPacketModel, EvidenceRecordModel
from rescrub.pipeline.evidence import EvidenceCollector
from rescrub.pipeline.notifier import LoggingNotifier, Notifier, send_with_retry
from rescrub.pipeline.scheduler import EmailAutomationScheduler
from rescrub.schemas import (
    DeletionRequestCreate,
    OutboundKind,
    OutboundMessage,
    SweepReport,
)

T0 = datetime(2024, 3, 1, 9, 0)


class FlakyNotifier(Notifier):
    """Fails the first ``failures`` sends with ``error``."""

    def __init__(self, failures, error=TransientDeliveryError):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.delivered = []

    def send(self, message):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("smtp unavailable")
        self.delivered.append(message)
        return f"flaky-{self.calls}"


@pytest.fixture()
def scheduler(cfg, notifier):
    return EmailAutomationScheduler(cfg=cfg, notifier=notifier)


@pytest.fixture()
def awaiting(campaign):
    req = campaign.create_request(DeletionRequestCreate(
        subject_ref="subject-1",
        broker_ref="ООО «Брокер данных»",
        operator_email="dpo@broker.example",
        subject_email="subject@example.ru",
    ))
    return campaign.send_initial(req.id, now=T0)


def _kinds(notifier):
    return [m.kind for m in notifier.outbox]


# =====================================================================
# Follow-up cadence
# =====================================================================
class TestFollowUps:
    def test_schedule(self, db, scheduler, awaiting):
        due = scheduler.schedule_follow_ups(db, awaiting)
        assert due == [T0 + timedelta(days=d) for d in (14, 21, 28)]
        assert awaiting.next_follow_up_at == T0 + timedelta(days=14)

    def test_nothing_due_before_first_offset(self, db, scheduler, notifier, awaiting):
        report = scheduler.run(T0 + timedelta(days=13), db=db)
        assert report.follow_ups_sent == []
        assert _kinds(notifier) == [OutboundKind.INITIAL]

    def test_first_reminder_once(self, db, scheduler, notifier, awaiting):
        now = T0 + timedelta(days=15)
        assert scheduler.run(now, db=db).follow_ups_sent == [awaiting.id]
        assert scheduler.run(now, db=db).follow_ups_sent == []

        reminders = [m for m in notifier.outbox if m.kind == OutboundKind.FOLLOW_UP]
        assert [m.offset_days for m in reminders] == [14]
        db.refresh(awaiting)
        assert awaiting.follow_up_count == 1
        assert awaiting.last_follow_up_offset == 14
        assert awaiting.next_follow_up_at == T0 + timedelta(days=21)

    def test_one_send_per_sweep_for_largest_due_offset(self, db, scheduler, notifier, awaiting):
        scheduler.run(T0 + timedelta(days=22), db=db)
        scheduler.run(T0 + timedelta(days=29), db=db)
        scheduler.run(T0 + timedelta(days=29, hours=6), db=db)
        offsets = [m.offset_days for m in notifier.outbox if m.kind == OutboundKind.FOLLOW_UP]
        assert offsets == [21, 28]

    def test_failed_reminder_stays_due(self, db, cfg, awaiting):
        flaky = FlakyNotifier(failures=cfg.NOTIFY_MAX_ATTEMPTS)
        scheduler = EmailAutomationScheduler(cfg=cfg, notifier=flaky)
        now = T0 + timedelta(days=15)

        report = scheduler.run(now, db=db)
        assert report.follow_ups_sent == []
        assert len(report.failures) == 1
        db.refresh(awaiting)
        assert awaiting.last_follow_up_offset == 0

        report = scheduler.run(now, db=db)
        assert report.follow_ups_sent == [awaiting.id]


# =====================================================================
# Escalation
# =====================================================================
class TestEscalation:
    def test_timeout_escalates_and_sends_packet(self, db, cfg, scheduler, notifier, awaiting):
        report = scheduler.run(T0 + timedelta(days=31), db=db)
        assert report.escalated == [awaiting.id]
        assert report.escalations_sent == [awaiting.id]

        proofs = db.query(EvidenceRecordModel).filter(
            EvidenceRecordModel.document_type == "DELAY_VIOLATION_PROOF"
        ).all()
        assert len(proofs) == 1

        packet = db.query(EscalationPacketModel).one()
        assert packet.status == "SENT"
        assert proofs[0].id in packet.evidence_ids_json

        escalation = [m for m in notifier.outbox if m.kind == OutboundKind.ESCALATION]
        assert len(escalation) == 1
        assert escalation[0].recipient == cfg.REGULATOR_EMAIL
        notices = [m for m in notifier.outbox if m.kind == OutboundKind.SUBJECT_NOTICE]
        assert [m.recipient for m in notices] == ["subject@example.ru"]

    def test_second_sweep_sends_nothing_new(self, db, scheduler, notifier, awaiting):
        now = T0 + timedelta(days=31)
        scheduler.run(now, db=db)
        sent = len(notifier.outbox)
        report = scheduler.run(now + timedelta(days=1), db=db)
        assert report.escalated == []
        assert report.escalations_sent == []
        assert len(notifier.outbox) == sent

    def test_undelivered_packet_retried_next_sweep(self, db, cfg, awaiting):
        # fails every attempt of the regulator letter, then recovers
        flaky = FlakyNotifier(failures=cfg.NOTIFY_MAX_ATTEMPTS)
        scheduler = EmailAutomationScheduler(cfg=cfg, notifier=flaky)
        now = T0 + timedelta(days=31)

        report = scheduler.run(now, db=db)
        assert report.escalated == [awaiting.id]
        assert report.escalations_sent == []
        assert db.query(EscalationPacketModel).one().status == "FINALIZED"

        report = scheduler.run(now + timedelta(hours=6), db=db)
        assert report.escalations_sent == [awaiting.id]

    def test_failed_packet_build_rebuilt_next_sweep(self, db, scheduler, notifier, awaiting, monkeypatch):
        def unwritable(self, request, now=None):
            raise OSError("disk full")

        monkeypatch.setattr(EvidenceCollector, "collect_timeout_proof", unwritable)
        now = T0 + timedelta(days=31)
        report = scheduler.run(now, db=db)
        assert report.escalated == [awaiting.id]
        assert len(report.failures) == 1
        assert "disk full" in report.failures[0]
        assert db.query(EscalationPacketModel).count() == 0
        db.refresh(awaiting)
        assert awaiting.status == "ESCALATED"

        monkeypatch.undo()
        report = scheduler.run(now + timedelta(hours=6), db=db)
        assert report.escalated == []
        assert report.escalations_sent == [awaiting.id]
        packet = db.query(EscalationPacketModel).one()
        assert packet.status == "SENT"
        proof = db.query(EvidenceRecordModel).filter(
            EvidenceRecordModel.document_type == "DELAY_VIOLATION_PROOF"
        ).one()
        assert proof.id in packet.evidence_ids_json

    def test_failed_subject_notice_retried(self, db, cfg, awaiting):
        class NoticeOutage(FlakyNotifier):
            def send(self, message):
                if message.kind == OutboundKind.SUBJECT_NOTICE:
                    return super().send(message)
                self.delivered.append(message)
                return "ok"

        flaky = NoticeOutage(failures=cfg.NOTIFY_MAX_ATTEMPTS)
        scheduler = EmailAutomationScheduler(cfg=cfg, notifier=flaky)
        now = T0 + timedelta(days=31)

        report = scheduler.run(now, db=db)
        assert report.escalations_sent == [awaiting.id]
        assert report.subjects_notified == []
        assert len(report.failures) == 1
        assert "subject notice" in report.failures[0]
        packet = db.query(EscalationPacketModel).one()
        assert packet.status == "SENT"
        assert packet.subject_notice_pending is True

        report = scheduler.run(now + timedelta(hours=6), db=db)
        assert report.escalations_sent == []
        assert report.subjects_notified == [awaiting.id]
        db.refresh(packet)
        assert packet.subject_notice_pending is False
        assert packet.subject_notified_at == now + timedelta(hours=6)
        notices = [m for m in flaky.delivered if m.kind == OutboundKind.SUBJECT_NOTICE]
        assert [m.recipient for m in notices] == ["subject@example.ru"]

        assert scheduler.run(now + timedelta(days=1), db=db).subjects_notified == []

    def test_no_notice_without_subject_email(self, db, scheduler, notifier, campaign):
        req = campaign.create_request(DeletionRequestCreate(
            subject_ref="subject-2",
            broker_ref="ООО «Брокер данных»",
            operator_email="dpo@broker.example",
        ))
        campaign.send_initial(req.id, now=T0)
        report = scheduler.run(T0 + timedelta(days=31), db=db)
        assert report.escalations_sent == [req.id]
        assert report.subjects_notified == []
        assert db.query(EscalationPacketModel).one().subject_notice_pending is False


# =====================================================================
# Statistics
# =====================================================================
class TestAutomationStats:
    def test_pending_work(self, db, scheduler, awaiting):
        stats = scheduler.automation_stats(db, now=T0 + timedelta(days=15))
        assert stats.is_running is False
        assert stats.pending_follow_ups == 1
        assert stats.pending_escalations == 0
        assert stats.packets_awaiting_delivery == 0

        stats = scheduler.automation_stats(db, now=T0 + timedelta(days=31))
        assert stats.pending_escalations == 1

    def test_sent_by_kind(self, db, scheduler, awaiting):
        now = T0 + timedelta(days=31)
        scheduler.run(now, db=db)
        stats = scheduler.automation_stats(db, days=1, now=now)
        assert stats.since == now - timedelta(days=1)
        assert stats.sent_by_kind == {"ESCALATION": 1, "SUBJECT_NOTICE": 1}
        assert stats.pending_escalations == 0

        stats = scheduler.automation_stats(db, days=60, now=now)
        assert stats.sent_by_kind["INITIAL"] == 1


# =====================================================================
# Retry helper
# =====================================================================
class TestSendWithRetry:
    def _message(self):
        return OutboundMessage(
            request_id="req-1",
            kind=OutboundKind.FOLLOW_UP,
            recipient="dpo@broker.example",
            subject="s",
            body="b",
        )

    def test_transient_failures_retried(self, cfg):
        flaky = FlakyNotifier(failures=2)
        assert send_with_retry(flaky, self._message(), cfg) == "flaky-3"
        assert flaky.calls == 3

    def test_gives_up_after_max_attempts(self, cfg):
        flaky = FlakyNotifier(failures=10)
        with pytest.raises(TransientDeliveryError):
            send_with_retry(flaky, self._message(), cfg)
        assert flaky.calls == cfg.NOTIFY_MAX_ATTEMPTS

    def test_permanent_failure_not_retried(self, cfg):
        flaky = FlakyNotifier(failures=1, error=DeliveryError)
        with pytest.raises(DeliveryError):
            send_with_retry(flaky, self._message(), cfg)
        assert flaky.calls == 1


# =====================================================================
# Background thread
# =====================================================================
class TestLifecycle:
    def test_start_and_stop(self, cfg):
        class RecordingScheduler(EmailAutomationScheduler):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                self.ran = threading.Event()

            def run(self, now=None, db=None):
                self.ran.set()
                return SweepReport(ran_at=datetime.utcnow())

        sweeper = RecordingScheduler(cfg=cfg, notifier=LoggingNotifier())
        sweeper.start(interval=3600)
        assert sweeper.is_running
        assert sweeper.ran.wait(timeout=5)
        sweeper.stop(timeout=5)
        assert not sweeper.is_running


class TestCampaignStatus:
    def test_waiting_request(self, db, campaign, scheduler, awaiting):
        status = campaign.campaign_status(awaiting.id, now=T0 + timedelta(days=10))
        assert status.is_open
        assert status.next_action == "FOLLOW_UP"
        assert status.next_action_due == T0 + timedelta(days=14)
        assert status.response_deadline == T0 + timedelta(days=30)
        assert status.days_remaining == 20
        assert status.follow_ups_remaining == 3

        scheduler.run(T0 + timedelta(days=29), db=db)
        status = campaign.campaign_status(awaiting.id, now=T0 + timedelta(days=29))
        assert status.follow_ups_sent == 1
        assert status.follow_ups_remaining == 0
        assert status.next_action == "ESCALATE_ON_TIMEOUT"
        assert status.next_action_due == T0 + timedelta(days=30)

    def test_escalated_request(self, db, campaign, scheduler, awaiting):
        now = T0 + timedelta(days=31)
        scheduler.run(now, db=db)
        status = campaign.campaign_status(awaiting.id, now=now)
        assert not status.is_open
        assert status.next_action is None
        assert status.response_deadline is None
        assert status.packet_status == "SENT"
        assert status.evidence_records == 1
        assert status.last_activity is not None
