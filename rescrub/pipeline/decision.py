"""
Request state machine and decision engine.

All legal status transitions live in ``TRANSITIONS``; anything missing from
the table is an ``InvalidStateTransitionError``. COMPLETED and ESCALATED have
no outgoing edges, so terminal requests are never re-opened.

Status writes are compare-and-set updates on the expected status, which keeps
two writers from both acting on the same request even across processes.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from rescrub.config import Settings, settings
from rescrub.exceptions import ConcurrentUpdateError, InvalidStateTransitionError
from rescrub.models import DecisionModel, DeletionRequestModel
from rescrub.pipeline.locks import RequestLockRegistry, request_locks
from rescrub.pipeline.records import add_timeline, transform_decision
from rescrub.schemas import (
    AnalysisResult,
    Classification,
    Decision,
    DecisionAction,
    DecisionStats,
    RequestStatus,
    ViolationType,
    to_naive_utc,
)

logger = logging.getLogger(__name__)


class RequestEvent(str, Enum):
    SEND = "SEND"            # initial letter handed to the mailer
    DELIVERED = "DELIVERED"  # mailer accepted it, waiting for the operator
    CONFIRMED = "CONFIRMED"  # operator confirmed deletion
    REFUSED = "REFUSED"      # operator refused
    UNCLEAR = "UNCLEAR"      # reply needs a follow-up
    TIMEOUT = "TIMEOUT"      # statutory window elapsed


TIMEOUT_RULE = "statutory_timeout"

TRANSITIONS: dict[tuple[RequestStatus, RequestEvent], RequestStatus] = {
    (RequestStatus.PENDING, RequestEvent.SEND): RequestStatus.SENT,
    (RequestStatus.SENT, RequestEvent.DELIVERED): RequestStatus.AWAITING_RESPONSE,
    # a reply may arrive before delivery was acknowledged
    (RequestStatus.SENT, RequestEvent.CONFIRMED): RequestStatus.COMPLETED,
    (RequestStatus.SENT, RequestEvent.REFUSED): RequestStatus.ESCALATED,
    (RequestStatus.SENT, RequestEvent.UNCLEAR): RequestStatus.AWAITING_RESPONSE,
    (RequestStatus.AWAITING_RESPONSE, RequestEvent.CONFIRMED): RequestStatus.COMPLETED,
    (RequestStatus.AWAITING_RESPONSE, RequestEvent.REFUSED): RequestStatus.ESCALATED,
    (RequestStatus.AWAITING_RESPONSE, RequestEvent.UNCLEAR): RequestStatus.AWAITING_RESPONSE,
    (RequestStatus.AWAITING_RESPONSE, RequestEvent.TIMEOUT): RequestStatus.ESCALATED,
}

ACTION_EVENTS = {
    DecisionAction.AUTO_CLOSE: RequestEvent.CONFIRMED,
    DecisionAction.ESCALATE_TO_REGULATOR: RequestEvent.REFUSED,
    DecisionAction.WAIT: RequestEvent.UNCLEAR,
}


def next_status(status: RequestStatus, event: RequestEvent) -> RequestStatus:
    try:
        return TRANSITIONS[(RequestStatus(status), event)]
    except KeyError:
        raise InvalidStateTransitionError(RequestStatus(status).value, event.value) from None


def follow_up_due_dates(
    last_contact: datetime, offsets: list[int], last_sent_offset: int = 0
) -> list[tuple[int, datetime]]:
    """Remaining ``(offset_days, due_at)`` pairs after the last sent offset."""
    return [
        (offset, last_contact + timedelta(days=offset))
        for offset in sorted(offsets)
        if offset > last_sent_offset
    ]


def apply_transition(
    db: Session,
    request: DeletionRequestModel,
    event: RequestEvent,
    values: Optional[dict] = None,
) -> tuple[RequestStatus, RequestStatus]:
    """Compare-and-set the request to the status the table allows for ``event``.

    Returns ``(from_status, to_status)``. Nothing is committed.
    """
    from_status = RequestStatus(request.status)
    to_status = next_status(from_status, event)
    updates = dict(values or {})
    updates["status"] = to_status.value
    updated = (
        db.query(DeletionRequestModel)
        .filter(
            DeletionRequestModel.id == request.id,
            DeletionRequestModel.status == from_status.value,
        )
        .update(updates, synchronize_session=False)
    )
    if updated != 1:
        raise ConcurrentUpdateError(request.id, from_status.value)
    db.refresh(request)
    return from_status, to_status


class DecisionEngine:
    """Decides what happens to a request after each reply or timeout check.

    ``make_decision`` expects the caller to hold the request lock; the
    timeout sweep takes the locks itself.
    """

    def __init__(
        self,
        db: Session,
        cfg: Settings = settings,
        locks: RequestLockRegistry = request_locks,
    ):
        self.db = db
        self.cfg = cfg
        self.locks = locks

    # ------------------------------------------------------------------
    # Reply-driven decisions
    # ------------------------------------------------------------------

    def _choose(self, analysis: AnalysisResult) -> tuple[DecisionAction, str, str]:
        if (
            analysis.classification == Classification.POSITIVE
            and analysis.confidence >= self.cfg.POSITIVE_CONFIDENCE_THRESHOLD
        ):
            return (
                DecisionAction.AUTO_CLOSE,
                "positive_confirmation",
                "Оператор подтвердил удаление персональных данных",
            )
        if analysis.classification == Classification.NEGATIVE and analysis.requires_escalation:
            return (
                DecisionAction.ESCALATE_TO_REGULATOR,
                "operator_refusal",
                "Оператор отказал в удалении, требуется обращение в Роскомнадзор",
            )
        return (
            DecisionAction.WAIT,
            "uncertain_response",
            "Ответ оператора не содержит однозначного решения, запланировано повторное обращение",
        )

    def make_decision(
        self,
        request: DeletionRequestModel,
        analysis: AnalysisResult,
        now: Optional[datetime] = None,
    ) -> Decision:
        now = now or datetime.utcnow()
        action, rule, reason = self._choose(analysis)
        event = ACTION_EVENTS[action]

        # raises before anything is written for terminal / unsent requests
        next_status(RequestStatus(request.status), event)

        values: dict = {}
        violation: Optional[ViolationType] = None
        if action == DecisionAction.AUTO_CLOSE:
            values["completed_at"] = now
            values["next_follow_up_at"] = None
        elif action == DecisionAction.ESCALATE_TO_REGULATOR:
            violation = analysis.violation_type or ViolationType.REFUSAL_TO_DELETE
            values["escalated_at"] = now
            values["violation_type"] = violation.value
            values["next_follow_up_at"] = None
        else:
            # a reply restarts the statutory clock and the reminder cadence
            violation = analysis.violation_type
            due = follow_up_due_dates(now, self.cfg.FOLLOW_UP_OFFSETS_DAYS)
            values["follow_up_count"] = request.follow_up_count + 1
            values["last_contact_at"] = now
            values["last_follow_up_offset"] = 0
            values["next_follow_up_at"] = due[0][1] if due else None

        from_status, to_status = apply_transition(self.db, request, event, values)
        decision = self._record(
            request_id=request.id,
            analysis_id=analysis.id,
            action=action,
            confidence=analysis.confidence,
            rule=rule,
            reason=reason,
            violation=violation,
            from_status=from_status,
            to_status=to_status,
            now=now,
        )
        self.db.commit()
        logger.info(
            "Decision for %s: %s (%s -> %s)",
            request.id, action.value, from_status.value, to_status.value,
        )
        return decision

    # ------------------------------------------------------------------
    # Timeout sweep
    # ------------------------------------------------------------------

    def check_timeouts(self, now: Optional[datetime] = None) -> list[Decision]:
        """Escalate every AWAITING_RESPONSE request silent past the statutory window."""
        now = to_naive_utc(now) or datetime.utcnow()
        cutoff = now - timedelta(days=self.cfg.RESPONSE_DEADLINE_DAYS)
        candidates = [
            row.id
            for row in self.db.query(DeletionRequestModel.id)
            .filter(
                DeletionRequestModel.status == RequestStatus.AWAITING_RESPONSE.value,
                DeletionRequestModel.last_contact_at < cutoff,
            )
            .all()
        ]
        logger.info("Timeout sweep: %d candidate(s) older than %s", len(candidates), cutoff)

        decisions: list[Decision] = []
        for request_id in candidates:
            with self.locks.hold(request_id):
                request = self.db.get(DeletionRequestModel, request_id)
                self.db.refresh(request)
                # re-check under the lock, a reply may have landed meanwhile
                if (
                    request.status != RequestStatus.AWAITING_RESPONSE.value
                    or request.last_contact_at is None
                    or request.last_contact_at >= cutoff
                ):
                    continue
                try:
                    decisions.append(self._escalate_timeout(request, now))
                except ConcurrentUpdateError:
                    self.db.rollback()
                    logger.warning("Request %s changed during timeout sweep, skipped", request_id)
        return decisions

    def _escalate_timeout(self, request: DeletionRequestModel, now: datetime) -> Decision:
        days_silent = (now - request.last_contact_at).days
        values = {
            "escalated_at": now,
            "violation_type": ViolationType.NO_RESPONSE_TIMEOUT.value,
            "next_follow_up_at": None,
        }
        from_status, to_status = apply_transition(self.db, request, RequestEvent.TIMEOUT, values)
        decision = self._record(
            request_id=request.id,
            analysis_id=None,
            action=DecisionAction.ESCALATE_TO_REGULATOR,
            confidence=1.0,
            rule=TIMEOUT_RULE,
            reason=(
                f"Нет ответа оператора {days_silent} дн. при сроке "
                f"{self.cfg.RESPONSE_DEADLINE_DAYS} дн. (ст. 21 152-ФЗ)"
            ),
            violation=ViolationType.NO_RESPONSE_TIMEOUT,
            from_status=from_status,
            to_status=to_status,
            now=now,
        )
        self.db.commit()
        logger.info("Request %s escalated after %d days without response", request.id, days_silent)
        return decision

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _record(
        self,
        request_id: str,
        analysis_id: Optional[str],
        action: DecisionAction,
        confidence: float,
        rule: str,
        reason: str,
        violation: Optional[ViolationType],
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
    ) -> Decision:
        row = DecisionModel(
            id=str(uuid.uuid4()),
            request_id=request_id,
            analysis_id=analysis_id,
            action=action.value,
            confidence=confidence,
            rule=rule,
            reason=reason,
            violation_type=violation.value if violation else None,
            from_status=from_status.value,
            to_status=to_status.value,
            created_at=now,
        )
        self.db.add(row)
        add_timeline(self.db, request_id, to_status.value if to_status != from_status else action.value,
                     reason, occurred_at=now)
        return transform_decision(row)

    def history(self, request_id: str) -> list[Decision]:
        rows = (
            self.db.query(DecisionModel)
            .filter(DecisionModel.request_id == request_id)
            .order_by(DecisionModel.created_at)
            .all()
        )
        return [transform_decision(r) for r in rows]

    def decision_stats(self, days: int = 7, now: Optional[datetime] = None) -> DecisionStats:
        """Decision counts and confidence over the last ``days`` days."""
        now = to_naive_utc(now) or datetime.utcnow()
        since = now - timedelta(days=days)
        rows = self.db.query(DecisionModel).filter(DecisionModel.created_at >= since).all()

        by_action: dict[str, int] = {}
        by_rule: dict[str, int] = {}
        distribution = {"high": 0, "medium": 0, "low": 0}
        for row in rows:
            by_action[row.action] = by_action.get(row.action, 0) + 1
            by_rule[row.rule] = by_rule.get(row.rule, 0) + 1
            if row.confidence >= self.cfg.POSITIVE_CONFIDENCE_THRESHOLD:
                distribution["high"] += 1
            elif row.confidence >= 0.5:
                distribution["medium"] += 1
            else:
                distribution["low"] += 1

        total = len(rows)
        escalations = by_action.get(DecisionAction.ESCALATE_TO_REGULATOR.value, 0)
        return DecisionStats(
            since=since,
            total_decisions=total,
            by_action=by_action,
            by_rule=by_rule,
            average_confidence=round(sum(r.confidence for r in rows) / total, 3) if total else 0.0,
            escalation_rate=round(escalations / total, 3) if total else 0.0,
            confidence_distribution=distribution,
        )
