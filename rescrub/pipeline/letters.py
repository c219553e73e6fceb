"""
Letter templates: initial request, follow-up reminders, regulator complaint
and the notice sent to the data subject.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from rescrub.models import DeletionRequestModel, EvidenceRecordModel

LEGAL_BASIS_LINES = [
    "- Федеральный закон № 152-ФЗ «О персональных данных», статья 14 (право на уничтожение данных)",
    "- Федеральный закон № 152-ФЗ, статья 21 (срок ответа оператора: 30 дней)",
]

VIOLATION_TEXT = {
    "REFUSAL_TO_DELETE": "отказ в удалении персональных данных",
    "PARTIAL_DELETION": "частичное удаление персональных данных",
    "NO_RESPONSE_TIMEOUT": "отсутствие ответа в установленный законом срок",
    "INVALID_JUSTIFICATION": "отказ без законного основания",
}


def _date(moment: datetime) -> str:
    return moment.strftime("%d.%m.%Y")


def initial_letter(request: DeletionRequestModel, now: Optional[datetime] = None) -> tuple[str, str]:
    """Первичное требование об удалении"""
    now = now or datetime.utcnow()
    subject = f"[{request.tracking_id}] Требование об уничтожении персональных данных (152-ФЗ)"
    body_parts = [
        "Уважаемый оператор персональных данных,",
        "",
        "На основании статьи 14 Федерального закона № 152-ФЗ «О персональных данных»",
        "требую прекратить обработку и уничтожить мои персональные данные.",
        "",
        "【Реквизиты обращения】",
        f"- Номер обращения: {request.tracking_id}",
        f"- Оператор: {request.broker_ref}",
        f"- Дата обращения: {_date(now)}",
        "",
        "【Правовые основания】",
        *LEGAL_BASIS_LINES,
        "",
        "Прошу сообщить о результатах рассмотрения в течение 30 дней, указав номер обращения в теме ответа.",
    ]
    return subject, "\n".join(body_parts)


def follow_up_letter(
    request: DeletionRequestModel, offset_days: int, now: Optional[datetime] = None
) -> tuple[str, str]:
    """Повторное напоминание"""
    now = now or datetime.utcnow()
    sent = request.last_contact_at or request.first_sent_at or now
    deadline = sent + timedelta(days=30)
    subject = f"[{request.tracking_id}] Напоминание: требование об уничтожении персональных данных"
    body_parts = [
        "Уважаемый оператор персональных данных,",
        "",
        f"{_date(sent)} вам направлено требование № {request.tracking_id} об уничтожении персональных данных.",
        f"С момента обращения прошло {offset_days} дн., окончательный ответ не получен.",
        "",
        f"Срок ответа по статье 21 152-ФЗ истекает {_date(deadline)}.",
        "После истечения срока обращение будет направлено в Роскомнадзор.",
    ]
    return subject, "\n".join(body_parts)


def escalation_letter(
    request: DeletionRequestModel,
    violation_type: Optional[str],
    evidence: Sequence[EvidenceRecordModel],
    manifest_hash: str,
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Жалоба в Роскомнадзор"""
    now = now or datetime.utcnow()
    violation = VIOLATION_TEXT.get(violation_type or "", "нарушение требований 152-ФЗ")
    subject = f"[{request.tracking_id}] Жалоба на нарушение 152-ФЗ оператором {request.broker_ref}"
    body_parts = [
        "В Федеральную службу по надзору в сфере связи, информационных технологий и массовых коммуникаций",
        "",
        f"Оператор персональных данных {request.broker_ref} ({request.operator_email}) допустил нарушение:",
        f"{violation}.",
        "",
        "【Хронология】",
        f"- Требование направлено: {_date(request.first_sent_at) if request.first_sent_at else 'н/д'}",
        f"- Последний контакт: {_date(request.last_contact_at) if request.last_contact_at else 'н/д'}",
        f"- Дата жалобы: {_date(now)}",
        "",
        "【Доказательства】",
    ]
    for record in evidence:
        body_parts.append(
            f"- {record.document_type} от {_date(record.created_at)}, SHA-256 HMAC {record.content_hash}"
        )
    body_parts.extend([
        "",
        f"Контрольная сумма пакета доказательств: {manifest_hash}",
        "",
        "【Правовые основания】",
        *LEGAL_BASIS_LINES,
        "",
        "Прошу провести проверку и обязать оператора уничтожить персональные данные.",
    ])
    return subject, "\n".join(body_parts)


def subject_notice(request: DeletionRequestModel, now: Optional[datetime] = None) -> tuple[str, str]:
    """Уведомление субъекта об эскалации"""
    now = now or datetime.utcnow()
    subject = f"[{request.tracking_id}] Ваше обращение передано в Роскомнадзор"
    body_parts = [
        "Здравствуйте,",
        "",
        f"Оператор {request.broker_ref} не выполнил требование № {request.tracking_id}.",
        f"{_date(now)} жалоба с пакетом доказательств направлена в Роскомнадзор.",
    ]
    return subject, "\n".join(body_parts)
