"""
Operator reply analyzer.

Scores every rule group by keyword hits per line (Russian and English) and
maps the result onto POSITIVE / NEGATIVE / UNCERTAIN. Every determination is
backed by evidence spans. Analysis runs entirely in-process: message content
contains subject PII and must not leave the service.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from rescrub.config import Settings, settings
from rescrub.exceptions import InvalidInputError
from rescrub.schemas import (
    AnalysisResult,
    Classification,
    Evidence,
    InboundMessage,
    ResponseType,
    ViolationType,
)

logger = logging.getLogger(__name__)

# (regex pattern, weight)
RESPONSE_KEYWORDS: dict[str, list[tuple[str, int]]] = {
    "affirmative": [
        (r"удал[её]н[ыао]?\b", 4),
        (r"\bудалили\b", 4),
        (r"(стерт|стёрт|уничтожен)[ыао]?\b", 4),
        (r"(прекратили|прекращена)\s+обработк", 3),
        (r"успешно", 1),
        (r"\b(deleted|removed|erased|destroyed)\b", 4),
        (r"no longer (process|store|hold)", 3),
        (r"successfully", 1),
    ],
    "refusal": [
        (r"\bне\s+(можем|может|будем|имеем\s+возможност\w*)\b", 4),
        (r"\b(отказ\w*|отклон\w*)", 4),
        (r"не\s+подлеж\w*\s+удалени", 4),
        (r"\b(невозможно|нельзя)\b", 3),
        (r"\b(cannot|can not|can't|unable to|will not|won't)\b", 4),
        (r"\b(refuse\w*|decline\w*|denied|reject\w*)\b", 4),
    ],
    "hedging": [
        (r"рассм[оа]тр\w*", 3),
        (r"в\s+процессе", 3),
        (r"будут\s+удален", 3),
        (r"в\s+ближайшее\s+время", 2),
        (r"\b(возможно|вероятно)\b", 2),
        (r"проводим\s+проверк", 2),
        (r"under review|being reviewed|in progress|looking into", 3),
        (r"will be (deleted|removed|erased)", 3),
        (r"as soon as possible|shortly", 2),
    ],
    "partial": [
        (r"частичн\w*", 3),
        (r"некоторые\s+данные|часть\s+(данных|информации)", 3),
        (r"\bpartial\w*|some of (your|the) data|part of (your|the) data", 3),
    ],
    "clarification": [
        (r"уточните|предоставьте|подтвердите\s+личность", 3),
        (r"копи\w*\s+паспорт", 3),
        (r"дополнительн\w+\s+(информац|сведени)", 3),
        (r"clarify|please provide|verify your identity|additional information", 3),
    ],
    "auto_reply": [
        (r"автоматическ\w+\s+(ответ|сообщени)", 3),
        (r"не\s+отвечайте", 3),
        (r"получили\s+ваше\s+обращение|обращение\s+зарегистрирован", 3),
        (r"automatic reply|auto-reply|do not reply|we have received your request", 3),
    ],
}

# "данные не были удалены" must not count as a confirmation
NEGATED_DELETION = re.compile(
    r"(\bне|\bnot|n't|\bnever)\s+(был[иао]?\s+|been\s+)?"
    r"(удал[её]н|стерт|стёрт|уничтожен|deleted|removed|erased|destroyed)\w*",
    re.IGNORECASE,
)
NEGATED_DELETION_WEIGHT = 4

LEGAL_BASIS = re.compile(
    r"152-?фз|федеральн\w+\s+закон|законодательств|стать[яиеюё]\s*\d+|ст\.\s*\d+|"
    r"gdpr|article\s+\d+|legal (basis|obligation)|required by law",
    re.IGNORECASE,
)

BASE_CONFIDENCE = 0.5
WEIGHT_STEP = 0.1
MAX_CONFIDENCE = 0.99
MAX_EVIDENCE = 5


class Verdict(BaseModel):
    """Nominal label from a strategy, before the analyzer applies policy."""
    classification: Classification
    response_type: ResponseType
    confidence: float
    legal_basis_cited: bool = False
    language: str = "ru"
    matched_rules: list[str] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)


class ClassificationStrategy(ABC):
    """Pluggable classifier behind the analyzer."""

    name: str = "abstract"

    @abstractmethod
    def classify(self, text: str) -> Verdict:
        ...


def detect_language(text: str) -> str:
    cyrillic = len(re.findall(r"[а-яё]", text, re.IGNORECASE))
    latin = len(re.findall(r"[a-z]", text, re.IGNORECASE))
    return "ru" if cyrillic >= latin else "en"


def _clamp(value: float) -> float:
    return round(max(0.0, min(MAX_CONFIDENCE, value)), 2)


class RuleBasedStrategy(ClassificationStrategy):
    """Weighted keyword rules, one hit per pattern."""

    name = "rule_based"

    def __init__(self, keywords: Optional[dict[str, list[tuple[str, int]]]] = None):
        self.keywords = keywords or RESPONSE_KEYWORDS

    def _score(self, lines: list[str]) -> tuple[dict[str, int], list[str], list[Evidence]]:
        scores: dict[str, int] = {group: 0 for group in self.keywords}
        scores.setdefault("refusal", 0)
        matched: list[str] = []
        evidence: list[Evidence] = []

        # negated confirmations count as refusals and are blanked out afterwards
        stripped: list[str] = []
        negation_seen = False
        for line_num, line in enumerate(lines, 1):
            if NEGATED_DELETION.search(line):
                if not negation_seen:
                    scores["refusal"] += NEGATED_DELETION_WEIGHT
                    matched.append("refusal:negated_deletion")
                    evidence.append(Evidence(quote=line.strip(), location=f"line {line_num}"))
                    negation_seen = True
                line = NEGATED_DELETION.sub(" ", line)
            stripped.append(line)

        for group, patterns in self.keywords.items():
            for pattern, weight in patterns:
                for line_num, line in enumerate(stripped, 1):
                    if re.search(pattern, line, re.IGNORECASE):
                        scores[group] += weight
                        matched.append(f"{group}:{pattern}")
                        evidence.append(
                            Evidence(quote=lines[line_num - 1].strip(), location=f"line {line_num}")
                        )
                        break  # one hit per pattern is enough
        return scores, matched, evidence

    def classify(self, text: str) -> Verdict:
        lines = text.split("\n")
        scores, matched, evidence = self._score(lines)

        positive = scores.get("affirmative", 0)
        negative = scores.get("refusal", 0)
        hedging = scores.get("hedging", 0)
        partial = scores.get("partial", 0)
        clarification = scores.get("clarification", 0)
        auto_reply = scores.get("auto_reply", 0)

        if partial or (positive and negative):
            response_type = ResponseType.PARTIAL_COMPLIANCE
            classification = Classification.UNCERTAIN
            confidence = BASE_CONFIDENCE
        elif clarification:
            # "cannot delete without a passport copy" is a request for identification
            response_type = ResponseType.CLARIFICATION_REQUEST
            classification = Classification.UNCERTAIN
            confidence = BASE_CONFIDENCE
        elif negative:
            response_type = ResponseType.REJECTION
            classification = Classification.NEGATIVE
            confidence = BASE_CONFIDENCE + WEIGHT_STEP * (negative - hedging)
        elif positive:
            response_type = ResponseType.POSITIVE_CONFIRMATION
            classification = Classification.POSITIVE
            confidence = BASE_CONFIDENCE + WEIGHT_STEP * (positive - hedging)
        elif auto_reply:
            response_type = ResponseType.AUTO_GENERATED
            classification = Classification.UNCERTAIN
            confidence = BASE_CONFIDENCE
        else:
            response_type = ResponseType.UNKNOWN
            classification = Classification.UNCERTAIN
            confidence = BASE_CONFIDENCE if hedging else 0.3

        # deduplicate evidence, keep first few
        seen: set[str] = set()
        unique: list[Evidence] = []
        for ev in evidence:
            if ev.quote and ev.quote not in seen:
                seen.add(ev.quote)
                unique.append(ev)

        return Verdict(
            classification=classification,
            response_type=response_type,
            confidence=_clamp(confidence),
            legal_basis_cited=bool(LEGAL_BASIS.search(text)),
            language=detect_language(text),
            matched_rules=matched,
            evidence=unique[:MAX_EVIDENCE],
        )


class ResponseAnalyzer:
    """Turns an inbound operator message into an AnalysisResult.

    The strategy supplies a nominal label; this class applies the confidence
    policy. POSITIVE at or below the action threshold and NEGATIVE below it
    become UNCERTAIN, and UNCERTAIN confidence always stays under the
    uncertainty ceiling.
    """

    def __init__(
        self,
        strategy: Optional[ClassificationStrategy] = None,
        cfg: Settings = settings,
    ):
        self.strategy = strategy or RuleBasedStrategy()
        self.action_threshold = cfg.POSITIVE_CONFIDENCE_THRESHOLD
        self.uncertain_ceiling = cfg.UNCERTAIN_CONFIDENCE_CEILING

    def _clears_threshold(self, classification: Classification, confidence: float) -> bool:
        # a confirmation must beat the threshold, a refusal may sit on it
        if classification == Classification.POSITIVE:
            return confidence > self.action_threshold
        if classification == Classification.NEGATIVE:
            return confidence >= self.action_threshold
        return True

    def analyze(self, message: InboundMessage) -> AnalysisResult:
        content = message.content or ""
        if not content.strip():
            raise InvalidInputError(f"Message {message.id} has empty content")

        verdict = self.strategy.classify(content)
        classification = verdict.classification
        confidence = verdict.confidence

        if not self._clears_threshold(classification, confidence):
            logger.info(
                "Downgrading %s (confidence %.2f) to UNCERTAIN for message %s",
                classification.value, confidence, message.id,
            )
            classification = Classification.UNCERTAIN

        if classification == Classification.UNCERTAIN:
            confidence = round(max(0.05, min(confidence, self.uncertain_ceiling) - 0.1), 2)

        violation: Optional[ViolationType] = None
        if classification == Classification.NEGATIVE:
            violation = (
                ViolationType.REFUSAL_TO_DELETE
                if verdict.legal_basis_cited
                else ViolationType.INVALID_JUSTIFICATION
            )
        elif verdict.response_type == ResponseType.PARTIAL_COMPLIANCE:
            violation = ViolationType.PARTIAL_DELETION

        result = AnalysisResult(
            message_id=message.id,
            request_id=message.request_id,
            classification=classification,
            response_type=verdict.response_type,
            confidence=confidence,
            evidence_found=bool(verdict.evidence),
            requires_escalation=classification == Classification.NEGATIVE,
            violation_type=violation,
            language=verdict.language,
            matched_rules=verdict.matched_rules,
            evidence=verdict.evidence,
        )
        logger.info(
            "Analyzed message %s: %s/%s confidence=%.2f via %s",
            message.id, result.classification.value, result.response_type.value,
            result.confidence, self.strategy.name,
        )
        return result
