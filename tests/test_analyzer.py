"""
Unit tests for the operator reply analyzer.
"""
from datetime import datetime

import pytest

from rescrub.exceptions import InvalidInputError
from rescrub.pipeline.analyzer import (
    ClassificationStrategy,
    ResponseAnalyzer,
    RuleBasedStrategy,
    Verdict,
    detect_language,
)
from rescrub.schemas import (
    Classification,
    InboundMessage,
    ResponseType,
    ViolationType,
)


def _message(content: str) -> InboundMessage:
    return InboundMessage(
        request_id="req-1",
        content=content,
        received_at=datetime(2024, 3, 10, 12, 0),
    )


@pytest.fixture()
def analyzer():
    return ResponseAnalyzer()


# =====================================================================
# Positive replies
# =====================================================================
class TestPositive:
    def test_confirmed_deletion(self, analyzer):
        result = analyzer.analyze(_message("Ваши данные успешно удалены из нашей системы."))
        assert result.classification == Classification.POSITIVE
        assert result.response_type == ResponseType.POSITIVE_CONFIRMATION
        assert result.confidence > 0.8
        assert result.requires_escalation is False
        assert result.violation_type is None
        assert result.language == "ru"

    def test_evidence_is_verbatim(self, analyzer):
        text = "Добрый день.\nВаши данные успешно удалены из нашей системы.\nС уважением"
        result = analyzer.analyze(_message(text))
        assert result.evidence_found is True
        quotes = [e.quote for e in result.evidence]
        assert "Ваши данные успешно удалены из нашей системы." in quotes
        assert any(e.location == "line 2" for e in result.evidence)

    def test_english_confirmation(self, analyzer):
        result = analyzer.analyze(_message("Your personal data has been deleted."))
        assert result.classification == Classification.POSITIVE
        assert result.language == "en"


# =====================================================================
# Negative replies
# =====================================================================
class TestNegative:
    def test_refusal_without_legal_basis(self, analyzer):
        result = analyzer.analyze(_message("Мы не можем удалить ваши данные."))
        assert result.classification == Classification.NEGATIVE
        assert result.confidence >= 0.8
        assert result.requires_escalation is True
        assert result.violation_type == ViolationType.INVALID_JUSTIFICATION

    def test_refusal_citing_law(self, analyzer):
        result = analyzer.analyze(
            _message("Мы не можем удалить ваши данные в соответствии с 152-ФЗ.")
        )
        assert result.classification == Classification.NEGATIVE
        assert result.violation_type == ViolationType.REFUSAL_TO_DELETE

    def test_negated_confirmation_is_refusal(self, analyzer):
        result = analyzer.analyze(_message("Ваши данные не были удалены."))
        assert result.classification == Classification.NEGATIVE
        assert "refusal:negated_deletion" in result.matched_rules

    def test_english_refusal(self, analyzer):
        result = analyzer.analyze(_message("We cannot delete your data."))
        assert result.classification == Classification.NEGATIVE
        assert result.requires_escalation is True


# =====================================================================
# Uncertain replies
# =====================================================================
class TestUncertain:
    def test_under_review(self, analyzer):
        result = analyzer.analyze(_message("Ваш запрос находится на рассмотрении."))
        assert result.classification == Classification.UNCERTAIN
        assert result.confidence < 0.6
        assert result.requires_escalation is False

    def test_hedged_promise_is_downgraded(self, analyzer):
        result = analyzer.analyze(_message("Ваши данные будут удалены в ближайшее время."))
        assert result.classification == Classification.UNCERTAIN
        assert result.confidence < 0.6

    def test_partial_deletion(self, analyzer):
        result = analyzer.analyze(
            _message("Часть данных удалена, остальные мы обязаны хранить.")
        )
        assert result.classification == Classification.UNCERTAIN
        assert result.response_type == ResponseType.PARTIAL_COMPLIANCE
        assert result.violation_type == ViolationType.PARTIAL_DELETION
        assert result.requires_escalation is False

    def test_clarification_request(self, analyzer):
        result = analyzer.analyze(_message("Для удаления предоставьте копию паспорта."))
        assert result.classification == Classification.UNCERTAIN
        assert result.response_type == ResponseType.CLARIFICATION_REQUEST

    def test_auto_reply(self, analyzer):
        result = analyzer.analyze(
            _message("Это автоматический ответ. Мы получили ваше обращение.")
        )
        assert result.classification == Classification.UNCERTAIN
        assert result.response_type == ResponseType.AUTO_GENERATED

    def test_nothing_matched(self, analyzer):
        result = analyzer.analyze(_message("Здравствуйте."))
        assert result.classification == Classification.UNCERTAIN
        assert result.response_type == ResponseType.UNKNOWN
        assert result.evidence == []


# =====================================================================
# Input validation and policy
# =====================================================================
class TestPolicy:
    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_empty_content_rejected(self, analyzer, content):
        with pytest.raises(InvalidInputError):
            analyzer.analyze(_message(content))

    def test_low_confidence_label_downgraded(self):
        class Lukewarm(ClassificationStrategy):
            name = "lukewarm"

            def classify(self, text):
                return Verdict(
                    classification=Classification.NEGATIVE,
                    response_type=ResponseType.REJECTION,
                    confidence=0.7,
                )

        result = ResponseAnalyzer(strategy=Lukewarm()).analyze(_message("что-то"))
        assert result.classification == Classification.UNCERTAIN
        assert result.requires_escalation is False
        assert result.confidence < 0.6

    def test_positive_on_threshold_downgraded(self, analyzer):
        # one weight-3 affirmative scores exactly 0.8
        result = analyzer.analyze(_message("Мы прекратили обработку ваших данных"))
        assert result.classification == Classification.UNCERTAIN
        assert result.confidence < 0.6

    @pytest.mark.parametrize("classification,expected", [
        (Classification.POSITIVE, Classification.UNCERTAIN),
        (Classification.NEGATIVE, Classification.NEGATIVE),
    ])
    def test_threshold_boundary(self, classification, expected):
        class OnTheLine(ClassificationStrategy):
            name = "on_the_line"

            def classify(self, text):
                return Verdict(
                    classification=classification,
                    response_type=ResponseType.UNKNOWN,
                    confidence=0.8,
                )

        result = ResponseAnalyzer(strategy=OnTheLine()).analyze(_message("что-то"))
        assert result.classification == expected

    def test_result_references_message(self, analyzer):
        message = _message("Ваши данные удалены.")
        result = analyzer.analyze(message)
        assert result.message_id == message.id
        assert result.request_id == "req-1"

    def test_strategy_is_pure(self):
        strategy = RuleBasedStrategy()
        text = "Мы не можем удалить ваши данные."
        assert strategy.classify(text) == strategy.classify(text)

    def test_detect_language(self):
        assert detect_language("Данные удалены") == "ru"
        assert detect_language("Data deleted") == "en"
