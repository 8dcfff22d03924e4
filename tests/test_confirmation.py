from audit_chatbot.conversation.confirmation import (
    ConfirmationResponse,
    ResponseKind,
    format_restatement,
    restate,
)
from audit_chatbot.core.patterns import PatternMatcher


def test_restatement_lists_every_filter(normalizer):
    intent = PatternMatcher(normalizer).match("findings from 2021 to 2022")
    assert restate(intent) == (("Year", "is one of", "2021, 2022"),)


def test_format_restatement(normalizer):
    intent = PatternMatcher(normalizer).match("show all IT findings 2024")
    assert format_restatement(restate(intent)) == "Department is IT; Year is 2024"


def test_response_constructors():
    assert ConfirmationResponse.confirm().kind is ResponseKind.CONFIRM
    assert ConfirmationResponse.reject().kind is ResponseKind.REJECT
    corrected = ConfirmationResponse.correct("make it 2023")
    assert corrected.kind is ResponseKind.CORRECT
    assert corrected.corrected_text == "make it 2023"
