"""
Answer and option policy tests.
"""

import pytest

from ai.form_intelligence import (
    AnswerGenerator,
    OptionSelector,
    consent_value,
    is_placeholder_option,
    is_work_auth_question,
    numeric_answer,
    pick_work_authorization,
    template_answer,
    template_cover_letter,
    validate_ai_answer,
)
from api.errors import ProviderUnavailable
from core.models import Applicant, ApplicantProfile, FieldOption, FormField, Posting


def _options(*labels):
    return [FieldOption(label=label) for label in labels]


@pytest.fixture
def applicant():
    return Applicant(
        user_id=1,
        name="Jane Doe",
        profile=ApplicantProfile(first_name="Jane", last_name="Doe", skills=["Python", "Django", "AWS"]),
    )


@pytest.fixture
def posting():
    return Posting(title="Backend Engineer", company="Acme")


@pytest.mark.unit
class TestAnswerValidation:

    @pytest.mark.parametrize("answer", [
        "",
        "Yes.",
        "I have [X] years of experience with the stack.",
        "As an AI language model, I cannot answer that.",
        "Not specified in the resume provided.",
    ])
    def test_rejects_unusable_answers(self, answer):
        assert validate_ai_answer(answer) is False

    def test_accepts_concrete_answer(self):
        assert validate_ai_answer("I have built Django services for four years.") is True


@pytest.mark.unit
class TestWorkAuthorization:

    def test_detects_questions(self):
        assert is_work_auth_question("are you legally authorized to work in the united states?")
        assert is_work_auth_question("do you require visa sponsorship?")
        assert not is_work_auth_question("what is your favourite framework?")

    def test_descriptive_options(self):
        options = _options(
            "I require sponsorship to work in the US",
            "I am authorized to work and do not require sponsorship",
            "I am not authorized to work in the US",
        )
        assert pick_work_authorization("work authorization status", options) == 1

    def test_without_sponsorship_question_answers_yes(self):
        question = "are you authorized to work without sponsorship?"
        assert pick_work_authorization(question, _options("Yes", "No")) == 0

    def test_no_policy_match_returns_none(self):
        assert pick_work_authorization("work authorization", _options("Option A", "Option B")) is None


@pytest.mark.unit
class TestTemplates:

    @pytest.mark.parametrize("question,topic", [
        ("How many years of experience do you have with Python?", "experience"),
        ("What are your salary expectations?", "compensation"),
        ("When can you start?", "availability"),
        ("Are you willing to relocate?", "relocation"),
        ("What is your favourite colour?", "default"),
    ])
    def test_topic_routing(self, question, topic, applicant, posting):
        text, matched = template_answer(question, applicant, posting)
        assert matched == topic
        assert len(text) >= 10

    def test_cover_letter_mentions_role_and_name(self, applicant, posting):
        letter = template_cover_letter(applicant, posting)
        assert "Backend Engineer" in letter
        assert "Acme" in letter
        assert letter.endswith("Jane Doe")


@pytest.mark.unit
def test_consent_checkbox():
    assert consent_value(FormField(name="gdpr", label="I consent to data processing")) is True
    assert consent_value(FormField(name="required_box", label="Check", required=True)) is True
    assert consent_value(FormField(name="promo", label="Email me offers")) is None


@pytest.mark.unit
class TestAnswerGenerator:

    @pytest.mark.asyncio
    async def test_rejected_ai_answer_falls_back_to_template(self, mock_ai, applicant, posting):
        mock_ai.generate_answer.return_value = "N/A"
        field = FormField(name="start", label="When can you start?", required=True)

        text, source = await AnswerGenerator(mock_ai).answer(field, applicant, posting)

        assert source == "template"
        assert "two weeks" in text

    @pytest.mark.asyncio
    async def test_cover_letter_fallback(self, mock_ai, applicant, posting):
        mock_ai.generate_cover_letter.side_effect = ProviderUnavailable("no AI provider configured")

        text, source = await AnswerGenerator(mock_ai).cover_letter(applicant, posting)

        assert source == "template"
        assert text.startswith("Dear Hiring Manager")

    @pytest.mark.asyncio
    async def test_numeric_answer_for_number_field(self, mock_ai, applicant, posting):
        mock_ai.generate_answer.return_value = " 6 "
        field = FormField.from_dict({"name": "years", "label": "Years of Python experience", "type": "number"})

        assert await AnswerGenerator(mock_ai).answer(field, applicant, posting) == ("6", "ai_answer")


@pytest.mark.unit
@pytest.mark.parametrize("text,expected", [
    ("5", "5"),
    (" 7.5 ", "7.5"),
    ("$95,000", "95000"),
    ("My salary expectations are flexible", None),
    ("nan", None),
    (None, None),
])
def test_numeric_answer(text, expected):
    assert numeric_answer(text) == expected


@pytest.mark.unit
class TestOptionSelector:

    @pytest.mark.parametrize("label,expected", [
        ("Select...", True),
        ("-- Select --", True),
        ("Please choose an option", True),
        ("--", True),
        ("", True),
        ("Choose not to disclose", False),
        ("Remote", False),
    ])
    def test_placeholder_detection(self, label, expected):
        assert is_placeholder_option(FieldOption(label=label)) is expected

    @pytest.mark.asyncio
    async def test_first_option_fallback_skips_placeholder(self, mock_ai, applicant, posting):
        mock_ai.select_option.side_effect = ProviderUnavailable("down")
        field = FormField(name="office", label="Preferred office", options=_options("Select...", "Remote", "Berlin"))

        option, source = await OptionSelector(mock_ai).select(field, applicant, posting)

        assert option.label == "Remote"
        assert source == "first_option"

    @pytest.mark.asyncio
    async def test_ai_sees_only_real_options(self, mock_ai, applicant, posting):
        mock_ai.select_option.return_value = 1
        field = FormField(name="office", label="Preferred office", options=_options("--", "Remote", "Berlin"))

        option, source = await OptionSelector(mock_ai).select(field, applicant, posting)

        assert option.label == "Berlin"
        assert source == "ai_option"
        assert mock_ai.select_option.await_args.args[1] == ["Remote", "Berlin"]
