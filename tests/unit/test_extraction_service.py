"""Unit tests for DefaultExtractionService."""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoryengine.models.llm import LLMResponse
from memoryengine.models.memory import ConversationMessage, MemoryCategory
from memoryengine.services.extraction.default import DefaultExtractionService, classify_category


def _llm_returning(content: str = None, error: Exception = None) -> MagicMock:
    llm = MagicMock()
    llm.is_available.return_value = True
    if error is not None:
        llm.complete = AsyncMock(side_effect=error)
    else:
        llm.complete = AsyncMock(return_value=LLMResponse(
            content=content, model="test", prompt_tokens=10, completion_tokens=10,
        ))
    return llm


@pytest.fixture
def extraction():
    return DefaultExtractionService(llm_service=None)


class TestExplicitTriggers:

    @pytest.mark.asyncio
    async def test_remember_that(self, extraction):
        facts = await extraction.extract("Please remember that I'm allergic to peanuts")

        assert len(facts) == 1
        fact = facts[0]
        assert fact.text == "I'm allergic to peanuts"
        assert fact.category == MemoryCategory.PERSONAL_INFO
        assert fact.explicit is True
        assert fact.confidence == pytest.approx(0.95)
        assert fact.importance == pytest.approx(0.9)
        assert "peanut" in fact.keywords

    @pytest.mark.parametrize("message, expected", [
        ("Don't forget I train on Tuesdays", "I train on Tuesdays"),
        ("Keep in mind that I work night shifts.", "I work night shifts"),
        ("Note that I hate burpees", "I hate burpees"),
        ("I only have dumbbells at home, remember this.", "I only have dumbbells at home"),
    ])
    def test_trigger_variants(self, extraction, message, expected):
        fact = extraction.detect_explicit_trigger(message)

        assert fact is not None
        assert fact.text == expected

    def test_back_reference_uses_last_user_turn(self, extraction):
        context = [
            ConversationMessage(role="user", content="I'm vegetarian"),
            ConversationMessage(role="assistant", content="Thanks for sharing!"),
        ]

        fact = extraction.detect_explicit_trigger("Remember that.", context)

        assert fact is not None
        assert fact.text == "I'm vegetarian"
        assert fact.category == MemoryCategory.PERSONAL_INFO

    def test_no_trigger(self, extraction):
        assert extraction.detect_explicit_trigger("I like running") is None


class TestHeuristics:

    @pytest.mark.asyncio
    async def test_correction_is_a_fact(self, extraction):
        facts = await extraction.extract("Actually, I can eat peanuts now")

        assert [f.text for f in facts] == ["I can eat peanuts now"]
        assert facts[0].category == MemoryCategory.PERSONAL_INFO
        assert facts[0].confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_questions_and_small_talk_skipped(self, extraction):
        assert await extraction.extract("What can't I eat?") == []
        assert await extraction.extract("Hi there! How's it going?") == []
        assert await extraction.extract("   ") == []

    def test_multiple_sentences(self, extraction):
        facts = extraction.extract_heuristic("I prefer morning workouts. I work from home. Thanks!")

        assert [f.text for f in facts] == ["I prefer morning workouts", "I work from home"]
        assert facts[0].category == MemoryCategory.PREFERENCE
        assert facts[1].category == MemoryCategory.CONTEXT

    @pytest.mark.asyncio
    async def test_explicit_and_heuristic_collapse(self, extraction):
        facts = await extraction.extract("I hate burpees. Remember that I hate burpees")

        assert len(facts) == 1
        assert facts[0].explicit is True

    @pytest.mark.asyncio
    async def test_source_ids_attached(self, extraction):
        facts = await extraction.extract("I love swimming", message_id="msg_1", conversation_id="conv_1")

        assert facts[0].source_message_id == "msg_1"
        assert facts[0].source_conversation_id == "conv_1"


class TestClassifyCategory:

    @pytest.mark.parametrize("text, category", [
        ("Always keep answers short", MemoryCategory.INSTRUCTION),
        ("I'm allergic to shellfish", MemoryCategory.PERSONAL_INFO),
        ("My goal is to run a marathon", MemoryCategory.PERSONAL_INFO),
        ("I love yoga", MemoryCategory.PREFERENCE),
        ("I work night shifts", MemoryCategory.CONTEXT),
    ])
    def test_categories(self, text, category):
        assert classify_category(text) == category


class TestLLMExtraction:

    @pytest.mark.asyncio
    async def test_llm_facts_used(self):
        llm = _llm_returning(json.dumps({"facts": [
            {"text": "I am training for a half marathon", "category": "personal_info",
             "confidence": 0.9, "importance": 0.8, "keywords": ["half marathon", "training"]},
            {"text": "I prefer running outdoors", "category": "preference", "confidence": 0.8},
        ]}))
        extraction = DefaultExtractionService(llm_service=llm)

        facts = await extraction.extract("I'm training for a half marathon and love running outside")

        assert [f.text for f in facts] == ["I am training for a half marathon", "I prefer running outdoors"]
        assert facts[1].importance == pytest.approx(0.6)
        assert facts[1].keywords
        assert llm.complete.await_args.kwargs["profile"] == "extraction"
        assert llm.complete.await_args.args[0].json_output is True

    @pytest.mark.asyncio
    async def test_low_confidence_and_invalid_items_dropped(self):
        llm = _llm_returning(json.dumps([
            {"text": "I might like tennis", "category": "preference", "confidence": 0.2},
            {"text": "", "category": "context", "confidence": 0.9},
            {"text": "I have a dog", "category": "not-a-category", "confidence": 0.9},
            {"text": "I have a dog", "category": "context", "confidence": 0.9},
        ]))
        extraction = DefaultExtractionService(llm_service=llm)

        facts = await extraction.extract("I have a dog and might like tennis")

        assert [f.text for f in facts] == ["I have a dog"]

    @pytest.mark.asyncio
    async def test_llm_failure_extracts_nothing(self):
        extraction = DefaultExtractionService(llm_service=_llm_returning(error=TimeoutError()))

        facts = await extraction.extract("I love cycling")

        assert facts == []

    @pytest.mark.asyncio
    async def test_llm_failure_keeps_explicit_fact(self):
        extraction = DefaultExtractionService(llm_service=_llm_returning(error=TimeoutError()))

        facts = await extraction.extract("Remember that I train on Mondays")

        assert len(facts) == 1
        assert facts[0].explicit

    @pytest.mark.asyncio
    async def test_unparseable_response_extracts_nothing(self):
        extraction = DefaultExtractionService(llm_service=_llm_returning("sorry, I cannot help"))

        facts = await extraction.extract("I love cycling")

        assert facts == []

    @pytest.mark.asyncio
    async def test_unavailable_profile_skips_model(self):
        llm = _llm_returning("[]")
        llm.is_available.return_value = False
        extraction = DefaultExtractionService(llm_service=llm)

        await extraction.extract("I love cycling")

        llm.complete.assert_not_awaited()


class TestParseLLMResponse:

    def test_code_fence(self, extraction):
        raw = '```json\n[{"text": "a", "category": "context", "confidence": 0.9}]\n```'
        assert extraction.parse_llm_response(raw)[0]["text"] == "a"

    def test_prose_prefix_and_trailing_comma(self, extraction):
        raw = 'Here you go: [{"text": "a", "category": "context", "confidence": 0.9},]'
        assert len(extraction.parse_llm_response(raw)) == 1

    def test_truncated_array(self, extraction):
        raw = '[{"text": "a", "category": "context", "confidence": 0.9}, {"text": "b", "categ'
        assert [item["text"] for item in extraction.parse_llm_response(raw)] == ["a"]

    def test_not_an_array(self, extraction):
        with pytest.raises(ValueError):
            extraction.parse_llm_response('{"text": "a"}')

    def test_facts_object(self, extraction):
        raw = '{"facts": [{"text": "a", "category": "context", "confidence": 0.9}]}'
        assert extraction.parse_llm_response(raw)[0]["text"] == "a"

    def test_truncated_facts_object(self, extraction):
        raw = '{"facts": [{"text": "a", "category": "context", "confidence": 0.9}, {"text": "b'
        assert [item["text"] for item in extraction.parse_llm_response(raw)] == ["a"]
