"""Tests for intent classification: keyword rules, LLM client and adapter."""

import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from lancer.intent.classifier import (
    IntentClassifierAdapter,
    build_classifier,
    normalize_skills,
    truncate_summary,
)
from lancer.intent.keywords import KeywordIntentClassifier, complexity_for, extract_budget
from lancer.intent.llm import LlmIntentClassifier, parse_llm_output
from lancer.protocols import ClassificationError, ClassifiedIntent
from tests.fakes import ScriptedClassifier


class FakeCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions``."""

    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_openai(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class TestKeywordRules:
    @pytest.fixture
    def classifier(self):
        return KeywordIntentClassifier()

    def test_landing_page_with_budget(self, classifier):
        intent = classifier.classify_sync("Build a landing page for $200")

        assert intent.summary == "Web Development Task"
        assert intent.primary_skill == "development"
        assert intent.skills == ["development", "react", "frontend"]
        assert intent.estimated_budget == Decimal("200")
        assert intent.complexity == "high"

    @pytest.mark.parametrize(
        "text,skill,title",
        [
            ("Design a logo for my bakery", "design", "Design Task"),
            ("Translate this document to Spanish", "translation", "Translation Task"),
            ("Write a blog post on DeFi", "writing", "Content Writing Task"),
            ("Security audit of my smart contract", "audit", "Smart Contract Audit"),
            ("Help me with my taxes", "general", "General Task"),
        ],
    )
    def test_rules(self, classifier, text, skill, title):
        intent = classifier.classify_sync(text)
        assert intent.primary_skill == skill
        assert intent.summary == title

    def test_first_matching_rule_wins(self, classifier):
        # Mentions both a web app and a logo; the development rule is checked first
        intent = classifier.classify_sync("Design the logo for my web app")
        assert intent.skills == ["development", "react", "frontend"]

    def test_default_budget(self, classifier):
        intent = classifier.classify_sync("Design a logo")
        assert intent.estimated_budget == Decimal("50")
        assert intent.complexity == "medium"

    @pytest.mark.parametrize(
        "text,amount",
        [
            ("pay $75", Decimal("75")),
            ("budget: $ 12.50", Decimal("12.50")),
            ("USDC 300 for this", Decimal("300")),
            ("usdc40", Decimal("40")),
            ("no price here", None),
        ],
    )
    def test_extract_budget(self, text, amount):
        assert extract_budget(text) == amount

    def test_complexity_thresholds(self):
        assert complexity_for(Decimal("101")) == "high"
        assert complexity_for(Decimal("100")) == "medium"
        assert complexity_for(Decimal("41")) == "medium"
        assert complexity_for(Decimal("40")) == "low"

    @pytest.mark.asyncio
    async def test_async_classify(self, classifier):
        intent = await classifier.classify("Translate to English")
        assert intent.primary_skill == "translation"


class TestParseLlmOutput:
    def test_full_reply(self):
        intent = parse_llm_output(
            json.dumps(
                {
                    "summary": "Crypto landing page",
                    "skills": ["Development", "react"],
                    "estimatedBudget": "$30",
                    "complexity": "LOW",
                }
            )
        )
        assert intent.summary == "Crypto landing page"
        assert intent.skills == ["development", "react"]
        assert intent.estimated_budget == Decimal("30")
        assert intent.complexity == "low"

    def test_missing_fields(self):
        intent = parse_llm_output("{}")
        assert intent.summary == ""
        assert intent.skills == []
        assert intent.estimated_budget is None
        assert intent.complexity == "medium"

    def test_unparseable_budget_becomes_none(self):
        intent = parse_llm_output('{"estimatedBudget": "a lot"}')
        assert intent.estimated_budget is None

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", '{"skills": "design"}'])
    def test_malformed(self, content):
        with pytest.raises(ValueError):
            parse_llm_output(content)


class TestLlmClassifier:
    @pytest.mark.asyncio
    async def test_uses_model_reply(self):
        client, completions = _fake_openai(
            '{"summary": "Logo for bakery", "skills": ["design"], "estimatedBudget": 80, '
            '"complexity": "medium"}'
        )
        classifier = LlmIntentClassifier(api_key="sk-test", client=client)

        intent = await classifier.classify("I need a logo for my bakery")

        assert intent.summary == "Logo for bakery"
        assert intent.estimated_budget == Decimal("80")
        request = completions.requests[0]
        assert request["model"] == "gpt-4o-mini"
        assert request["response_format"] == {"type": "json_object"}
        assert request["messages"][1]["content"] == "I need a logo for my bakery"

    @pytest.mark.asyncio
    async def test_stated_price_overrides_estimate(self):
        client, _ = _fake_openai(
            '{"summary": "Landing page", "skills": ["development"], "estimatedBudget": 30}'
        )
        classifier = LlmIntentClassifier(api_key="sk-test", client=client)

        intent = await classifier.classify("Build a landing page for $200")
        assert intent.estimated_budget == Decimal("200")

    @pytest.mark.asyncio
    async def test_api_error_falls_back_to_keywords(self):
        client, _ = _fake_openai(error=RuntimeError("rate limited"))
        classifier = LlmIntentClassifier(api_key="sk-test", client=client)

        intent = await classifier.classify("Build a landing page for $200")

        assert intent.summary == "Web Development Task"
        assert intent.estimated_budget == Decimal("200")

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self):
        client, _ = _fake_openai(content="")
        classifier = LlmIntentClassifier(api_key="sk-test", client=client)
        intent = await classifier.classify("Translate my menu")
        assert intent.primary_skill == "translation"

    @pytest.mark.asyncio
    async def test_malformed_reply_falls_back(self):
        client, _ = _fake_openai(content="Sure! Here is the JSON you asked for")
        classifier = LlmIntentClassifier(api_key="sk-test", client=client)
        intent = await classifier.classify("Write a blog post")
        assert intent.primary_skill == "writing"


class TestAdapter:
    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        adapter = IntentClassifierAdapter(ScriptedClassifier())
        with pytest.raises(ClassificationError):
            await adapter.classify("   ")

    @pytest.mark.asyncio
    async def test_fills_gaps(self):
        raw = ClassifiedIntent(summary="", estimated_budget=None, skills=[], complexity="")
        adapter = IntentClassifierAdapter(ScriptedClassifier(raw), min_budget=Decimal("5"))

        intent = await adapter.classify("Please   organise my   photo library")

        assert intent.summary == "Please organise my photo library"
        assert intent.skills == ["general"]
        assert intent.estimated_budget == Decimal("5")
        assert intent.complexity == "medium"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [Decimal("0"), Decimal("-3"), Decimal("NaN"), 12])
    async def test_unusable_budget_replaced(self, budget):
        raw = ClassifiedIntent(summary="Task", estimated_budget=budget, skills=["design"])
        adapter = IntentClassifierAdapter(ScriptedClassifier(raw), min_budget=Decimal("1"))

        intent = await adapter.classify("anything")
        assert intent.estimated_budget == Decimal("1")

    @pytest.mark.asyncio
    async def test_classifier_errors_propagate(self):
        adapter = IntentClassifierAdapter(ScriptedClassifier(fail_on={"boom"}))
        with pytest.raises(RuntimeError):
            await adapter.classify("boom")

    def test_truncate_summary(self):
        assert truncate_summary("short") == "short"
        long = truncate_summary("word " * 30)
        assert len(long) == 50
        assert long.endswith("...")

    def test_normalize_skills(self):
        assert normalize_skills([" Design", "design", "FIGMA", ""]) == ["design", "figma"]
        assert normalize_skills(None) == ["general"]


class TestBuildClassifier:
    def test_keyword_classifier_without_key(self):
        adapter = build_classifier(None, min_budget=Decimal("2"))
        assert isinstance(adapter.classifier, KeywordIntentClassifier)
        assert adapter.min_budget == Decimal("2")

    def test_llm_classifier_with_key(self):
        pytest.importorskip("openai")
        adapter = build_classifier("sk-test", model="gpt-4o")
        assert isinstance(adapter.classifier, LlmIntentClassifier)
        assert adapter.classifier.model == "gpt-4o"
