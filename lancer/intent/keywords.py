"""Keyword rules for classifying free-text requests.

Used on its own when no LLM is configured, and as the fallback whenever the
LLM call fails or returns something unusable.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from lancer.protocols import ClassifiedIntent

DEFAULT_BUDGET = Decimal("50")
DEFAULT_TITLE = "General Task"

# "$200", "$ 200", "usdc 200", "usdc200"
BUDGET_PATTERN = re.compile(r"(\$|usdc\s?)\s?(\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class KeywordRule:
    skill: str
    title: str
    keywords: Tuple[str, ...]
    related: Tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        return any(k in text for k in self.keywords)


# Checked in order; the first matching rule wins
RULES: Tuple[KeywordRule, ...] = (
    KeywordRule(
        "development",
        "Web Development Task",
        ("web", "site", "react", "app", "landing"),
        related=("react", "frontend"),
    ),
    KeywordRule("design", "Design Task", ("design", "logo", "ui"), related=("figma",)),
    KeywordRule("translation", "Translation Task", ("translate", "english")),
    KeywordRule("writing", "Content Writing Task", ("writ", "blog")),
    KeywordRule(
        "audit",
        "Smart Contract Audit",
        ("audit", "security"),
        related=("blockchain", "solidity"),
    ),
)


def extract_budget(text: str) -> Optional[Decimal]:
    """First ``$N`` / ``usdc N`` amount in the text, if any."""
    match = BUDGET_PATTERN.search(text.lower())
    if not match:
        return None
    return Decimal(match.group(2))


def complexity_for(budget: Decimal) -> str:
    if budget > 100:
        return "high"
    if budget > 40:
        return "medium"
    return "low"


class KeywordIntentClassifier:
    """IntentClassifier driven by substring rules. Never raises."""

    def __init__(self, default_budget: Decimal = DEFAULT_BUDGET):
        self.default_budget = default_budget

    def classify_sync(self, text: str) -> ClassifiedIntent:
        lower = text.lower()
        rule = next((r for r in RULES if r.matches(lower)), None)
        if rule is None:
            skills: List[str] = ["general"]
        else:
            skills = [rule.skill] + [tag for tag in rule.related if tag != rule.skill]

        budget = extract_budget(text)
        if budget is None:
            budget = self.default_budget

        return ClassifiedIntent(
            summary=rule.title if rule else DEFAULT_TITLE,
            estimated_budget=budget,
            skills=skills,
            complexity=complexity_for(budget),
        )

    async def classify(self, text: str) -> ClassifiedIntent:
        return self.classify_sync(text)
