"""Intent classifier adapter.

Normalizes whatever the underlying classifier returns into something the
request loop can always turn into a job:

- no skills -> ``["general"]``
- missing, non-positive or unparseable budget -> the platform minimum
- missing summary -> the request text, truncated
"""

import logging
from decimal import Decimal
from typing import List, Optional

from lancer.intent.keywords import KeywordIntentClassifier
from lancer.protocols import ClassificationError, ClassifiedIntent, IntentClassifier

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 50


def truncate_summary(text: str, limit: int = MAX_SUMMARY_LENGTH) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def normalize_skills(skills: Optional[List[str]]) -> List[str]:
    seen: List[str] = []
    for skill in skills or []:
        value = str(skill).strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen or ["general"]


class IntentClassifierAdapter:
    """Wraps an IntentClassifier and guarantees a usable ClassifiedIntent."""

    def __init__(self, classifier: IntentClassifier, min_budget: Decimal = Decimal("1")):
        self.classifier = classifier
        self.min_budget = min_budget

    async def classify(self, text: str) -> ClassifiedIntent:
        if not text or not text.strip():
            raise ClassificationError("Cannot classify an empty request")

        raw = await self.classifier.classify(text)
        if raw is None:
            raise ClassificationError("Classifier returned no result")

        budget = raw.estimated_budget
        if budget is None or not isinstance(budget, Decimal) or not budget.is_finite() or budget <= 0:
            logger.debug(f"Classifier budget {budget!r} unusable, using minimum {self.min_budget}")
            budget = self.min_budget

        return ClassifiedIntent(
            summary=(raw.summary or "").strip() or truncate_summary(text),
            estimated_budget=budget,
            skills=normalize_skills(raw.skills),
            complexity=raw.complexity or "medium",
        )


def build_classifier(
    openai_api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    min_budget: Decimal = Decimal("1"),
) -> IntentClassifierAdapter:
    """LLM classifier when an API key is configured, keyword rules otherwise."""
    if openai_api_key:
        from lancer.intent.llm import DEFAULT_MODEL, LlmIntentClassifier

        inner = LlmIntentClassifier(
            api_key=openai_api_key, model=model or DEFAULT_MODEL, base_url=base_url
        )
        logger.info(f"Using LLM intent classifier ({inner.model})")
    else:
        logger.info("No OpenAI key configured, using keyword intent classifier")
        inner = KeywordIntentClassifier()
    return IntentClassifierAdapter(inner, min_budget=min_budget)
