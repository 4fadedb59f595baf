"""LLM-backed intent classification.

Wraps the ``openai`` SDK (any OpenAI-compatible endpoint via ``base_url``).
The SDK is imported lazily so lancer can be imported without it; the import
fails only when the classifier is instantiated.

Any failure (timeout, API error, malformed JSON) falls back to the keyword
rules, so ``classify`` always returns an intent.
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from lancer.intent.keywords import KeywordIntentClassifier, extract_budget
from lancer.protocols import ClassifiedIntent

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

SYSTEM_PROMPT = """You are a project manager for a freelance marketplace of AI agents.
Read the user's request and extract metadata used to find the best agent.

OUTPUT JSON ONLY with this structure:
{
    "summary": "Concise professional title for the task (max 10 words)",
    "skills": ["skill1", "skill2"],
    "estimatedBudget": 50,
    "complexity": "low" | "medium" | "high"
}

Rules:
- skills: at most 5, lowercase, most relevant first. The first skill must be one of:
  development, design, translation, writing, audit, general
- estimatedBudget: fair price in USDC. If the user names a price, use it.
  Otherwise simple tasks < 50, medium < 200.

Example input: "I need a simple landing page for my crypto project"
Example output: {"summary": "Crypto project landing page", "skills": ["development", "react", "web3"], "estimatedBudget": 30, "complexity": "low"}"""


def _parse_budget(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value).replace("$", "").strip())
    except InvalidOperation:
        return None


def parse_llm_output(content: str) -> ClassifiedIntent:
    """Turn the model's JSON reply into an intent. Raises ValueError if unusable."""
    data: Dict[str, Any] = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("LLM reply is not a JSON object")
    skills = data.get("skills") or []
    if not isinstance(skills, list):
        raise ValueError("LLM reply has non-list skills")
    clean_skills: List[str] = [str(s).strip().lower() for s in skills if str(s).strip()]
    complexity = str(data.get("complexity") or "medium").lower()
    if complexity not in ("low", "medium", "high"):
        complexity = "medium"
    return ClassifiedIntent(
        summary=str(data.get("summary") or "").strip(),
        estimated_budget=_parse_budget(data.get("estimatedBudget")),
        skills=clean_skills,
        complexity=complexity,
    )


class LlmIntentClassifier:
    """IntentClassifier that asks a chat model for structured JSON.

    Requires the ``openai`` package::

        pip install openai
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: Optional[str] = None,
        timeout: float = 20.0,
        fallback: Optional[KeywordIntentClassifier] = None,
        client: Any = None,
    ):
        self.model = model
        self.fallback = fallback or KeywordIntentClassifier()
        if client is not None:
            self._client = client
            return

        try:
            import openai as _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for LlmIntentClassifier. "
                "Install it with: pip install openai"
            ) from None
        if not api_key:
            raise ValueError("An API key is required for LlmIntentClassifier")
        self._client = _openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def classify(self, text: str) -> ClassifiedIntent:
        logger.debug(f"Classifying request via {self.model}: {text[:50]!r}")
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
            )
        except Exception as e:
            logger.warning(f"LLM classification failed, using keyword rules: {e}")
            return await self.fallback.classify(text)

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            logger.warning("LLM returned an empty reply, using keyword rules")
            return await self.fallback.classify(text)
        try:
            intent = parse_llm_output(content)
        except ValueError as e:
            logger.warning(f"LLM reply was malformed ({e}), using keyword rules")
            return await self.fallback.classify(text)

        # A price stated in the request wins over the model estimate
        explicit = extract_budget(text)
        if explicit is not None:
            intent.estimated_budget = explicit
        return intent
