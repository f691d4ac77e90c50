# src/agents/llm_agent.py
from openai import OpenAI, RateLimitError
from pydantic import TypeAdapter, ValidationError
from typing import List, Optional, Sequence
from src.config.settings import Settings, ConfigurationError
from src.models.schemas import FeedbackItem, ClassificationResult
import re
import time
import logging

logger = logging.getLogger(__name__)

CLASSIFICATION_CONTENT_CHARS = 500

_RESULTS_ADAPTER = TypeAdapter(List[ClassificationResult])
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class ChatAgent:
    """Client for an OpenAI-compatible chat completion endpoint."""

    def __init__(self, config: Settings):
        if not config.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for feedback classification")

        self.config = config
        base_url = getattr(config, "openai_base_url", None)
        if base_url:
            self.client = OpenAI(api_key=config.openai_api_key, base_url=base_url)
        else:
            self.client = OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_llm_model
        self.temperature = getattr(config, "llm_temperature", 0.3)

    def chat(self, messages: List[dict], max_tokens: Optional[int] = None) -> str:
        """
        Send a list of messages to the chat model and get the response.
        Uses exponential backoff retry logic for rate limit errors.

        Args:
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            max_tokens: Optional cap on the completion length

        Returns:
            The assistant's reply as a string (empty if the model sent none).
        """
        max_retries = 5
        base_delay = 1.0

        kwargs = {"model": self.model, "messages": messages, "temperature": self.temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        for attempt in range(max_retries):
            try:
                response = self.client.chat.completions.create(**kwargs)
                return response.choices[0].message.content or ""
            except RateLimitError:
                if attempt == max_retries - 1:
                    raise

                delay = base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on chat completion. Retrying in {delay}s... (attempt {attempt + 1}/{max_retries})")
                time.sleep(delay)

    def chat_single(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Send a single user prompt and return the reply."""
        return self.chat([{"role": "user", "content": prompt}], max_tokens=max_tokens)


class FeedbackClassifier:
    """Classify feedback items (type, sentiment, technical severity, keywords, summary)."""

    def __init__(self, config: Settings, agent: Optional[ChatAgent] = None):
        """
        Args:
            config: Settings object with LLM configuration
            agent: Optional pre-built chat agent (built from config if None)
        """
        self.agent = agent or ChatAgent(config)

    def build_prompt(self, items: Sequence[FeedbackItem]) -> str:
        entries = []
        for i, item in enumerate(items):
            content = item.content[:CLASSIFICATION_CONTENT_CHARS]
            if len(item.content) > CLASSIFICATION_CONTENT_CHARS:
                content += "..."
            entries.append(f"[{i}] Source: {item.source}\nContent: {content}")

        return f"""You are analyzing user feedback to classify and extract insights.

For each feedback item below, provide:
1. feedback_type: one of "bug", "feature_request", "complaint", "praise", "question", "unknown"
2. sentiment_score: number from -1 (very negative) to 1 (very positive)
3. technical_severity: integer 0-100 (0=trivial, 100=critical failure/crash/data loss)
4. keywords: array of 3-5 key technical terms or topics mentioned
5. summary: one-sentence summary of the core issue/request

Respond with a JSON array of {len(items)} objects matching the order of inputs.

FEEDBACK ITEMS:
{chr(10).join(entries)}

Respond ONLY with a valid JSON array:"""

    def parse_response(self, response: str, expected: int) -> List[ClassificationResult]:
        """
        Validate the model's reply against the result schema.

        Anything other than a JSON array of exactly `expected` valid objects
        (optionally wrapped in a markdown code fence) yields the fallback
        result for every item.
        """
        cleaned = _CODE_FENCE.sub("", (response or "").strip())
        try:
            results = _RESULTS_ADAPTER.validate_json(cleaned)
        except ValidationError as e:
            logger.warning(f"Unparsable classification response, using fallback: {e.error_count()} errors")
            return [ClassificationResult.fallback() for _ in range(expected)]

        if len(results) != expected:
            logger.warning(f"Classification response has {len(results)} results for {expected} items, using fallback")
            return [ClassificationResult.fallback() for _ in range(expected)]

        return results

    def classify_batch(self, items: Sequence[FeedbackItem]) -> List[ClassificationResult]:
        """
        Classify up to 10 items with a single model call.

        Errors raised by the endpoint propagate to the caller.
        """
        if not items:
            return []

        response = self.agent.chat_single(self.build_prompt(items), max_tokens=2000)
        return self.parse_response(response, len(items))
