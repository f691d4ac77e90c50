# src/embedding/embedder.py
from openai import OpenAI, RateLimitError
from typing import List
from src.config.settings import Settings, ConfigurationError
from concurrent.futures import ThreadPoolExecutor
import time
import logging

logger = logging.getLogger(__name__)


class Embedder:
    """OpenAI embedding client used for similarity grouping of feedback."""

    def __init__(self, config: Settings):
        if not config.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for similarity grouping")

        self.config = config
        base_url = getattr(config, "openai_base_url", None)
        if base_url:
            self.client = OpenAI(api_key=config.openai_api_key, base_url=base_url)
        else:
            self.client = OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_embedding_model
        self.max_workers = config.max_workers

    def embed_texts(self, texts: List[str], batch_size: int = 50) -> List[List[float]]:
        """
        Embed texts, keeping the input order.

        Batches are sent concurrently; a failing batch raises with the index
        of its first text.
        """
        if not texts:
            return []

        starts = list(range(0, len(texts), batch_size))
        if len(starts) == 1:
            return self._embed_batch(texts)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self._embed_batch, texts[s:s + batch_size]) for s in starts]

            vectors: List[List[float]] = []
            for start, future in zip(starts, futures):
                try:
                    vectors.extend(future.result())
                except Exception as e:
                    raise RuntimeError(f"Error embedding batch starting at index {start}: {e}") from e
        return vectors

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        """One embeddings call, retried with exponential backoff on rate limits."""
        max_retries = 5
        base_delay = 1.0

        for attempt in range(max_retries):
            try:
                response = self.client.embeddings.create(model=self.model, input=batch)
                return [item.embedding for item in response.data]
            except RateLimitError:
                if attempt == max_retries - 1:
                    raise

                delay = base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on embedding batch. Retrying in {delay}s... (attempt {attempt + 1}/{max_retries})")
                time.sleep(delay)
