"""OpenAIEmbeddings: OpenAI-compatible /embeddings endpoint via httpx.

Works with OpenAI, Ollama, vLLM, LM Studio, or any server exposing /v1/embeddings.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from ..types import EmbeddingProviderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


class OpenAIEmbeddings:
    """Embedder using any OpenAI-compatible embeddings API."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434/v1",
        api_key: str = "not-needed",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.last_usage: dict = {}  # populated after each embed() call

    async def embed(self, texts: list[str], model_id: str) -> list[list[float]]:
        """Embed *texts*; vectors are returned in input order."""
        if not texts:
            return []

        url = f"{self.base_url}/embeddings"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = {"model": model_id, "input": texts}

        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(url, headers=headers, json=payload)

                if response.status_code == 200:
                    data = response.json()
                    self.last_usage = data.get("usage", {})
                    items = sorted(data.get("data", []), key=lambda d: d.get("index", 0))
                    return [item.get("embedding", []) for item in items]

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = EmbeddingProviderError(
                        f"HTTP {response.status_code}: {response.text}",
                        provider="openai_embeddings",
                        status_code=response.status_code,
                    )
                    logger.warning(
                        "Embedding request failed (attempt %d/%d): HTTP %d",
                        attempt + 1, MAX_RETRIES, response.status_code,
                    )
                    if attempt < MAX_RETRIES - 1:
                        await asyncio.sleep(RETRY_BACKOFF[attempt])
                    continue

                raise EmbeddingProviderError(
                    f"HTTP {response.status_code}: {response.text}",
                    provider="openai_embeddings",
                    status_code=response.status_code,
                )

            except httpx.HTTPError as e:
                last_error = EmbeddingProviderError(
                    f"HTTP error: {e}",
                    provider="openai_embeddings",
                )
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(RETRY_BACKOFF[attempt])
                continue

        raise last_error or EmbeddingProviderError(
            "Max retries exceeded", provider="openai_embeddings"
        )
