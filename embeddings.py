"""
Embeddings - procgroups
Async clients for an OpenAI-compatible provider (OpenRouter by default):
  - EmbeddingClient: texts in, vectors out (/embeddings)
  - ChatClient:      messages in, text out (/chat/completions)

Both reuse one httpx.AsyncClient when given one, so the caller controls
connection pooling and lifetime.
"""

from __future__ import annotations

from typing import Optional

import httpx

# OpenRouter asks apps to identify themselves
DEFAULT_HEADERS = {
    "HTTP-Referer": "https://github.com/procgroups/procgroups",
    "X-Title": "procgroups",
}


class EmbeddingError(Exception):
    """A provider call failed: transport, HTTP status, or malformed payload."""


class _ProviderClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> dict:
        if not self.api_key:
            raise EmbeddingError("API key not configured (set OPENROUTER_API_KEY)")
        return {"Authorization": f"Bearer {self.api_key}", **DEFAULT_HEADERS}

    async def _post(self, path: str, payload: dict) -> dict:
        headers = self._headers()
        try:
            response = await self.client.post(
                f"{self.api_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"{path} request failed: {e}") from e

        if response.status_code != 200:
            raise EmbeddingError(
                f"{path} returned {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingError(f"{path} returned invalid JSON") from e

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class EmbeddingClient(_ProviderClient):
    """Batched text → vector calls. One failed call fails that batch only."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        data = await self._post("/embeddings", {"model": self.model, "input": texts})

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [[float(x) for x in item["embedding"]] for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise EmbeddingError(f"Malformed embeddings payload: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} texts"
            )
        return vectors


class ChatClient(_ProviderClient):
    """Non-streaming chat completion used by the model-backed namer."""

    async def complete(
        self,
        messages: list[dict],
        max_tokens: int = 100,
        temperature: float = 0.1,
        json_mode: bool = True,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._post("/chat/completions", payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingError(f"Malformed chat payload: {e}") from e
