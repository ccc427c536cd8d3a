"""
Embedding and language-model providers.

Both providers speak the OpenAI-compatible HTTP API through httpx, retry
429/5xx responses with exponential backoff plus jitter, and stop calling out
while their circuit breaker is open. Components depend only on the
``EmbeddingProvider`` / ``LanguageModelProvider`` protocols, so tests and
alternative deployments can inject their own implementations.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

import httpx

import memoryweave.config as config
from memoryweave.errors import EmbeddingProviderError, LanguageModelError
from memoryweave.services.memory_shared import (
    ProviderCircuitBreaker,
    _sleep_backoff,
    _validate_embedding_text,
    logger,
)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class LanguageModelProvider(Protocol):
    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...


embedding_circuit_breaker = ProviderCircuitBreaker(
    failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
)

llm_circuit_breaker = ProviderCircuitBreaker(
    failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
)


def _build_http_client(api_key: Optional[str], timeout: float) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return httpx.Client(
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers=headers,
    )


class _OpenAICompatibleClient:
    """Pooled POST with retry, backoff and a circuit breaker."""

    error_class: type[RuntimeError] = RuntimeError
    label = "provider"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        timeout: float,
        retry_max: int,
        circuit_breaker: ProviderCircuitBreaker,
        http_client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry_max = max(0, retry_max)
        self._breaker = circuit_breaker
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = _build_http_client(self._api_key, self._timeout)
            logger.info("HTTP client initialized", extra={"provider": self.label})
        return self._client

    def _unavailable(self, detail: str):
        logger.warning(f"{self.label} unavailable", extra={"provider": self.label, "detail": detail})
        return self.error_class(f"{self.label} unavailable: {detail}")

    def _post(self, path: str, payload: dict) -> dict:
        if self._breaker.is_open():
            raise self._unavailable("circuit breaker open")
        client = self._http()
        url = f"{self._base_url}{path}"
        for attempt in range(self._retry_max + 1):
            try:
                response = client.post(url, json=payload)
            except httpx.RequestError as exc:
                if attempt >= self._retry_max:
                    self._breaker.record_failure("request error")
                    raise self._unavailable(f"request error: {exc.__class__.__name__}") from exc
                _sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS:
                if attempt >= self._retry_max:
                    self._breaker.record_failure(f"status {response.status_code}")
                    raise self._unavailable(f"status {response.status_code}")
                _sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                self._breaker.record_failure(f"status {response.status_code}")
                raise self._unavailable(f"status {response.status_code}")

            try:
                data = response.json()
            except ValueError as exc:
                self._breaker.record_failure("invalid json")
                raise self._unavailable("invalid json") from exc
            self._breaker.record_success()
            return data
        raise self._unavailable("retries exhausted")

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            logger.info("HTTP client closed", extra={"provider": self.label})
        self._client = None


class OpenAIEmbeddingProvider(_OpenAICompatibleClient):
    error_class = EmbeddingProviderError
    label = "embedding provider"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_max: Optional[int] = None,
        circuit_breaker: Optional[ProviderCircuitBreaker] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        super().__init__(
            api_key=api_key if api_key is not None else config.OPENAI_API_KEY,
            base_url=base_url or config.OPENAI_BASE_URL,
            timeout=timeout if timeout is not None else config.EMBEDDING_TIMEOUT_SECONDS,
            retry_max=retry_max if retry_max is not None else config.EMBEDDING_RETRY_MAX,
            circuit_breaker=circuit_breaker or embedding_circuit_breaker,
            http_client=http_client,
        )
        self.model = model or config.EMBEDDING_MODEL

    def embed(self, text: str) -> List[float]:
        _validate_embedding_text(text)
        data = self._post("/embeddings", {"model": self.model, "input": text})
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._unavailable("malformed response") from exc
        if not isinstance(vector, list) or not vector:
            raise self._unavailable("malformed response")
        return [float(value) for value in vector]


class OpenAIChatProvider(_OpenAICompatibleClient):
    error_class = LanguageModelError
    label = "language model"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_max: Optional[int] = None,
        circuit_breaker: Optional[ProviderCircuitBreaker] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        super().__init__(
            api_key=api_key if api_key is not None else config.OPENAI_API_KEY,
            base_url=base_url or config.OPENAI_BASE_URL,
            timeout=timeout if timeout is not None else config.LLM_TIMEOUT_SECONDS,
            retry_max=retry_max if retry_max is not None else config.LLM_RETRY_MAX,
            circuit_breaker=circuit_breaker or llm_circuit_breaker,
            http_client=http_client,
        )
        self.model = model or config.LLM_MODEL

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": config.LLM_TEMPERATURE if temperature is None else temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        data = self._post("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._unavailable("malformed response") from exc
        if not isinstance(content, str) or not content.strip():
            raise self._unavailable("empty completion")
        return content.strip()


class DisabledEmbeddingProvider:
    def embed(self, text: str) -> List[float]:
        raise EmbeddingProviderError("embedding provider disabled")


class DisabledLanguageModelProvider:
    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        raise LanguageModelError("language model disabled")


def build_embedding_provider() -> EmbeddingProvider:
    if config.EMBEDDING_PROVIDER == "none":
        return DisabledEmbeddingProvider()
    return OpenAIEmbeddingProvider()


def build_language_model_provider(model: Optional[str] = None) -> LanguageModelProvider:
    if config.LLM_PROVIDER == "none":
        return DisabledLanguageModelProvider()
    return OpenAIChatProvider(model=model)
