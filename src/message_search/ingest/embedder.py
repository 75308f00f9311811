"""Embedding providers and the retrying embedding client."""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt
from typing import Any

import httpx

from message_search.errors import (
    InvalidInputError,
    PermanentDependencyError,
    TransientError,
)
from message_search.resilience.clock import Deadline
from message_search.resilience.retry import Retrier

EMBEDDING_DEPENDENCY = "embedding"

_WORD_PATTERN = re.compile(r"[^\W_]+", flags=re.UNICODE)


class Embedder(ABC):
    """One call to an embedding model.

    Implementations must give up after ``timeout`` seconds and report
    failures through the error taxonomy (``TransientError`` for timeouts,
    rate limits and 5xx; ``PermanentDependencyError`` or
    ``InvalidInputError`` otherwise).
    """

    dimension: int

    @abstractmethod
    def embed(self, text: str, *, timeout: float) -> list[float]:
        """Embed one normalized text."""


class HashingEmbedder(Embedder):
    """Deterministic character-trigram embedding without external calls.

    Words are padded and split into trigrams which are hashed into a signed
    bag of features, so inflections ("payment"/"payments") land close
    together. Used for local runs and deterministic tests; production
    deployments use a model-backed embedder.
    """

    def __init__(self, dimension: int = 1536) -> None:
        self.dimension = dimension

    def embed(self, text: str, *, timeout: float) -> list[float]:
        del timeout  # local computation
        vector = [0.0 for _ in range(self.dimension)]
        for word in _WORD_PATTERN.findall(text.lower()):
            padded = f"#{word}#"
            for start in range(max(1, len(padded) - 2)):
                gram = padded[start : start + 3]
                digest = blake2b(gram.encode("utf-8"), digest_size=8).digest()
                idx = int.from_bytes(digest[:4], "little") % self.dimension
                sign = -1.0 if digest[4] % 2 else 1.0
                vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAIEmbedder(Embedder):
    """Calls an OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        endpoint: str = "https://api.openai.com/v1",
        dimension: int = 1536,
        client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self.dimension = dimension
        self._url = endpoint.rstrip("/") + "/embeddings"
        self._client = client or httpx.Client(
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def embed(self, text: str, *, timeout: float) -> list[float]:
        try:
            response = self._client.post(
                self._url,
                json={"model": self.model, "input": text},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(str(exc) or "timeout", dependency=EMBEDDING_DEPENDENCY, reason="timeout") from exc
        except httpx.TransportError as exc:
            raise TransientError(str(exc), dependency=EMBEDDING_DEPENDENCY, reason="network") from exc

        _raise_for_status(response.status_code, response.text)
        try:
            return [float(value) for value in response.json()["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise PermanentDependencyError(
                "malformed embedding response", dependency=EMBEDDING_DEPENDENCY
            ) from exc

    def close(self) -> None:
        self._client.close()


class LangChainEmbedder(Embedder):
    """Adapts any LangChain ``Embeddings`` model to the embedder contract.

    The wrapped model owns its own request timeout; provider exceptions are
    classified by their ``status_code`` attribute when one is present.
    """

    def __init__(self, model: Any, *, dimension: int) -> None:
        self._model = model
        self.dimension = dimension

    def embed(self, text: str, *, timeout: float) -> list[float]:
        del timeout
        try:
            return [float(value) for value in self._model.embed_query(text)]
        except TimeoutError as exc:
            raise TransientError("timeout", dependency=EMBEDDING_DEPENDENCY, reason="timeout") from exc
        except ConnectionError as exc:
            raise TransientError(str(exc), dependency=EMBEDDING_DEPENDENCY, reason="network") from exc
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            if isinstance(status_code, int):
                _raise_for_status(status_code, str(exc))
            raise PermanentDependencyError(str(exc), dependency=EMBEDDING_DEPENDENCY) from exc


class EmbeddingClient:
    """Embeds text under the retry policy and circuit of the embedding service."""

    def __init__(self, embedder: Embedder, retrier: Retrier) -> None:
        self.embedder = embedder
        self.retrier = retrier

    @property
    def dimension(self) -> int:
        return self.embedder.dimension

    def embed(self, text: str, deadline: Deadline) -> list[float]:
        vector = self.retrier.call(
            lambda timeout: self.embedder.embed(text, timeout=timeout),
            deadline,
            name="embed",
        )
        if len(vector) != self.dimension:
            raise PermanentDependencyError(
                f"invalid vector dimensions: {len(vector)}, expected {self.dimension}",
                dependency=EMBEDDING_DEPENDENCY,
            )
        if not all(math.isfinite(value) for value in vector):
            raise PermanentDependencyError(
                "embedding contains non-finite values", dependency=EMBEDDING_DEPENDENCY
            )
        return vector


def _raise_for_status(status_code: int, body: str) -> None:
    if status_code < 400:
        return
    detail = body[:200]
    if status_code in (408, 429):
        reason = "timeout" if status_code == 408 else "rate_limit"
        raise TransientError(f"status {status_code}", dependency=EMBEDDING_DEPENDENCY, reason=reason)
    if status_code >= 500:
        raise TransientError(f"status {status_code}", dependency=EMBEDDING_DEPENDENCY, reason="server_error")
    if status_code in (400, 413, 422):
        raise InvalidInputError(f"embedding request rejected ({status_code}): {detail}")
    raise PermanentDependencyError(
        f"embedding request failed ({status_code}): {detail}",
        dependency=EMBEDDING_DEPENDENCY,
        status_code=status_code,
    )
