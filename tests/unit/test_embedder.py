import math
import random

import httpx
import pytest
from fakes import FakeClock, ScriptedEmbedder, embedding_timeout
from langchain_core.embeddings import DeterministicFakeEmbedding

from message_search.config import RetryConfig
from message_search.errors import (
    InvalidInputError,
    PermanentDependencyError,
    TransientError,
)
from message_search.ingest.embedder import (
    EmbeddingClient,
    HashingEmbedder,
    LangChainEmbedder,
    OpenAIEmbedder,
)
from message_search.resilience.circuit import CircuitBreaker
from message_search.resilience.clock import Deadline
from message_search.resilience.retry import Retrier


def _openai(handler: object, dimension: int = 3) -> OpenAIEmbedder:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAIEmbedder(
        "sk-test", endpoint="https://embeddings.test/v1", dimension=dimension, client=client
    )


def _client(embedder: object, clock: FakeClock) -> EmbeddingClient:
    circuit = CircuitBreaker("embedding", clock=clock)
    retrier = Retrier(circuit, RetryConfig(jitter_ratio=0.0), clock=clock, rng=random.Random(3))
    return EmbeddingClient(embedder, retrier)


def test_hashing_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashingEmbedder(dimension=256)

    first = embedder.embed("We decided to use Stripe", timeout=1.0)
    second = embedder.embed("We decided to use Stripe", timeout=1.0)

    assert first == second
    assert len(first) == 256
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_openai_embedder_parses_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    vector = _openai(handler).embed("hello", timeout=1.5)

    assert vector == [0.1, 0.2, 0.3]
    assert seen[0].url == "https://embeddings.test/v1/embeddings"
    assert b'"input":"hello"' in seen[0].content.replace(b" ", b"")


@pytest.mark.parametrize(
    ("status_code", "reason"),
    [(429, "rate_limit"), (408, "timeout"), (500, "server_error"), (503, "server_error")],
)
def test_openai_embedder_maps_transient_statuses(status_code: int, reason: str) -> None:
    embedder = _openai(lambda request: httpx.Response(status_code, text="busy"))

    with pytest.raises(TransientError) as excinfo:
        embedder.embed("hello", timeout=1.0)

    assert excinfo.value.reason == reason


def test_openai_embedder_maps_rejected_input() -> None:
    embedder = _openai(lambda request: httpx.Response(400, json={"error": "too long"}))

    with pytest.raises(InvalidInputError):
        embedder.embed("hello", timeout=1.0)


@pytest.mark.parametrize("status_code", [401, 403, 404])
def test_openai_embedder_maps_permanent_statuses(status_code: int) -> None:
    embedder = _openai(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(PermanentDependencyError) as excinfo:
        embedder.embed("hello", timeout=1.0)

    assert excinfo.value.status_code == status_code


def test_openai_embedder_maps_timeouts_and_network_errors() -> None:
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def network_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError) as timeout_exc:
        _openai(timeout_handler).embed("hello", timeout=1.0)
    with pytest.raises(TransientError) as network_exc:
        _openai(network_handler).embed("hello", timeout=1.0)

    assert timeout_exc.value.reason == "timeout"
    assert network_exc.value.reason == "network"


def test_openai_embedder_rejects_malformed_payload() -> None:
    embedder = _openai(lambda request: httpx.Response(200, json={"data": []}))

    with pytest.raises(PermanentDependencyError):
        embedder.embed("hello", timeout=1.0)


def test_langchain_embedder_wraps_embeddings_model() -> None:
    embedder = LangChainEmbedder(DeterministicFakeEmbedding(size=8), dimension=8)

    vector = embedder.embed("hello", timeout=1.0)

    assert len(vector) == 8
    assert vector == embedder.embed("hello", timeout=1.0)


def test_langchain_embedder_classifies_status_codes() -> None:
    class _RateLimited(Exception):
        status_code = 429

    class _Model:
        def embed_query(self, text: str) -> list[float]:
            raise _RateLimited("slow down")

    with pytest.raises(TransientError) as excinfo:
        LangChainEmbedder(_Model(), dimension=8).embed("hello", timeout=1.0)

    assert excinfo.value.reason == "rate_limit"


def test_embedding_client_retries_transient_failures() -> None:
    clock = FakeClock()
    embedder = ScriptedEmbedder(embedding_timeout(), dimension=16)

    vector = _client(embedder, clock).embed("hello", Deadline.after(clock, 5.0))

    assert len(vector) == 16
    assert len(embedder.calls) == 2


def test_embedding_client_rejects_wrong_dimension() -> None:
    clock = FakeClock()

    class _Short(HashingEmbedder):
        def embed(self, text: str, *, timeout: float) -> list[float]:
            return super().embed(text, timeout=timeout)[:-1]

    with pytest.raises(PermanentDependencyError):
        _client(_Short(dimension=16), clock).embed("hello", Deadline.after(clock, 5.0))


def test_embedding_client_rejects_non_finite_values() -> None:
    clock = FakeClock()

    class _NaN(HashingEmbedder):
        def embed(self, text: str, *, timeout: float) -> list[float]:
            return [float("nan")] * self.dimension

    with pytest.raises(PermanentDependencyError):
        _client(_NaN(dimension=4), clock).embed("hello", Deadline.after(clock, 5.0))
