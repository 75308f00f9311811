"""Final ordering of similarity matches."""

from __future__ import annotations

from datetime import datetime, timezone

from message_search.config import RankingConfig
from message_search.types import SearchResult, VectorMatch


class ResultRanker:
    """Combines similarity with a linear recency boost.

    ``score = similarity * similarity_weight + recency * recency_weight``
    where similarity is cosine similarity clamped to [0, 1] and recency
    decays linearly from 1.0 at age zero to 0.0 at the configured horizon.
    Ties go to the more recent message, then to the smaller message id.
    """

    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    def rank(self, matches: list[VectorMatch], now: datetime) -> list[SearchResult]:
        now_ts = now.timestamp()
        scored: list[SearchResult] = []
        for match in matches:
            similarity = clamp_similarity(match.similarity)
            recency = self.recency_boost(now_ts - match.metadata.created_at)
            scored.append(
                SearchResult(
                    message_id=match.message_id,
                    conversation_id=match.metadata.conversation_id,
                    sender_id=match.metadata.sender_id,
                    created_at=datetime.fromtimestamp(match.metadata.created_at, tz=timezone.utc),
                    similarity=similarity,
                    score=similarity * self.config.similarity_weight
                    + recency * self.config.recency_weight,
                )
            )

        scored.sort(key=lambda item: (-item.score, -item.created_at.timestamp(), item.message_id))
        for position, item in enumerate(scored, start=1):
            item.rank = position
        return scored

    def recency_boost(self, age_seconds: float) -> float:
        if age_seconds <= 0:
            return 1.0
        horizon = self.config.recency_horizon_seconds
        if age_seconds >= horizon:
            return 0.0
        return 1.0 - (age_seconds / horizon)


def clamp_similarity(value: float) -> float:
    return min(1.0, max(0.0, value))
