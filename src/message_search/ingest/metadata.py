"""Keyword, mention and signal extraction stored alongside vectors."""

from __future__ import annotations

import re
from collections.abc import Iterable

from message_search.config import MetadataConfig
from message_search.types import MessageSignals, Participant

_TOKEN_PATTERN = re.compile(r"[^\W_]+(?:['’][^\W_]+)?", flags=re.UNICODE)
_MENTION_PATTERN = re.compile(r"@([\w.\-]+)", flags=re.UNICODE)
_DECISION_PATTERN = re.compile(
    r"\b(decided|decision|agreed|approved|confirmed|finalized)\b", flags=re.IGNORECASE
)
_ACTION_PATTERN = re.compile(
    r"\b(todo|to-do|task|action item|need to|should|must|will do)\b", flags=re.IGNORECASE
)

STOP_WORDS = frozenset(
    {
        "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
        "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
        "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
        "or", "an", "will", "my", "one", "all", "would", "there", "their", "what",
        "so", "up", "out", "if", "about", "who", "get", "which", "go", "me",
        "when", "make", "can", "like", "time", "no", "just", "him", "know", "take",
        "is", "am", "are", "was", "were", "been", "has", "had", "our", "us",
        "its", "it's", "i'm", "don't", "did", "does", "than", "then", "them",
        "these", "those", "your", "yours", "into", "over", "also", "very",
    }
)


class MetadataExtractor:
    """Derives filter/debug signals from message text without external calls.

    Keywords are the first unique non-stop-word tokens (in order of
    appearance, capped). Mentioned participants are the user ids whose name
    or alias appears in the text, either as a plain token sequence or as an
    ``@handle``. None of this feeds ranking.
    """

    def __init__(self, config: MetadataConfig | None = None) -> None:
        self.config = config or MetadataConfig()

    def extract(self, text: str, participants: Iterable[Participant] = ()) -> MessageSignals:
        tokens = tokenize(text)
        return MessageSignals(
            keywords=self._keywords(tokens),
            mentioned_participants=_mentioned(text, tokens, participants),
            decision_made=bool(_DECISION_PATTERN.search(text)),
            has_action_item=bool(_ACTION_PATTERN.search(text)),
        )

    def _keywords(self, tokens: list[str]) -> list[str]:
        keywords: list[str] = []
        seen: set[str] = set()
        for token in tokens:
            if len(token) < self.config.min_token_length or token.isdigit():
                continue
            if token in STOP_WORDS or token in seen:
                continue
            seen.add(token)
            keywords.append(token)
            if len(keywords) >= self.config.max_keywords:
                break
        return keywords


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN_PATTERN.findall(text)]


def _mentioned(text: str, tokens: list[str], participants: Iterable[Participant]) -> list[str]:
    handles = {handle.lower().rstrip(".-") for handle in _MENTION_PATTERN.findall(text)}
    padded = f" {' '.join(tokens)} "
    mentioned: list[str] = []
    for participant in participants:
        names = [participant.user_id, *participant.aliases]
        for name in names:
            name_tokens = tokenize(name)
            if not name_tokens:
                continue
            if name.lower() in handles or f" {' '.join(name_tokens)} " in padded:
                if participant.user_id not in mentioned:
                    mentioned.append(participant.user_id)
                break
    return sorted(mentioned)
