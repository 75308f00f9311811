"""Deterministic text pre-processing applied before embedding."""

from __future__ import annotations

import unicodedata

from message_search.config import NormalizerConfig
from message_search.errors import EmptyInputError
from message_search.types import NormalizedText

_KEPT_CONTROLS = {"\n", "\t"}


class TextNormalizer:
    """Trims, strips control characters and truncates to a character budget."""

    def __init__(self, config: NormalizerConfig | None = None) -> None:
        self.config = config or NormalizerConfig()

    def normalize(self, raw: str | None) -> NormalizedText:
        cleaned = "".join(
            ch
            for ch in (raw or "")
            if ch in _KEPT_CONTROLS or unicodedata.category(ch) != "Cc"
        ).strip()
        if not cleaned:
            raise EmptyInputError("text is empty after trimming")

        original_length = len(cleaned)
        truncated = original_length > self.config.max_chars
        if truncated:
            cleaned = cleaned[: self.config.max_chars].rstrip()
        return NormalizedText(text=cleaned, truncated=truncated, original_length=original_length)
