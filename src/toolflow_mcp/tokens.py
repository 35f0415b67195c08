"""
Token counting for budget bookkeeping.

Uses tiktoken when enabled. The encoder is loaded lazily; if it cannot be
loaded (for example, the BPE file cannot be fetched offline) counting falls
back to the 4-characters-per-token estimate.
"""

import hashlib
import logging
from collections import OrderedDict

import tiktoken

logger = logging.getLogger(__name__)

TOKEN_CACHE_MAX_SIZE = 2048


class TokenCounter:
    """Counts tokens with a small LRU cache keyed by content hash."""

    def __init__(self, use_tiktoken: bool = True, model: str = "gpt-4"):
        self.use_tiktoken = use_tiktoken
        self.model = model
        self._encoder: tiktoken.Encoding | None = None
        self._encoder_failed = False
        self._cache: OrderedDict[str, int] = OrderedDict()

    @property
    def encoder(self) -> tiktoken.Encoding | None:
        """Lazy-load tiktoken encoder."""
        if not self.use_tiktoken or self._encoder_failed:
            return None
        if self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self.model)
            except (KeyError, ValueError, OSError) as e:
                logger.warning(f"[TOKENS] tiktoken unavailable, estimating instead: {e}")
                self._encoder_failed = True
                return None
        return self._encoder

    @staticmethod
    def estimate(text: str) -> int:
        """Quick token estimation (4 chars per token)."""
        return (len(text) + 3) // 4

    def count(self, text: str) -> int:
        """Count tokens in text."""
        if not text:
            return 0

        key = hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        encoder = self.encoder
        if encoder is None:
            count = self.estimate(text)
        else:
            count = len(encoder.encode(text, disallowed_special=()))

        self._cache[key] = count
        while len(self._cache) > TOKEN_CACHE_MAX_SIZE:
            self._cache.popitem(last=False)
        return count

    def truncate(self, text: str, max_tokens: int, marker: str = "\n\n... (truncated)") -> str:
        """Cut text so that it (marker included) fits in max_tokens."""
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text

        budget = max_tokens - self.count(marker)
        if budget <= 0:
            return ""

        cut = min(len(text), budget * 4)
        while cut > 0 and self.count(text[:cut]) > budget:
            cut = int(cut * 0.9)
        return text[:cut] + marker
