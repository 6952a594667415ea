from __future__ import annotations

import hashlib
import time
from threading import Lock
from typing import Any, Dict, Tuple


class TTLCache:
    def __init__(self) -> None:
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            expires_at, value = item
            if expires_at < now:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = time.time() + ttl_seconds
        with self._lock:
            self._store[key] = (expires_at, value)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._store)


class FallbackAnswerCache:
    """Answers of the AI responder keyed by question and the context they were built from."""

    def __init__(self, cache: TTLCache | None = None) -> None:
        self._cache = cache or TTLCache()

    def get(self, normalized_question: str, context_signature: str) -> str | None:
        return self._cache.get(self._key(normalized_question, context_signature))

    def set(
        self,
        normalized_question: str,
        context_signature: str,
        answer: str,
        ttl_seconds: int = 900,
    ) -> None:
        self._cache.set(self._key(normalized_question, context_signature), answer, ttl_seconds)

    def clear(self) -> None:
        self._cache.clear()

    def _key(self, normalized_question: str, context_signature: str) -> str:
        return f"fallback:{normalized_question.strip().lower()}::{context_signature[:12]}"

    @staticmethod
    def compute_context_signature(context_text: str) -> str:
        return hashlib.md5(context_text.encode()).hexdigest()


_fallback_cache = FallbackAnswerCache()


def get_fallback_cache() -> FallbackAnswerCache:
    return _fallback_cache
