"""Session-scoped retrieval caches.

- :class:`EmbeddingCache`: process-wide ``(model_id, text) -> vector`` LRU with
  an optional second tier shared across processes.
- :class:`SessionRetrievalCache`: per-session FIFO of past queries and their
  results, looked up by vector similarity or exact text.
- :class:`SessionTurnHistory`: per-session retrieval turns used to blend
  results and query vectors across turns.

All three live in a :class:`RetrievalCacheRegistry`, an injected service whose
session entries last as long as the session, not the request.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from ..types import EmbeddingSecondTier, RetrievalCacheEntry, SearchResult, TurnRecord
from .math_utils import cosine_similarity, weighted_average

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_CACHE_ITEMS = 100
DEFAULT_SESSION_CACHE_ITEMS = 20
DEFAULT_MAX_HISTORY_TURNS = 10
QUERY_VECTOR_HISTORY = 3


class EmbeddingCache:
    """Access-order LRU of embedding vectors keyed by model and text."""

    def __init__(
        self,
        max_items: int = DEFAULT_EMBEDDING_CACHE_ITEMS,
        second_tier: EmbeddingSecondTier | None = None,
    ) -> None:
        self.max_items = max_items
        self.second_tier = second_tier
        self._local: OrderedDict[tuple[str, str], list[float]] = OrderedDict()

    async def get(self, model_id: str, text: str) -> list[float] | None:
        key = (model_id, text)
        vector = self._local.get(key)
        if vector is not None:
            self._local.move_to_end(key)
            return vector

        if self.second_tier is None:
            return None
        try:
            remote = await self.second_tier.get(model_id, text)
        except Exception as e:
            logger.warning("Second-tier embedding cache lookup failed: %s", e)
            return None
        if remote:
            self._set_local(key, remote)
            return remote
        return None

    async def set(
        self, model_id: str, text: str, vector: list[float], max_items: int | None = None,
    ) -> None:
        if max_items is not None:
            self.max_items = max_items
        self._set_local((model_id, text), vector)
        if self.second_tier is None:
            return
        try:
            await self.second_tier.set(model_id, text, vector, self.max_items)
        except Exception as e:
            logger.warning("Second-tier embedding cache write failed: %s", e)

    def _set_local(self, key: tuple[str, str], vector: list[float]) -> None:
        if key in self._local:
            self._local.move_to_end(key)
        self._local[key] = vector
        while len(self._local) > max(self.max_items, 0):
            self._local.popitem(last=False)

    def update_max_items(self, max_items: int) -> None:
        self.max_items = max_items

    @property
    def size(self) -> int:
        return len(self._local)

    async def clear(self) -> None:
        self._local.clear()
        if self.second_tier is None:
            return
        try:
            await self.second_tier.clear()
        except Exception as e:
            logger.warning("Second-tier embedding cache clear failed: %s", e)


class SessionRetrievalCache:
    """Bounded FIFO of past retrievals for one session."""

    def __init__(self, max_items: int = DEFAULT_SESSION_CACHE_ITEMS) -> None:
        self.max_items = max_items
        self._entries: list[RetrievalCacheEntry] = []

    def find_similar(self, vector: list[float] | None, threshold: float) -> RetrievalCacheEntry | None:
        """First entry of equal dimension with cosine similarity >= *threshold*."""
        if not vector or not any(vector):
            return None
        for entry in self._entries:
            if not entry.vector or len(entry.vector) != len(vector) or not any(entry.vector):
                continue
            if cosine_similarity(vector, entry.vector) >= threshold:
                return entry
        return None

    def find_by_text(self, text: str) -> RetrievalCacheEntry | None:
        for entry in self._entries:
            if entry.query == text:
                return entry
        return None

    def add(self, entry: RetrievalCacheEntry) -> None:
        while self._entries and len(self._entries) >= self.max_items:
            self._entries.pop(0)
        self._entries.append(entry)

    def update_max_items(self, max_items: int) -> None:
        self.max_items = max_items

    @property
    def size(self) -> int:
        return len(self._entries)

    def entries(self) -> list[RetrievalCacheEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class SessionTurnHistory:
    """Bounded list of retrieval turns, oldest first."""

    def __init__(self, max_turns: int = DEFAULT_MAX_HISTORY_TURNS) -> None:
        self.max_turns = max_turns
        self._turns: list[TurnRecord] = []

    def append(self, turn: TurnRecord) -> None:
        self._turns.append(turn)
        while len(self._turns) > max(self.max_turns, 0):
            self._turns.pop(0)

    def recent(self, n: int) -> list[TurnRecord]:
        """The last *n* turns, newest first."""
        if n <= 0:
            return []
        return list(reversed(self._turns[-n:]))

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)


def aggregate_results(
    current: list[SearchResult],
    history: SessionTurnHistory,
    decay: float = 0.8,
    max_history_turns: int = 3,
) -> list[SearchResult]:
    """Blend *current* with prior turns' results.

    A result from the k-th most recent prior turn (k = 0 newest) scores
    ``score * decay ** (k + 1)``. The best score per result id wins; the list
    is sorted by score and capped at ``len(current) + 2``.
    """
    merged: dict[str, SearchResult] = {r.id: dataclasses.replace(r) for r in current}
    for k, turn in enumerate(history.recent(max_history_turns)):
        weight = decay ** (k + 1)
        for r in turn.results:
            weighted = r.score * weight
            existing = merged.get(r.id)
            if existing is None:
                merged[r.id] = dataclasses.replace(r, score=weighted)
            else:
                existing.score = max(existing.score, weighted)

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
    return ranked[: len(current) + 2]


def compute_weighted_vector(
    current: list[float], history: SessionTurnHistory, decay: float,
) -> list[float]:
    """Blend *current* with up to three prior query vectors of equal dimension."""
    weighted: list[tuple[list[float], float]] = [(current, 1.0)]
    for k, turn in enumerate(history.recent(QUERY_VECTOR_HISTORY)):
        if turn.query_vector and len(turn.query_vector) == len(current):
            weighted.append((turn.query_vector, decay ** (k + 1)))
    return weighted_average(weighted)


@dataclass
class SessionCacheData:
    retrieval_cache: SessionRetrievalCache
    history: SessionTurnHistory
    created_at: float = field(default_factory=time.time)


class RetrievalCacheRegistry:
    """Holds the shared embedding cache and per-session retrieval state.

    Session entries are created lazily and live until
    :meth:`clear_session_cache` or :meth:`clear_all_caches`.
    """

    def __init__(
        self,
        embedding_cache_max_items: int = DEFAULT_EMBEDDING_CACHE_ITEMS,
        session_cache_max_items: int = DEFAULT_SESSION_CACHE_ITEMS,
        max_history_turns: int = DEFAULT_MAX_HISTORY_TURNS,
        second_tier: EmbeddingSecondTier | None = None,
    ) -> None:
        self.embedding_cache_max_items = embedding_cache_max_items
        self.session_cache_max_items = session_cache_max_items
        self.max_history_turns = max_history_turns
        self.second_tier = second_tier
        self._embedding_cache: EmbeddingCache | None = None
        self._sessions: dict[str, SessionCacheData] = {}

    def get_embedding_cache(self, max_items: int | None = None) -> EmbeddingCache:
        if self._embedding_cache is None:
            self._embedding_cache = EmbeddingCache(
                max_items or self.embedding_cache_max_items, second_tier=self.second_tier,
            )
            logger.debug("Created embedding cache (max_items=%d)", self._embedding_cache.max_items)
        elif max_items is not None:
            self._embedding_cache.update_max_items(max_items)
        return self._embedding_cache

    def _session(self, session_id: str) -> SessionCacheData:
        data = self._sessions.get(session_id)
        if data is None:
            data = SessionCacheData(
                retrieval_cache=SessionRetrievalCache(self.session_cache_max_items),
                history=SessionTurnHistory(self.max_history_turns),
            )
            self._sessions[session_id] = data
            logger.debug("Created retrieval cache for session %s", session_id)
        return data

    def get_session_retrieval_cache(
        self, session_id: str, max_items: int | None = None,
    ) -> SessionRetrievalCache:
        cache = self._session(session_id).retrieval_cache
        if max_items is not None:
            cache.update_max_items(max_items)
        return cache

    def get_session_history(
        self, session_id: str, max_turns: int | None = None,
    ) -> SessionTurnHistory:
        history = self._session(session_id).history
        if max_turns is not None:
            history.max_turns = max_turns
        return history

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def clear_session_cache(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Cleared retrieval cache for session %s", session_id)

    async def clear_all_caches(self) -> None:
        if self._embedding_cache is not None:
            await self._embedding_cache.clear()
        self._embedding_cache = None
        self._sessions.clear()
        logger.debug("Cleared all retrieval caches")

    def stats(self) -> dict:
        return {
            "embedding_cache_size": self._embedding_cache.size if self._embedding_cache else 0,
            "session_count": len(self._sessions),
            "sessions": [
                {
                    "session_id": sid,
                    "retrieval_cache_size": data.retrieval_cache.size,
                    "history_size": len(data.history),
                }
                for sid, data in self._sessions.items()
            ],
        }
