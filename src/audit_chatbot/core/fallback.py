from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from audit_chatbot.core.data_loader import RecordStore
from audit_chatbot.core.errors import RetrievalError, RetrievalTimeout, StoreError
from audit_chatbot.core.models import ID_FIELD, FieldFilter, Operator, Record
from audit_chatbot.core.result_merger import (
    SOURCE_HYBRID,
    SOURCE_SEMANTIC,
    SOURCE_STRUCTURED,
    ResultPage,
    paginate,
)

logger = logging.getLogger(__name__)

Embedder = Callable[[str], List[float]]


class VectorIndex(Protocol):
    """Read-only snapshot of the findings embedding index."""

    def nearest_neighbors(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        ...


@dataclass(frozen=True)
class ScoredRecord:
    record: Record
    score: Optional[float]
    source: str


class FallbackRetriever:
    """
    Semantic nearest-neighbour search over the findings.

    Embedding and index lookup run on a background thread so the call can
    be abandoned once the time budget is spent. Hits are hydrated from the
    record store with batched id lookups and keep the index ranking. Every
    failure surfaces as RetrievalError (RetrievalTimeout for the budget).
    """

    def __init__(
        self,
        index: VectorIndex,
        embed: Embedder,
        store: RecordStore,
        *,
        top_k: int = 10,
        timeout_seconds: float = 5.0,
        batch_limit: int = 10,
    ):
        self._index = index
        self._embed = embed
        self._store = store
        self._top_k = top_k
        self._timeout = timeout_seconds
        self._batch_limit = batch_limit
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="semantic-fallback")

    def _search(self, text: str, k: int) -> List[Tuple[str, float]]:
        vector = self._embed(text)
        return list(self._index.nearest_neighbors(vector, k))

    def retrieve(self, text: str, k: Optional[int] = None) -> List[ScoredRecord]:
        k = k or self._top_k
        future = self._pool.submit(self._search, text, k)
        try:
            hits = future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise RetrievalTimeout(f"Semantic search exceeded {self._timeout:.1f}s") from exc
        except Exception as exc:
            logger.warning("Semantic search failed for %r: %s", text, exc)
            raise RetrievalError(f"Semantic search failed: {exc}") from exc

        # Keep the best score per id, in ranking order
        ranked: List[Tuple[str, float]] = []
        seen = set()
        for hit_id, score in hits:
            if hit_id in seen:
                continue
            seen.add(hit_id)
            ranked.append((str(hit_id), float(score)))

        try:
            by_id = self._hydrate([hit_id for hit_id, _ in ranked])
        except StoreError as exc:
            raise RetrievalError(f"Could not load the semantic hits: {exc}") from exc

        out: List[ScoredRecord] = []
        for hit_id, score in ranked:
            rec = by_id.get(hit_id)
            if rec is None:
                logger.warning("Index returned id %s that is not in the record store", hit_id)
                continue
            out.append(ScoredRecord(record=rec, score=score, source=SOURCE_SEMANTIC))

        logger.info("Semantic fallback returned %d of %d candidates for %r", len(out), len(ranked), text)
        return out

    def _hydrate(self, ids: Sequence[str]) -> Dict[str, Record]:
        found: Dict[str, Record] = {}
        for i in range(0, len(ids), self._batch_limit):
            batch = tuple(ids[i:i + self._batch_limit])
            flt = FieldFilter(ID_FIELD, Operator.EQ, batch[0]) if len(batch) == 1 else FieldFilter(ID_FIELD, Operator.IN, batch)
            for rec in self._store.query_by_filters([flt]):
                found.setdefault(rec.id, rec)
        return found

    def close(self) -> None:
        self._pool.shutdown(wait=False)


def combine_hybrid(structured: Sequence[Record], semantic: Sequence[ScoredRecord]) -> List[ScoredRecord]:
    """
    Union of ids with structured hits always above semantic-only hits.

    Within each group, records the index scored come first by score
    descending; the rest keep their incoming order.
    """
    scores: Dict[str, float] = {}
    for hit in semantic:
        if hit.score is not None and hit.record.id not in scores:
            scores[hit.record.id] = hit.score

    seen = set()
    merged: List[ScoredRecord] = []
    for rec in structured:
        if rec.id in seen:
            continue
        seen.add(rec.id)
        merged.append(ScoredRecord(record=rec, score=scores.get(rec.id), source=SOURCE_STRUCTURED))
    for hit in semantic:
        if hit.record.id in seen:
            continue
        seen.add(hit.record.id)
        merged.append(ScoredRecord(record=hit.record, score=hit.score, source=SOURCE_SEMANTIC))

    def rank(item: ScoredRecord) -> Tuple[int, int, float]:
        group = 0 if item.source == SOURCE_STRUCTURED else 1
        unscored = 1 if item.score is None else 0
        return group, unscored, -(item.score or 0.0)

    return sorted(merged, key=rank)


def semantic_page(hits: Sequence[ScoredRecord], page_size: int) -> ResultPage:
    records = [h.record for h in hits]
    return ResultPage(
        rows=paginate(records, page_size),
        total_count=len(records),
        exportable_set=records,
        semantic_only=True,
        source=SOURCE_SEMANTIC,
        scores={h.record.id: h.score for h in hits if h.score is not None},
    )


def hybrid_page(structured: ResultPage, hits: Sequence[ScoredRecord], page_size: int) -> ResultPage:
    """Fold semantic hits into a structured page, keeping its degraded state."""
    if not structured.exportable_set:
        page = semantic_page(hits, page_size)
        page.degraded = structured.degraded
        page.skipped = structured.skipped
        page.skipped_variants = structured.skipped_variants
        return page

    combined = combine_hybrid(structured.exportable_set, hits)
    records = [c.record for c in combined]
    return ResultPage(
        rows=paginate(records, page_size),
        total_count=len(records),
        exportable_set=records,
        degraded=structured.degraded,
        skipped=structured.skipped,
        skipped_variants=structured.skipped_variants,
        semantic_only=False,
        source=SOURCE_HYBRID,
        scores={c.record.id: c.score for c in combined if c.score is not None},
    )
