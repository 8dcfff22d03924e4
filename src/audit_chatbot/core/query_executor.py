from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from audit_chatbot.core.data_loader import CountingRecordStore, RecordStore
from audit_chatbot.core.errors import PartialQueryFailure, QueryCancelled, StoreUnavailable
from audit_chatbot.core.models import Operator, Record
from audit_chatbot.core.query_planner import AtomicQuerySpec

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared by a turn and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True as soon as the token is cancelled."""
        return self._event.wait(max(0.0, seconds))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled("Query was superseded by a newer request")


@dataclass
class SpecOutcome:
    spec: AtomicQuerySpec
    records: List[Record]
    attempts: int
    elapsed_ms: float


@dataclass
class ResultSet:
    """
    Records returned by the successful specs, in plan order, plus the specs
    that failed after retries. Failed specs contribute no rows at all.
    """
    specs: List[AtomicQuerySpec]
    outcomes: List[SpecOutcome] = field(default_factory=list)
    failed_specs: List[AtomicQuerySpec] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_specs)

    @property
    def failed_spec_ids(self) -> Tuple[str, ...]:
        return tuple(s.spec_id for s in self.failed_specs)

    @property
    def skipped_variants(self) -> Tuple[str, ...]:
        out: List[str] = []
        for spec in self.failed_specs:
            for v in spec.variants:
                if v not in out:
                    out.append(v)
        return tuple(out)

    def entries(self) -> Iterator[Tuple[str, Record]]:
        """(spec_id, record) pairs; the spec id is the record's provenance."""
        for outcome in self.outcomes:
            for rec in outcome.records:
                yield outcome.spec.spec_id, rec

    def raise_for_failures(self) -> None:
        if self.failed_specs:
            raise PartialQueryFailure(self.failed_spec_ids)


@dataclass
class CountResult:
    total: int
    failed_specs: List[AtomicQuerySpec] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_specs)


class QueryExecutor:
    """
    Runs atomic specs against the store on a fixed-size worker pool.

    Each spec is retried with exponential backoff; the backoff wait doubles
    as the cancellation check. All specs failing raises StoreUnavailable,
    some failing yields a degraded ResultSet.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        max_workers: int = 4,
        attempts: int = 3,
        backoff_seconds: float = 0.2,
        max_backoff_seconds: float = 2.0,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be greater than 0")
        if attempts <= 0:
            raise ValueError("attempts must be greater than 0")
        self._store = store
        self._max_workers = max_workers
        self._attempts = attempts
        self._backoff = backoff_seconds
        self._max_backoff = max_backoff_seconds

    @property
    def store(self) -> RecordStore:
        return self._store

    def _delay(self, attempt: int) -> float:
        return min(self._backoff * (2 ** (attempt - 1)), self._max_backoff)

    def _with_retry(self, spec: AtomicQuerySpec, call: Callable[[], T], token: CancellationToken) -> Tuple[T, int]:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._attempts + 1):
            token.raise_if_cancelled()
            try:
                return call(), attempt
            except QueryCancelled:
                raise
            except Exception as exc:
                last_exc = exc
                if attempt == self._attempts:
                    break
                delay = self._delay(attempt)
                logger.warning(
                    "Query %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    spec.spec_id, attempt, self._attempts, exc, delay,
                )
                if token.wait(delay):
                    token.raise_if_cancelled()

        assert last_exc is not None
        raise last_exc

    def _run_spec(self, spec: AtomicQuerySpec, token: CancellationToken) -> SpecOutcome:
        t0 = time.perf_counter()
        logger.info("Querying %s", spec.spec_id)
        records, attempts = self._with_retry(spec, lambda: list(self._store.query_by_filters(spec.filters)), token)
        return SpecOutcome(spec=spec, records=records, attempts=attempts, elapsed_ms=(time.perf_counter() - t0) * 1000)

    def _fan_out(
        self,
        specs: Sequence[AtomicQuerySpec],
        work: Callable[[AtomicQuerySpec, CancellationToken], T],
        token: CancellationToken,
    ) -> Tuple[Dict[str, T], Dict[str, str], Optional[Exception]]:
        done: Dict[str, T] = {}
        errors: Dict[str, str] = {}
        last_exc: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=min(len(specs), self._max_workers)) as pool:
            futures: Dict[Future, AtomicQuerySpec] = {pool.submit(work, spec, token): spec for spec in specs}
            try:
                for future in as_completed(futures):
                    spec = futures[future]
                    try:
                        done[spec.spec_id] = future.result()
                    except QueryCancelled:
                        raise
                    except Exception as exc:
                        logger.warning("Query %s failed after %d attempts: %s", spec.spec_id, self._attempts, exc)
                        errors[spec.spec_id] = str(exc)
                        last_exc = exc
            except QueryCancelled:
                for f in futures:
                    f.cancel()
                raise

        # A cancel that lands after the last worker finished still discards the batch
        token.raise_if_cancelled()
        return done, errors, last_exc

    def execute(self, specs: Sequence[AtomicQuerySpec], token: Optional[CancellationToken] = None) -> ResultSet:
        token = token or CancellationToken()
        token.raise_if_cancelled()
        result = ResultSet(specs=list(specs))
        if not specs:
            return result

        done, errors, last_exc = self._fan_out(specs, self._run_spec, token)

        for spec in specs:
            if spec.spec_id in done:
                result.outcomes.append(done[spec.spec_id])
            else:
                result.failed_specs.append(spec)
        result.errors = errors

        if not result.outcomes:
            raise StoreUnavailable(f"All {len(specs)} atomic queries failed", last_error=last_exc)

        if result.degraded:
            logger.warning(
                "Degraded result: %d of %d queries failed (%s)",
                len(result.failed_specs), len(specs), ", ".join(result.failed_spec_ids),
            )
        return result

    def count(self, specs: Sequence[AtomicQuerySpec], token: Optional[CancellationToken] = None) -> CountResult:
        """
        Total number of matching records.

        Uses count_matching when the store offers it. Specs cover disjoint
        raw variants, so summing per-spec counts is exact. Tag specs are the
        exception: one record can carry several of the asked tags, so those
        are counted by distinct id.
        """
        token = token or CancellationToken()
        token.raise_if_cancelled()
        if not specs:
            return CountResult(total=0)

        overlapping = any(f.operator is Operator.CONTAINS for s in specs for f in s.filters)
        if overlapping or not isinstance(self._store, CountingRecordStore):
            result = self.execute(specs, token)
            ids = {rec.id for _, rec in result.entries()}
            return CountResult(total=len(ids), failed_specs=list(result.failed_specs))

        store = self._store

        def work(spec: AtomicQuerySpec, tok: CancellationToken) -> int:
            value, _ = self._with_retry(spec, lambda: int(store.count_matching(spec.filters)), tok)
            return value

        done, _, last_exc = self._fan_out(specs, work, token)
        failed = [s for s in specs if s.spec_id not in done]
        if len(failed) == len(specs):
            raise StoreUnavailable(f"All {len(specs)} count queries failed", last_error=last_exc)
        return CountResult(total=sum(done.values()), failed_specs=failed)
