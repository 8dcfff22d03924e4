from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Tuple

from audit_chatbot.config import EngineSettings, load_settings
from audit_chatbot.conversation.confirmation import (
    ConfirmationGate,
    ConfirmationRequest,
    ConfirmationResponse,
    PendingPlan,
    Restatement,
    ResponseKind,
    format_restatement,
    restate,
)
from audit_chatbot.core.data_loader import RecordStore
from audit_chatbot.core.errors import (
    AuditQueryError,
    MalformedYear,
    PlanningError,
    QueryCancelled,
    RetrievalError,
    StoreUnavailable,
    UnknownCategory,
)
from audit_chatbot.core.fallback import Embedder, FallbackRetriever, VectorIndex, hybrid_page, semantic_page
from audit_chatbot.core.field_normalizer import FieldNormalizer, VariantMap
from audit_chatbot.core.patterns import LowConfidence, PatternMatcher, QueryIntent
from audit_chatbot.core.query_executor import CancellationToken, QueryExecutor
from audit_chatbot.core.query_planner import QueryPlanner
from audit_chatbot.core.result_merger import ResultPage, merge

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    INTERPRETING = "interpreting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DIRECT_EXECUTE = "direct_execute"
    EXECUTING = "executing"
    PRESENTING = "presenting"


class TurnStatus(str, Enum):
    ANSWERED = "answered"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CLARIFY = "clarify"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TurnOutcome:
    state: TurnState
    status: TurnStatus
    intent: Optional[QueryIntent] = None
    restatement: Restatement = ()
    page: Optional[ResultPage] = None
    count: Optional[int] = None
    pending: Optional[PendingPlan] = None
    error: Optional[AuditQueryError] = None
    notes: List[str] = field(default_factory=list)
    history: Tuple[TurnState, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.page and self.page.degraded)


class QueryOrchestrator:
    """
    Drives one user turn through
      AWAITING_INPUT -> INTERPRETING -> (AWAITING_CONFIRMATION | DIRECT_EXECUTE)
                     -> EXECUTING -> PRESENTING

    A correction loops AWAITING_CONFIRMATION back to INTERPRETING. Starting
    a turn cancels whatever the previous turn still had in flight. Only the
    last resolved intent is remembered, for one-step corrections.
    """

    def __init__(
        self,
        matcher: PatternMatcher,
        planner: QueryPlanner,
        executor: QueryExecutor,
        *,
        fallback: Optional[FallbackRetriever] = None,
        settings: Optional[EngineSettings] = None,
        require_confirmation: bool = False,
        confirm_below: float = 1.0,
    ):
        self._matcher = matcher
        self._planner = planner
        self._executor = executor
        self._fallback = fallback
        self._settings = settings or load_settings()
        self._require_confirmation = require_confirmation
        self._confirm_below = confirm_below

        self._lock = threading.Lock()
        self._token = CancellationToken()
        self._request_id: Optional[str] = None
        self._last_intent: Optional[QueryIntent] = None

    @classmethod
    def build(
        cls,
        store: RecordStore,
        variants: VariantMap,
        *,
        settings: Optional[EngineSettings] = None,
        index: Optional[VectorIndex] = None,
        embed: Optional[Embedder] = None,
        **kwargs,
    ) -> "QueryOrchestrator":
        """Wire every component from one store, alias table and settings."""
        settings = settings or load_settings()
        normalizer = FieldNormalizer(variants)
        fallback = None
        if index is not None and embed is not None:
            fallback = FallbackRetriever(
                index,
                embed,
                store,
                top_k=settings.fallback_top_k,
                timeout_seconds=settings.fallback_timeout_seconds,
                batch_limit=settings.store_batch_limit,
            )
        return cls(
            PatternMatcher(normalizer, threshold=settings.confidence_threshold),
            QueryPlanner(normalizer, batch_limit=settings.store_batch_limit),
            QueryExecutor(
                store,
                max_workers=settings.worker_pool_size,
                attempts=settings.retry_attempts,
                backoff_seconds=settings.retry_backoff_seconds,
                max_backoff_seconds=settings.retry_max_backoff_seconds,
            ),
            fallback=fallback,
            settings=settings,
            **kwargs,
        )

    @property
    def last_intent(self) -> Optional[QueryIntent]:
        return self._last_intent

    @property
    def current_token(self) -> CancellationToken:
        return self._token

    @property
    def variants(self) -> VariantMap:
        """The alias table the matcher and planner were built from."""
        return self._planner.normalizer.variants

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def _start_turn(self) -> CancellationToken:
        with self._lock:
            self._token.cancel()
            self._token = CancellationToken()
            self._request_id = None
            return self._token

    def cancel(self) -> None:
        with self._lock:
            self._token.cancel()
            self._request_id = None

    def begin(self, text: str, *, hybrid: bool = False, page_size: Optional[int] = None) -> TurnOutcome:
        """
        Start a new turn. Returns either a presented outcome or one in
        AWAITING_CONFIRMATION carrying the frozen plan.
        """
        token = self._start_turn()
        history = (TurnState.AWAITING_INPUT,)
        return self._interpret(text, self._last_intent, hybrid, token, history, page_size)

    def resolve(
        self,
        pending: PendingPlan,
        response: ConfirmationResponse,
        *,
        page_size: Optional[int] = None,
    ) -> TurnOutcome:
        """Continue a turn suspended in AWAITING_CONFIRMATION."""
        with self._lock:
            token = self._token
            stale = pending.request_id != self._request_id
            self._request_id = None
        history = tuple(TurnState(s) for s in pending.history)

        if stale or token.cancelled:
            logger.info("Ignoring response to superseded request %s", pending.request_id)
            return TurnOutcome(
                state=TurnState.PRESENTING,
                status=TurnStatus.CANCELLED,
                intent=pending.intent,
                restatement=pending.restatement,
                notes=["This question was superseded by a newer one."],
                history=history + (TurnState.PRESENTING,),
            )

        if response.kind is ResponseKind.REJECT:
            logger.info("Plan %s rejected; nothing executed", pending.request_id)
            return TurnOutcome(
                state=TurnState.PRESENTING,
                status=TurnStatus.REJECTED,
                intent=pending.intent,
                restatement=pending.restatement,
                history=history + (TurnState.PRESENTING,),
            )

        if response.kind is ResponseKind.CORRECT:
            return self._interpret(response.corrected_text, pending.intent, pending.hybrid, token, history, page_size)

        return self._execute(pending, token, history, page_size)

    def run_turn(
        self,
        text: str,
        gate: Optional[ConfirmationGate] = None,
        *,
        hybrid: bool = False,
        page_size: Optional[int] = None,
    ) -> TurnOutcome:
        """Blocking turn: asks `gate` whenever the plan needs confirmation."""
        outcome = self.begin(text, hybrid=hybrid, page_size=page_size)
        while outcome.status is TurnStatus.AWAITING_CONFIRMATION and outcome.pending is not None:
            if gate is None:
                return outcome
            response = gate.request(ConfirmationRequest(outcome.pending, self._token))
            outcome = self.resolve(outcome.pending, response, page_size=page_size)
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _needs_confirmation(self, intent: QueryIntent) -> bool:
        return self._require_confirmation or intent.confidence < self._confirm_below

    def _clarify(self, error: AuditQueryError, history: Tuple[TurnState, ...], intent: Optional[QueryIntent] = None) -> TurnOutcome:
        return TurnOutcome(
            state=TurnState.PRESENTING,
            status=TurnStatus.CLARIFY,
            intent=intent,
            error=error,
            notes=[str(error)],
            history=history + (TurnState.PRESENTING,),
        )

    def _interpret(
        self,
        text: str,
        prior: Optional[QueryIntent],
        hybrid: bool,
        token: CancellationToken,
        history: Tuple[TurnState, ...],
        page_size: Optional[int],
    ) -> TurnOutcome:
        history = history + (TurnState.INTERPRETING,)
        try:
            matched = self._matcher.match(text, prior)
        except (UnknownCategory, MalformedYear) as exc:
            logger.info("Asking for clarification of %r: %s", text, exc)
            return self._clarify(exc, history)

        if isinstance(matched, LowConfidence):
            return self._semantic_only(matched, token, history, page_size)

        try:
            specs = self._planner.plan(matched)
        except UnknownCategory as exc:
            return self._clarify(exc, history, intent=matched)
        except PlanningError as exc:
            logger.error("Planning failed for %s: %s", matched.pattern_id.value, exc)
            return TurnOutcome(
                state=TurnState.PRESENTING,
                status=TurnStatus.FAILED,
                intent=matched,
                error=exc,
                notes=["The question could not be turned into a query."],
                history=history + (TurnState.PRESENTING,),
            )

        pending = PendingPlan(
            request_id=uuid.uuid4().hex,
            intent=matched,
            specs=tuple(specs),
            restatement=restate(matched),
            sort=self._planner.default_sort(matched),
            hybrid=hybrid,
        )

        if self._needs_confirmation(matched):
            history = history + (TurnState.AWAITING_CONFIRMATION,)
            with self._lock:
                if token is not self._token:
                    return self._superseded(matched, history)
                self._request_id = pending.request_id
            logger.info("Awaiting confirmation of %s", format_restatement(pending.restatement))
            return TurnOutcome(
                state=TurnState.AWAITING_CONFIRMATION,
                status=TurnStatus.AWAITING_CONFIRMATION,
                intent=matched,
                restatement=pending.restatement,
                pending=replace(pending, history=tuple(s.value for s in history)),
                history=history,
            )

        return self._execute(pending, token, history + (TurnState.DIRECT_EXECUTE,), page_size)

    def _superseded(self, intent: Optional[QueryIntent], history: Tuple[TurnState, ...]) -> TurnOutcome:
        return TurnOutcome(
            state=TurnState.PRESENTING,
            status=TurnStatus.CANCELLED,
            intent=intent,
            notes=["This question was superseded by a newer one."],
            history=history + (TurnState.PRESENTING,),
        )

    def _semantic_only(
        self,
        low: LowConfidence,
        token: CancellationToken,
        history: Tuple[TurnState, ...],
        page_size: Optional[int],
    ) -> TurnOutcome:
        error = low.to_error()
        if self._fallback is None:
            return self._clarify(error, history)

        history = history + (TurnState.EXECUTING,)
        try:
            hits = self._fallback.retrieve(low.text, self._settings.fallback_top_k)
        except RetrievalError as exc:
            logger.warning("Semantic fallback unavailable for %r: %s", low.text, exc)
            outcome = self._clarify(error, history)
            outcome.notes.append(str(exc))
            return outcome

        if token.cancelled:
            return self._superseded(None, history)

        page = semantic_page(hits, page_size or self._settings.default_page_size)
        return TurnOutcome(
            state=TurnState.PRESENTING,
            status=TurnStatus.ANSWERED,
            page=page,
            notes=["No structured filter matched; showing semantically similar findings."],
            history=history + (TurnState.PRESENTING,),
        )

    def _execute(
        self,
        pending: PendingPlan,
        token: CancellationToken,
        history: Tuple[TurnState, ...],
        page_size: Optional[int],
    ) -> TurnOutcome:
        history = history + (TurnState.EXECUTING,)
        intent = pending.intent
        size = page_size or self._settings.default_page_size
        if intent.limit:
            # "top N" caps what is shown; the export keeps every match
            size = min(size, intent.limit)
        notes: List[str] = []

        try:
            if intent.count_only:
                counted = self._executor.count(pending.specs, token)
                if counted.degraded:
                    notes.append(f"{len(counted.failed_specs)} of {len(pending.specs)} queries failed; the count is incomplete.")
                self._last_intent = intent
                return TurnOutcome(
                    state=TurnState.PRESENTING,
                    status=TurnStatus.ANSWERED,
                    intent=intent,
                    restatement=pending.restatement,
                    count=counted.total,
                    notes=notes,
                    history=history + (TurnState.PRESENTING,),
                )

            result_set = self._executor.execute(pending.specs, token)
        except QueryCancelled:
            logger.info("Turn for %r cancelled; partial results discarded", intent.text)
            return self._superseded(intent, history)
        except StoreUnavailable as exc:
            logger.error("Store unavailable for %r: %s", intent.text, exc)
            return TurnOutcome(
                state=TurnState.PRESENTING,
                status=TurnStatus.FAILED,
                intent=intent,
                restatement=pending.restatement,
                error=exc,
                notes=["The findings store did not answer. Please try again."],
                history=history + (TurnState.PRESENTING,),
            )

        page = merge(result_set, size, pending.sort.fields, pending.sort.descending)
        if page.degraded:
            notes.append(
                f"{len(page.skipped)} of {len(pending.specs)} queries failed; results are incomplete"
                + (f" (missing: {', '.join(page.skipped_variants)})." if page.skipped_variants else ".")
            )

        if self._fallback is not None and (pending.hybrid or page.total_count == 0):
            try:
                hits = self._fallback.retrieve(intent.text, self._settings.fallback_top_k)
                page = hybrid_page(page, hits, size)
                if page.semantic_only:
                    notes.append("No finding matched the filters; showing semantically similar findings.")
            except RetrievalError as exc:
                logger.warning("Semantic fallback unavailable for %r: %s", intent.text, exc)
                notes.append(f"{exc}; showing structured results only.")

        if token.cancelled:
            return self._superseded(intent, history)

        self._last_intent = intent
        return TurnOutcome(
            state=TurnState.PRESENTING,
            status=TurnStatus.ANSWERED,
            intent=intent,
            restatement=pending.restatement,
            page=page,
            notes=notes,
            history=history + (TurnState.PRESENTING,),
        )
