from __future__ import annotations

import logging
import time
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from audit_chatbot.config import (
    APP_NAME,
    APP_VERSION,
    LOCAL_RECORDS_FILE,
    QDRANT_URL,
    RECORD_STORE_URL,
    configure_logging,
    load_settings,
)
from audit_chatbot.conversation.confirmation import ConfirmationResponse, PendingPlan, format_restatement
from audit_chatbot.conversation.orchestrator import QueryOrchestrator, TurnOutcome, TurnStatus
from audit_chatbot.core.data_loader import DataFrameRecordStore, HttpRecordStore, RecordStore
from audit_chatbot.core.errors import AuditQueryError
from audit_chatbot.core.export import build_export_frame, export_records
from audit_chatbot.core.field_normalizer import VariantMap
from audit_chatbot.core.metadata_loader import load_variant_map
from audit_chatbot.core.models import DEPARTMENT_RAW_FIELD

logger = logging.getLogger(__name__)

EXAMPLE_QUESTIONS = [
    "show all IT findings 2024",
    "high priority findings in Finance",
    "findings from 2021 to 2023",
    "how many HR findings in 2023",
]


def _build_store() -> RecordStore:
    if RECORD_STORE_URL:
        logger.info("Using HTTP record store at %s", RECORD_STORE_URL)
        return HttpRecordStore(RECORD_STORE_URL)
    path = Path(LOCAL_RECORDS_FILE)
    logger.info("Using local record export %s", path)
    return DataFrameRecordStore.from_file(path)


@st.cache_resource(show_spinner=False)
def _get_orchestrator() -> QueryOrchestrator:
    configure_logging()
    settings = load_settings()
    store = _build_store()
    # A local export can list its own department spellings; the HTTP store
    # relies on the alias table alone.
    observed = store.distinct_values(DEPARTMENT_RAW_FIELD) if isinstance(store, DataFrameRecordStore) else None
    variants = load_variant_map(observed=observed)

    index = embed = None
    if QDRANT_URL:
        # Heavy optional stack, only imported when a vector index is configured
        from audit_chatbot.core.vector_index import QdrantVectorIndex, SentenceTransformerEmbedder

        index = QdrantVectorIndex(QDRANT_URL)
        embed = SentenceTransformerEmbedder()

    return QueryOrchestrator.build(store, variants, settings=settings, index=index, embed=embed)


def _get_variants() -> VariantMap:
    return _get_orchestrator().variants


def _init_state() -> None:
    st.session_state.setdefault("messages", [])
    st.session_state.setdefault("pending", None)
    st.session_state.setdefault("last_outcome", None)


def _add_message(role: str, content: str, outcome: Optional[TurnOutcome] = None) -> None:
    st.session_state["messages"].append({"role": role, "content": content, "outcome": outcome})


def _summarise(outcome: TurnOutcome) -> str:
    status = outcome.status
    if status is TurnStatus.AWAITING_CONFIRMATION:
        return f"I understood: **{format_restatement(outcome.restatement)}**. Shall I run this?"
    if status is TurnStatus.CLARIFY:
        return "I could not interpret that. " + " ".join(outcome.notes)
    if status is TurnStatus.REJECTED:
        return "OK, nothing was run. Ask again whenever you are ready."
    if status is TurnStatus.CANCELLED:
        return "That question was superseded."
    if status is TurnStatus.FAILED:
        return " ".join(outcome.notes) or "The query failed."

    if outcome.count is not None:
        text = f"**{outcome.count}** findings match {format_restatement(outcome.restatement)}."
    elif outcome.page is not None:
        page = outcome.page
        scope = format_restatement(outcome.restatement) if outcome.restatement else "your question"
        text = f"Found **{page.total_count}** findings for {scope}."
        if page.has_more:
            text += f" Showing the first {len(page.rows)}; download the full set below."
    else:
        text = "Done."
    for note in outcome.notes:
        text += f"\n\n_{note}_"
    return text


def _rows_frame(outcome: TurnOutcome) -> pd.DataFrame:
    page = outcome.page
    df = build_export_frame(page.rows, _get_variants())
    if page.scores:
        df["Score"] = [page.scores.get(rec.id) for rec in page.rows]
    return df


def _render_result(outcome: TurnOutcome, key: str) -> None:
    page = outcome.page
    if page is None or not page.rows:
        return

    st.dataframe(_rows_frame(outcome), use_container_width=True, hide_index=True)
    if page.degraded and page.skipped_variants:
        st.warning(f"Missing results for: {', '.join(page.skipped_variants)}")

    col1, col2 = st.columns(2)
    with col1:
        st.download_button(
            "Download Excel",
            data=export_records(page.exportable_set, "xlsx", _get_variants()),
            file_name="audit_findings.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            key=f"xlsx_{key}",
        )
    with col2:
        st.download_button(
            "Download CSV",
            data=export_records(page.exportable_set, "csv", _get_variants()),
            file_name="audit_findings.csv",
            mime="text/csv",
            key=f"csv_{key}",
        )


def _handle(outcome: TurnOutcome) -> None:
    st.session_state["pending"] = outcome.pending if outcome.status is TurnStatus.AWAITING_CONFIRMATION else None
    st.session_state["last_outcome"] = outcome
    _add_message("assistant", _summarise(outcome), outcome)


def _run_question(text: str, hybrid: bool) -> None:
    orchestrator = _get_orchestrator()
    _add_message("user", text)
    t0 = time.perf_counter()
    try:
        with st.spinner("Searching findings..."):
            outcome = orchestrator.begin(text, hybrid=hybrid)
    except AuditQueryError as exc:
        _add_message("assistant", f"Query failed: {exc}")
        return
    logger.info("Turn %r finished as %s in %0.2fs", text, outcome.status.value, time.perf_counter() - t0)
    _handle(outcome)


def _resolve(pending: PendingPlan, response: ConfirmationResponse) -> None:
    orchestrator = _get_orchestrator()
    with st.spinner("Running query..."):
        outcome = orchestrator.resolve(pending, response)
    _handle(outcome)


def _render_history() -> None:
    messages: List[Dict[str, Any]] = st.session_state["messages"]
    for i, msg in enumerate(messages):
        with st.chat_message(msg["role"]):
            st.markdown(msg["content"])
            if msg.get("outcome") is not None:
                _render_result(msg["outcome"], key=str(i))


def _render_confirmation() -> None:
    pending: Optional[PendingPlan] = st.session_state.get("pending")
    if pending is None:
        return

    with st.container(border=True):
        st.write("Confirm the interpretation before it runs:")
        for field_label, op, value in pending.restatement:
            st.write(f"- {field_label} {op} **{value}**")

        col1, col2 = st.columns(2)
        with col1:
            if st.button("Run it", key=f"confirm_{pending.request_id}", type="primary"):
                _resolve(pending, ConfirmationResponse.confirm())
                st.rerun()
        with col2:
            if st.button("Cancel", key=f"reject_{pending.request_id}"):
                _resolve(pending, ConfirmationResponse.reject())
                st.rerun()

        correction = st.text_input("Or correct it (e.g. \"make it 2023\")", key=f"correct_{pending.request_id}")
        if st.button("Apply correction", key=f"apply_{pending.request_id}") and correction.strip():
            _add_message("user", correction.strip())
            _resolve(pending, ConfirmationResponse.correct(correction.strip()))
            st.rerun()


def _render_sidebar() -> bool:
    with st.sidebar:
        st.subheader("Options")
        hybrid = st.checkbox(
            "Hybrid search",
            value=False,
            help="Also rank semantically similar findings below the filtered ones. Needs a vector index.",
            disabled=not QDRANT_URL,
        )
        st.write("Try for example:")
        for q in EXAMPLE_QUESTIONS:
            st.code(q, language=None)

        with st.expander("Backend status (developer view)", expanded=False):
            st.write(f"Record store: {RECORD_STORE_URL or LOCAL_RECORDS_FILE}")
            st.write(f"Vector index: {QDRANT_URL or '(not configured)'}")
            if st.button("Reload department alias table"):
                try:
                    load_variant_map(refresh=True)
                    _get_orchestrator.clear()
                    variants = _get_variants()
                    st.success(f"Loaded {len(variants)} department categories.")
                except (AuditQueryError, OSError, ValueError):
                    st.error("Error while loading the alias table.")
                    st.text_area("Traceback", value=traceback.format_exc(), height=220)
    return hybrid


def run_app() -> None:
    st.set_page_config(page_title=APP_NAME, page_icon="🔎", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Version {APP_VERSION}")

    _init_state()
    hybrid = _render_sidebar()

    try:
        _get_orchestrator()
    except (AuditQueryError, OSError, ValueError) as exc:
        st.error(f"Could not start the query engine: {exc}")
        st.text_area("Traceback", value=traceback.format_exc(), height=220)
        return

    _render_history()
    _render_confirmation()

    question = st.chat_input("Ask about audit findings")
    if question:
        _run_question(question.strip(), hybrid)
        st.rerun()


if __name__ == "__main__":
    run_app()
