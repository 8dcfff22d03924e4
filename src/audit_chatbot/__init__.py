"""
Conversational search over internal-audit findings.

Subpackages:
- core: record model, field normalisation, pattern matching, query planning,
  concurrent execution, merging, semantic fallback and export
- conversation: confirmation protocol and the per-turn state machine
- ui: Streamlit chat surface
"""

from audit_chatbot.config import APP_VERSION as __version__  # noqa: F401
