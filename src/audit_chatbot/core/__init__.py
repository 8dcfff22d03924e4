"""
Core data and query layer.

This package contains:
- models: finding records and store-level filters
- field_normalizer: department alias table, year and priority canonicalisation
- metadata_loader: load the department alias table from data/metadata
- patterns: rule-based natural-language pattern matching
- query_planner: expand an intent into store-safe atomic queries
- data_loader: record store adapters (in-memory / HTTP search endpoint)
- query_executor: bounded concurrent execution with retry and cancellation
- result_merger: dedupe, sort and page result sets
- fallback: semantic nearest-neighbour retrieval and hybrid ranking
- vector_index: qdrant / sentence-transformers collaborators (optional extra)
- export: Excel / CSV download of the full result set
"""
