from __future__ import annotations

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import pandas as pd

from audit_chatbot.config import METADATA_DIR
from audit_chatbot.core.field_normalizer import DEFAULT_VARIANTS, VariantMap

logger = logging.getLogger(__name__)

# Place the alias table here:
#   data/metadata/department_variants.csv   (or .xlsx, sheet VARIANTS)
VARIANTS_FILE_STEM = "department_variants"
VARIANTS_SHEET = "VARIANTS"

# In-memory cache
_VARIANTS_CACHE: Optional[VariantMap] = None


def _find_variants_file() -> Optional[Path]:
    """
    Locate the alias table under data/metadata.

    CSV wins over Excel when both exist. Returns None when neither is
    present, in which case the built-in table is used.
    """
    for suffix in (".csv", ".xlsx", ".xls"):
        candidate = METADATA_DIR / f"{VARIANTS_FILE_STEM}{suffix}"
        if candidate.exists():
            return candidate
    return None


def _read_table(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, dtype=str, keep_default_na=False)

    xls = pd.ExcelFile(path)
    sheet = VARIANTS_SHEET if VARIANTS_SHEET in xls.sheet_names else xls.sheet_names[0]
    if sheet != VARIANTS_SHEET:
        logger.warning("Sheet %s not found in %s; using %s.", VARIANTS_SHEET, path, sheet)
    return xls.parse(sheet, dtype=str).fillna("")


def variant_table_from_frame(df: pd.DataFrame) -> Dict[str, List[str]]:
    """
    Turn a two-column sheet into an ordered category -> raw values table.

    Expected columns (case-insensitive):
      - 'category'   (user-facing label, e.g. 'IT')
      - 'raw_value'  (department spelling as stored, e.g. 'Departemen IT')
    """
    lower = {str(c).strip().lower(): c for c in df.columns}
    cat_col = lower.get("category")
    raw_col = lower.get("raw_value") or lower.get("raw value") or lower.get("department")

    if not (cat_col and raw_col):
        raise ValueError(
            "Alias table does not contain the expected columns ('category', 'raw_value')."
        )

    table: "OrderedDict[str, List[str]]" = OrderedDict()
    for _, row in df.iterrows():
        category = str(row[cat_col]).strip()
        raw = str(row[raw_col]).strip()
        if not category or not raw:
            continue
        table.setdefault(category, []).append(raw)
    return table


def load_variant_map(
    path: Optional[Union[str, Path]] = None,
    refresh: bool = False,
    observed: Optional[Iterable[str]] = None,
) -> VariantMap:
    """
    Load the department alias table, cached in memory.

    Falls back to DEFAULT_VARIANTS when no file is configured or found. In
    that case any `observed` raw spellings (the store's distinct
    department_raw values) are folded into the built-in table, so spellings
    it does not list are still reachable. A table read from a file is used
    as written.
    """
    global _VARIANTS_CACHE
    if _VARIANTS_CACHE is not None and not refresh and path is None and observed is None:
        return _VARIANTS_CACHE

    source = Path(path) if path is not None else _find_variants_file()
    if source is None:
        logger.info("No alias table under %s; using built-in department variants.", METADATA_DIR)
        variants = VariantMap(DEFAULT_VARIANTS)
        if observed is not None:
            variants = VariantMap.from_raw_values(observed, base=variants)
    else:
        if not source.exists():
            raise FileNotFoundError(f"Alias table not found: {source}")
        logger.info("Loading department alias table: %s", source)
        variants = VariantMap(variant_table_from_frame(_read_table(source)))

    logger.info("Loaded %r", variants)
    # Tables extended from a store's values depend on that store: not cached
    if path is None and observed is None:
        _VARIANTS_CACHE = variants
    return variants
