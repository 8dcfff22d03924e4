from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from audit_chatbot.core.errors import MalformedYear, UnknownCategory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default alias table
#
# category -> raw department spellings as they appear in the store.
# Insertion order is the batching order.
# ---------------------------------------------------------------------------

DEFAULT_VARIANTS: Dict[str, Tuple[str, ...]] = OrderedDict(
    [
        (
            "IT",
            (
                "IT",
                "Departemen IT",
                "Department IT",
                "Teknologi Informasi",
                "Information Technology",
                "ICT",
            ),
        ),
        (
            "Finance",
            (
                "Finance",
                "Finance & Accounting",
                "Departemen Keuangan",
                "Keuangan",
                "Accounting",
                "Treasury",
            ),
        ),
        (
            "HR",
            (
                "HR",
                "HRD",
                "Human Resources",
                "SDM",
                "Sumber Daya Manusia",
            ),
        ),
        (
            "Marketing & Sales",
            (
                "Marketing",
                "Sales",
                "Sales & Marketing",
                "Promotion",
            ),
        ),
        (
            "Engineering & Construction",
            (
                "Engineering",
                "Teknik",
                "Construction",
                "Quantity Surveyor",
                "Maintenance",
            ),
        ),
        (
            "Legal & Compliance",
            (
                "Legal",
                "Hukum",
                "Compliance",
            ),
        ),
        (
            "Audit & Risk",
            (
                "Internal Audit",
                "Risk Management",
                "Manajemen Risiko",
            ),
        ),
        (
            "Operations",
            (
                "Operations",
                "General Affairs",
                "Umum",
                "Customer Service",
            ),
        ),
    ]
)

PRIORITY_LEVELS: Tuple[str, ...] = ("Critical", "High", "Medium", "Low")

_YEAR_RE = re.compile(r"^[0-9]{4}$")


class VariantMap(Mapping[str, Tuple[str, ...]]):
    """
    Immutable category -> raw variants table.

    Every raw value belongs to exactly one category. Built once at start-up
    and shared read-only between requests.
    """

    def __init__(self, table: Mapping[str, Iterable[str]]):
        categories: "OrderedDict[str, Tuple[str, ...]]" = OrderedDict()
        owner: Dict[str, str] = {}

        for category, raw_values in table.items():
            label = str(category).strip()
            if not label:
                raise ValueError("Category labels must not be empty.")
            if label.lower() in (c.lower() for c in categories):
                raise ValueError(f"Category {label!r} is declared twice.")

            values: List[str] = []
            for raw in raw_values:
                value = str(raw).strip()
                if not value or value in values:
                    continue
                if value in owner:
                    raise ValueError(
                        f"Raw value {value!r} is listed under both {owner[value]!r} and {label!r}."
                    )
                owner[value] = label
                values.append(value)

            if not values:
                raise ValueError(f"Category {label!r} has no raw values.")
            categories[label] = tuple(values)

        self._categories = categories
        self._owner = owner
        self._by_lower = {c.lower(): c for c in categories}
        self._raw_by_lower = {r.lower(): r for r in owner}

    @classmethod
    def from_raw_values(cls, raw_values: Iterable[str], base: Optional["VariantMap"] = None) -> "VariantMap":
        """
        Build a partition from raw spellings observed in the store.

        Spellings already in `base` keep their category. A new spelling joins
        the `base` category its prefix-stripped name resolves to, and
        otherwise the keyword categoriser's pick ("Other" when nothing hits).
        """
        table: "OrderedDict[str, List[str]]" = OrderedDict()
        if base is not None:
            for category in base:
                table[category] = list(base[category])

        added = 0
        for raw in raw_values:
            value = str(raw).strip()
            if not value or (base is not None and base.category_of(value) is not None):
                continue
            name = normalize_department_name(value)
            guess = categorize_department(name)
            category = (base.lookup_category(name) or base.lookup_category(guess) or guess) if base is not None else guess
            if value not in table.setdefault(category, []):
                table[category].append(value)
                added += 1

        if base is not None and added:
            logger.info("Added %d department spellings seen in the store to the alias table", added)
        return cls(table)

    def __getitem__(self, category: str) -> Tuple[str, ...]:
        return self._categories[category]

    def __iter__(self) -> Iterator[str]:
        return iter(self._categories)

    def __len__(self) -> int:
        return len(self._categories)

    def __repr__(self) -> str:
        return f"VariantMap({len(self._categories)} categories, {len(self._owner)} variants)"

    @property
    def categories(self) -> Tuple[str, ...]:
        return tuple(self._categories)

    def all_variants(self) -> Tuple[str, ...]:
        return tuple(self._owner)

    def lookup_category(self, token: str) -> Optional[str]:
        """Category label for a category name or a raw variant, case-insensitive."""
        key = str(token).strip().lower()
        if key in self._by_lower:
            return self._by_lower[key]
        raw = self._raw_by_lower.get(key)
        if raw is not None:
            return self._owner[raw]
        return None

    def category_of(self, raw_value: str) -> Optional[str]:
        return self._owner.get(str(raw_value).strip())

    def tokens(self) -> Tuple[str, ...]:
        """Every spelling a user may type for a category, longest first."""
        seen = {t.lower(): t for t in list(self._categories) + list(self._owner)}
        return tuple(sorted(seen.values(), key=lambda t: (-len(t), t.lower())))


class FieldNormalizer:
    """Alias expansion and scalar canonicalisation for query values."""

    def __init__(self, variants: VariantMap):
        self._variants = variants

    @property
    def variants(self) -> VariantMap:
        return self._variants

    def resolve_category(self, token: str) -> str:
        category = self._variants.lookup_category(token)
        if category is None:
            raise UnknownCategory(token, known=self._variants.categories)
        return category

    def expand(self, category_token: str) -> Tuple[str, ...]:
        """Raw stored spellings for a category, in alias-table order."""
        return self._variants[self.resolve_category(category_token)]

    def canonicalize_year(self, text: str) -> str:
        return canonicalize_year(text)

    def canonicalize_priority(self, text: str) -> str:
        key = str(text).strip().lower()
        for level in PRIORITY_LEVELS:
            if level.lower() == key:
                return level
        raise UnknownCategory(text, known=PRIORITY_LEVELS)


def canonicalize_year(text: str) -> str:
    """
    Validate a year token and return it as a 4-digit string.

    Years are compared as strings downstream, which only matches numeric
    order while every year has exactly four digits.
    """
    token = str(text).strip()
    if not _YEAR_RE.match(token):
        raise MalformedYear(str(text))
    return token


# ---------------------------------------------------------------------------
# Department spelling helpers
# ---------------------------------------------------------------------------

_DEPARTMENT_PREFIX_RE = re.compile(r"^(Departemen|Department|Departement)\s+", re.IGNORECASE)

# Ordered: the first category whose keywords hit wins, so the broad
# "Operations" bucket is checked last.
_CATEGORY_KEYWORDS: Sequence[Tuple[str, Sequence[str]]] = (
    ("Hospitality & F&B", ("food", "beverage", "f&b", "fnb", "restaurant", "hotel", "hospitality", "golf", "club", "villa")),
    ("Outsourcing & Third Party", ("outsource", "third party", "pihak ketiga", "vendor")),
    ("IT", (r"\bit\b", "teknologi", "informasi", "technology", r"\bict\b", "sistem informasi")),
    ("Finance", ("finance", "keuangan", "accounting", "treasury", "investasi", "investment")),
    ("HR", (r"\bhr\b", r"\bhrd\b", r"\bhcm\b", r"\bsdm\b", "sumber daya manusia", "human resource", "people", "talent")),
    ("Marketing & Sales", ("marketing", "sales", "promotion", "admission", "commercial")),
    ("Property Management", ("estate", "property", "building management", "tenant", "leasing", "tanah")),
    ("Engineering & Construction", ("engineering", "teknik", "konstruksi", "construction", "quantity surveyor", "maintenance")),
    ("Legal & Compliance", ("legal", "hukum", "compliance", "regulatory")),
    ("Audit & Risk", ("audit", "risk", "risiko", "internal control")),
    ("Planning & Development", ("perencanaan", "planning", "development")),
    ("Healthcare", ("medis", "medical", "health", "kesehatan", "keperawatan", "nursing")),
    ("Security", ("security", "keamanan")),
    ("Corporate", ("corporate", "executive", "board", "direksi")),
    ("Supply Chain & Procurement", ("supply", "procurement", "purchasing", "logistic", "warehouse")),
    ("Operations", ("operation", "operasi", "umum", "general affairs", "housekeeping", "front office", "customer service")),
)


def normalize_department_name(raw_name: str) -> str:
    """Collapse separators and drop a leading 'Departemen'/'Department' prefix."""
    text = re.sub(r"[/\-,()&]", " ", str(raw_name).strip())
    text = re.sub(r"\s+", " ", text)
    return _DEPARTMENT_PREFIX_RE.sub("", text).strip()


def categorize_department(raw_name: str) -> str:
    lower = str(raw_name).lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        for kw in keywords:
            if kw.startswith("\\b"):
                if re.search(kw, lower):
                    return category
            elif kw in lower:
                return category
    logger.debug("No category keyword matched department %r", raw_name)
    return "Other"
