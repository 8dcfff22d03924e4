from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Match, Optional, Pattern, Sequence, Tuple, Union

from audit_chatbot.core.errors import PatternNotRecognized
from audit_chatbot.core.field_normalizer import PRIORITY_LEVELS, FieldNormalizer, canonicalize_year
from audit_chatbot.core.models import Operator

logger = logging.getLogger(__name__)

# Logical intent fields. "department" is categorical and is expanded to
# raw spellings by the planner; the others map onto stored fields.
DEPARTMENT = "department"
YEAR = "year"
PRIORITY = "priority_level"
PROCESS_AREA = "process_area"
TAGS = "tags"

# Year ranges wider than this are clamped to the most recent years
MAX_YEAR_SPAN = 50


class PatternId(str, Enum):
    DEPARTMENT_YEAR_SHOW_ALL = "department-year-show-all"
    DEPARTMENT_PRIORITY_YEAR = "department-priority-year"
    DEPARTMENT_PRIORITY = "department-priority"
    PRIORITY_YEAR = "priority-year"
    YEAR_RANGE = "year-range"
    DEPARTMENT_YEAR = "department-year"
    PRIORITY = "priority"
    DEPARTMENT = "department"
    YEAR = "year"
    DEPARTMENT_EXPLICIT = "department-explicit"
    TAG = "tag"
    TOP_N = "top-n"
    CORRECTION = "correction"


@dataclass(frozen=True)
class FilterClause:
    """A (field, operator, value) constraint at the intent level."""
    field: str
    operator: Operator
    value: Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class QueryIntent:
    pattern_id: PatternId
    filters: Tuple[FilterClause, ...]
    confidence: float
    text: str = ""
    count_only: bool = False
    # "top N ..." questions: at most this many rows are shown
    limit: Optional[int] = None

    def fields(self) -> Tuple[str, ...]:
        return tuple(f.field for f in self.filters)

    def value_of(self, name: str) -> Optional[Union[str, Tuple[str, ...]]]:
        for f in self.filters:
            if f.field == name:
                return f.value
        return None


@dataclass(frozen=True)
class LowConfidence:
    """Returned instead of an intent when no rule clears the threshold."""
    text: str
    confidence: float
    best_pattern: Optional[PatternId] = None
    reason: str = "no rule matched"

    def to_error(self) -> PatternNotRecognized:
        return PatternNotRecognized(self.text, self.confidence)


MatchOutcome = Union[QueryIntent, LowConfidence]


# ---------------------------------------------------------------------------
# Regex building blocks
# ---------------------------------------------------------------------------

FINDINGS = r"(?:audit\s+)?(?:findings?|results?|issues?)"
# Any digit-led token, so that '24' or '20x4' reach the year validator
# instead of silently falling through to another rule.
YEAR_TOKEN = r"(?P<{name}>\d[\w']*)"
PRIORITY_TOKEN = r"(?P<priority>" + "|".join(p.lower() for p in PRIORITY_LEVELS) + r")(?:\s+(?:risk|priority))?"
TAG_TOKEN = r"(?P<tag>[\w][\w\s-]*?)"
COUNT_PREFIX_RE = re.compile(r"^(?:how\s+many|count(?:\s+of)?|number\s+of|total(?:\s+number\s+of)?)\s+", re.IGNORECASE)
SHOW = r"(?:(?:show|list|give|find|get)\s+(?:me\s+)?)"
IN_YEAR = r"(?:from|in|for|of|during)\s+"
TOP_PREFIX_RE = re.compile(SHOW + r"?(?:the\s+)?top\s+(?P<limit>\d+)\s+", re.IGNORECASE)
BARE_FINDINGS_RE = re.compile(r"^(?:all\s+)?" + FINDINGS + r"$", re.IGNORECASE)

# Constraint tokens looked for in the part of a question a rule left unread
RESIDUAL_YEAR_RE = re.compile(r"(?<![\w'])(\d[\w']+)")
PRIORITY_WORD_RE = re.compile(r"(?<!\w)(" + "|".join(PRIORITY_LEVELS) + r")(?!\w)", re.IGNORECASE)


def _year(name: str = "year") -> str:
    return YEAR_TOKEN.format(name=name)


def _department_token(token: str) -> str:
    # Short acronyms only match in upper case so that "make it 2023" is not
    # read as the IT department.
    if token.isupper() and len(token) <= 4:
        return "(?-i:" + re.escape(token) + ")"
    return re.escape(token)


def _department_group(tokens: Sequence[str]) -> str:
    alternation = "|".join(_department_token(t) for t in tokens)
    return r"(?<!\w)(?P<department>" + alternation + r")(?!\w)"


def _templates(dept: str) -> Dict[PatternId, Tuple[str, ...]]:
    y = _year()
    return {
        PatternId.DEPARTMENT_YEAR_SHOW_ALL: (
            SHOW + r"?all\s+(?:the\s+)?" + dept + r"\s+(?:department\s+)?" + FINDINGS + r"\s+(?:(?:from|in|for|of)\s+)?" + y,
        ),
        PatternId.DEPARTMENT_PRIORITY_YEAR: (
            SHOW + r"?" + PRIORITY_TOKEN + r"\s+" + dept + r"\s+(?:department\s+)?" + FINDINGS + r"\s+" + IN_YEAR + y,
            SHOW + r"?" + dept + r"\s+(?:department\s+)?" + PRIORITY_TOKEN + r"\s+" + FINDINGS + r"\s+" + IN_YEAR + y,
            SHOW + r"?" + y + r"\s+" + PRIORITY_TOKEN + r"\s+" + dept + r"\s+(?:department\s+)?" + FINDINGS,
            SHOW + r"?" + PRIORITY_TOKEN + r"\s+" + FINDINGS + r"\s+(?:from|in|for|of)\s+(?:the\s+)?" + dept
            + r"\s+(?:department\s+)?" + IN_YEAR + y,
        ),
        PatternId.DEPARTMENT_PRIORITY: (
            PRIORITY_TOKEN + r"\s+" + dept + r"\s+(?:department\s+)?" + FINDINGS,
            dept + r"\s+(?:department\s+)?" + PRIORITY_TOKEN + r"\s+" + FINDINGS,
            PRIORITY_TOKEN + r"\s+" + FINDINGS + r"\s+(?:from|in|for|of)\s+(?:the\s+)?" + dept + r"(?:\s+department)?",
        ),
        PatternId.PRIORITY_YEAR: (
            SHOW + r"?" + PRIORITY_TOKEN + r"\s+" + FINDINGS + r"\s+" + IN_YEAR + y,
            SHOW + r"?" + y + r"\s+" + PRIORITY_TOKEN + r"\s+" + FINDINGS,
        ),
        PatternId.YEAR_RANGE: (
            r"(?:" + dept + r"\s+(?:department\s+)?)?" + FINDINGS + r"\s+(?:from|between)\s+"
            + _year("year_from") + r"\s+(?:to|and|until|through|-)\s+" + _year("year_to"),
        ),
        PatternId.DEPARTMENT_YEAR: (
            dept + r"\s+(?:department\s+)?" + FINDINGS + r"\s+(?:from|in|for|of|during)\s+" + y,
            y + r"\s+" + dept + r"\s+(?:department\s+)?" + FINDINGS,
            FINDINGS + r"\s+(?:from|in|for|of)\s+(?:the\s+)?" + dept + r"\s+(?:department\s+)?(?:from|in|for|during)\s+" + y,
            SHOW + r"?" + dept + r"\s+(?:department\s+)?" + FINDINGS + r"\s+" + y,
        ),
        PatternId.PRIORITY: (
            PRIORITY_TOKEN + r"\s+" + FINDINGS,
            FINDINGS + r"\s+(?:with|at|of)\s+" + PRIORITY_TOKEN,
        ),
        PatternId.DEPARTMENT: (
            dept + r"\s+(?:department\s+)?" + FINDINGS,
            FINDINGS + r"\s+(?:from|for|of|in)\s+(?:the\s+)?" + dept + r"(?:\s+department)?",
            SHOW + r"(?:all\s+)?" + dept + r"(?:\s+department)?$",
        ),
        PatternId.YEAR: (
            FINDINGS + r"\s+(?:from|in|for|of|during)\s+" + y,
            y + r"\s+" + FINDINGS,
        ),
        PatternId.DEPARTMENT_EXPLICIT: (
            r"(?:department|departemen|dept\.?)\s+(?!findings?\b)(?P<department>[\w&.-]+)",
        ),
        PatternId.TAG: (
            FINDINGS + r"\s+(?:tagged|labelled|labeled)\s+(?:with\s+|as\s+)?" + TAG_TOKEN + r"$",
            FINDINGS + r"\s+with\s+(?:the\s+)?tag\s+" + TAG_TOKEN + r"$",
        ),
    }


# Higher runs first. Composite rules sit above every single-field rule.
SPECIFICITY: Dict[PatternId, int] = {
    PatternId.DEPARTMENT_YEAR_SHOW_ALL: 30,
    PatternId.DEPARTMENT_PRIORITY_YEAR: 27,
    PatternId.DEPARTMENT_PRIORITY: 25,
    PatternId.PRIORITY_YEAR: 23,
    PatternId.YEAR_RANGE: 22,
    PatternId.DEPARTMENT_YEAR: 20,
    PatternId.PRIORITY: 15,
    PatternId.DEPARTMENT: 11,
    PatternId.YEAR: 10,
    PatternId.DEPARTMENT_EXPLICIT: 9,
    PatternId.TAG: 8,
}


# ---------------------------------------------------------------------------
# Extractors: regex match -> filter clauses
# ---------------------------------------------------------------------------

def _department_clause(m: Match[str], normalizer: FieldNormalizer) -> FilterClause:
    return FilterClause(DEPARTMENT, Operator.EQ, normalizer.resolve_category(m.group("department")))


def _year_clause(m: Match[str], normalizer: FieldNormalizer) -> FilterClause:
    return FilterClause(YEAR, Operator.EQ, normalizer.canonicalize_year(m.group("year")))


def _priority_clause(m: Match[str], normalizer: FieldNormalizer) -> FilterClause:
    return FilterClause(PRIORITY, Operator.EQ, normalizer.canonicalize_priority(m.group("priority")))


def _extract_department_year(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_department_clause(m, n), _year_clause(m, n))


def _extract_department_priority(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_department_clause(m, n), _priority_clause(m, n))


def _extract_department_priority_year(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_department_clause(m, n), _priority_clause(m, n), _year_clause(m, n))


def _extract_priority_year(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_priority_clause(m, n), _year_clause(m, n))


def _extract_year_range(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    start = n.canonicalize_year(m.group("year_from"))
    end = n.canonicalize_year(m.group("year_to"))
    if start > end:
        start, end = end, start
    if int(end) - int(start) > MAX_YEAR_SPAN:
        logger.warning("Year range too large, limiting to %s-%s", int(end) - MAX_YEAR_SPAN, end)
        start = str(int(end) - MAX_YEAR_SPAN)
    years = tuple(str(y) for y in range(int(start), int(end) + 1))

    clauses: List[FilterClause] = []
    if m.group("department"):
        clauses.append(_department_clause(m, n))
    clauses.append(FilterClause(YEAR, Operator.IN, years) if len(years) > 1 else FilterClause(YEAR, Operator.EQ, years[0]))
    return tuple(clauses)


def _extract_department(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_department_clause(m, n),)


def _extract_year(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_year_clause(m, n),)


def _extract_priority(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (_priority_clause(m, n),)


def _extract_tag(m: Match[str], n: FieldNormalizer) -> Tuple[FilterClause, ...]:
    return (FilterClause(TAGS, Operator.CONTAINS, re.sub(r"\s+", " ", m.group("tag")).strip().lower()),)


Extractor = Callable[[Match[str], FieldNormalizer], Tuple[FilterClause, ...]]

EXTRACTORS: Dict[PatternId, Extractor] = {
    PatternId.DEPARTMENT_YEAR_SHOW_ALL: _extract_department_year,
    PatternId.DEPARTMENT_PRIORITY_YEAR: _extract_department_priority_year,
    PatternId.DEPARTMENT_PRIORITY: _extract_department_priority,
    PatternId.PRIORITY_YEAR: _extract_priority_year,
    PatternId.YEAR_RANGE: _extract_year_range,
    PatternId.DEPARTMENT_YEAR: _extract_department_year,
    PatternId.PRIORITY: _extract_priority,
    PatternId.DEPARTMENT: _extract_department,
    PatternId.YEAR: _extract_year,
    PatternId.DEPARTMENT_EXPLICIT: _extract_department,
    PatternId.TAG: _extract_tag,
}

# CORRECTION is synthesised from a prior intent and TOP_N from a bare
# "top N findings"; neither has a regex rule of its own
_REGEX_PATTERNS = frozenset(PatternId) - {PatternId.CORRECTION, PatternId.TOP_N}
_missing = _REGEX_PATTERNS - set(EXTRACTORS) | _REGEX_PATTERNS - set(SPECIFICITY) | _REGEX_PATTERNS - set(_templates("x"))
if _missing:
    raise RuntimeError(f"Pattern ids without a rule: {sorted(p.value for p in _missing)}")


@dataclass(frozen=True)
class PatternRule:
    pattern_id: PatternId
    specificity: int
    regexes: Tuple[Pattern[str], ...]
    extract: Extractor = field(compare=False)


def build_rules(normalizer: FieldNormalizer) -> Tuple[PatternRule, ...]:
    """Compile every rule against the category spellings of the alias table."""
    templates = _templates(_department_group(normalizer.variants.tokens()))
    rules = [
        PatternRule(
            pattern_id=pid,
            specificity=SPECIFICITY[pid],
            regexes=tuple(re.compile(t, re.IGNORECASE) for t in templates[pid]),
            extract=EXTRACTORS[pid],
        )
        for pid in _REGEX_PATTERNS
    ]
    # Stable tie-break on declaration order keeps matching deterministic
    order = list(PatternId)
    rules.sort(key=lambda r: (-r.specificity, order.index(r.pattern_id)))
    return tuple(rules)


def _normalize_text(text: str) -> str:
    s = str(text or "").replace("\u00A0", " ")
    s = re.sub(r"\s+", " ", s).strip()
    return s.rstrip("?.!").strip()


class PatternMatcher:
    """
    Classifies a question into a QueryIntent.

    Rules run in specificity order and the first rule that matches wins.
    Confidence is 1.0 when the rule consumes the whole question and
    0.5 + 0.5 * coverage otherwise; anything under the threshold comes
    back as LowConfidence, as does a partial match whose unread words
    still name a year, department or priority. No I/O happens here.
    """

    def __init__(self, normalizer: FieldNormalizer, threshold: float = 0.7):
        self._normalizer = normalizer
        self._threshold = threshold
        self._rules = build_rules(normalizer)
        self._department_re = re.compile(_department_group(normalizer.variants.tokens()), re.IGNORECASE)

    @property
    def rules(self) -> Tuple[PatternRule, ...]:
        return self._rules

    @property
    def threshold(self) -> float:
        return self._threshold

    def match(self, text: str, prior: Optional[QueryIntent] = None) -> MatchOutcome:
        normalized = _normalize_text(text)
        if not normalized:
            return LowConfidence(text=text, confidence=0.0, reason="empty question")

        count_only = False
        m = COUNT_PREFIX_RE.match(normalized)
        if m:
            count_only = True
            normalized = normalized[m.end():]

        limit: Optional[int] = None
        m = TOP_PREFIX_RE.match(normalized)
        if m:
            limit = int(m.group("limit"))
            normalized = normalized[m.end():]
            if limit < 1:
                return LowConfidence(text=text, confidence=0.0, reason="top-N limit must be at least 1")
            if BARE_FINDINGS_RE.match(normalized):
                logger.debug("Matched %s with limit %d", PatternId.TOP_N.value, limit)
                return QueryIntent(
                    pattern_id=PatternId.TOP_N,
                    filters=(),
                    confidence=1.0,
                    text=text,
                    count_only=count_only,
                    limit=limit,
                )

        outcome = self._match_rules(normalized, text, count_only)
        if isinstance(outcome, QueryIntent):
            return outcome if limit is None else replace(outcome, limit=limit)

        if prior is not None:
            corrected = self._apply_correction(normalized, text, prior)
            if corrected is not None:
                return corrected

        logger.info(
            "No confident pattern for %r (best=%s, %.2f): %s",
            text, outcome.best_pattern, outcome.confidence, outcome.reason,
        )
        return outcome

    def _match_rules(self, normalized: str, original: str, count_only: bool) -> MatchOutcome:
        best: Optional[LowConfidence] = None

        def keep_best(candidate: LowConfidence) -> None:
            nonlocal best
            if best is None or candidate.confidence > best.confidence:
                best = candidate

        for rule in self._rules:
            for regex in rule.regexes:
                m = regex.search(normalized)
                if not m:
                    continue

                coverage = (m.end() - m.start()) / len(normalized)
                confidence = 1.0 if coverage >= 1.0 else round(0.5 + 0.5 * coverage, 4)
                if confidence < self._threshold:
                    keep_best(LowConfidence(original, confidence, rule.pattern_id, "partial match below threshold"))
                    continue

                # A partial match must not drop a year, department or
                # priority named in the words it skipped.
                if coverage < 1.0:
                    leftover = self._scan_constraints(normalized[:m.start()] + " " + normalized[m.end():])
                    if leftover:
                        reason = "match leaves " + ", ".join(sorted(leftover)) + " uncovered"
                        logger.debug("Rejected %s for %r: %s", rule.pattern_id.value, original, reason)
                        keep_best(LowConfidence(original, confidence, rule.pattern_id, reason))
                        continue

                # Extraction may raise UnknownCategory / MalformedYear; those
                # go back to the user instead of being guessed past.
                filters = rule.extract(m, self._normalizer)
                logger.debug("Matched %s (confidence=%.2f): %s", rule.pattern_id.value, confidence, filters)
                return QueryIntent(
                    pattern_id=rule.pattern_id,
                    filters=filters,
                    confidence=confidence,
                    text=original,
                    count_only=count_only,
                )

        return best or LowConfidence(text=original, confidence=0.0)

    def _scan_constraints(self, text: str) -> Dict[str, str]:
        """Raw year, department and priority tokens mentioned anywhere in `text`."""
        found: Dict[str, str] = {}
        years = RESIDUAL_YEAR_RE.findall(text)
        if years:
            found[YEAR] = years[-1]
        dm = self._department_re.search(text)
        if dm:
            found[DEPARTMENT] = dm.group("department")
        pm = PRIORITY_WORD_RE.search(text)
        if pm:
            found[PRIORITY] = pm.group(1)
        return found

    def _apply_correction(self, normalized: str, original: str, prior: QueryIntent) -> Optional[QueryIntent]:
        """
        Patch the prior intent with the values named in a correction such as
        'no, 2023 instead' or 'make it HR'.
        """
        found = self._scan_constraints(normalized)
        if not found:
            return None

        replacements: Dict[str, FilterClause] = {}
        if YEAR in found:
            replacements[YEAR] = FilterClause(YEAR, Operator.EQ, canonicalize_year(found[YEAR]))
        if DEPARTMENT in found:
            replacements[DEPARTMENT] = FilterClause(
                DEPARTMENT, Operator.EQ, self._normalizer.resolve_category(found[DEPARTMENT])
            )
        if PRIORITY in found:
            replacements[PRIORITY] = FilterClause(PRIORITY, Operator.EQ, self._normalizer.canonicalize_priority(found[PRIORITY]))

        merged: List[FilterClause] = []
        for clause in prior.filters:
            merged.append(replacements.pop(clause.field, clause))
        merged.extend(replacements.values())

        logger.info("Applied correction %r to prior %s intent", original, prior.pattern_id.value)
        return QueryIntent(
            pattern_id=PatternId.CORRECTION,
            filters=tuple(merged),
            confidence=0.9,
            text=original,
            count_only=prior.count_only,
            limit=prior.limit,
        )
