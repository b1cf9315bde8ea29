"""
Query Classifier & Executor

Turns a free-text question ("show loans where difference > 5000", "find loan
LN-001234", "top 20 highest") into a filter/sort operation over
the current ``Snapshot``, then paginates the match set and computes aggregate
statistics over all of it.

Classification is keyword-driven: ``DEFAULT_RULES`` is an ordered list of
``QueryRule``s and the first rule whose predicate accepts the text wins.
A question can satisfy several predicates, so the order of that list is part
of the behaviour.
"""

import heapq
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from .models import LoanRecord, QueryMetadata, QueryRequest, QueryResponse
from .record_store import RecordStore, Snapshot

DEFAULT_TOP_N = 10
SUMMARY_SAMPLE_SIZE = 10

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
# LN-001234, ln001234, ABC-99812
_LOAN_ID_RE = re.compile(r"\b[a-z]{1,4}-?\d{3,}\b", re.IGNORECASE)
_TOKEN_RE = re.compile(r"[a-z0-9\-]+", re.IGNORECASE)
_BORROWER_KEYWORD_RE = re.compile(r"\b(?:borrower|customer|name)s?\b")

_BORROWER_FILLER = {
    "is", "was", "named", "name", "names", "called", "like", "for", "with",
    "contains", "containing", "matching", "of", "=", ":",
}

UNKNOWN_QUERY_MESSAGE = (
    "I didn't understand that query. Try:\n"
    "- 'Find mismatches'\n"
    "- 'Show loans where difference > 5000'\n"
    "- 'List unreconciled loans'\n"
    "- 'Find loan LN-12345'\n"
    "- 'Search borrower John Smith'\n"
    "- 'Top 20 highest'\n"
    "- 'Give me a summary'"
)

Statistics = Dict[str, Union[int, float]]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def _contains(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def _has_word(text: str, pattern: str) -> bool:
    return re.search(rf"\b(?:{pattern})\b", text) is not None


def extract_number(text: str) -> Decimal:
    """First digit run (optional fraction) anywhere in the text, else 0."""
    match = _NUMBER_RE.search(text)
    return Decimal(match.group()) if match else Decimal("0")


def extract_count(text: str, default: int = DEFAULT_TOP_N) -> int:
    n = int(extract_number(text))
    return n if n > 0 else default


def extract_loan_id(text: str) -> str:
    """
    Pull a loan identifier out of free text.

    Prefers an identifier-shaped token (``LN-001234``); otherwise the first
    alphanumeric/hyphen token that contains a digit.
    """
    match = _LOAN_ID_RE.search(text)
    if match:
        return match.group()
    for token in _TOKEN_RE.findall(text):
        if any(ch.isdigit() for ch in token):
            return token.strip("-")
    return ""


def extract_borrower_fragment(text: str) -> str:
    """Text following the first borrower/customer/name keyword, fillers removed."""
    match = _BORROWER_KEYWORD_RE.search(text)
    if not match:
        return ""
    words = text[match.end():].replace(":", " ").replace("=", " ").split()
    while words and words[0] in _BORROWER_FILLER:
        words.pop(0)
    return " ".join(words).strip("'\"`?!. ")


def _is_negated(text: str) -> bool:
    return "unreconciled" in text or _has_word(text, "not|un")


def _has_comparator(text: str) -> bool:
    return _contains(text, ">", "<") or _has_word(text, "where|greater|less")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedQuery:
    raw: str     # original casing, used for identifier lookup
    text: str    # lower-cased, used by predicates


@dataclass
class RuleOutcome:
    records: Sequence[LoanRecord]
    message: Optional[str] = None


@dataclass(frozen=True)
class QueryRule:
    query_type: str
    predicate: Callable[[str], bool]
    handler: Callable[[Snapshot, ParsedQuery], RuleOutcome]


def _find_mismatches(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome(snap.mismatches)


def _difference_greater(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    threshold = extract_number(q.text)
    return RuleOutcome([r for r in snap.records if r.difference_amount > threshold])


def _difference_less(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    threshold = extract_number(q.text)
    return RuleOutcome([r for r in snap.records if r.difference_amount < threshold])


def _reconciled(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if r.is_reconciled])


def _unreconciled(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if not r.is_reconciled])


def _loan_by_id(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    loan_id = extract_loan_id(q.raw)
    if not loan_id:
        return RuleOutcome([], "Please specify a loan ID to look up (e.g. 'Find loan LN-12345').")
    record = snap.by_key.get(loan_id) or snap.by_key.get(loan_id.upper())
    if record is None:
        return RuleOutcome([], f"No loan found with ID {loan_id}")
    return RuleOutcome([record])


def _search_borrower(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    fragment = extract_borrower_fragment(q.text)
    if not fragment:
        return RuleOutcome([], "Please specify a borrower name to search for.")
    return RuleOutcome([r for r in snap.records if fragment in r.borrower_name.lower()])


def _top_differences(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    n = extract_count(q.text)
    return RuleOutcome(heapq.nlargest(n, snap.records, key=lambda r: abs(r.difference_amount)))


def _bottom_differences(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    n = extract_count(q.text)
    return RuleOutcome(heapq.nsmallest(n, snap.mismatches, key=lambda r: abs(r.difference_amount)))


def _positive_differences(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if r.difference_amount > 0])


def _negative_differences(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if r.difference_amount < 0])


def _servicer_greater(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if r.servicer_loan_amount > r.fnma_loan_amount])


def _fnma_greater(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([r for r in snap.records if r.fnma_loan_amount > r.servicer_loan_amount])


def _count(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome(snap.records, f"Total count: {len(snap.records):,} records")


def _list_all(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome(snap.records)


def summary_message(snap: Snapshot) -> str:
    total = len(snap.records)
    mismatches = len(snap.mismatches)
    reconciled = sum(1 for r in snap.records if r.is_reconciled)
    pct = (mismatches * 100.0 / total) if total else 0.0
    return (
        f"Dataset Summary: {total:,} total loans, {mismatches:,} mismatches "
        f"({pct:.1f}%), {reconciled:,} reconciled"
    )


def _summary(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome(snap.records[:SUMMARY_SAMPLE_SIZE], summary_message(snap))


def _unknown(snap: Snapshot, q: ParsedQuery) -> RuleOutcome:
    return RuleOutcome([], UNKNOWN_QUERY_MESSAGE)


# Checked in order, first match wins. "mismatch" + "reconciled" must land on
# FindMismatches, "difference > 5000" must not.
DEFAULT_RULES: Tuple[QueryRule, ...] = (
    QueryRule(
        "FindMismatches",
        lambda t: "mismatch" in t
        or _has_word(t, "reconcile")
        or ("difference" in t and not _has_comparator(t)),
        _find_mismatches,
    ),
    QueryRule(
        "DifferenceGreaterThan",
        lambda t: "difference" in t and (">" in t or _has_word(t, "greater")),
        _difference_greater,
    ),
    QueryRule(
        "DifferenceLessThan",
        lambda t: "difference" in t and ("<" in t or _has_word(t, "less")),
        _difference_less,
    ),
    QueryRule(
        "ReconciledLoans",
        lambda t: "reconciled" in t and not _is_negated(t),
        _reconciled,
    ),
    QueryRule(
        "UnreconciledLoans",
        lambda t: _contains(t, "unreconciled", "not reconciled", "pending"),
        _unreconciled,
    ),
    QueryRule(
        "LoanByID",
        lambda t: ("loan" in t and (_has_word(t, "ids?") or "number" in t))
        or _LOAN_ID_RE.search(t) is not None,
        _loan_by_id,
    ),
    QueryRule(
        "SearchByBorrower",
        lambda t: _BORROWER_KEYWORD_RE.search(t) is not None,
        _search_borrower,
    ),
    QueryRule("TopDifferences", lambda t: _has_word(t, "top|highest|largest"), _top_differences),
    QueryRule("BottomDifferences", lambda t: _has_word(t, "bottom|lowest|smallest"), _bottom_differences),
    QueryRule(
        "PositiveDifferences",
        lambda t: "positive" in t and "difference" in t,
        _positive_differences,
    ),
    QueryRule(
        "NegativeDifferences",
        lambda t: "negative" in t and "difference" in t,
        _negative_differences,
    ),
    QueryRule(
        "ServicerGreaterThanFNMA",
        lambda t: "servicer" in t and _has_word(t, "greater|more"),
        _servicer_greater,
    ),
    QueryRule(
        "FNMAGreaterThanServicer",
        lambda t: "fnma" in t and _has_word(t, "greater|more"),
        _fnma_greater,
    ),
    QueryRule("Count", lambda t: "how many" in t or _has_word(t, r"count\w*|total\w*"), _count),
    QueryRule("ListAll", lambda t: _has_word(t, r"all|list\w*|show\w*|everything"), _list_all),
    QueryRule("Summary", lambda t: _has_word(t, r"summar\w*|overview|report\w*"), _summary),
    QueryRule("Unknown", lambda t: True, _unknown),
)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def build_statistics(records: Sequence[LoanRecord]) -> Statistics:
    """Aggregate over the full match set. Empty input gives an empty dict."""
    if not records:
        return {}

    zero = Decimal("0")
    differences = [r.difference_amount for r in records]
    total_difference = sum(differences, zero)
    return {
        "TotalAmount_Servicer": float(sum((r.servicer_loan_amount for r in records), zero)),
        "TotalAmount_FNMA":     float(sum((r.fnma_loan_amount for r in records), zero)),
        "TotalDifference":      float(total_difference),
        "AverageDifference":    float(total_difference / len(records)),
        "MaxDifference":        float(max(differences)),
        "MinDifference":        float(min(differences)),
        "MismatchCount":        sum(1 for r in records if r.has_mismatch),
    }


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------

class QueryEngine:
    """Classifies free-text queries and runs them against a RecordStore."""

    def __init__(self, store: RecordStore, rules: Sequence[QueryRule] = DEFAULT_RULES) -> None:
        self.store = store
        self.rules: Tuple[QueryRule, ...] = tuple(rules)

    def match_rule(self, text: str) -> QueryRule:
        normalised = text.lower()
        for rule in self.rules:
            if rule.predicate(normalised):
                return rule
        return self.rules[-1]

    def classify(self, text: str) -> str:
        return self.match_rule(text).query_type

    def execute(self, request: QueryRequest) -> QueryResponse:
        """
        Run one query. Never raises: failures come back as ``success=False``
        with the error message.
        """
        started = time.perf_counter()
        query_type = "Error"
        try:
            # one snapshot for the whole query, even if a reload lands meanwhile
            snap = self.store.snapshot()
            parsed = ParsedQuery(raw=request.query, text=request.query.lower())
            rule = self.match_rule(parsed.text)
            query_type = rule.query_type

            outcome = rule.handler(snap, parsed)
            matches: List[LoanRecord] = list(outcome.records)
            total = len(matches)
            page = matches[request.skip:request.skip + request.limit]

            response = QueryResponse(
                success=True,
                message=outcome.message or f"Found {total:,} records matching query",
                data=page,
                total_count=total,
                metadata=QueryMetadata(
                    query_type=query_type,
                    execution_time_ms=_elapsed_ms(started),
                    statistics=build_statistics(matches),
                ),
            )
        except Exception as exc:
            logger.exception(f"Error executing query {request.query!r}")
            return QueryResponse(
                success=False,
                message=f"Query execution failed: {exc}",
                metadata=QueryMetadata(query_type=query_type, execution_time_ms=_elapsed_ms(started)),
            )

        logger.debug(
            f"Query {request.query!r} -> {query_type}: {response.total_count} matches "
            f"in {response.metadata.execution_time_ms:.1f}ms"
        )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
