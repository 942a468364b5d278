"""
Discrepancy Severity Classification

Severity is assigned once, when a discrepancy is detected. Field mismatches
go through a classifier (field, sheets_value, supabase_value) -> severity;
tables can register their own classifier without touching the comparison
engine.
"""

import re
from typing import Any, Callable, Dict, Iterable, Optional

SEVERITIES = ("low", "medium", "high", "critical")
_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

FieldClassifier = Callable[[str, Any, Any], str]

# Matched against the underscore/camelCase tokens of a field name
FINANCIAL_TOKENS = frozenset({
    "amount", "payment", "paid", "price", "cost", "fee", "revenue", "sales",
    "income", "jumlah", "harga", "bayaran", "jualan", "pendapatan", "modal",
})
IDENTITY_TOKENS = frozenset({
    "id", "email", "ic", "nric", "phone", "name", "nama", "mentor",
    "entrepreneur", "usahawan", "batch", "program", "session", "sesi",
})

_WHITESPACE = re.compile(r"\s+")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def max_severity(severities: Iterable[str], default: str = "low") -> str:
    """Highest severity in the iterable."""
    best = default
    for severity in severities:
        if _RANK[severity] > _RANK[best]:
            best = severity
    return best


def field_tokens(field: str) -> set:
    """Split 'mentorEmail' / 'mentor_email' / 'Mentor Email' into {'mentor', 'email'}."""
    return {t for t in _TOKEN_SPLIT.split(_CAMEL.sub("_", field).lower()) if t}


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def cosmetic_form(value: Any) -> str:
    """Case- and whitespace-insensitive rendering used to spot cosmetic-only differences."""
    if is_blank(value):
        return ""
    return _WHITESPACE.sub(" ", str(value).strip()).casefold()


def default_field_classifier(field: str, sheets_value: Any, supabase_value: Any) -> str:
    """
    Default policy:
    - differs only in case/whitespace -> low
    - financial field -> critical
    - identity field -> high
    - anything else -> medium
    """
    if cosmetic_form(sheets_value) == cosmetic_form(supabase_value):
        return "low"

    tokens = field_tokens(field)
    if tokens & FINANCIAL_TOKENS:
        return "critical"
    if tokens & IDENTITY_TOKENS:
        return "high"
    return "medium"


class SeverityPolicy:
    """
    Maps detected differences to a severity.

    Usage:
        policy = SeverityPolicy()
        policy.register("reports", my_reports_classifier)
        policy.classify_field("reports", "amount", "120", 100)
    """

    ABSENCE_SEVERITY = {
        # Record never reached the migration target
        "missing_in_supabase": "high",
        # Target is ahead of the legacy store
        "missing_in_sheets": "medium",
    }

    def __init__(
        self,
        default: FieldClassifier = default_field_classifier,
        overrides: Optional[Dict[str, FieldClassifier]] = None
    ):
        self.default = default
        self.overrides: Dict[str, FieldClassifier] = dict(overrides or {})

    def register(self, table: str, classifier: FieldClassifier) -> None:
        """Use `classifier` for field mismatches in `table`."""
        self.overrides[table] = classifier

    def classify_field(self, table: str, field: str, sheets_value: Any, supabase_value: Any) -> str:
        classifier = self.overrides.get(table, self.default)
        severity = classifier(field, sheets_value, supabase_value)
        if severity not in _RANK:
            raise ValueError(f"Classifier for '{table}' returned unknown severity '{severity}'")
        return severity

    def classify_absence(self, table: str, discrepancy_type: str) -> str:
        return self.ABSENCE_SEVERITY[discrepancy_type]


default_policy = SeverityPolicy()
