# validator.py
"""Integrity checks for a campaign / event / subscription snapshot.

Every check runs on every call and contributes its own issues; nothing is
fatal here. Callers that want validation to gate computation use
``ValidationReport.raise_for_violations``.

The checks accept both raw text frames (straight from the CSVs) and prepared
frames, so the same report can be produced before and after normalization.
"""
import logging
from dataclasses import dataclass, field
from typing import List

import pandas as pd

from mealkit_kpi.schema import (
    CAMPAIGNS,
    EVENTS,
    is_blank,
    is_missing,
    sentinel_columns,
    table_spec,
)

logger = logging.getLogger(__name__)


class IntegrityError(Exception):
    def __init__(self, report):
        self.report = report
        super().__init__(f"{report.total_violations} integrity violation(s) in {len(report.issues)} check result(s)")


@dataclass
class Issue:
    table: str
    check: str
    count: int
    detail: str = ""


@dataclass
class ValidationReport:
    issues: List[Issue] = field(default_factory=list)
    missing_counts: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def ok(self):
        return not self.issues

    @property
    def total_violations(self):
        return sum(issue.count for issue in self.issues)

    def by_check(self, check, table=None):
        return [i for i in self.issues if i.check == check and (table is None or i.table == table)]

    def count(self, check, table=None):
        return sum(i.count for i in self.by_check(check, table))

    def to_frame(self):
        return pd.DataFrame([vars(i) for i in self.issues], columns=["table", "check", "count", "detail"])

    def raise_for_violations(self):
        if not self.ok:
            raise IntegrityError(self)


def _ids(series):
    return series.astype("string").str.strip()


def _dates(series):
    return pd.to_datetime(series.mask(is_blank(series)), format="ISO8601", errors="coerce")


def check_required(frame, table):
    spec = table_spec(table)
    absent = [c for c in spec["required"] if c not in frame.columns]
    if absent:
        return [Issue(table, "required", len(frame), f"missing columns: {', '.join(absent)}")] if len(frame) else []

    missing = pd.concat({c: is_missing(frame[c]) for c in spec["required"]}, axis=1)
    bad_rows = missing.any(axis=1)
    if not bad_rows.any():
        return []
    per_column = missing.sum()
    detail = ", ".join(f"{c}={int(n)}" for c, n in per_column.items() if n)
    return [Issue(table, "required", int(bad_rows.sum()), detail)]


def check_duplicate_keys(frame, table):
    key = table_spec(table)["key"]
    if key not in frame.columns:
        return []
    keys = _ids(frame[key])[~is_missing(frame[key])]
    counts = keys.value_counts()
    return [Issue(table, "duplicate_key", int(n), f"{key}={value}") for value, n in counts[counts > 1].items()]


def check_campaign_dates(campaigns, as_of):
    issues = []
    if not {"start_date", "end_date"} <= set(campaigns.columns):
        return issues
    start = _dates(campaigns["start_date"])
    end = _dates(campaigns["end_date"])

    # End date must not be before the start date
    n = int((end < start).sum())
    if n:
        issues.append(Issue(CAMPAIGNS, "end_before_start", n))

    # Start date must not be in the future
    n = int((start > as_of).sum())
    if n:
        issues.append(Issue(CAMPAIGNS, "future_start", n, f"as_of={as_of.date()}"))
    return issues


def check_unparseable_dates(frame, table):
    issues = []
    for col in table_spec(table)["dates"]:
        if col not in frame.columns:
            continue
        present = ~is_missing(frame[col])
        n = int((present & _dates(frame[col]).isna()).sum())
        if n:
            issues.append(Issue(table, "bad_date", n, col))
    return issues


def check_unparseable_numbers(frame, table):
    issues = []
    for col in table_spec(table)["numeric"]:
        if col not in frame.columns:
            continue
        present = ~is_missing(frame[col])
        n = int((present & pd.to_numeric(frame[col].where(present), errors="coerce").isna()).sum())
        if n:
            issues.append(Issue(table, "bad_number", n, col))
    return issues


def coercion_issues(frame, table):
    """Cells holding text that will not survive conversion to a date or number."""
    return check_unparseable_dates(frame, table) + check_unparseable_numbers(frame, table)


def check_foreign_keys(events, tables):
    issues = []
    for col, target in table_spec(EVENTS)["foreign_keys"].items():
        if col not in events.columns:
            continue
        parent = tables[target]
        known = set(_ids(parent[table_spec(target)["key"]]).dropna())
        refs = _ids(events[col])[~is_missing(events[col])]
        n = int((~refs.isin(known)).sum())
        if n:
            issues.append(Issue(EVENTS, "dangling_fk", n, f"{col} -> {target}"))
    return issues


def check_sentinels(frame, table):
    issues = []
    for col in sentinel_columns(table):
        if col not in frame.columns:
            continue
        n = int(is_blank(frame[col]).sum())
        if n:
            issues.append(Issue(table, "empty_string", n, col))
    return issues


def missing_counts(snapshot):
    rows = []
    for table, frame in snapshot.tables().items():
        for col in table_spec(table)["columns"]:
            if col in frame.columns:
                rows.append({"table": table, "column": col, "missing": int(is_missing(frame[col]).sum())})
    return pd.DataFrame(rows, columns=["table", "column", "missing"])


def distinct_values(frame, column):
    values = frame[column][~is_missing(frame[column])]
    return sorted(values.astype(str).str.strip().unique())


def validate(snapshot, as_of=None):
    if as_of is None:
        as_of = pd.Timestamp.today().normalize()
    as_of = pd.Timestamp(as_of)
    tables = snapshot.tables()

    # Values already lost to coercion are only known from the load step
    issues = list(snapshot.load_issues)
    for table, frame in tables.items():
        issues += check_required(frame, table)
        issues += check_duplicate_keys(frame, table)
        issues += coercion_issues(frame, table)
        issues += check_sentinels(frame, table)
    issues += check_campaign_dates(tables[CAMPAIGNS], as_of)
    issues += check_foreign_keys(tables[EVENTS], tables)

    for issue in issues:
        logger.warning("%s: %s (%d) %s", issue.table, issue.check, issue.count, issue.detail)
    if not issues:
        logger.info("validation passed for %s", ", ".join(f"{t}={len(f)}" for t, f in tables.items()))

    return ValidationReport(issues=issues, missing_counts=missing_counts(snapshot))
