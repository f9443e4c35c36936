"""Semantic checks on grammar-valid SQL.

The grammar decides what is expressible; these heuristics catch what it
cannot express: GROUP BY consistency, missing LIMIT, absurd date ranges and
stray identifiers. Failed checks are either errors (the query is retried) or
warnings (logged and shown, the query still runs).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from grammar import AGG_FUNCS
from schema import TableSchema

KNOWN_FUNCTIONS = {
    *AGG_FUNCS,
    "toStartOfHour",
    "toStartOfDay",
    "toStartOfWeek",
    "toStartOfMonth",
    "toDate",
    "now",
}

KNOWN_KEYWORDS = {
    "AS", "AND", "OR", "IN", "LIKE", "BETWEEN", "DESC", "ASC", "INTERVAL",
    "HOUR", "DAY", "WEEK", "MONTH", "HAVING", "FROM", "WHERE", "GROUP", "BY",
    "ORDER", "LIMIT", "SELECT",
}

_AGG_CALL_RE = re.compile(r"\b(count|sum|avg|min|max|uniq|uniqExact)\s*\(", re.IGNORECASE)
_DATE_TRUNC_RE = re.compile(r"\btoStartOf(Hour|Day|Week|Month)\b|\btoDate\b", re.IGNORECASE)
_SELECT_LIST_RE = re.compile(r"SELECT\s+([\s\S]+?)\s+FROM", re.IGNORECASE)
_QUOTED_RE = re.compile(r"'[^']*'")
_IDENTIFIER_RE = re.compile(r"\b([a-z_][a-z0-9_]*)\b", re.IGNORECASE)
_ALIAS_RE = re.compile(r"\bAS\s+([a-z_][a-z0-9_]*)", re.IGNORECASE)
_GROUP_BY_RE = re.compile(r"\bGROUP BY\b", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\bLIMIT\s+\d+", re.IGNORECASE)
_INTERVAL_RE = re.compile(r"INTERVAL\s+(\d+)\s+(HOUR|DAY|WEEK|MONTH)", re.IGNORECASE)

_DAYS_PER_UNIT = {"HOUR": 1 / 24, "DAY": 1, "WEEK": 7, "MONTH": 30}
MAX_REASONABLE_DAYS = 365 * 5


@dataclass
class ValidationCheck:
    name: str
    passed: bool
    severity: str  # "error" | "warning"
    message: str


@dataclass
class ValidationResult:
    checks: List[ValidationCheck] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed and c.severity == "error"]

    @property
    def warnings(self) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed and c.severity == "warning"]

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_sql(sql: str, schema: TableSchema) -> ValidationResult:
    return ValidationResult(
        checks=[
            check_columns_exist(sql, schema),
            check_group_by_consistency(sql),
            check_has_limit(sql),
            check_date_range_sanity(sql),
        ]
    )


def check_columns_exist(sql: str, schema: TableSchema) -> ValidationCheck:
    """Flag identifiers that are neither columns, aliases, functions nor keywords."""
    column_names = {c.name for c in schema.columns}
    aliases = set(_ALIAS_RE.findall(sql))
    # Quoted values such as 'PushEvent' are not identifiers.
    unquoted = _QUOTED_RE.sub("''", sql)

    unknown: List[str] = []
    for ident in _IDENTIFIER_RE.findall(unquoted):
        if ident in KNOWN_FUNCTIONS or ident.upper() in KNOWN_KEYWORDS:
            continue
        if ident in column_names or ident in aliases or ident == schema.table_name:
            continue
        if ident not in unknown:
            unknown.append(ident)

    if unknown:
        return ValidationCheck(
            "columns_exist", False, "warning", f"Unknown identifiers (may be aliases): {', '.join(unknown)}"
        )
    return ValidationCheck("columns_exist", True, "error", "All column references exist in schema")


def check_group_by_consistency(sql: str) -> ValidationCheck:
    """Mixed aggregated and plain SELECT items need a GROUP BY."""
    if not _AGG_CALL_RE.search(sql):
        return ValidationCheck(
            "group_by_consistency", True, "error", "No aggregation, GROUP BY check not applicable"
        )

    if not _GROUP_BY_RE.search(sql):
        select_match = _SELECT_LIST_RE.search(sql)
        if select_match:
            items = [item.strip() for item in select_match.group(1).split(",")]
            all_aggregated = all(_AGG_CALL_RE.search(i) or _DATE_TRUNC_RE.search(i) for i in items)
            if not all_aggregated:
                return ValidationCheck(
                    "group_by_consistency",
                    False,
                    "warning",
                    "Query has both aggregated and non-aggregated columns but no GROUP BY clause",
                )

    return ValidationCheck(
        "group_by_consistency", True, "error", "GROUP BY is consistent with SELECT expressions"
    )


def check_has_limit(sql: str) -> ValidationCheck:
    if _LIMIT_RE.search(sql):
        return ValidationCheck("has_limit", True, "warning", "LIMIT clause present")
    if _GROUP_BY_RE.search(sql):
        return ValidationCheck(
            "has_limit", False, "warning", "Query has GROUP BY but no LIMIT, result set may be large"
        )
    return ValidationCheck("has_limit", False, "warning", "No LIMIT clause, result set may be large")


def check_date_range_sanity(sql: str) -> ValidationCheck:
    """INTERVAL 999999 DAY is about 2700 years: not a useful filter."""
    match = _INTERVAL_RE.search(sql)
    if not match:
        return ValidationCheck("date_range_sanity", True, "error", "No date interval to check")

    value = int(match.group(1))
    unit = match.group(2).upper()
    days = value * _DAYS_PER_UNIT[unit]
    if days > MAX_REASONABLE_DAYS:
        return ValidationCheck(
            "date_range_sanity",
            False,
            "warning",
            f"Date range of ~{round(days)} days ({value} {unit}) seems unusually large",
        )
    return ValidationCheck("date_range_sanity", True, "error", f"Date range of {value} {unit} is reasonable")
