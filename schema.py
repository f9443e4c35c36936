from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str
    enum_values: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if self.enum_values is not None:
            object.__setattr__(self, "enum_values", tuple(self.enum_values))


@dataclass(frozen=True)
class TableSchema:
    table_name: str
    columns: Tuple[ColumnInfo, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Tuples keep schemas hashable, so parsers can be cached per schema.
        object.__setattr__(self, "columns", tuple(self.columns))


# ---------- GH Archive vocabulary ----------
KNOWN_EVENT_TYPES: Tuple[str, ...] = (
    "CommitCommentEvent",
    "CreateEvent",
    "DeleteEvent",
    "ForkEvent",
    "GollumEvent",
    "IssueCommentEvent",
    "IssuesEvent",
    "MemberEvent",
    "PublicEvent",
    "PullRequestEvent",
    "PullRequestReviewCommentEvent",
    "PullRequestReviewEvent",
    "PushEvent",
    "ReleaseEvent",
    "SponsorshipEvent",
    "WatchEvent",
)

# `action` is LowCardinality(String) upstream, so there is nothing to introspect.
KNOWN_ACTION_VALUES: Tuple[str, ...] = (
    "opened",
    "closed",
    "reopened",
    "created",
    "edited",
    "deleted",
    "added",
    "removed",
    "published",
)

DEFAULT_TABLE = "github_events"

STATIC_SCHEMA = TableSchema(
    table_name=DEFAULT_TABLE,
    columns=(
        ColumnInfo("id", "UInt64"),
        ColumnInfo("type", "Enum8", KNOWN_EVENT_TYPES),
        ColumnInfo("actor_login", "LowCardinality(String)"),
        ColumnInfo("repo_name", "LowCardinality(String)"),
        ColumnInfo("created_at", "DateTime"),
        ColumnInfo("action", "LowCardinality(String)"),
        ColumnInfo("number", "UInt32"),
        ColumnInfo("title", "String"),
        ColumnInfo("body", "String"),
        ColumnInfo("ref", "LowCardinality(String)"),
        ColumnInfo("is_private", "UInt8"),
    ),
)


# ---------- Type classification ----------
def is_string_type(type_str: str) -> bool:
    return (
        type_str == "String"
        or type_str.startswith("LowCardinality(String")
        or type_str.startswith("Nullable(String")
    )


def is_numeric_type(type_str: str) -> bool:
    return type_str.startswith(("UInt", "Int", "Float", "Decimal"))


def is_datetime_type(type_str: str) -> bool:
    return type_str in ("DateTime", "Date") or type_str.startswith("DateTime64")


def is_enum_type(type_str: str) -> bool:
    return type_str.startswith("Enum")


def classify_column(column: ColumnInfo) -> Optional[str]:
    """Return the grammar category of a column, or None if it has none.

    Enum values win over the type string, then datetime, string and numeric.
    """
    if column.enum_values:
        return "enum"
    if is_datetime_type(column.type):
        return "datetime"
    if is_string_type(column.type):
        return "string"
    if is_numeric_type(column.type):
        return "numeric"
    return None


_ENUM8_RE = re.compile(r"^Enum(?:8|16)\((.+)\)$")
_ENUM_VALUE_RE = re.compile(r"'([^']+)'\s*=\s*-?\d+")


def parse_enum_values(type_str: str) -> Optional[Tuple[str, ...]]:
    """Extract value names from e.g. "Enum8('PushEvent' = 1, 'ForkEvent' = 2)"."""
    match = _ENUM8_RE.match(type_str)
    if not match:
        return None
    values = tuple(_ENUM_VALUE_RE.findall(match.group(1)))
    return values or None


def build_schema_summary(schema: TableSchema) -> str:
    """Human-readable schema summary for LLM prompts."""
    lines = []
    for col in schema.columns:
        desc = f"  - {col.name}: {col.type}"
        if col.enum_values:
            desc += f" (values: {', '.join(col.enum_values)})"
        lines.append(desc)
    return f"Table: {schema.table_name}\nColumns:\n" + "\n".join(lines)


# ---------- Schema registry ----------
ColumnFetcher = Callable[[str], List[ColumnInfo]]


class SchemaCache:
    """Memoizes introspected table schemas until explicitly invalidated.

    The fetcher is injected so the cache can be exercised without a live
    ClickHouse. Any fetch error, or a table with no columns, falls back to the
    static github_events schema.
    """

    def __init__(self, fetch: ColumnFetcher, fallback: TableSchema = STATIC_SCHEMA):
        self._fetch = fetch
        self._fallback = fallback
        self._schemas: Dict[str, TableSchema] = {}

    def get(self, table_name: str = DEFAULT_TABLE) -> TableSchema:
        cached = self._schemas.get(table_name)
        if cached is not None:
            return cached

        try:
            columns = self._fetch(table_name)
        except Exception as e:
            logger.warning("Schema introspection for %s failed, using static schema: %s", table_name, e)
            schema = self._fallback
        else:
            if columns:
                schema = TableSchema(table_name=table_name, columns=tuple(columns))
            else:
                logger.info("Table %s has no columns yet, using static schema", table_name)
                schema = self._fallback

        self._schemas[table_name] = schema
        return schema

    def invalidate(self, table_name: Optional[str] = None) -> None:
        if table_name is None:
            self._schemas.clear()
        else:
            self._schemas.pop(table_name, None)
