from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from schema import (
    KNOWN_ACTION_VALUES,
    KNOWN_EVENT_TYPES,
    TableSchema,
    classify_column,
)

# ====== Fixed vocabulary (shared with grammar_parser) ======
AGG_FUNCS: Tuple[str, ...] = ("count", "sum", "avg", "min", "max", "uniq", "uniqExact")

DATE_TRUNC_EXPRS: Tuple[str, ...] = (
    "toStartOfHour(created_at)",
    "toStartOfDay(created_at)",
    "toStartOfWeek(created_at)",
    "toStartOfMonth(created_at)",
    "toDate(created_at)",
)

# Two-character operators first so "=" never matches the tail of "!=".
COMPARE_OPS: Tuple[str, ...] = ("!=", ">=", "<=", "=", ">", "<")
TIME_UNITS: Tuple[str, ...] = ("HOUR", "DAY", "WEEK", "MONTH")
ORDER_DIRS: Tuple[str, ...] = ("ASC", "DESC")

# Python-side regexes for the grammar's regex terminals.
ALIAS_PATTERN = r"[a-z_][a-z0-9_]{0,29}"
STRING_VALUE_PATTERN = r"[a-zA-Z0-9_.\-/]{1,100}"
DATE_LITERAL_PATTERN = r"[0-9]{4}-[0-9]{2}-[0-9]{2}"
NUMBER_PATTERN = r"[0-9]{1,6}"

# Substituted when a schema leaves a category empty.
FALLBACK_STRING_COL = "actor_login"
FALLBACK_NUMERIC_COL = "id"
FALLBACK_COLUMN_REF = "id"


GRAMMAR_TEMPLATE = r"""
// ClickHouse SQL grammar (Lark) for read-only SELECTs over a single table.
// All whitespace is explicit; there is no %ignore.

start: select_clause from_clause where_clause? group_clause? having_clause? order_clause? limit_clause?

// ====== SELECT ======
select_clause: "SELECT " select_list
select_list: select_item (", " select_item)*
select_item: agg_expr " AS " ALIAS
           | date_trunc_expr " AS " ALIAS
           | column_ref

// ====== Aggregation ======
agg_expr: agg_func "(" column_ref? ")"
agg_func: "count" | "sum" | "avg" | "min" | "max" | "uniq" | "uniqExact"

// ====== Date truncation ======
date_trunc_expr: "toStartOfHour(created_at)"
               | "toStartOfDay(created_at)"
               | "toStartOfWeek(created_at)"
               | "toStartOfMonth(created_at)"
               | "toDate(created_at)"

// ====== FROM (locked to one table) ======
from_clause: " FROM {{TABLE_NAME}}"

// ====== WHERE (AND only) ======
where_clause: " WHERE " condition (" AND " condition)*
condition: string_condition | numeric_condition | datetime_condition | enum_condition

string_condition: string_col " = '" STRING_VALUE "'"
                | string_col " LIKE '%" STRING_VALUE "%'"
                | string_col " IN (" string_list ")"

numeric_condition: numeric_col " " compare_op " " NUMBER

datetime_condition: "created_at >= now() - INTERVAL " NUMBER " " time_unit
                  | "created_at BETWEEN '" DATE_LITERAL "' AND '" DATE_LITERAL "'"

enum_condition: "type = '" event_type "'"
              | "type IN (" event_type_list ")"
              | "action = '" action_value "'"

// ====== GROUP BY ======
group_clause: " GROUP BY " group_list
group_list: group_item (", " group_item)*
group_item: date_trunc_expr | column_ref | ALIAS

// ====== HAVING ======
having_clause: " HAVING " agg_expr " " compare_op " " NUMBER

// ====== ORDER BY ======
order_clause: " ORDER BY " order_list
order_list: order_item (", " order_item)*
order_item: order_expr order_dir?
order_expr: agg_expr | column_ref | ALIAS
order_dir: " ASC" | " DESC"

// ====== LIMIT ======
limit_clause: " LIMIT " NUMBER

// ====== Operators ======
compare_op: "!=" | ">=" | "<=" | "=" | ">" | "<"
time_unit: "HOUR" | "DAY" | "WEEK" | "MONTH"

// ====== Schema-derived rules ======
string_col: {{STRING_COLS}}
numeric_col: {{NUMERIC_COLS}}
column_ref: {{COLUMN_REF}}

event_type: {{EVENT_TYPES}}
action_value: {{ACTION_VALUES}}

event_type_list: "'" event_type "'" (", '" event_type "'")*
string_list: "'" STRING_VALUE "'" (", '" STRING_VALUE "'")*

// ====== Terminals ======
ALIAS: /[a-z_][a-z0-9_]{0,29}/
STRING_VALUE: /[a-zA-Z0-9_.\-\/]{1,100}/
DATE_LITERAL: /[0-9]{4}-[0-9]{2}-[0-9]{2}/
NUMBER: /[0-9]{1,6}/
""".strip()

TEMPLATE_PLACEHOLDERS: Tuple[str, ...] = (
    "{{TABLE_NAME}}",
    "{{STRING_COLS}}",
    "{{NUMERIC_COLS}}",
    "{{COLUMN_REF}}",
    "{{EVENT_TYPES}}",
    "{{ACTION_VALUES}}",
)


@dataclass(frozen=True)
class ColumnClasses:
    string_cols: Tuple[str, ...]
    numeric_cols: Tuple[str, ...]
    datetime_cols: Tuple[str, ...]
    enum_cols: Tuple[Tuple[str, Tuple[str, ...]], ...]


@dataclass(frozen=True)
class GrammarVocabulary:
    """Every schema-dependent alternative of the grammar, fallbacks applied.

    The materializer renders these lists and the verifier matches against the
    very same tuples, so both sides always describe one language.
    """

    table_name: str
    string_cols: Tuple[str, ...]
    numeric_cols: Tuple[str, ...]
    column_ref: Tuple[str, ...]
    event_types: Tuple[str, ...]
    action_values: Tuple[str, ...]


def classify_columns(schema: TableSchema) -> ColumnClasses:
    buckets: Dict[str, List[str]] = {"string": [], "numeric": [], "datetime": []}
    enum_cols: List[Tuple[str, Tuple[str, ...]]] = []
    for col in schema.columns:
        category = classify_column(col)
        if category == "enum":
            enum_cols.append((col.name, tuple(col.enum_values or ())))
        elif category is not None:
            buckets[category].append(col.name)
    return ColumnClasses(
        string_cols=tuple(buckets["string"]),
        numeric_cols=tuple(buckets["numeric"]),
        datetime_cols=tuple(buckets["datetime"]),
        enum_cols=tuple(enum_cols),
    )


def _dedupe(names: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(names))


def resolve_vocabulary(schema: TableSchema) -> GrammarVocabulary:
    classes = classify_columns(schema)
    present = {col.name for col in schema.columns}

    column_ref = _dedupe(
        name
        for name in (
            *classes.string_cols,
            *classes.numeric_cols,
            *classes.datetime_cols,
            *(name for name, _ in classes.enum_cols),
        )
        if name in present
    )
    event_types = next((values for name, values in classes.enum_cols if name == "type"), ())

    return GrammarVocabulary(
        table_name=schema.table_name,
        string_cols=classes.string_cols or (FALLBACK_STRING_COL,),
        numeric_cols=classes.numeric_cols or (FALLBACK_NUMERIC_COL,),
        column_ref=column_ref or (FALLBACK_COLUMN_REF,),
        event_types=event_types or KNOWN_EVENT_TYPES,
        action_values=KNOWN_ACTION_VALUES,
    )


def to_lark_alternatives(values: Sequence[str]) -> str:
    """["foo", "bar"] -> '"foo" | "bar"'"""
    return " | ".join(f'"{v}"' for v in values)


def build_grammar(schema: TableSchema) -> str:
    """Materialize the Lark grammar for a table schema."""
    vocab = resolve_vocabulary(schema)
    substitutions = {
        "{{TABLE_NAME}}": vocab.table_name,
        "{{STRING_COLS}}": to_lark_alternatives(vocab.string_cols),
        "{{NUMERIC_COLS}}": to_lark_alternatives(vocab.numeric_cols),
        "{{COLUMN_REF}}": to_lark_alternatives(vocab.column_ref),
        "{{EVENT_TYPES}}": to_lark_alternatives(vocab.event_types),
        "{{ACTION_VALUES}}": to_lark_alternatives(vocab.action_values),
    }
    grammar = GRAMMAR_TEMPLATE
    for placeholder in TEMPLATE_PLACEHOLDERS:
        grammar = grammar.replace(placeholder, substitutions[placeholder])
    return grammar


def build_grammar_for_openai(schema: TableSchema) -> dict:
    return {"type": "grammar", "syntax": "lark", "definition": build_grammar(schema)}


def build_sql_tool(schema: TableSchema) -> dict:
    """Custom tool definition for the Responses API, carrying the grammar."""
    return {
        "type": "custom",
        "name": "sql_generator",
        "description": (
            f"Generates a read-only ClickHouse SQL SELECT over table {schema.table_name}. "
            "Allowed: SELECT, FROM, WHERE (AND only), GROUP BY, HAVING, ORDER BY, LIMIT. "
            f"Aggregates: {', '.join(AGG_FUNCS)}. "
            "Date truncation: toStartOfHour, toStartOfDay, toStartOfWeek, toStartOfMonth, toDate. "
            "String values are restricted to safe characters. "
            "Adhere strictly to the grammar; no joins, subqueries, SELECT *, or DML."
        ),
        "format": build_grammar_for_openai(schema),
    }


def describe_grammar_capabilities(schema: TableSchema) -> str:
    """Readable summary of what the grammar allows, for debug and eval output."""
    classes = classify_columns(schema)
    lines = [
        f"Table: {schema.table_name}",
        "Grammar syntax: Lark (for OpenAI CFG constrained decoding)",
        f"String columns (=, LIKE, IN): {', '.join(classes.string_cols)}",
        f"Numeric columns ({', '.join(COMPARE_OPS)}): {', '.join(classes.numeric_cols)}",
        f"DateTime columns (INTERVAL, BETWEEN): {', '.join(classes.datetime_cols)}",
        "Enum columns:",
        *(f"  - {name}: {', '.join(values)}" for name, values in classes.enum_cols),
        f"Aggregations: {', '.join(AGG_FUNCS)}",
        "Date truncation: toStartOfHour, toStartOfDay, toStartOfWeek, toStartOfMonth, toDate",
        "Clauses: SELECT, FROM, WHERE, GROUP BY, HAVING, ORDER BY, LIMIT",
        "Blocked: DROP, ALTER, INSERT, UPDATE, DELETE, JOIN, subqueries, system tables",
    ]
    return "\n".join(lines)
