"""Recursive-descent verifier for the materialized SQL grammar.

Re-parses a candidate SQL string against the same grammar `grammar.py` hands
to the constrained decoder and returns a derivation tree, or None when the
string is not in the language.

Every rule method either returns a node, or returns None with the cursor
back where it started. Alternatives are tried longest literal first so a
short alternative never matches as a prefix of a longer one.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Callable, List, Optional, Pattern, Sequence, Tuple

from derivation import PARTIAL_QUERY_RULE, QUERY_RULE, DerivationNode, node
from grammar import (
    AGG_FUNCS,
    ALIAS_PATTERN,
    COMPARE_OPS,
    DATE_LITERAL_PATTERN,
    DATE_TRUNC_EXPRS,
    NUMBER_PATTERN,
    STRING_VALUE_PATTERN,
    TIME_UNITS,
    GrammarVocabulary,
    resolve_vocabulary,
)
from schema import STATIC_SCHEMA, TableSchema

ALIAS_RE = re.compile(ALIAS_PATTERN)
STRING_VALUE_RE = re.compile(STRING_VALUE_PATTERN)
DATE_LITERAL_RE = re.compile(DATE_LITERAL_PATTERN)
NUMBER_RE = re.compile(NUMBER_PATTERN)

RuleFn = Callable[["ParseState"], Optional[DerivationNode]]


class ParseState:
    """Cursor over the input with save/restore for backtracking."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    @property
    def remaining(self) -> str:
        return self.text[self.pos :]

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def match_literal(self, literal: str) -> bool:
        if self.text.startswith(literal, self.pos):
            self.pos += len(literal)
            return True
        return False

    def match_regex(self, pattern: Pattern[str]) -> Optional[str]:
        # Pattern.match anchors at pos; quantifiers are greedy.
        m = pattern.match(self.text, self.pos)
        if m is None:
            return None
        self.pos = m.end()
        return m.group(0)

    def match_any(self, literals: Sequence[str]) -> Optional[str]:
        for literal in literals:
            if self.match_literal(literal):
                return literal
        return None

    def save(self) -> int:
        return self.pos

    def restore(self, saved: int) -> None:
        self.pos = saved


def _longest_first(values: Sequence[str]) -> Tuple[str, ...]:
    return tuple(sorted(values, key=len, reverse=True))


class GrammarParser:
    """One method per grammar rule, specialised to a schema vocabulary.

    Holds no per-parse state, so a single instance can serve concurrent
    callers; each `parse` call gets its own ParseState.
    """

    def __init__(self, vocabulary: GrammarVocabulary):
        self.vocabulary = vocabulary
        self._from_literal = f" FROM {vocabulary.table_name}"
        self._column_refs = _longest_first(vocabulary.column_ref)
        self._string_cols = _longest_first(vocabulary.string_cols)
        self._numeric_cols = _longest_first(vocabulary.numeric_cols)
        self._event_types = _longest_first(vocabulary.event_types)
        self._action_values = _longest_first(vocabulary.action_values)
        self._agg_funcs = _longest_first(AGG_FUNCS)
        self._date_truncs = _longest_first(DATE_TRUNC_EXPRS)
        self._time_units = _longest_first(TIME_UNITS)

    # ---------- Terminals ----------
    @staticmethod
    def _regex_terminal(state: ParseState, pattern: Pattern[str], rule: str) -> Optional[DerivationNode]:
        matched = state.match_regex(pattern)
        return node(rule, matched) if matched is not None else None

    @staticmethod
    def _literal_choice(state: ParseState, literals: Sequence[str], rule: str) -> Optional[DerivationNode]:
        matched = state.match_any(literals)
        return node(rule, matched) if matched is not None else None

    def parse_number(self, state: ParseState) -> Optional[DerivationNode]:
        return self._regex_terminal(state, NUMBER_RE, "number")

    def parse_alias(self, state: ParseState) -> Optional[DerivationNode]:
        return self._regex_terminal(state, ALIAS_RE, "alias")

    def parse_string_value(self, state: ParseState) -> Optional[DerivationNode]:
        return self._regex_terminal(state, STRING_VALUE_RE, "string_value")

    def parse_date_literal(self, state: ParseState) -> Optional[DerivationNode]:
        return self._regex_terminal(state, DATE_LITERAL_RE, "date_literal")

    def parse_column_ref(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._column_refs, "column_ref")

    def parse_agg_func(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._agg_funcs, "agg_func")

    def parse_date_trunc_expr(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._date_truncs, "date_trunc_expr")

    def parse_compare_op(self, state: ParseState) -> Optional[DerivationNode]:
        # COMPARE_OPS is already ordered two-character operators first.
        return self._literal_choice(state, COMPARE_OPS, "compare_op")

    def parse_time_unit(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._time_units, "time_unit")

    def parse_event_type(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._event_types, "event_type")

    def parse_action_value(self, state: ParseState) -> Optional[DerivationNode]:
        return self._literal_choice(state, self._action_values, "action_value")

    # ---------- Repetition helpers ----------
    @staticmethod
    def _separated(state: ParseState, item: RuleFn, separator: str) -> List[DerivationNode]:
        """item (separator item)*; a separator not followed by an item is given back."""
        first = item(state)
        if first is None:
            return []
        items = [first]
        while True:
            saved = state.save()
            if not state.match_literal(separator):
                break
            nxt = item(state)
            if nxt is None:
                state.restore(saved)
                break
            items.append(nxt)
        return items

    @staticmethod
    def _quoted_list(state: ParseState, item: RuleFn, rule: str) -> Optional[DerivationNode]:
        """Quoted, comma-separated list, as in event_type_list and string_list."""
        saved = state.save()
        if not state.match_literal("'"):
            return None
        first = item(state)
        if first is None or not state.match_literal("'"):
            state.restore(saved)
            return None
        items = [first]
        while True:
            before = state.save()
            if not state.match_literal(", '"):
                break
            nxt = item(state)
            if nxt is None or not state.match_literal("'"):
                state.restore(before)
                break
            items.append(nxt)
        text = ", ".join(f"'{i.matched_text}'" for i in items)
        return node(rule, text, items)

    # ---------- Expressions ----------
    def parse_agg_expr(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        func = self.parse_agg_func(state)
        if func is None:
            return None
        if not state.match_literal("("):
            state.restore(saved)
            return None
        column = self.parse_column_ref(state)
        if not state.match_literal(")"):
            state.restore(saved)
            return None
        if column is None:
            return node("agg_expr", f"{func.matched_text}()", [func])
        return node("agg_expr", f"{func.matched_text}({column.matched_text})", [func, column])

    def _column_or_alias(self, state: ParseState) -> Optional[DerivationNode]:
        # column_ref | ALIAS: the longer match wins, ties go to column_ref.
        start = state.save()
        column = self.parse_column_ref(state)
        column_end = state.save()
        state.restore(start)
        alias = self.parse_alias(state)
        if column is None:
            return alias
        if alias is None or len(column.matched_text) >= len(alias.matched_text):
            state.restore(column_end)
            return column
        return alias

    # ---------- SELECT ----------
    def parse_select_item(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        for head in (self.parse_agg_expr, self.parse_date_trunc_expr):
            expr = head(state)
            if expr is not None and state.match_literal(" AS "):
                alias = self.parse_alias(state)
                if alias is not None:
                    return node(
                        "select_item",
                        f"{expr.matched_text} AS {alias.matched_text}",
                        [expr, alias],
                    )
            state.restore(saved)

        column = self.parse_column_ref(state)
        if column is not None:
            return node("select_item", column.matched_text, [column])
        return None

    def parse_select_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if not state.match_literal("SELECT "):
            return None
        items = self._separated(state, self.parse_select_item, ", ")
        if not items:
            state.restore(saved)
            return None
        text = "SELECT " + ", ".join(i.matched_text for i in items)
        return node("select_clause", text, items)

    # ---------- FROM ----------
    def parse_from_clause(self, state: ParseState) -> Optional[DerivationNode]:
        if not state.match_literal(self._from_literal):
            return None
        table = self.vocabulary.table_name
        return node("from_clause", f"FROM {table}", [node("table_name", table)])

    # ---------- WHERE ----------
    def _string_eq(self, state: ParseState, col: str) -> Optional[DerivationNode]:
        if not state.match_literal(f"{col} = '"):
            return None
        value = self.parse_string_value(state)
        if value is None or not state.match_literal("'"):
            return None
        return node("string_condition", f"{col} = '{value.matched_text}'", [node("string_col", col), value])

    def _string_like(self, state: ParseState, col: str) -> Optional[DerivationNode]:
        if not state.match_literal(f"{col} LIKE '%"):
            return None
        value = self.parse_string_value(state)
        if value is None or not state.match_literal("%'"):
            return None
        return node("string_condition", f"{col} LIKE '%{value.matched_text}%'", [node("string_col", col), value])

    def _string_in(self, state: ParseState, col: str) -> Optional[DerivationNode]:
        if not state.match_literal(f"{col} IN ("):
            return None
        values = self._quoted_list(state, self.parse_string_value, "string_list")
        if values is None or not state.match_literal(")"):
            return None
        return node("string_condition", f"{col} IN ({values.matched_text})", [node("string_col", col), values])

    def parse_string_condition(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        for col in self._string_cols:
            for alternative in (self._string_eq, self._string_like, self._string_in):
                condition = alternative(state, col)
                if condition is not None:
                    return condition
                state.restore(saved)
        return None

    def parse_numeric_condition(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        for col in self._numeric_cols:
            if state.match_literal(f"{col} "):
                op = self.parse_compare_op(state)
                if op is not None and state.match_literal(" "):
                    num = self.parse_number(state)
                    if num is not None:
                        return node(
                            "numeric_condition",
                            f"{col} {op.matched_text} {num.matched_text}",
                            [node("numeric_col", col), op, num],
                        )
            state.restore(saved)
        return None

    def parse_datetime_condition(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()

        if state.match_literal("created_at >= now() - INTERVAL "):
            num = self.parse_number(state)
            if num is not None and state.match_literal(" "):
                unit = self.parse_time_unit(state)
                if unit is not None:
                    return node(
                        "datetime_condition",
                        f"created_at >= now() - INTERVAL {num.matched_text} {unit.matched_text}",
                        [num, unit],
                    )
        state.restore(saved)

        if state.match_literal("created_at BETWEEN '"):
            start = self.parse_date_literal(state)
            if start is not None and state.match_literal("' AND '"):
                end = self.parse_date_literal(state)
                if end is not None and state.match_literal("'"):
                    return node(
                        "datetime_condition",
                        f"created_at BETWEEN '{start.matched_text}' AND '{end.matched_text}'",
                        [start, end],
                    )
        state.restore(saved)
        return None

    def parse_enum_condition(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()

        if state.match_literal("type = '"):
            value = self.parse_event_type(state)
            if value is not None and state.match_literal("'"):
                return node("enum_condition", f"type = '{value.matched_text}'", [value])
        state.restore(saved)

        if state.match_literal("type IN ("):
            values = self._quoted_list(state, self.parse_event_type, "event_type_list")
            if values is not None and state.match_literal(")"):
                return node("enum_condition", f"type IN ({values.matched_text})", [values])
        state.restore(saved)

        if state.match_literal("action = '"):
            value = self.parse_action_value(state)
            if value is not None and state.match_literal("'"):
                return node("enum_condition", f"action = '{value.matched_text}'", [value])
        state.restore(saved)
        return None

    def parse_condition(self, state: ParseState) -> Optional[DerivationNode]:
        for alternative in (
            self.parse_datetime_condition,
            self.parse_enum_condition,
            self.parse_string_condition,
            self.parse_numeric_condition,
        ):
            condition = alternative(state)
            if condition is not None:
                return condition
        return None

    def parse_where_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if not state.match_literal(" WHERE "):
            return None
        conditions = self._separated(state, self.parse_condition, " AND ")
        if not conditions:
            state.restore(saved)
            return None
        text = "WHERE " + " AND ".join(c.matched_text for c in conditions)
        return node("where_clause", text, conditions)

    # ---------- GROUP BY / HAVING ----------
    def parse_group_item(self, state: ParseState) -> Optional[DerivationNode]:
        expr = self.parse_date_trunc_expr(state) or self._column_or_alias(state)
        if expr is None:
            return None
        return node("group_item", expr.matched_text, [expr])

    def parse_group_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if not state.match_literal(" GROUP BY "):
            return None
        items = self._separated(state, self.parse_group_item, ", ")
        if not items:
            state.restore(saved)
            return None
        text = "GROUP BY " + ", ".join(i.matched_text for i in items)
        return node("group_clause", text, items)

    def parse_having_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if state.match_literal(" HAVING "):
            agg = self.parse_agg_expr(state)
            if agg is not None and state.match_literal(" "):
                op = self.parse_compare_op(state)
                if op is not None and state.match_literal(" "):
                    num = self.parse_number(state)
                    if num is not None:
                        text = f"HAVING {agg.matched_text} {op.matched_text} {num.matched_text}"
                        return node("having_clause", text, [agg, op, num])
        state.restore(saved)
        return None

    # ---------- ORDER BY / LIMIT ----------
    def parse_order_item(self, state: ParseState) -> Optional[DerivationNode]:
        expr = self.parse_agg_expr(state) or self._column_or_alias(state)
        if expr is None:
            return None
        if state.match_literal(" DESC"):
            return node("order_item", f"{expr.matched_text} DESC", [expr, node("order_dir", "DESC")])
        if state.match_literal(" ASC"):
            return node("order_item", f"{expr.matched_text} ASC", [expr, node("order_dir", "ASC")])
        return node("order_item", expr.matched_text, [expr])

    def parse_order_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if not state.match_literal(" ORDER BY "):
            return None
        items = self._separated(state, self.parse_order_item, ", ")
        if not items:
            state.restore(saved)
            return None
        text = "ORDER BY " + ", ".join(i.matched_text for i in items)
        return node("order_clause", text, items)

    def parse_limit_clause(self, state: ParseState) -> Optional[DerivationNode]:
        saved = state.save()
        if not state.match_literal(" LIMIT "):
            return None
        num = self.parse_number(state)
        if num is None:
            state.restore(saved)
            return None
        return node("limit_clause", f"LIMIT {num.matched_text}", [num])

    # ---------- start ----------
    def parse(self, sql: str) -> Optional[DerivationNode]:
        state = ParseState(sql.strip())

        select_clause = self.parse_select_clause(state)
        if select_clause is None:
            return None
        from_clause = self.parse_from_clause(state)
        if from_clause is None:
            return None
        children = [select_clause, from_clause]

        for optional in (
            self.parse_where_clause,
            self.parse_group_clause,
            self.parse_having_clause,
            self.parse_order_clause,
            self.parse_limit_clause,
        ):
            clause = optional(state)
            if clause is not None:
                children.append(clause)

        # Clause texts omit their leading separator space.
        text = " ".join(c.matched_text for c in children)
        rule = QUERY_RULE if state.at_end else PARTIAL_QUERY_RULE
        return node(rule, text, children)


@lru_cache(maxsize=32)
def get_parser(schema: TableSchema = STATIC_SCHEMA) -> GrammarParser:
    return GrammarParser(resolve_vocabulary(schema))


def parse_query(sql: str, schema: TableSchema = STATIC_SCHEMA) -> Optional[DerivationNode]:
    """Parse SQL against the grammar materialized for `schema`.

    Returns None when the SELECT or FROM clause does not match, a
    "query (partial)" node when a valid prefix is followed by leftover input,
    and a "query" node when the whole (trimmed) input is consumed.
    """
    return get_parser(schema).parse(sql)


def is_valid_grammar_sql(sql: str, schema: TableSchema = STATIC_SCHEMA) -> bool:
    result = parse_query(sql, schema)
    return result is not None and result.rule == QUERY_RULE
