import pytest

import evals
from evals import (
    COVERAGE,
    COVERAGE_CASES,
    GENERATION,
    SAFETY,
    SAFETY_CASES,
    EvalCaseResult,
    GenerationCase,
    grammar_accepts,
    is_valid_clickhouse_sql,
    policy_check,
    run_generation_evals,
    run_grammar_evals,
    summarize,
)
from generator import GeneratedSQL, SQLGenerationError
from grammar_parser import is_valid_grammar_sql
from schema import STATIC_SCHEMA, ColumnInfo, TableSchema


@pytest.mark.parametrize("case", COVERAGE_CASES, ids=lambda c: c.id)
def test_lark_and_verifier_accept_coverage_cases(case):
    ok, msg = grammar_accepts(case.sql)
    assert ok, msg
    assert is_valid_grammar_sql(case.sql)


@pytest.mark.parametrize("case", SAFETY_CASES, ids=lambda c: c.id)
def test_lark_and_verifier_reject_safety_cases(case):
    ok, _ = grammar_accepts(case.sql)
    assert not ok
    assert not is_valid_grammar_sql(case.sql)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT count() AS total FROM github_events EXTRA_GARBAGE",
        "SELECT id FROM github_events WHERE id != 5",
        "SELECT count() AS id_total FROM github_events ORDER BY id_total DESC",
        "SELECT count() AS n FROM github_events LIMIT 1000000",
        "SELECT count() AS n FROM github_events WHERE number > 1 AND",
    ],
)
def test_lark_agrees_with_verifier_on_edge_cases(sql):
    assert grammar_accepts(sql)[0] == is_valid_grammar_sql(sql)


def test_lark_uses_schema_grammar():
    schema = TableSchema("pushes", (ColumnInfo("author", "String"),))
    assert grammar_accepts("SELECT author FROM pushes", schema)[0]
    assert not grammar_accepts("SELECT author FROM github_events", schema)[0]


def test_clickhouse_parse():
    assert is_valid_clickhouse_sql("SELECT count() AS total FROM github_events")[0]
    ok, msg = is_valid_clickhouse_sql("SELECT (1 FROM github_events")
    assert not ok
    assert msg.startswith("sqlglot")


def test_policy_accepts_grammar_query():
    ok, problems = policy_check(
        "SELECT repo_name, count() AS events FROM github_events GROUP BY repo_name ORDER BY events DESC LIMIT 10"
    )
    assert ok, problems


@pytest.mark.parametrize(
    "sql",
    [
        "DROP TABLE github_events",
        "SELECT name FROM system.tables",
        "SELECT * FROM github_events",
        "SELECT stars FROM github_events",
        "SELECT 1; DROP TABLE github_events",
    ],
)
def test_policy_rejects(sql):
    ok, problems = policy_check(sql)
    assert not ok
    assert problems


def test_grammar_evals_all_pass():
    results = run_grammar_evals(STATIC_SCHEMA)
    assert len(results) == len(COVERAGE_CASES) + len(SAFETY_CASES)
    failed = [r for r in results if not r.passed]
    assert failed == []


def test_summarize_metrics():
    results = [
        EvalCaseResult("a", COVERAGE, "", True, "", 0),
        EvalCaseResult("b", COVERAGE, "", False, "", 0),
        EvalCaseResult("c", SAFETY, "", True, "", 0),
    ]
    summary = summarize(results)
    assert summary["total"] == 3
    assert summary["failed"] == 1
    assert summary["by_category"][COVERAGE] == {"total": 2, "passed": 1, "metric": 0.5, "metric_name": "recall"}
    assert summary["by_category"][SAFETY]["metric_name"] == "precision"
    assert GENERATION not in summary["by_category"]


async def test_generation_evals_check_fragments(monkeypatch):
    answers = {
        "good": "SELECT count() AS opened FROM github_events WHERE action = 'opened'",
        "bad": "SELECT count() AS total FROM github_events",
    }

    async def fake_generate(nl_query, schema, feedback=None):
        if nl_query == "boom":
            raise SQLGenerationError("no tool call")
        return GeneratedSQL(sql=answers[nl_query], model="test")

    monkeypatch.setattr(evals, "generate_sql", fake_generate)
    cases = [
        GenerationCase("good", "", "good", ("opened", "count(")),
        GenerationCase("bad", "", "bad", ("ForkEvent",)),
        GenerationCase("boom", "", "boom", ()),
    ]
    results = await run_generation_evals(STATIC_SCHEMA, cases, concurrency=2)
    assert [r.passed for r in results] == [True, False, False]
    assert "missing fragments: ForkEvent" in results[1].details
    assert results[2].details == "no tool call"
