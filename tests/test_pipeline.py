import pandas as pd
import requests

import pipeline
from clickhouse_client import QueryResult
from generator import GeneratedSQL, SQLGenerationError
from pipeline import answer_question
from schema import STATIC_SCHEMA, SchemaCache

GOOD_SQL = "SELECT count() AS total FROM github_events WHERE type = 'ForkEvent' LIMIT 1"


def _cache():
    return SchemaCache(lambda table: list(STATIC_SCHEMA.columns))


def _fake_generator(answers, seen_feedback):
    answers = iter(answers)

    async def fake_generate(nl_query, schema, feedback=None):
        seen_feedback.append(feedback)
        return GeneratedSQL(sql=next(answers), model="test")

    return fake_generate


def _fake_result(sql):
    return QueryResult(df=pd.DataFrame({"total": [3]}), csv_text="total\n3\n", elapsed_ms=1)


async def test_success_on_first_attempt(monkeypatch):
    feedback = []
    monkeypatch.setattr(pipeline, "generate_sql", _fake_generator([GOOD_SQL], feedback))
    monkeypatch.setattr(pipeline, "execute_query", _fake_result)

    outcome = await answer_question("How many forks?", _cache())

    assert outcome.ok
    assert outcome.sql == GOOD_SQL
    assert outcome.derivation.rule == "query"
    assert outcome.result.df["total"].tolist() == [3]
    assert feedback == [None]
    assert len(outcome.attempts) == 1


async def test_grammar_rejection_is_retried_with_feedback(monkeypatch):
    feedback = []
    executed = []
    monkeypatch.setattr(
        pipeline, "generate_sql", _fake_generator(["SELECT * FROM github_events", GOOD_SQL], feedback)
    )

    def fake_execute(sql):
        executed.append(sql)
        return _fake_result(sql)

    monkeypatch.setattr(pipeline, "execute_query", fake_execute)

    outcome = await answer_question("How many forks?", _cache())

    assert outcome.ok
    assert executed == [GOOD_SQL]
    assert feedback[0] is None
    assert "not in the allowed grammar" in feedback[1]
    assert outcome.attempts[0].problem == feedback[1]


async def test_clickhouse_error_is_retried(monkeypatch):
    feedback = []
    monkeypatch.setattr(pipeline, "generate_sql", _fake_generator([GOOD_SQL, GOOD_SQL], feedback))
    calls = []

    def flaky_execute(sql):
        calls.append(sql)
        if len(calls) == 1:
            raise requests.HTTPError("Code: 60. Unknown table")
        return _fake_result(sql)

    monkeypatch.setattr(pipeline, "execute_query", flaky_execute)

    outcome = await answer_question("How many forks?", _cache())

    assert outcome.ok
    assert len(calls) == 2
    assert "Unknown table" in feedback[1]


async def test_gives_up_after_max_attempts(monkeypatch):
    feedback = []
    bad = "SELECT count() AS total FROM github_events; DROP TABLE github_events"
    monkeypatch.setattr(pipeline, "generate_sql", _fake_generator([bad] * 3, feedback))

    def never_called(sql):
        raise AssertionError("rejected SQL must not be executed")

    monkeypatch.setattr(pipeline, "execute_query", never_called)

    outcome = await answer_question("drop everything", _cache(), max_attempts=3)

    assert not outcome.ok
    assert outcome.error.startswith("No usable SQL after 3 attempt(s)")
    assert outcome.derivation.rule == "query (partial)"
    assert len(outcome.attempts) == 3


async def test_generation_error_ends_the_loop(monkeypatch):
    async def failing_generate(nl_query, schema, feedback=None):
        raise SQLGenerationError("model answered in prose")

    monkeypatch.setattr(pipeline, "generate_sql", failing_generate)

    outcome = await answer_question("hello", _cache())

    assert not outcome.ok
    assert outcome.error == "SQL generation failed: model answered in prose"
    assert outcome.attempts == []
