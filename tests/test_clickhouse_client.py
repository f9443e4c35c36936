import pytest
import requests

import clickhouse_client
from clickhouse_client import execute_query, fetch_table_columns, health_check, run_clickhouse_query


class FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


@pytest.fixture
def posted(monkeypatch):
    calls = []
    responses = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return responses.pop(0)

    monkeypatch.setattr(clickhouse_client.requests, "post", fake_post)
    return calls, responses


def test_query_is_sent_read_only_and_capped(posted):
    calls, responses = posted
    responses.append(FakeResponse("x\n1\n"))

    assert run_clickhouse_query("SELECT 1 AS x") == "x\n1\n"

    _, kwargs = calls[0]
    assert kwargs["data"] == b"SELECT 1 AS x"
    assert kwargs["params"]["readonly"] == 1
    assert kwargs["params"]["default_format"] == "CSVWithNames"
    assert kwargs["params"]["max_result_rows"] == 10000
    assert kwargs["params"]["max_execution_time"] == 30


def test_http_errors_propagate(posted):
    _, responses = posted
    responses.append(FakeResponse("Code: 60. Unknown table", status_code=404))

    with pytest.raises(requests.HTTPError) as excinfo:
        run_clickhouse_query("SELECT 1 FROM nowhere")
    assert excinfo.value.response.text == "Code: 60. Unknown table"


def test_execute_query_builds_dataframe(posted):
    _, responses = posted
    responses.append(FakeResponse("repo_name,pushes\nfoo/bar,10\nbaz/qux,4\n"))

    result = execute_query("SELECT repo_name, count() AS pushes FROM github_events GROUP BY repo_name")

    assert list(result.df.columns) == ["repo_name", "pushes"]
    assert result.df["pushes"].tolist() == [10, 4]
    assert result.elapsed_ms >= 0


def test_execute_query_empty_body(posted):
    _, responses = posted
    responses.append(FakeResponse(""))
    assert execute_query("SELECT 1").df.empty


def test_fetch_table_columns_parses_enums(posted):
    calls, responses = posted
    responses.append(
        FakeResponse(
            '{"name":"id","type":"UInt64"}\n'
            "{\"name\":\"type\",\"type\":\"Enum8('PushEvent' = 1, 'ForkEvent' = 2)\"}\n"
        )
    )

    columns = fetch_table_columns("github_events")

    assert [c.name for c in columns] == ["id", "type"]
    assert columns[0].enum_values is None
    assert columns[1].enum_values == ("PushEvent", "ForkEvent")
    assert calls[0][1]["params"]["default_format"] == "JSONEachRow"
    assert b"system.columns" in calls[0][1]["data"]


def test_health_check(monkeypatch):
    def down(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(clickhouse_client.requests, "post", down)
    assert health_check() is False
