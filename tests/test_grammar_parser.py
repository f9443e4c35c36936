import pytest

from derivation import PARTIAL_QUERY_RULE, QUERY_RULE
from grammar_parser import ParseState, get_parser, is_valid_grammar_sql, parse_query
from schema import STATIC_SCHEMA, ColumnInfo, TableSchema

ACCEPTED = [
    "SELECT count() AS total FROM github_events WHERE type = 'PushEvent'",
    "SELECT repo_name, count() AS pushes FROM github_events WHERE type = 'PushEvent' "
    "GROUP BY repo_name ORDER BY pushes DESC LIMIT 10",
    "SELECT toStartOfHour(created_at) AS hour, count() AS events FROM github_events "
    "GROUP BY hour ORDER BY hour ASC",
    "SELECT actor_login, count() AS prs FROM github_events WHERE type = 'PullRequestEvent' "
    "GROUP BY actor_login HAVING count() > 10 ORDER BY prs DESC LIMIT 20",
    "SELECT repo_name, count() AS events FROM github_events WHERE created_at BETWEEN "
    "'2025-11-01' AND '2025-11-02' AND repo_name LIKE '%kubernetes%' GROUP BY repo_name LIMIT 5",
    "SELECT type, count() AS cnt FROM github_events WHERE type IN ('PushEvent', 'ForkEvent') "
    "GROUP BY type ORDER BY cnt DESC",
]

REJECTED = [
    "DROP TABLE github_events",
    "SELECT * FROM github_events",
    "SELECT 1; DROP TABLE github_events",
    "SELECT a.x FROM github_events a JOIN t b ON a.x=b.x",
    "WITH t AS (SELECT 1) SELECT * FROM t",
    "SELECT * FROM system.processes",
    "",
    "select count() as total from github_events",
    "SELECT count() AS total FROM other_table",
]


@pytest.mark.parametrize("sql", ACCEPTED)
def test_accepts_supported_queries(sql):
    tree = parse_query(sql)
    assert tree is not None
    assert tree.rule == QUERY_RULE
    assert is_valid_grammar_sql(sql)


@pytest.mark.parametrize("sql", ACCEPTED)
def test_root_text_reproduces_input(sql):
    assert parse_query(sql).matched_text == sql


@pytest.mark.parametrize("sql", REJECTED)
def test_rejects_unsupported_queries(sql):
    assert not is_valid_grammar_sql(sql)


def test_surrounding_whitespace_is_trimmed():
    sql = "SELECT count() AS total FROM github_events"
    tree = parse_query(f"  {sql}\n")
    assert tree.rule == QUERY_RULE
    assert tree.matched_text == sql


def test_parse_is_deterministic():
    sql = ACCEPTED[1]
    assert parse_query(sql) == parse_query(sql)
    assert parse_query(sql).to_dict() == parse_query(sql).to_dict()


def test_not_equal_is_one_operator():
    tree = parse_query("SELECT id FROM github_events WHERE id != 5")
    assert tree.rule == QUERY_RULE
    where = tree.children[2]
    condition = where.children[0]
    assert condition.rule == "numeric_condition"
    op = condition.children[1]
    assert op.rule == "compare_op"
    assert op.matched_text == "!="


@pytest.mark.parametrize("op", ["!=", ">=", "<=", "=", ">", "<"])
def test_every_compare_op_is_accepted(op):
    assert is_valid_grammar_sql(f"SELECT count() AS n FROM github_events WHERE number {op} 7")


def test_trailing_garbage_is_a_partial_parse():
    sql = "SELECT count() AS total FROM github_events EXTRA_GARBAGE"
    tree = parse_query(sql)
    assert tree is not None
    assert tree.rule == PARTIAL_QUERY_RULE
    assert tree.matched_text == "SELECT count() AS total FROM github_events"
    assert not is_valid_grammar_sql(sql)


def test_missing_from_is_no_parse():
    assert parse_query("SELECT count() AS total") is None


def test_dangling_separator_is_given_back():
    tree = parse_query("SELECT repo_name, FROM github_events")
    assert tree is None

    tree = parse_query("SELECT count() AS n FROM github_events WHERE number > 1 AND")
    assert tree.rule == PARTIAL_QUERY_RULE
    assert tree.matched_text == "SELECT count() AS n FROM github_events WHERE number > 1"


def test_alias_longer_than_column_wins():
    tree = parse_query("SELECT count() AS id_total FROM github_events ORDER BY id_total DESC")
    assert tree.rule == QUERY_RULE
    order_item = tree.children[2].children[0]
    assert order_item.children[0].rule == "alias"
    assert order_item.children[0].matched_text == "id_total"


def test_column_wins_tie_with_alias():
    tree = parse_query("SELECT repo_name, count() AS c FROM github_events GROUP BY repo_name")
    group_item = tree.children[2].children[0]
    assert group_item.children[0].rule == "column_ref"


def test_enum_condition_only_accepts_known_values():
    assert is_valid_grammar_sql("SELECT count() AS n FROM github_events WHERE action = 'opened'")
    assert not is_valid_grammar_sql("SELECT count() AS n FROM github_events WHERE type = 'MaliciousEvent'")


def test_string_values_cannot_break_out_of_quotes():
    sql = "SELECT count() AS n FROM github_events WHERE actor_login = 'x' OR '1'='1'"
    assert not is_valid_grammar_sql(sql)


def test_number_literal_is_capped_at_six_digits():
    assert is_valid_grammar_sql("SELECT count() AS n FROM github_events LIMIT 999999")
    assert not is_valid_grammar_sql("SELECT count() AS n FROM github_events LIMIT 1000000")


def test_custom_schema_locks_table_and_columns():
    schema = TableSchema(
        "pushes",
        (ColumnInfo("author", "String"), ColumnInfo("size", "UInt32"), ColumnInfo("created_at", "DateTime")),
    )
    assert is_valid_grammar_sql("SELECT author, sum(size) AS total FROM pushes GROUP BY author", schema)
    assert not is_valid_grammar_sql("SELECT author FROM github_events", schema)
    assert not is_valid_grammar_sql("SELECT repo_name FROM pushes", schema)


def test_parsers_are_cached_per_schema():
    assert get_parser(STATIC_SCHEMA) is get_parser(STATIC_SCHEMA)


def test_failed_rule_restores_cursor():
    parser = get_parser(STATIC_SCHEMA)
    state = ParseState("type = 'NotAnEvent'")
    assert parser.parse_condition(state) is None
    assert state.pos == 0

    state = ParseState("repo_name, ")
    items = parser._separated(state, parser.parse_select_item, ", ")
    assert [i.matched_text for i in items] == ["repo_name"]
    assert state.remaining == ", "
