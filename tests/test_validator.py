from schema import STATIC_SCHEMA
from validator import (
    check_columns_exist,
    check_date_range_sanity,
    check_group_by_consistency,
    check_has_limit,
    validate_sql,
)


def test_clean_query_has_no_failed_checks():
    result = validate_sql(
        "SELECT repo_name, count() AS pushes FROM github_events WHERE type = 'PushEvent' "
        "GROUP BY repo_name ORDER BY pushes DESC LIMIT 10",
        STATIC_SCHEMA,
    )
    assert result.valid
    assert result.warnings == []
    assert [c.name for c in result.checks] == [
        "columns_exist",
        "group_by_consistency",
        "has_limit",
        "date_range_sanity",
    ]


def test_quoted_values_are_not_identifiers():
    check = check_columns_exist("SELECT count() AS n FROM github_events WHERE actor_login = 'someone'", STATIC_SCHEMA)
    assert check.passed


def test_unknown_identifier_is_a_warning():
    check = check_columns_exist("SELECT stars FROM github_events", STATIC_SCHEMA)
    assert not check.passed
    assert check.severity == "warning"
    assert "stars" in check.message


def test_mixed_select_without_group_by():
    check = check_group_by_consistency("SELECT repo_name, count() AS n FROM github_events")
    assert not check.passed
    assert check.severity == "warning"
    assert check_group_by_consistency("SELECT count() AS n FROM github_events").passed


def test_missing_limit():
    assert check_has_limit("SELECT count() AS n FROM github_events LIMIT 1").passed
    check = check_has_limit("SELECT repo_name FROM github_events GROUP BY repo_name")
    assert not check.passed
    assert "GROUP BY" in check.message


def test_date_range_sanity():
    assert check_date_range_sanity("... INTERVAL 7 DAY").passed
    check = check_date_range_sanity("... INTERVAL 999999 DAY")
    assert not check.passed
    assert check.severity == "warning"


def test_warnings_do_not_invalidate():
    result = validate_sql("SELECT repo_name FROM github_events", STATIC_SCHEMA)
    assert result.warnings
    assert result.valid
