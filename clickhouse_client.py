from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from io import StringIO
from typing import List

import pandas as pd
import requests

import config
from schema import ColumnInfo, is_enum_type, parse_enum_values

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    df: pd.DataFrame
    csv_text: str
    elapsed_ms: int


def run_clickhouse_query(sql_query: str, format_type: str = "CSVWithNames") -> str:
    """Execute SQL against the ClickHouse HTTP interface and return the raw body.

    Sessions are read-only and capped in rows and execution time.
    """
    params = {
        "default_format": format_type,
        "readonly": 1,
        "max_result_rows": config.MAX_RESULT_ROWS,
        "max_execution_time": config.MAX_EXECUTION_TIME,
    }
    if config.CLICKHOUSE_DATABASE:
        params["database"] = config.CLICKHOUSE_DATABASE
    response = requests.post(
        config.CLICKHOUSE_URL,
        auth=(config.CLICKHOUSE_USER, config.CLICKHOUSE_PASSWORD),
        params=params,
        data=sql_query.encode("utf-8"),
        timeout=config.CLICKHOUSE_TIMEOUT,
    )
    response.raise_for_status()
    return response.text


def execute_query(sql_query: str) -> QueryResult:
    start = time.perf_counter()
    csv_text = run_clickhouse_query(sql_query, "CSVWithNames")
    elapsed_ms = round((time.perf_counter() - start) * 1000)
    df = pd.read_csv(StringIO(csv_text)) if csv_text.strip() else pd.DataFrame()
    logger.info("ClickHouse returned %d row(s) in %d ms", len(df), elapsed_ms)
    return QueryResult(df=df, csv_text=csv_text, elapsed_ms=elapsed_ms)


def fetch_table_columns(table_name: str) -> List[ColumnInfo]:
    """Introspect `system.columns` for a table, in declaration order."""
    # table_name comes from configuration, never from user input.
    sql = (
        "SELECT name, type FROM system.columns "
        f"WHERE table = '{table_name}' AND database = currentDatabase() "
        "ORDER BY position"
    )
    body = run_clickhouse_query(sql, "JSONEachRow")
    columns = []
    for line in body.splitlines():
        if not line.strip():
            continue
        row = json.loads(line)
        enum_values = parse_enum_values(row["type"]) if is_enum_type(row["type"]) else None
        columns.append(ColumnInfo(row["name"], row["type"], enum_values))
    return columns


def health_check() -> bool:
    try:
        run_clickhouse_query("SELECT 1", "TabSeparated")
        return True
    except requests.RequestException as e:
        logger.warning("ClickHouse health check failed: %s", e)
        return False
