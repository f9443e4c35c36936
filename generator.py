from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI

import config
from grammar import build_sql_tool
from schema import KNOWN_ACTION_VALUES, KNOWN_EVENT_TYPES, TableSchema, build_schema_summary

logger = logging.getLogger(__name__)


class SQLGenerationError(Exception):
    """The model answered without producing SQL through the grammar tool."""


@dataclass
class GeneratedSQL:
    sql: str
    model: str
    llm_text: Optional[str] = None


@lru_cache(maxsize=1)
def get_client() -> AsyncOpenAI:
    if config.AZURE_OPENAI_ENDPOINT:
        return AsyncAzureOpenAI(
            api_version=config.AZURE_OPENAI_API_VERSION,
            azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
            api_key=config.AZURE_OPENAI_KEY,
        )
    return AsyncOpenAI()


def build_system_prompt(schema: TableSchema) -> str:
    return (
        "You are a ClickHouse SQL query generator for a GitHub events database.\n\n"
        f"DATABASE SCHEMA:\n{build_schema_summary(schema)}\n\n"
        f"AVAILABLE EVENT TYPES: {', '.join(KNOWN_EVENT_TYPES)}\n"
        f"AVAILABLE ACTIONS: {', '.join(KNOWN_ACTION_VALUES)}\n\n"
        "Translate the user's question into a single ClickHouse SELECT query using the "
        "sql_generator tool; it enforces a grammar that only allows valid queries.\n\n"
        "GUIDELINES:\n"
        "- GitHub stars are WatchEvents in this dataset\n"
        "- commits or pushes map to PushEvent\n"
        "- pull requests or PRs map to PullRequestEvent\n"
        "- issues map to IssuesEvent, with action = 'opened' for new issues\n"
        "- Use count() for counting events and uniqExact() for distinct values\n"
        "- Always include a LIMIT clause (default to 10)\n"
        "- Use date truncation (toStartOfDay, toStartOfHour, ...) for time series\n"
        "- For top N questions use ORDER BY ... DESC LIMIT N"
    )


def build_user_message(natural_language_query: str, feedback: Optional[str] = None) -> str:
    if not feedback:
        return natural_language_query
    return (
        f"{natural_language_query}\n\n--- RETRY FEEDBACK ---\n"
        "A previous SQL attempt for this question was inadequate. Here is why:\n"
        f"{feedback}\n"
        "Please generate a corrected SQL query that addresses the issue."
    )


def extract_tool_sql(resp: Any) -> Optional[str]:
    for item in getattr(resp, "output", None) or []:
        if getattr(item, "type", None) == "custom_tool_call":
            return getattr(item, "input", None)
    return None


def extract_text(resp: Any) -> Optional[str]:
    text = getattr(resp, "output_text", None)
    if isinstance(text, str) and text:
        return text
    return None


async def generate_sql(
    natural_language_query: str,
    schema: TableSchema,
    feedback: Optional[str] = None,
) -> GeneratedSQL:
    """Produce SQL through the grammar-constrained custom tool."""
    resp = await get_client().responses.create(
        model=config.OPENAI_MODEL,
        input=[
            {"role": "developer", "content": build_system_prompt(schema)},
            {"role": "user", "content": build_user_message(natural_language_query, feedback)},
        ],
        tools=[build_sql_tool(schema)],
        parallel_tool_calls=False,
        reasoning={"effort": "low"},
    )

    sql_query = extract_tool_sql(resp)
    llm_text = extract_text(resp)
    if not sql_query:
        raise SQLGenerationError(
            f"Model did not generate SQL via the grammar tool. Response: {llm_text or 'Unknown error'}"
        )

    model = getattr(resp, "model", config.OPENAI_MODEL)
    logger.info("Generated SQL with %s: %s", model, sql_query)
    return GeneratedSQL(sql=sql_query.strip(), model=model, llm_text=llm_text)


# ----- LLM follow-up with ClickHouse result -----
def _truncate_text(text: str, max_lines: int = 60, max_chars: int = 8000) -> str:
    """Trim large strings to keep LLM prompts small and predictable."""
    if not text:
        return ""
    lines = text.splitlines()
    if len(lines) > max_lines:
        lines = lines[:max_lines] + ["... (truncated)"]
    out = "\n".join(lines)
    if len(out) > max_chars:
        out = out[: max_chars - 15] + "\n...(truncated)"
    return out


async def summarize_result(nl_query: str, sql_query: str, csv_text: str) -> Optional[str]:
    """Short natural-language reading of a query result, or None on any failure.

    Kept separate from grammar-based generation: a plain text call that lets
    the model see what ClickHouse returned.
    """
    followup_input = (
        "Here's the result of executing a ClickHouse query. Do not generate any new SQL. "
        "Answer the user's question in one to three sentences using the numbers shown. "
        "If the table is empty, state that clearly.\n\n"
        f"User request:\n{nl_query}\n\n"
        f"Executed SQL:\n{sql_query}\n\n"
        f"ClickHouse CSVWithNames result (truncated):\n{_truncate_text(csv_text or '')}\n"
    )
    try:
        resp = await get_client().responses.create(
            model=config.OPENAI_MODEL,
            input=followup_input,
            text={"format": {"type": "text"}},
        )
    except Exception as e:
        # Non-fatal for the UI; the result table is still shown.
        logger.warning("Result summary failed: %s", e)
        return None
    return extract_text(resp)
