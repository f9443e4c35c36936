from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import requests
from openai import OpenAIError

import config
from clickhouse_client import QueryResult, execute_query
from derivation import QUERY_RULE, DerivationNode
from generator import SQLGenerationError, generate_sql
from grammar_parser import parse_query
from schema import SchemaCache
from validator import ValidationResult, validate_sql

logger = logging.getLogger(__name__)


@dataclass
class Attempt:
    number: int
    sql: str
    problem: Optional[str] = None


@dataclass
class QueryOutcome:
    question: str
    sql: Optional[str] = None
    llm_text: Optional[str] = None
    derivation: Optional[DerivationNode] = None
    validation: Optional[ValidationResult] = None
    result: Optional[QueryResult] = None
    attempts: List[Attempt] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


def grammar_feedback(sql: str, derivation: Optional[DerivationNode]) -> str:
    if derivation is None:
        return f'SQL "{sql}" is not in the allowed grammar: the SELECT or FROM clause is malformed.'
    return (
        f'SQL "{sql}" is not in the allowed grammar: only "{derivation.matched_text}" '
        "was recognized, the rest is not allowed."
    )


async def answer_question(
    nl_query: str,
    schema_cache: SchemaCache,
    max_attempts: int = config.MAX_ATTEMPTS,
    table_name: str = config.CLICKHOUSE_TABLE,
) -> QueryOutcome:
    """Generate, verify, validate and execute SQL for a question.

    The generated SQL is re-parsed against the grammar before anything runs;
    a rejection, a validation error or a ClickHouse error is fed back into
    the next attempt.
    """
    schema = await asyncio.to_thread(schema_cache.get, table_name)
    outcome = QueryOutcome(question=nl_query)
    feedback: Optional[str] = None

    for number in range(1, max_attempts + 1):
        try:
            generated = await generate_sql(nl_query, schema, feedback)
        except (SQLGenerationError, OpenAIError) as e:
            outcome.error = f"SQL generation failed: {e}"
            return outcome

        sql = generated.sql
        attempt = Attempt(number=number, sql=sql)
        outcome.attempts.append(attempt)
        outcome.sql = sql
        outcome.llm_text = generated.llm_text

        derivation = parse_query(sql, schema)
        outcome.derivation = derivation
        if derivation is None or derivation.rule != QUERY_RULE:
            attempt.problem = feedback = grammar_feedback(sql, derivation)
            logger.warning("Attempt %d rejected by grammar verifier: %s", number, sql)
            continue

        validation = validate_sql(sql, schema)
        outcome.validation = validation
        for warning in validation.warnings:
            logger.warning("Attempt %d validation warning: %s", number, warning.message)
        if not validation.valid:
            messages = "; ".join(e.message for e in validation.errors)
            attempt.problem = feedback = f'SQL "{sql}" failed semantic validation: {messages}. Fix these issues.'
            logger.info("Attempt %d failed validation, retrying", number)
            continue

        try:
            outcome.result = await asyncio.to_thread(execute_query, sql)
        except requests.RequestException as e:
            detail = e.response.text if getattr(e, "response", None) is not None else str(e)
            attempt.problem = feedback = f'SQL "{sql}" failed to execute: {detail}. Generate a corrected query.'
            logger.info("Attempt %d execution failed, retrying: %s", number, detail)
            continue

        return outcome

    outcome.error = f"No usable SQL after {max_attempts} attempt(s): {feedback}"
    return outcome
