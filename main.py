import asyncio
import logging
import random
from typing import Any, List, Optional

import pandas as pd
from fasthtml.common import *
from monsterui.all import *

import config
from clickhouse_client import fetch_table_columns, health_check
from derivation import QUERY_RULE, format_derivation_tree
from evals import (
    COVERAGE,
    SAFETY,
    grammar_accepts,
    is_valid_clickhouse_sql,
    policy_check,
    run_grammar_evals,
    sample_queries,
    summarize,
)
from generator import summarize_result
from grammar import build_grammar, describe_grammar_capabilities
from pipeline import QueryOutcome, answer_question
from schema import SchemaCache

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

schema_cache = SchemaCache(fetch_table_columns)


def render_df_table(df: pd.DataFrame) -> Any:
    """Render a pandas DataFrame as HTML inside an FT Div without escaping."""
    head_df = df.head(200)
    table_html = head_df.to_html(index=False, border=0)
    return Div(NotStr(table_html), cls="table-scroll")


# ----- FastHTML app -----
_theme_hdrs = Theme.blue.headers(highlightjs=True)
_app_css = Style(
    """
    :root { --surface: #0c0f13; --surface-2:#0f141a; --border:#222933; --shadow: 0 10px 24px rgba(0,0,0,.35); }
    body h1 { text-align: center !important; margin: 4rem auto .75rem auto !important; font-weight: 900 !important;
              font-size: clamp(32px, 5vw, 52px) !important; }
    .subtitle { text-align: center; margin: 0 auto 1.5rem auto; font-size: 1.15rem; font-weight: 700; }
    .container-narrow { width: min(1200px, 100% - 48px); margin-inline: auto; }
    .page-pad { padding-block: 1.25rem 2rem; }
    .lead { width: min(900px, 100% - 48px); margin: .25rem auto .75rem auto; line-height: 1.6; text-align: center; }
    .muted { opacity:.85; font-size: .95rem; }
    .panel { box-sizing: border-box; width: 100%; border: 1px solid var(--border); border-radius: 12px; padding: 1rem;
             background: var(--surface-2); box-shadow: var(--shadow); }
    .panel h3 { margin: 0 0 .5rem 0; font-size: 0.98rem; }
    .query-grid { display:grid; grid-template-columns: 1fr auto; gap: .9rem; align-items: start; }
    .query-grid textarea { width: 100%; height: 52px; resize: none; border-radius: 12px; border: 1px solid var(--border);
                           background: var(--surface); color: inherit; padding: .9rem 1rem; }
    .run-btn { border-radius: 12px; padding-inline: 1.25rem; height: 52px; font-weight: 650; }
    .suggestions-compact { display:flex; align-items:center; gap:.75rem; flex-wrap:wrap; margin-top: 1rem; }
    .chip { border:1px solid var(--border); border-radius:999px; padding:.3rem .6rem; background:var(--surface);
            cursor:pointer; font-size: .85rem; }
    .htmx-indicator { opacity: 0; transition: opacity 0.2s ease; }
    #results.htmx-request .htmx-indicator { opacity: 1; }
    #results.htmx-request > *:not(.loading-overlay) { opacity: 0.3; }
    .loading-overlay { position: absolute; top: 50%; left: 50%; transform: translate(-50%, -50%); z-index: 10; }
    .results-grid { display:grid; grid-template-columns: 1fr; gap: 1.25rem; align-items:start; margin-top: 2rem; }
    @media (min-width: 1100px) { .results-grid { grid-template-columns: minmax(0, 1.15fr) minmax(0, 0.85fr); } }
    .left-stack { display:grid; gap: 1rem; width: 100%; }
    .sql-view, .tree-view, .eval-code { font-family: ui-monospace, SFMono-Regular, Menlo, Consolas, monospace;
                font-size: .88rem; line-height: 1.35; white-space: pre-wrap; overflow-wrap: anywhere;
                background: var(--surface); border: 1px solid var(--border); border-radius: 10px; padding: .8rem .95rem;
                max-height: 380px; overflow: auto; margin: 0; }
    .table-scroll { width: 100%; overflow: auto; max-height: 420px; }
    #results table, .eval-table { min-width: 100%; border-collapse: separate; border-spacing: 0; }
    #results th, #results td { padding: .5rem .75rem; border-bottom: 1px solid var(--border); font-size: .92rem; }
    .evals-section { margin-top: 2.5rem; }
    .eval-grid { display:grid; grid-template-columns: 1fr; gap: 1.5rem; }
    @media (min-width: 900px) { .eval-grid { grid-template-columns: repeat(3, 1fr); } }
    .eval-title { display:flex; align-items:center; justify-content: space-between; gap: .75rem; margin-bottom: .35rem; }
    .badge { border:1px solid var(--border); border-radius: 6px; padding: .15rem .5rem; font-size: .78rem; font-weight: 650; }
    .badge-pass { color:#32d296; background: rgba(50,210,150,.08); border-color: rgba(50,210,150,.35); }
    .badge-fail { color:#ff6b6b; background: rgba(255,107,107,.10); border-color: rgba(255,107,107,.40); }
    """
)
hdrs = (*_theme_hdrs, _app_css)
app, rt = fast_app(hdrs=hdrs)
setup_toasts(app)


def mk_layout(content: Any) -> Any:
    """Standard page layout wrapper (no duplicated titles)."""
    nav = Div(A("Ask", href="/"), " · ", A("Evals", href="/evals"), " · ", A("Grammar", href="/grammar"),
              cls="subtitle muted")
    return Titled(
        "GitHub Events Explorer",
        Div("Ask in English → grammar-constrained SQL → ClickHouse answers", cls="subtitle"),
        nav,
        Div(content, cls="container-narrow page-pad"),
    )


def mk_form() -> Any:
    """Create a compact query form with inline run button."""
    input_box = Textarea(
        id="nl_query",
        name="nl_query",
        rows=2,
        placeholder="e.g. Which repos got the most stars in the last 7 days?",
    )
    form = Form(
        hx_post=run.to(),
        hx_target="#results",
        hx_swap="outerHTML",
        hx_indicator="#results",
        hx_trigger="submit, keydown[key=='Enter'&&!shiftKey] from:#nl_query consume throttle:900ms",
        hx_disabled_elt="#nl_query, .run-btn",
        cls="panel",
    )(
        H3("Ask the GitHub events dataset"),
        Div(
            input_box,
            Button("Run", type="submit", cls=f"{ButtonT.primary} run-btn"),
            cls="query-grid",
        ),
        render_suggestions(),
    )
    return form


def _suggestion_chip(text: str) -> Any:
    return Span(
        text,
        cls="chip",
        onclick=(
            f"const t = document.getElementById('nl_query'); t.value = {text!r}; "
            "setTimeout(() => htmx.trigger(t.form, 'submit'), 100);"
        ),
    )


def render_suggestions(n: int = 2) -> Any:
    pool = sample_queries()
    items = [_suggestion_chip(s) for s in random.sample(pool, k=min(n, len(pool)))]
    return Div(
        Span("Try:", cls="muted"),
        *items,
        Button(
            UkIcon("refresh-cw", height=14),
            cls=ButtonT.ghost,
            hx_get=suggestions.to(),
            hx_target="#suggestions",
            hx_swap="outerHTML",
            title="Load other examples",
        ),
        id="suggestions",
        cls="suggestions-compact",
    )


@rt
def suggestions():
    return render_suggestions()


@rt
async def index(req):
    ch_ok = await asyncio.to_thread(health_check)
    status = Span(
        "ClickHouse reachable" if ch_ok else "ClickHouse unreachable",
        cls=f"badge {'badge-pass' if ch_ok else 'badge-fail'}",
    )
    hero = Div(
        P(
            "Explore public GitHub activity with natural language. The model can only emit SQL "
            "that the grammar allows, and every query is re-checked before it runs. ",
            status,
            cls="muted lead",
        ),
    )
    res_placeholder = Div(
        H3("Results"),
        P("Enter a question above and click Run to see results.", cls="muted"),
        id="results",
        cls="panel",
    )
    return mk_layout(Div(hero, mk_form(), res_placeholder, cls="space-y-8"))


def result_card(*children: Any) -> Any:
    """Wrap results in a card with a consistent id for the HTMX target."""
    return Div(
        Div(
            Div(
                UkIcon("loader", height=20, cls="animate-spin mr-2"),
                Span("Loading results"),
                cls="flex items-center text-lg",
            ),
            cls="loading-overlay htmx-indicator",
        ),
        *children,
        id="results",
        cls="relative",
    )


def render_eval_tile(title: str, ok: bool, description: str, details: Optional[str] = None) -> Any:
    badge = Span("Pass" if ok else "Fail", cls=f"badge {'badge-pass' if ok else 'badge-fail'}")
    blocks: List[Any] = [
        Div(H3(title), badge, cls="eval-title"),
        P(description, cls="muted"),
    ]
    if details:
        blocks.append(Pre(Code(details), cls="eval-code"))
    return Div(*blocks, cls="panel")


def render_eval_tiles(outcome: QueryOutcome, schema) -> Any:
    sql = outcome.sql or ""
    tiles: List[Any] = []

    derivation = outcome.derivation
    v_ok = derivation is not None and derivation.rule == QUERY_RULE
    tiles.append(
        render_eval_tile(
            "Grammar Verifier",
            v_ok,
            "Recursive-descent re-parse against the materialized grammar.",
            None if v_ok else (f"Recognized prefix: {derivation.matched_text}" if derivation else "No SELECT/FROM match."),
        )
    )

    g_ok, g_msg = grammar_accepts(sql, schema)
    tiles.append(render_eval_tile("Lark Acceptance", g_ok, "Earley parse with the same Lark grammar.", g_msg or None))

    s_ok, s_msg = is_valid_clickhouse_sql(sql)
    tiles.append(
        render_eval_tile("ClickHouse Parse", s_ok, "Parses the SQL with the ClickHouse dialect (sqlglot).", s_msg or None)
    )

    p_ok, p_problems = policy_check(sql, schema)
    tiles.append(
        render_eval_tile(
            "Policy & Safeguards",
            p_ok,
            "Single read-only SELECT on the events table; schema columns and whitelisted functions only.",
            "\n".join(f"- {x}" for x in p_problems) or None,
        )
    )

    if outcome.validation is not None:
        warnings = outcome.validation.warnings
        tiles.append(
            render_eval_tile(
                "Semantic Checks",
                not warnings,
                "GROUP BY consistency, LIMIT, date range sanity, identifiers.",
                "\n".join(f"- {w.message}" for w in warnings) or None,
            )
        )

    return Div(H3("SQL Evals"), Div(*tiles, cls="eval-grid"), cls="evals-section")


def render_attempts(outcome: QueryOutcome) -> Any:
    rows = [
        Tr(Td(str(a.number)), Td(Code(a.sql)), Td(a.problem or "ok"))
        for a in outcome.attempts
    ]
    return Div(
        H3("Attempts"),
        Table(Thead(Tr(Th("#"), Th("SQL"), Th("Outcome"))), Tbody(*rows)),
        cls="panel table-scroll",
    )


@rt
async def run(nl_query: str = "", sess=None):
    if not nl_query.strip():
        return result_card(Alert("Please enter a query.", cls=AlertT.warning))

    try:
        outcome = await answer_question(nl_query.strip(), schema_cache)
        schema = await asyncio.to_thread(schema_cache.get, config.CLICKHOUSE_TABLE)
    except Exception as e:
        logger.exception("Query pipeline failed")
        if sess is not None:
            add_toast(sess, str(e), "error")
        return result_card(Alert("Error: ", str(e), cls=AlertT.error))

    tree_block = (
        Div(H3("Derivation Tree"), Pre(format_derivation_tree(outcome.derivation), cls="tree-view"), cls="panel")
        if outcome.derivation is not None
        else None
    )

    if not outcome.ok:
        parts: List[Any] = [Alert(outcome.error or "Query failed.", cls=AlertT.error)]
        if outcome.sql:
            parts += [Divider(), Div(H3("Last generated SQL"), Pre(Code(outcome.sql), cls="sql-view"), cls="panel")]
        if outcome.attempts:
            parts += [Divider(), render_attempts(outcome)]
        if tree_block is not None:
            parts += [Divider(), tree_block]
        if outcome.llm_text:
            parts += [Divider(), Div(H3("Model response"), P(outcome.llm_text), cls="panel")]
        return result_card(*parts)

    result = outcome.result
    llm_followup_text = await summarize_result(nl_query, outcome.sql, result.csv_text)

    results_pane = Div(
        H3("Results"),
        P(f"{len(result.df)} row(s) in {result.elapsed_ms} ms", cls="muted"),
        render_df_table(result.df) if not result.df.empty else P("No rows returned.", cls="muted"),
        cls="panel",
    )

    left_pane_children: List[Any] = []
    if llm_followup_text:
        left_pane_children.append(Div(H3("Model on Results"), P(llm_followup_text), cls="panel"))
    left_pane_children.append(Div(H3("Generated SQL"), Pre(Code(outcome.sql), cls="sql-view"), cls="panel"))
    if len(outcome.attempts) > 1:
        left_pane_children.append(render_attempts(outcome))
    if tree_block is not None:
        left_pane_children.append(tree_block)

    grid = Div(Div(*left_pane_children, cls="left-stack"), results_pane, cls="results-grid")
    return result_card(Div(grid, render_eval_tiles(outcome, schema)))


@rt("/evals")
async def evals_page():
    schema = await asyncio.to_thread(schema_cache.get, config.CLICKHOUSE_TABLE)
    results = await asyncio.to_thread(run_grammar_evals, schema)
    summary = summarize(results)

    tiles = [
        render_eval_tile(
            f"{category} ({s['metric_name']})",
            s["passed"] == s["total"],
            f"{s['metric']:.0%}: {s['passed']} of {s['total']} cases",
        )
        for category, s in summary["by_category"].items()
    ]
    rows = [
        Tr(
            Td(r.id),
            Td(r.category),
            Td(Span("Pass" if r.passed else "Fail", cls=f"badge {'badge-pass' if r.passed else 'badge-fail'}")),
            Td(r.details),
        )
        for r in results
        if r.category in (COVERAGE, SAFETY)
    ]
    table = Div(
        H3("Grammar cases"),
        Table(Thead(Tr(Th("Case"), Th("Category"), Th("Result"), Th("Details"))), Tbody(*rows), cls="eval-table"),
        cls="panel table-scroll",
    )
    return mk_layout(Div(Div(*tiles, cls="eval-grid"), Div(table, id="results"), cls="space-y-8"))


@rt("/grammar")
async def grammar_page():
    schema = await asyncio.to_thread(schema_cache.get, config.CLICKHOUSE_TABLE)
    return mk_layout(
        Div(
            Div(H3("Capabilities"), Pre(describe_grammar_capabilities(schema), cls="sql-view"), cls="panel"),
            Div(H3("Materialized Lark grammar"), Pre(build_grammar(schema), cls="sql-view"), cls="panel"),
            cls="space-y-8",
        )
    )


serve()
