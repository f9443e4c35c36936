from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

QUERY_RULE = "query"
PARTIAL_QUERY_RULE = "query (partial)"


@dataclass(frozen=True)
class DerivationNode:
    """One grammar rule application.

    Leaves hold the literal text consumed. Internal nodes hold their
    children's text re-joined with the grammar's literal separators, so the
    value is rebuilt rather than sliced from the input.
    """

    rule: str
    matched_text: str
    children: Tuple["DerivationNode", ...] = ()

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "matchedText": self.matched_text,
            "children": [child.to_dict() for child in self.children],
        }


def node(rule: str, matched_text: str, children: Sequence[DerivationNode] = ()) -> DerivationNode:
    return DerivationNode(rule, matched_text, tuple(children))


def format_derivation_tree(tree: DerivationNode, indent: int = 0) -> str:
    """Pretty-print a derivation tree, e.g.

    query
    ├── select_clause
    │   ├── select_item
    │   │   ├── column_ref → "repo_name"
    """
    prefix = "" if indent == 0 else "│   " * (indent - 1) + "├── "
    lines = [f"{prefix}{tree.rule}"]
    if tree.is_leaf:
        lines[0] += f' → "{tree.matched_text}"'
    for child in tree.children:
        lines.append(format_derivation_tree(child, indent + 1))
    return "\n".join(lines)
