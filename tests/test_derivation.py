from derivation import format_derivation_tree, node
from grammar_parser import parse_query


def test_format_nested_tree():
    tree = node(
        "query",
        "SELECT repo_name FROM github_events",
        [
            node("select_clause", "SELECT repo_name", [node("select_item", "repo_name", [node("column_ref", "repo_name")])]),
            node("from_clause", "FROM github_events", [node("table_name", "github_events")]),
        ],
    )
    assert format_derivation_tree(tree) == "\n".join(
        [
            "query",
            "├── select_clause",
            "│   ├── select_item",
            '│   │   ├── column_ref → "repo_name"',
            "├── from_clause",
            '│   ├── table_name → "github_events"',
        ]
    )


def test_leaf_root():
    assert format_derivation_tree(node("number", "10")) == 'number → "10"'


def test_to_dict_uses_camel_case_keys():
    tree = parse_query("SELECT count() AS total FROM github_events LIMIT 5")
    data = tree.to_dict()
    assert data["rule"] == "query"
    assert data["matchedText"] == "SELECT count() AS total FROM github_events LIMIT 5"
    assert [c["rule"] for c in data["children"]] == ["select_clause", "from_clause", "limit_clause"]
    assert data["children"][2]["children"] == [{"rule": "number", "matchedText": "5", "children": []}]
