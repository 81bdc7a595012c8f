# =============================================
# File: tests/test_cli_patterns.py
# Purpose: Seeding the pattern store from example files
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import json

import pytest

from app.cli import patterns as cli
from _fakes import FakePatterns, make_registry


def test_load_examples_json_and_jsonl(tmp_path):
    j = tmp_path / "ex.json"
    j.write_text(json.dumps([{"question": "q1", "query": "SELECT 1"}]), encoding="utf-8")
    jl = tmp_path / "ex.jsonl"
    jl.write_text('{"question": "q1", "sql": "SELECT 1"}\n\n{"question": "q2", "query": "SELECT 2"}\n', encoding="utf-8")
    assert len(cli.load_examples(j)) == 1
    assert [e["question"] for e in cli.load_examples(jl)] == ["q1", "q2"]


def test_seed_skips_incomplete_rows():
    store = FakePatterns()
    examples = [
        {"question": "top customers", "query": 'SELECT "firstName" FROM sales_customers', "row_count": 3},
        {"question": "", "query": "SELECT 1"},
        {"question": "no query"},
    ]
    n = cli.seed(store, make_registry("sqlite:///x.db"), examples, "Sales")
    assert n == 1
    p = store.upserts[0]
    assert p.store_id == "sales" and p.dialect == "sqlite" and p.row_count == 3 and p.actor_id == "seed"


def test_seed_unknown_database():
    with pytest.raises(ValueError):
        cli.seed(FakePatterns(), make_registry("sqlite:///x.db"), [], "nowhere")


def test_main_reports_missing_file(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "SemanticPatternStore", lambda **kw: FakePatterns())
    assert cli.main(["seed", str(tmp_path / "missing.jsonl"), "--database", "sales"]) == 1
    assert "File not found" in capsys.readouterr().err


def test_main_seeds(tmp_path, monkeypatch, capsys):
    store = FakePatterns()
    store.collection_name = "query_patterns"
    monkeypatch.setattr(cli, "SemanticPatternStore", lambda **kw: store)
    f = tmp_path / "ex.jsonl"
    f.write_text('{"question": "top customers", "query": "SELECT 1"}\n', encoding="utf-8")
    assert cli.main(["seed", str(f), "--database", "sales"]) == 0
    assert len(store.upserts) == 1
    assert "[OK] Stored 1 patterns" in capsys.readouterr().out
