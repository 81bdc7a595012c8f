# =============================================
# File: app/cli/patterns.py
# Purpose: CLI entrypoint to seed or inspect the semantic pattern store.
# Usage:
#   python -m app.cli.patterns seed examples.jsonl --database sales
#   python -m app.cli.patterns stats
# =============================================
from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from app.services.catalog import StoreRegistry
from app.services.models import SemanticPattern
from app.services.patterns import SemanticPatternStore


def load_examples(path: Path) -> List[Dict[str, Any]]:
    """A JSON list or JSON Lines of {"question": ..., "query": ..., "row_count"?: int}."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
        return list(data if isinstance(data, list) else [data])
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def seed(store: SemanticPatternStore, registry: StoreRegistry, examples: List[Dict[str, Any]], database: str) -> int:
    cfg = registry.get(database)
    if cfg is None:
        raise ValueError(f"Unknown database '{database}'")
    n = 0
    for ex in examples:
        question = (ex.get("question") or "").strip()
        query = (ex.get("query") or ex.get("sql") or "").strip()
        if not question or not query:
            continue
        store.upsert(SemanticPattern(
            query_text=question,
            generated_query=query,
            store_id=cfg.id,
            dialect=cfg.dialect,
            row_count=int(ex.get("row_count", 0) or 0),
            actor_id="seed",
        ))
        n += 1
    return n


def main(argv=None):
    ap = argparse.ArgumentParser(description="Seed or inspect the semantic pattern store (Chroma).")
    ap.add_argument("--persist", default=None, help="Chroma persist dir (default: PATTERNS_CHROMA_PATH or store/chroma)")
    ap.add_argument("--collection", default=None, help="Collection name (default: PATTERNS_COLLECTION or query_patterns)")
    sub = ap.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("seed", help="Upsert known-good question/query pairs")
    sp.add_argument("file", type=Path, help="JSON or JSONL file of examples")
    sp.add_argument("--database", required=True, help="Target store id, e.g. sales")

    sub.add_parser("stats", help="Show collection size")
    args = ap.parse_args(argv)

    store = SemanticPatternStore(path=args.persist, collection_name=args.collection)

    if args.command == "stats":
        print(json.dumps(store.stats(), indent=2))
        return 0

    if not args.file.exists():
        print(f"[ERR] File not found: {args.file}", file=sys.stderr)
        return 1
    try:
        n = seed(store, StoreRegistry.from_env(), load_examples(args.file), args.database)
    except ValueError as e:
        print(f"[ERR] {e}", file=sys.stderr)
        return 1
    if n == 0:
        print("[WARN] No usable examples found. Expected 'question' and 'query' keys.", file=sys.stderr)
        return 1
    print(f"[OK] Stored {n} patterns for '{args.database}' in '{store.collection_name}'.")
    return 0

if __name__ == "__main__":
    sys.exit(main())
