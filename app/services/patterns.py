# =============================================
# File: app/services/patterns.py
# Purpose: Semantic pattern store over Chroma (past successful translations)
# =============================================
from __future__ import annotations

import hashlib
import os
from typing import Any, Callable, Dict, List, Optional

import chromadb
from loguru import logger

from .models import PatternMatch, SemanticPattern

# Use cosine to be consistent with normalized sentence-transformers vectors
HNSW_SPACE = "cosine"
DEFAULT_TOP_K = 5


def _distance_to_similarity(dist: float, space: str = HNSW_SPACE) -> float:
    """
    Convert Chroma distance to a similarity score in [0, 1].
    For cosine, Chroma returns distance = 1 - cosine_sim, so we invert.
    """
    if space == "cosine":
        sim = 1.0 - float(dist)
    else:
        sim = 1.0 / (1.0 + float(dist))
    return max(0.0, min(1.0, sim))


def _normalize(text: str) -> str:
    return " ".join((text or "").strip().lower().split())


def pattern_id(store_id: str, text: str) -> str:
    """Stable id: re-writing the same question for the same store overwrites."""
    raw = f"{(store_id or '').lower()}::{_normalize(text)}"
    return "pat_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def _build_where(store_id: str, success: Optional[bool] = True) -> Dict[str, Any]:
    """
    Chroma v0.5+ filter dict using operator syntax, e.g.
      {"$and": [{"database": {"$eq": "sales"}}, {"success": {"$eq": True}}]}
    """
    clauses: List[Dict[str, Any]] = [{"database": {"$eq": (store_id or "").lower()}}]
    if success is not None:
        clauses.append({"success": {"$eq": bool(success)}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _metadata(p: SemanticPattern) -> Dict[str, Any]:
    # Chroma metadata values must be scalars (no None)
    meta: Dict[str, Any] = {
        "database": p.store_id.lower(),
        "dialect": p.dialect,
        "success": bool(p.success),
        "query": p.generated_query,
        "execution_time_ms": int(p.execution_time_ms),
        "row_count": int(p.row_count),
        "actor_id": p.actor_id or "",
        "created_at": p.created_at.isoformat(),
    }
    if p.confidence is not None:
        meta["confidence"] = float(p.confidence)
    return meta


class SemanticPatternStore:
    """
    Read path feeds few-shot exemplars into the prompt; write path is called
    from the background writer. Every read degrades to [] on failure.
    """

    def __init__(
        self,
        client: Any = None,
        collection_name: Optional[str] = None,
        embed_fn: Optional[Callable[[str], List[float]]] = None,
        path: Optional[str] = None,
    ):
        self._client = client
        self._path = path or os.getenv("PATTERNS_CHROMA_PATH", "store/chroma")
        self.collection_name = collection_name or os.getenv("PATTERNS_COLLECTION", "query_patterns")
        self._embed_fn = embed_fn
        self._collection = None

    # ---------------- plumbing ---------------- #

    def _embed(self, text: str) -> List[float]:
        if self._embed_fn is None:
            # heavy import only when a real model is needed
            from app.utils.embeddings import embed_question
            self._embed_fn = embed_question
        return list(self._embed_fn(text))

    def get_collection(self):
        if self._collection is None:
            if self._client is None:
                self._client = chromadb.PersistentClient(path=self._path)
            self._collection = self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": HNSW_SPACE},
            )
        return self._collection

    def _query(self, text: str, where: Dict[str, Any], n: int) -> List[PatternMatch]:
        if n <= 0 or not (text or "").strip():
            return []
        try:
            col = self.get_collection()
            res = col.query(
                query_embeddings=[self._embed(text)],
                n_results=n,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as e:
            logger.warning("pattern search unavailable: {}", e)
            return []

        ids = (res.get("ids") or [[]])[0]
        docs = (res.get("documents") or [[]])[0]
        metas = (res.get("metadatas") or [[]])[0]
        dists = (res.get("distances") or [[]])[0]

        out: List[PatternMatch] = []
        for pid, doc, meta, dist in zip(ids, docs, metas, dists):
            meta = dict(meta or {})
            out.append(
                PatternMatch(
                    id=pid,
                    score=_distance_to_similarity(dist),
                    query_text=doc or "",
                    generated_query=str(meta.get("query", "")),
                    store_id=str(meta.get("database", "")),
                    row_count=int(meta.get("row_count", 0) or 0),
                    confidence=meta.get("confidence"),
                )
            )
        # Deterministic order: highest similarity first, then id
        out.sort(key=lambda m: (-m.score, m.id))
        return out

    # ---------------- public API ---------------- #

    def upsert(self, pattern: SemanticPattern) -> str:
        """Write (or overwrite) one pattern. Raises on failure; callers run it in the background."""
        pid = pattern_id(pattern.store_id, pattern.query_text)
        embedding = pattern.embedding or self._embed(pattern.query_text)
        self.get_collection().upsert(
            ids=[pid],
            embeddings=[embedding],
            documents=[pattern.query_text],
            metadatas=[_metadata(pattern)],
        )
        logger.debug("stored pattern {} for database={}", pid, pattern.store_id)
        return pid

    def search_similar(self, text: str, store_id: str, top_k: int = DEFAULT_TOP_K) -> List[PatternMatch]:
        return self._query(text, _build_where(store_id, success=True), int(top_k))

    def suggestions(self, partial: str, store_id: str, limit: int = 5, min_score: float = 0.7) -> List[str]:
        """Previously successful questions resembling a partially typed one."""
        if len((partial or "").strip()) < 3:
            return []
        seen = set()
        out: List[str] = []
        for m in self.search_similar(partial, store_id, top_k=limit * 2):
            key = _normalize(m.query_text)
            if m.score < min_score or key in seen:
                continue
            seen.add(key)
            out.append(m.query_text)
            if len(out) >= limit:
                break
        return out

    def alternatives(self, failed: str, store_id: str, limit: int = 3, min_score: float = 0.8) -> List[str]:
        """Similar successful questions to offer after a failed attempt."""
        norm = _normalize(failed)
        return [
            m.query_text
            for m in self.search_similar(failed, store_id, top_k=limit + 1)
            if m.score >= min_score and _normalize(m.query_text) != norm
        ][:limit]

    def stats(self) -> Dict[str, Any]:
        try:
            col = self.get_collection()
            return {"available": True, "collection": self.collection_name, "total_patterns": col.count()}
        except Exception as e:
            logger.warning("pattern store stats unavailable: {}", e)
            return {"available": False, "collection": self.collection_name, "total_patterns": 0}
