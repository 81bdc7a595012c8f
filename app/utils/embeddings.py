from sentence_transformers import SentenceTransformer
from functools import lru_cache
import os

@lru_cache(maxsize=1)
def get_embedding_model() -> SentenceTransformer:
    model_name = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
    return SentenceTransformer(model_name, device="cpu")

def embed_texts(texts: list[str]) -> list[list[float]]:
    # normalized vectors so cosine distance in Chroma maps cleanly to similarity
    return get_embedding_model().encode(texts, normalize_embeddings=True).tolist()

def embed_question(text: str) -> list[float]:
    """Embedding of a normalized question (case and spacing do not change the vector)."""
    norm = " ".join((text or "").strip().lower().split())
    return embed_texts([norm])[0]
