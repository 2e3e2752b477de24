"""
Application Configuration

Environment variables and retrieval settings for the customs advisory pipeline.
Values are read once at import time; tests override them through the objects
that receive them (RetrievalThresholds, EmbeddingCache, ResponseCache).
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# OpenAI
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
CHAT_MODEL = os.environ.get("CHAT_MODEL", "gpt-4o-mini")
RERANK_MODEL = os.environ.get("RERANK_MODEL", "gpt-4o-mini")
VISION_MODEL = os.environ.get("VISION_MODEL", "gpt-4o")
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSION = 1536
EMBEDDING_MAX_CHARS = 8000

# Vector index
# - pinecone: one namespace per evidence category
# - memory: in-process cosine index (local runs and tests)
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pinecone")
PINECONE_API_KEY = os.environ.get("PINECONE_API_KEY")
PINECONE_INDEX_NAME = os.environ.get("PINECONE_INDEX_NAME", "douane-evidence")

# Jurisdiction
DEFAULT_COUNTRY = os.environ.get("DEFAULT_COUNTRY", "MA")
DEFAULT_VAT_RATE = 20.0

# Cache Settings
RESPONSE_CACHE_TTL_DAYS = 7
EMBEDDING_CACHE_TTL_SECONDS = int(os.environ.get("EMBEDDING_CACHE_TTL_SECONDS", "300"))
EMBEDDING_CACHE_MAX_ENTRIES = int(os.environ.get("EMBEDDING_CACHE_MAX_ENTRIES", "256"))
CACHE_STORE_WORKERS = int(os.environ.get("CACHE_STORE_WORKERS", "2"))

# Retrieval fan-out
RETRIEVAL_MAX_WORKERS = int(os.environ.get("RETRIEVAL_MAX_WORKERS", "6"))

# Timeouts (seconds) for upstream calls
TIMEOUTS = {
    "embedding": 10,
    "chat": 60,
    "rerank": 15,
    "vision": 45,
    "pdf": 180,
}

# Public base URL for stored PDF documents (file_path is appended)
DOCUMENT_BASE_URL = os.environ.get("DOCUMENT_BASE_URL", "/documents")

# Canonical customs code document used as last-resort article link
CANONICAL_LEGAL_DOCUMENT = "Code des Douanes et Impôts Indirects"

# Seconds to wait between PDF page batches
PDF_BATCH_DELAY_SECONDS = float(os.environ.get("PDF_BATCH_DELAY_SECONDS", "2"))
PDF_PAGES_PER_BATCH = int(os.environ.get("PDF_PAGES_PER_BATCH", "10"))


@dataclass(frozen=True)
class RetrievalThresholds:
    """Similarity thresholds for semantic search (cosine, 0..1)."""
    hs_high: float = 0.78
    hs_medium: float = 0.68
    hs_low: float = 0.55
    doc_high: float = 0.72
    doc_medium: float = 0.62
    doc_low: float = 0.50
    cache_match: float = 0.94
    min_results_before_fallback: int = 3


THRESHOLDS = RetrievalThresholds()
