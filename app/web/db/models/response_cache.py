"""
Response Cache Model

Validated question → answer pairs. question_hash is the SHA-256 of the
lowercased, trimmed question and is unique (upsert key). Similarity
matching goes through the vector index (vector id = row id); the embedding
is kept on the row so that namespace can be rebuilt.
"""

import hashlib
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON
from app.web.db import db
from app.web.db.models.base import BaseModel


class ResponseCacheEntry(BaseModel):
    __tablename__ = "response_cache"

    id = db.Column(db.Integer, primary_key=True)
    question_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    question_text = db.Column(db.Text, nullable=False)
    question_embedding = db.Column(JSON, nullable=True)  # List[float]
    response_text = db.Column(db.Text, nullable=False)
    confidence_level = db.Column(db.String(20), nullable=False, default="medium")
    citations = db.Column(JSON, nullable=True)  # List of ValidatedSource dicts
    context_used = db.Column(JSON, nullable=True)  # summary counts
    has_evidence = db.Column(db.Boolean, nullable=False, default=False)
    hit_count = db.Column(db.Integer, nullable=False, default=0)
    last_hit_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    @staticmethod
    def hash_question(question: str) -> str:
        """SHA-256 of the lowercased, trimmed question."""
        return hashlib.sha256(question.strip().lower().encode("utf-8")).hexdigest()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question_hash": self.question_hash,
            "question_text": self.question_text,
            "response_text": self.response_text,
            "confidence_level": self.confidence_level,
            "citations": self.citations or [],
            "has_evidence": self.has_evidence,
            "hit_count": self.hit_count,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
