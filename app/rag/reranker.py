"""
Re-ranker

Second relevance pass over retrieved passages.

- LLMReranker: asks a small chat model to score up to 15 passages 0-10
  through the rank_passages tool. Any failure (HTTP error, timeout, missing
  or malformed tool call) falls back to the incoming order. Three passages
  or fewer are never sent; their order is trusted as is.
- tfidf_rerank: model-free alternative based on question term frequency.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError

from app.chat.output_schemas import RankPassagesArgs, tool_definition
from app.config import RERANK_MODEL
from app.rag.llm import GenerationService

logger = logging.getLogger(__name__)

MAX_RERANK_PASSAGES = 15
PASSAGE_PREVIEW_CHARS = 300
TRUSTED_ORDER_MAX = 3
DEFAULT_SCORE = 5.0

RERANK_SYSTEM_PROMPT = (
    "Score chaque passage de 0 à 10 selon sa pertinence pour répondre à la question. "
    "10 = parfaitement pertinent, 0 = hors sujet."
)

RANK_PASSAGES_TOOL = tool_definition(
    "rank_passages",
    "Score each passage for relevance to the question (0-10)",
    RankPassagesArgs,
)

_TERM_STRIP = re.compile(r"[^\w\sàâäéèêëïîôùûüç\u0600-\u06FF]")


@dataclass
class RankedPassage:
    index: int
    score: float
    text: str
    kind: str
    payload: Any = None


@dataclass
class PassageInput:
    text: str
    kind: str
    payload: Any = None


def _in_order(passages: Sequence[PassageInput], step: float) -> List[RankedPassage]:
    return [
        RankedPassage(index=i, score=10 - i * step, text=p.text, kind=p.kind, payload=p.payload)
        for i, p in enumerate(passages)
    ]


class LLMReranker:

    def __init__(self, generation: Optional[GenerationService] = None, max_passages: int = MAX_RERANK_PASSAGES):
        self.generation = generation or GenerationService(model=RERANK_MODEL, service="rerank")
        self.max_passages = max_passages

    def rerank(self, question: str, passages: Sequence[PassageInput],
               top_k: Optional[int] = None) -> List[RankedPassage]:
        """
        Returns:
            Passages sorted by model score (at most max_passages, or top_k, of them)
        """
        ranked = self._rerank(question, passages)
        return ranked[:top_k] if top_k else ranked

    def _rerank(self, question: str, passages: Sequence[PassageInput]) -> List[RankedPassage]:
        if not passages:
            return []
        if len(passages) <= TRUSTED_ORDER_MAX:
            return _in_order(passages, step=1.0)

        to_rank = list(passages[:self.max_passages])
        listing = "\n\n".join(
            f"[{i}] ({p.kind}) {p.text[:PASSAGE_PREVIEW_CHARS]}{'...' if len(p.text) > PASSAGE_PREVIEW_CHARS else ''}"
            for i, p in enumerate(to_rank)
        )

        try:
            result = self.generation.complete(
                RERANK_SYSTEM_PROMPT,
                f"Question: {question}\n\nPassages:\n{listing}",
                tool=RANK_PASSAGES_TOOL,
                max_tokens=200,
                temperature=0,
            )
            if not result.tool_arguments:
                logger.warning("Re-ranking returned no scores, using original order")
                return _in_order(to_rank, step=0.5)
            args = RankPassagesArgs.model_validate(result.tool_arguments)
        except ValidationError as e:
            logger.warning(f"Malformed re-ranking scores, using original order: {e}")
            return _in_order(to_rank, step=0.5)
        except Exception as e:
            logger.warning(f"Re-ranking failed, using original order: {e}")
            return _in_order(to_rank, step=0.5)

        scores = {s.index: s.score for s in args.scores}
        ranked = [
            RankedPassage(index=i, score=scores.get(i, DEFAULT_SCORE), text=p.text, kind=p.kind, payload=p.payload)
            for i, p in enumerate(to_rank)
        ]
        ranked.sort(key=lambda r: r.score, reverse=True)
        logger.info(f"Re-ranked {len(ranked)} passages. Top score: {ranked[0].score}, bottom: {ranked[-1].score}")
        return ranked


def tfidf_rerank(question: str, passages: Sequence[PassageInput]) -> List[RankedPassage]:
    """Term-frequency scoring on a 0-10 scale, no model call."""
    if not passages:
        return []

    terms = [t for t in _TERM_STRIP.sub(" ", (question or "").lower()).split() if len(t) > 2]
    if not terms:
        return [RankedPassage(index=i, score=DEFAULT_SCORE, text=p.text, kind=p.kind, payload=p.payload)
                for i, p in enumerate(passages)]

    ranked = []
    for i, passage in enumerate(passages):
        lowered = passage.text.lower()
        score = 0.0
        for term in terms:
            count = lowered.count(term)
            if count:
                score += math.log(1 + count)

        score *= max(0.5, min(1.5, 500 / max(100, len(passage.text))))
        if passage.kind in ("legal_chunk", "tariff_note"):
            score *= 1.2
        elif passage.kind == "hs_code":
            score *= 1.1

        score = min(10.0, round(score * 2 * 10) / 10)
        ranked.append(RankedPassage(index=i, score=score, text=passage.text, kind=passage.kind, payload=passage.payload))

    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked
