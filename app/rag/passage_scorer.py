"""
Passage Scorer

Heuristic relevance scoring of document passages against the detected HS
codes and keywords. Used to put the most useful paragraphs of long PDF
extracts and legal texts into the prompt instead of raw full text.

Scoring (additive, floored at 0):
    exact code          +10
    4-digit prefix      +5
    2-digit chapter     +2
    keyword hit         +3, plus a log bonus for repeats (max +3)
    regulatory term     +1 each
    length > 800 chars  -1 per extra 200 chars
"""

import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence

from app.rag.evidence import (
    EVIDENCE_KINDS,
    ControlRow,
    Evidence,
    EvidenceRow,
    HsCodeRow,
    KnowledgeDocument,
    LegalChunk,
    LegalReference,
    PdfExtract,
    Procedure,
    TariffNote,
    TariffRow,
    WatchDocument,
)

EXACT_CODE_SCORE = 10
PREFIX_SCORE = 5
CHAPTER_SCORE = 2
KEYWORD_SCORE = 3
MAX_REPEAT_BONUS = 3
LENGTH_CEILING = 800
LENGTH_PENALTY_STEP = 200
MIN_FRAGMENT_LENGTH = 30
MERGE_TARGET_LENGTH = 300
TRUNCATE_MIN_SCORE = 8

REGULATORY_TERMS = (
    "droit", "taux", "taxe", "tva", "importation", "exportation",
    "licence", "certificat", "contrôle", "prohibition", "restriction",
    "note", "position", "sous-position", "chapitre", "section",
)

_PARAGRAPH_SPLIT = re.compile(r"\n{2,}|(?=^\s*[-•●]\s)|(?=^\s*\d+[.)]\s)", re.MULTILINE)
_CODE_SEPARATORS = re.compile(r"[\s.\-]")


@dataclass
class ScoredPassage:
    text: str
    score: int
    matched_codes: List[str] = field(default_factory=list)
    matched_keywords: List[str] = field(default_factory=list)


def split_into_paragraphs(text: str) -> List[str]:
    """
    Split on blank lines and list-item starts, drop fragments of 30 chars or
    less, then merge neighbours while the merged chunk stays under 300 chars.
    """
    if not text:
        return []

    raw = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p]
    raw = [p for p in raw if len(p) > MIN_FRAGMENT_LENGTH]

    merged: List[str] = []
    buffer = ""
    for para in raw:
        if len(buffer) + len(para) < MERGE_TARGET_LENGTH:
            buffer = f"{buffer}\n{para}" if buffer else para
        else:
            if buffer:
                merged.append(buffer)
            buffer = para
    if buffer:
        merged.append(buffer)
    return merged


def score_passage(text: str, target_codes: Sequence[str], keywords: Sequence[str]) -> ScoredPassage:
    lowered = text.lower()
    compact = _CODE_SEPARATORS.sub("", text)

    score = 0
    matched_codes: List[str] = []
    matched_keywords: List[str] = []

    for code in target_codes:
        clean = _CODE_SEPARATORS.sub("", code)
        if not clean:
            continue
        if clean in compact:
            score += EXACT_CODE_SCORE
            matched_codes.append(code)
        elif len(clean) >= 4 and clean[:4] in compact:
            score += PREFIX_SCORE
            matched_codes.append(f"{code} (prefix)")
        elif clean[:2] in compact:
            score += CHAPTER_SCORE

    for keyword in keywords:
        kw = keyword.lower()
        if not kw or kw not in lowered:
            continue
        score += KEYWORD_SCORE
        matched_keywords.append(keyword)
        occurrences = lowered.count(kw)
        if occurrences > 1:
            score += min(int(math.log2(occurrences)), MAX_REPEAT_BONUS)

    score += sum(1 for term in REGULATORY_TERMS if term in lowered)

    if len(text) > LENGTH_CEILING:
        score -= (len(text) - LENGTH_CEILING) // LENGTH_PENALTY_STEP

    return ScoredPassage(
        text=text,
        score=max(0, score),
        matched_codes=matched_codes,
        matched_keywords=matched_keywords,
    )


def extract_top_passages(full_text: str, target_codes: Sequence[str], keywords: Sequence[str],
                         max_passages: int = 5, max_total_chars: int = 2000) -> List[ScoredPassage]:
    """
    Best-scoring passages within a count and character budget.

    A passage that does not fit but scores at least 8 is truncated into the
    remaining budget (if at least 200 chars remain), and selection stops.
    """
    if not full_text:
        return []

    scored = [score_passage(p, target_codes, keywords) for p in split_into_paragraphs(full_text)]
    scored = sorted((p for p in scored if p.score > 0), key=lambda p: p.score, reverse=True)

    selected: List[ScoredPassage] = []
    total = 0
    for passage in scored:
        if len(selected) >= max_passages:
            break
        if total + len(passage.text) > max_total_chars:
            if passage.score >= TRUNCATE_MIN_SCORE and total < max_total_chars - 200:
                remaining = max_total_chars - total - 50
                selected.append(ScoredPassage(
                    text=passage.text[:remaining] + "...",
                    score=passage.score,
                    matched_codes=passage.matched_codes,
                    matched_keywords=passage.matched_keywords,
                ))
                break
            continue
        selected.append(passage)
        total += len(passage.text)

    return selected


def format_passages_for_prompt(passages: List[ScoredPassage], document_title: str) -> str:
    if not passages:
        return ""

    lines = [f'**EXTRAITS PERTINENTS de "{document_title}":**']
    for idx, passage in enumerate(passages, start=1):
        header = f"\n[Extrait {idx}] (score: {passage.score})"
        if passage.matched_codes:
            header += f" [codes: {', '.join(passage.matched_codes[:3])}]"
        lines.append(header)
        lines.append(f"> {passage.text}")
    return "\n".join(lines) + "\n"


# =============================================================================
# Unified scoring across evidence kinds
# =============================================================================

def _hs_text(item: HsCodeRow) -> str:
    return " ".join(filter(None, [item.code, item.description_fr, item.legal_notes]))


def _tariff_text(item: TariffRow) -> str:
    return f"{item.national_code} {item.description_local} droit {item.duty_rate}%"


def _control_text(item: ControlRow) -> str:
    return " ".join(filter(None, [item.hs_code, item.control_type, item.control_authority, item.notes]))


def _pdf_text(item: PdfExtract) -> str:
    return "\n".join(filter(None, [item.title, item.summary, *item.key_points, item.extracted_text]))


def _reference_text(item: LegalReference) -> str:
    return " ".join(filter(None, [item.reference_type, item.reference_number, item.title, item.context]))


def _procedure_text(item: Procedure) -> str:
    return " ".join(filter(None, [item.procedure_name, item.authority, *item.required_documents]))


PASSAGE_TEXT: Dict[str, Callable[[Evidence], str]] = {
    HsCodeRow.kind: _hs_text,
    TariffRow.kind: _tariff_text,
    ControlRow.kind: _control_text,
    LegalChunk.kind: lambda item: item.chunk_text,
    TariffNote.kind: lambda item: item.note_text,
    KnowledgeDocument.kind: lambda item: f"{item.title}\n{item.content}",
    PdfExtract.kind: _pdf_text,
    WatchDocument.kind: lambda item: f"{item.title}\n{item.content or ''}",
    LegalReference.kind: _reference_text,
    Procedure.kind: _procedure_text,
    EvidenceRow.kind: lambda item: item.evidence_text,
}

_UNCOVERED_KINDS = set(EVIDENCE_KINDS) - set(PASSAGE_TEXT)
if _UNCOVERED_KINDS:
    raise RuntimeError(f"No passage text extractor for evidence kinds: {sorted(_UNCOVERED_KINDS)}")


def passage_text(item: Evidence) -> str:
    """Text of any evidence record. Unknown kinds raise ValueError."""
    extractor = PASSAGE_TEXT.get(getattr(item, "kind", None))
    if extractor is None:
        raise ValueError(f"Unknown evidence kind: {getattr(item, 'kind', type(item).__name__)}")
    return extractor(item) or ""


@dataclass
class UnifiedScoredResult:
    """One evidence record with its heuristic score, ready for re-ranking."""
    item: Evidence
    text: str
    score: int

    @property
    def kind(self) -> str:
        return self.item.kind


def score_documents(items: Sequence[Evidence], target_codes: Sequence[str],
                    keywords: Sequence[str]) -> List[UnifiedScoredResult]:
    """Score heterogeneous evidence with the passage heuristic, best first."""
    results = []
    for item in items:
        text = passage_text(item)
        results.append(UnifiedScoredResult(item=item, text=text,
                                           score=score_passage(text, target_codes, keywords).score))
    return sorted(results, key=lambda r: r.score, reverse=True)
