"""
Question Analysis

Extracts what retrieval needs from a free-text customs question:
candidate HS codes, intents, keywords and the target country. Also pulls
carried-over context (products, codes) out of the conversation history so a
short follow-up like "et pour un smartphone ?" inherits earlier turns.

All detection is driven by the rule tables below (pattern -> label) so the
French and Arabic rule sets can be read and tested on their own.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from app.config import DEFAULT_COUNTRY
from app.services.hs_codes import normalize

HS_CODE_PATTERN = re.compile(r"\b(\d{2}[.\s]?\d{2}[.\s]?\d{0,2}[.\s]?\d{0,2})\b")
MIN_CODE_DIGITS = 4

INTENT_INFO = "info"

# Priority order: the first matching rule is the primary intent.
INTENT_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("classify", re.compile(
        r"class|code|position|nomenclature|\bsh\s|"
        r"تصنيف|رمز|البند|بند تعريفي",
        re.IGNORECASE)),
    ("calculate", re.compile(
        r"droit|ddi|tva|tax|payer|combien|calcul|coût|cout|prix|"
        r"رسوم|ضريبة|الضريبة|حساب|كم|سعر|تكلفة",
        re.IGNORECASE)),
    ("origin", re.compile(
        r"origine|eur\.?1|préférentiel|preferentiel|accord|certificat|"
        r"منشأ|المنشأ|شهادة|اتفاقية|تفضيلي",
        re.IGNORECASE)),
    ("control", re.compile(
        r"contrôl|control|interdit|autoris|mcinet|onssa|anrt|permis|licence|"
        r"مراقبة|ممنوع|ترخيص|رخصة|إذن",
        re.IGNORECASE)),
    ("procedure", re.compile(
        r"document|formalité|formalite|procédure|procedure|étape|etape|"
        r"إجراء|إجراءات|وثائق|مراحل",
        re.IGNORECASE)),
    ("legal", re.compile(
        r"\barticle|\bart\.|\bloi\b|décret|decret|circulaire|arrêté|arrete|code des douanes|juridique|"
        r"المادة|الفصل|قانون|مرسوم|دورية",
        re.IGNORECASE)),
)

COUNTRY_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("SN", re.compile(r"sénégal|senegal|السنغال", re.IGNORECASE)),
    ("CI", re.compile(r"côte d['’]ivoire|cote d['’]ivoire|ivoirien|ساحل العاج", re.IGNORECASE)),
    ("CM", re.compile(r"cameroun|cameroon|الكاميرون", re.IGNORECASE)),
)

STOP_WORDS = frozenset([
    # French
    "le", "la", "les", "un", "une", "des", "pour", "sur", "est", "que",
    "quel", "quels", "quelle", "quelles", "comment", "combien", "dans",
    "avec", "sans", "par", "vers", "chez", "être", "avoir", "faire",
    "douane", "douanes", "maroc", "marocain", "produit", "marchandise",
    "droit", "droits", "tarif", "taux",
    # Arabic
    "من", "في", "على", "إلى", "هذا", "هذه", "ماهو", "ماهي", "التي", "الذي",
    "الجمارك", "الجمركية", "الرسوم", "التعريفة", "المغرب", "منتج", "بضاعة",
])

_KEYWORD_STRIP = re.compile(r"[^\w\sàâäéèêëïîôùûüç\u0600-\u06FF]")
MIN_KEYWORD_LENGTH = 4

# Product nouns carried over from earlier turns
PRODUCT_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("hardware", re.compile(r"\b(serrures?|cadenas|verrous?|clés?|fermoirs?|portes?|fenêtres?|meubles?)\b", re.IGNORECASE)),
    ("electronics", re.compile(r"\b(téléphones?|smartphones?|ordinateurs?|appareils?|électriques?|électroniques?)\b", re.IGNORECASE)),
    ("machinery", re.compile(r"\b(voitures?|véhicules?|machines?|équipements?|mécaniques?)\b", re.IGNORECASE)),
    ("metals", re.compile(r"\b(métaux communs|acier|fer|cuivre|aluminium)\b", re.IGNORECASE)),
    ("food", re.compile(r"\b(viandes?|poissons?|lait|fromages?|fruits?|légumes?|café|thé|sucre|huiles?|blé|riz|dattes?|olives?)\b", re.IGNORECASE)),
    ("textiles", re.compile(r"\b(tissus?|coton|laine|soie|vêtements?|chaussures?|textiles?)\b", re.IGNORECASE)),
    ("chemicals", re.compile(r"\b(chimiques?|engrais|médicaments?|cosmétiques?|plastiques?|peintures?|pesticides?)\b", re.IGNORECASE)),
    ("generic", re.compile(r"\b(produits?)\b", re.IGNORECASE)),
)

HISTORY_MAX_TURNS = 6


@dataclass
class QuestionAnalysis:
    detected_codes: List[str] = field(default_factory=list)
    intent: str = INTENT_INFO
    intents: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    country: str = DEFAULT_COUNTRY

    def to_dict(self) -> Dict:
        return {
            "detected_codes": self.detected_codes,
            "intent": self.intent,
            "intents": self.intents,
            "keywords": self.keywords,
            "country": self.country,
        }


@dataclass
class HistoryContext:
    context_prefix: str = ""
    codes: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


def _dedupe(values: Sequence[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def detect_codes(text: str) -> List[str]:
    """Normalized candidate codes with at least 4 digits, in order of appearance."""
    codes = []
    for match in HS_CODE_PATTERN.findall(text or ""):
        clean = normalize(match)
        if len(clean) >= MIN_CODE_DIGITS and clean.isdigit():
            codes.append(clean)
    return _dedupe(codes)


def detect_intents(text: str) -> List[str]:
    """Every matching intent in priority order; ['info'] when none match."""
    matched = [name for name, pattern in INTENT_RULES if pattern.search(text or "")]
    return matched or [INTENT_INFO]


def detect_country(text: str) -> str:
    for country, pattern in COUNTRY_RULES:
        if pattern.search(text or ""):
            return country
    return DEFAULT_COUNTRY


def extract_keywords(text: str) -> List[str]:
    cleaned = _KEYWORD_STRIP.sub(" ", (text or "").lower())
    words = [
        w for w in cleaned.split()
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS and not w.isdigit()
    ]
    return _dedupe(words)


def analyze_question(question: Optional[str]) -> QuestionAnalysis:
    """
    Analyze a question. Never raises; empty input gives the defaults.
    """
    text = (question or "").strip()
    if not text:
        return QuestionAnalysis(intents=[INTENT_INFO])

    intents = detect_intents(text)
    return QuestionAnalysis(
        detected_codes=detect_codes(text),
        intent=intents[0],
        intents=intents,
        keywords=extract_keywords(text),
        country=detect_country(text),
    )


def extract_history_context(history: Optional[List[Dict]], max_turns: int = HISTORY_MAX_TURNS) -> HistoryContext:
    """
    Products and codes mentioned by the user in recent turns.

    Args:
        history: [{"role": "user"|"assistant", "content": str}, ...] oldest first
        max_turns: How many trailing turns to scan

    Returns:
        HistoryContext with a "[CONTEXTE DE CONVERSATION: ...] " prefix,
        or an empty one when nothing was found
    """
    if not history:
        return HistoryContext()

    products: List[str] = []
    codes: List[str] = []
    for turn in history[-max_turns:]:
        if not isinstance(turn, dict) or turn.get("role") != "user":
            continue
        content = str(turn.get("content") or "")
        for _, pattern in PRODUCT_RULES:
            products.extend(m.lower() for m in pattern.findall(content))
        codes.extend(detect_codes(content))

    products = _dedupe(products)
    codes = _dedupe(codes)
    if not products and not codes:
        return HistoryContext()

    parts = products + [f"code {c}" for c in codes]
    return HistoryContext(
        context_prefix=f"[CONTEXTE DE CONVERSATION: {', '.join(parts)}] ",
        codes=codes,
        keywords=products,
    )
