"""
Query Expander

Enriches a question before it is embedded:

- QueryExpander.expand: asks a small model for synonyms, an Arabic/French
  translation of the product terms and probable HS chapters. Any failure
  returns the original question unchanged.
- expand_with_synonyms: model-free lookup in a static synonym table that
  maps common product words to search terms and HS codes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from app.chat.output_schemas import QueryExpansion, tool_definition
from app.config import RERANK_MODEL
from app.rag.llm import GenerationService

logger = logging.getLogger(__name__)

MAX_EXPANDED_CHARS = 1000
MAX_SYNONYM_KEYWORDS = 5

EXPANSION_SYSTEM_PROMPT = """Tu es un expert en classification douanière. Enrichis la requête utilisateur avec:
- Synonymes du produit (ex: smartphone → téléphone portable, mobile)
- Traduction arabe si la requête est en français, ou française si en arabe
- Indication du chapitre SH probable (ex: tomates → chapitre 07)

Ne reformule pas la question; donne seulement les termes supplémentaires."""

EXPAND_QUERY_TOOL = tool_definition(
    "expand_query",
    "Additional search terms for a customs question",
    QueryExpansion,
)

# word -> (search terms, HS codes)
SYNONYMS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "smartphone": (("téléphone portable", "téléphone mobile", "هاتف محمول"), ("851713",)),
    "téléphone": (("smartphone", "appareil téléphonique", "هاتف"), ("851713", "851714")),
    "ordinateur": (("machine automatique de traitement de l'information", "laptop", "حاسوب"), ("847130", "847141")),
    "portable": (("ordinateur portable", "laptop", "téléphone portable"), ("847130", "851713")),
    "voiture": (("véhicule automobile", "automobile", "سيارة"), ("8703",)),
    "pneu": (("pneumatique", "pneumatiques neufs", "إطار"), ("4011",)),
    "tomate": (("tomates fraîches", "طماطم"), ("0702",)),
    "café": (("café torréfié", "café vert", "قهوة"), ("0901",)),
    "thé": (("thé vert", "thé noir", "شاي"), ("0902",)),
    "huile": (("huile d'olive", "huiles végétales", "زيت"), ("1509", "1512")),
    "médicament": (("médicaments", "produits pharmaceutiques", "دواء"), ("3004",)),
    "vêtement": (("vêtements", "habillement", "ملابس"), ("6109", "6203", "6204")),
    "chaussure": (("chaussures", "articles chaussants", "أحذية"), ("6403", "6404")),
    "vis": (("boulons", "visserie", "براغي"), ("7318",)),
    "panneau": (("panneaux solaires", "cellules photovoltaïques", "ألواح شمسية"), ("854143",)),
    "climatiseur": (("machines de conditionnement d'air", "مكيف"), ("8415",)),
    "jouet": (("jouets", "jeux", "لعب"), ("9503",)),
    "sucre": (("sucre de canne", "sucre de betterave", "سكر"), ("1701",)),
}


@dataclass
class ExpandedQuery:
    original: str
    expanded_terms: List[str] = field(default_factory=list)
    arabic_terms: List[str] = field(default_factory=list)
    hs_hints: List[str] = field(default_factory=list)

    def search_text(self) -> str:
        """Original question followed by the enrichments, capped for embedding."""
        extra = " ".join(self.expanded_terms + self.arabic_terms)
        hints = " ".join(f"chapitre {h}" for h in self.hs_hints)
        text = " ".join(part for part in (self.original, extra, hints) if part)
        return text[:MAX_EXPANDED_CHARS]


@dataclass
class SynonymExpansion:
    codes: List[str] = field(default_factory=list)
    terms: List[str] = field(default_factory=list)


class QueryExpander:

    def __init__(self, generation: Optional[GenerationService] = None):
        self.generation = generation or GenerationService(model=RERANK_MODEL, service="rerank")

    def expand(self, question: str) -> ExpandedQuery:
        if not question or not question.strip():
            return ExpandedQuery(original=question or "")

        try:
            result = self.generation.complete(
                EXPANSION_SYSTEM_PROMPT,
                question,
                tool=EXPAND_QUERY_TOOL,
                max_tokens=150,
                temperature=0.1,
            )
            expansion = QueryExpansion.model_validate(result.tool_arguments or {})
        except ValidationError as e:
            logger.warning(f"Malformed query expansion, using original: {e}")
            return ExpandedQuery(original=question)
        except Exception as e:
            logger.warning(f"Query expansion failed, using original: {e}")
            return ExpandedQuery(original=question)

        expanded = ExpandedQuery(
            original=question,
            expanded_terms=[t for t in expansion.expanded_terms if t],
            arabic_terms=[t for t in expansion.arabic_terms if t],
            hs_hints=[h for h in expansion.hs_hints if h],
        )
        logger.info(f"Expanded query '{question[:80]}' -> '{expanded.search_text()[:120]}'")
        return expanded


def expand_with_synonyms(keywords: Sequence[str]) -> SynonymExpansion:
    """HS codes and extra terms for the first few keywords found in SYNONYMS."""
    result = SynonymExpansion()
    for keyword in list(keywords)[:MAX_SYNONYM_KEYWORDS]:
        word = keyword.lower()
        entry = SYNONYMS.get(word) or SYNONYMS.get(word.rstrip("s"))
        if entry is None:
            continue
        terms, codes = entry
        result.terms.extend(t for t in terms if t not in result.terms)
        result.codes.extend(c for c in codes if c not in result.codes)
    return result
