"""
Prompt Builder

Deterministic serialization of the behavioural rules and the retrieved
evidence into the system prompt. No business logic beyond "omit empty
sections": every URL in the prompt comes verbatim from the evidence.

Long documents are represented by their top-scored passages (see
passage_scorer), never by raw full text.
"""

import json
import re
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from app.rag.evidence import RAGContext
from app.rag.inheritance import format_tariff_for_prompt, format_tariff_notes_for_prompt
from app.rag.passage_scorer import extract_top_passages, format_passages_for_prompt

if TYPE_CHECKING:
    from app.services.document_analysis import AnalysisResult

MAX_SOURCES = 15
MAX_ARTICLE_FALLBACK = 8
KNOWLEDGE_PREVIEW_CHARS = 500
WATCH_PREVIEW_CHARS = 400

ARTICLE_FALLBACK_PATTERN = re.compile(r"(?:Article|Art\.?)\s*\d+[^\n]{0,500}", re.IGNORECASE)

COUNTRY_ADJECTIVES = {
    "MA": "marocaine",
    "SN": "sénégalaise",
    "CI": "ivoirienne",
    "CM": "camerounaise",
}


@dataclass
class LegalText:
    """Full text of a PDF backing a legal reference."""
    text: str
    title: str
    download_url: Optional[str] = None


BEHAVIOUR_RULES = """## 🌐 LANGUE DE RÉPONSE - RÈGLE ABSOLUE

RÉPONDS TOUJOURS DANS LA LANGUE DE LA QUESTION:
- Question en **arabe** → réponse en **arabe** (العربية)
- Question en **français** → réponse en **français**
- Mélange → langue dominante

## 💬 COMPORTEMENT INTERACTIF

- Si l'information est insuffisante (nature exacte, composition, origine, usage, période d'importation
  pour les produits saisonniers), pose UNE SEULE question de clarification à la fois, de manière naturelle.
- Pas de listes d'options numérotées, pas de questionnaires.

## 📋 FORMAT DES CODES

**XXXX.XX.XX.XX** - Description du produit
- DDI: XX% | TVA: XX%
- Unité: XX

## 🧮 CALCUL DE DROITS ET TAXES - FORMULES EXACTES

1. **Valeur en douane (CIF)** = FOB + Fret + Assurance
2. **DDI** = Valeur CIF × Taux DDI
3. **TPI** (si applicable) = Valeur CIF × Taux TPI
4. **Base TVA** = Valeur CIF + DDI + TPI + autres droits
5. **TVA** = Base TVA × 20%
6. **Total à payer** = DDI + TPI + TVA + autres taxes

**ATTENTION AUX ERREURS COURANTES:**
- 30% = multiplier par 0.30 (pas par 30)
- Convertir les devises au taux du jour de la déclaration
- Vérifier si des droits antidumping s'appliquent

## 🚫 RÈGLES STRICTES POUR LES SOURCES

1. **NE JAMAIS INVENTER D'URL** - utilise uniquement les URLs de la liste des documents disponibles, copiées exactement
2. Si aucun document ne couvre la question, dis-le et recommande www.douane.gov.ma
3. Pas de tableaux markdown, pas de balises HTML
4. Ne cite un article, une circulaire ou un chapitre que s'il figure dans le contexte ci-dessous

## ✅ INDICATEUR DE CONFIANCE OBLIGATOIRE

Termine CHAQUE réponse par une ligne: **Confiance élevée**, **Confiance moyenne** ou **Confiance faible**.

## VALIDATION CROISÉE DES SOURCES

Priorité: tarif officiel > extraction PDF > document de veille. Si les sources se contredisent, signale-le."""


def _json_block(items: Sequence) -> str:
    return json.dumps([asdict(i) for i in items], ensure_ascii=False, indent=2, default=str)


def build_available_sources(context: RAGContext) -> List[str]:
    """Document title / download URL pairs present in the evidence, deduplicated by URL."""
    seen = set()
    sources: List[str] = []

    def add(title: Optional[str], url: Optional[str]) -> None:
        if not url or url in seen:
            return
        seen.add(url)
        sources.append(f'DOCUMENT: "{title or "Document"}"\nURL_TÉLÉCHARGEMENT: {url}')

    for tariff in context.tariffs_with_inheritance:
        add(f"Tarif - Code {tariff.code}", tariff.download_url)
    for pdf in context.pdf_summaries:
        add(pdf.title, pdf.download_url)
    for ref in context.legal_references:
        add(ref.pdf_title or ref.title, ref.download_url)
    for chunk in context.legal_chunks:
        add(chunk.source_title or chunk.source_ref, chunk.download_url or chunk.source_url)
    for proc in context.regulatory_procedures:
        add(proc.pdf_title or proc.procedure_name, proc.download_url)
    for doc in context.knowledge_documents:
        add(doc.title, doc.source_url)
    for doc in context.watch_documents:
        add(doc.title, doc.source_url)
    return sources


# =============================================================================
# Sections
# =============================================================================

def _analysis_section(analyses: Sequence["AnalysisResult"]) -> str:
    if not analyses:
        return ""
    parts = ["### Analyse des documents/images uploadés"]
    for analysis in analyses:
        parts.append(f"**Description du produit identifié:** {analysis.product_description or analysis.summary}")
        parts.append(f"**Codes SH suggérés:** {', '.join(analysis.suggested_codes) or 'Non déterminés'}")
        if analysis.questions:
            parts.append(f"**Questions de clarification suggérées:** {'; '.join(analysis.questions)}")
    return "\n".join(parts)


def _tariffs_section(context: RAGContext) -> str:
    if context.tariffs_with_inheritance:
        body = "\n---\n".join(format_tariff_for_prompt(t) for t in context.tariffs_with_inheritance)
    elif context.tariffs:
        body = _json_block(context.tariffs)
    else:
        body = "Aucun tarif trouvé"
    return f"### Tarifs avec héritage hiérarchique\n{body}"


def _pdf_section(context: RAGContext, codes: Sequence[str], keywords: Sequence[str]) -> str:
    blocks = []
    for idx, pdf in enumerate(context.pdf_summaries, start=1):
        lines = [f"---\n**Document {idx}:** {pdf.title or 'Sans titre'}"]
        if pdf.summary:
            lines.append(f"**Résumé:** {pdf.summary}")
        if pdf.key_points:
            lines.append(f"**Points clés:** {json.dumps(pdf.key_points, ensure_ascii=False)}")
        if pdf.mentioned_hs_codes:
            lines.append(f"**Codes SH couverts par ce document:** {', '.join(pdf.mentioned_hs_codes)}")
        if pdf.download_url:
            lines.append(f"**URL EXACTE À CITER:** {pdf.download_url}")
        if pdf.extracted_text:
            passages = extract_top_passages(pdf.extracted_text, codes, keywords, 5, 2000)
            if passages:
                lines.append(format_passages_for_prompt(passages, pdf.title or "Document"))
            else:
                lines.append("**Note:** Aucun extrait pertinent trouvé pour les codes demandés.")
        blocks.append("\n".join(lines))
    return "### Extractions PDF (Source Officielle du Tarif Douanier)\n" + "\n".join(blocks)


def _legal_references_section(context: RAGContext, legal_texts: Dict[str, LegalText],
                              codes: Sequence[str], keywords: Sequence[str]) -> str:
    blocks = []
    for ref in context.legal_references:
        lines = [f"---\n**{ref.reference_type}** n°{ref.reference_number}"]
        if ref.title:
            lines.append(f"Titre: {ref.title}")
        if ref.reference_date:
            lines.append(f"Date: {ref.reference_date}")
        if ref.context:
            lines.append(f"Contexte: {ref.context}")
        if ref.download_url:
            lines.append(f"**URL:** {ref.download_url}")

        legal_text = legal_texts.get(ref.pdf_id) if ref.pdf_id else None
        if legal_text and legal_text.text:
            passages = extract_top_passages(legal_text.text, codes, keywords, 5, 2500)
            if passages:
                lines.append(format_passages_for_prompt(passages, legal_text.title or "Document légal"))
            else:
                articles = ARTICLE_FALLBACK_PATTERN.findall(legal_text.text)[:MAX_ARTICLE_FALLBACK]
                if articles:
                    lines.append("\n**ARTICLES EXTRAITS:**")
                    lines.extend(f"> {a.strip()}" for a in articles)
        blocks.append("\n".join(lines))
    return "### Références légales avec texte intégral\n" + "\n".join(blocks)


def _legal_chunks_section(context: RAGContext, codes: Sequence[str], keywords: Sequence[str]) -> str:
    blocks = []
    for chunk in context.legal_chunks:
        header = f"---\n**{chunk.source_title or chunk.source_ref or 'Texte juridique'}**"
        if chunk.article_number:
            header += f" - Article {chunk.article_number}"
        if chunk.page_number:
            header += f" (p. {chunk.page_number})"
        lines = [header]
        passages = extract_top_passages(chunk.chunk_text, codes, keywords, 3, 1500)
        if passages:
            lines.extend(f"> {p.text}" for p in passages)
        else:
            lines.append(f"> {chunk.chunk_text[:1500]}")
        url = chunk.download_url or chunk.source_url
        if url:
            lines.append(f"**URL:** {url}")
        blocks.append("\n".join(lines))
    return "### Textes juridiques pertinents\n" + "\n".join(blocks)


def _procedures_section(context: RAGContext) -> str:
    blocks = []
    for proc in context.regulatory_procedures:
        lines = [f"---\n**Procédure:** {proc.procedure_name}"]
        if proc.authority:
            lines.append(f"**Autorité compétente:** {proc.authority}")
        if proc.required_documents:
            lines.append("**Documents requis:**")
            lines.extend(f"- {d}" for d in proc.required_documents)
        if proc.deadlines:
            lines.append(f"**Délais:** {proc.deadlines}")
        if proc.penalties:
            lines.append(f"**Sanctions:** {proc.penalties}")
        blocks.append("\n".join(lines))
    return "### Procédures réglementaires\n" + "\n".join(blocks)


def _knowledge_section(context: RAGContext) -> str:
    lines = [
        f"- **{doc.title}**: {(doc.content or '')[:KNOWLEDGE_PREVIEW_CHARS]}..."
        for doc in context.knowledge_documents
    ]
    return "### Documents de référence\n" + "\n".join(lines)


def _watch_section(context: RAGContext) -> str:
    lines = []
    for doc in context.watch_documents:
        origin = f" ({doc.source_name})" if doc.source_name else ""
        lines.append(f"- **{doc.title}**{origin} [importance: {doc.importance}]: "
                     f"{(doc.content or '')[:WATCH_PREVIEW_CHARS]}")
    return "### Veille réglementaire\n" + "\n".join(lines)


def _evidence_section(context: RAGContext) -> str:
    lines = []
    for row in context.evidence_rows:
        source = f" [{row.source_title or row.source_ref}]" if (row.source_title or row.source_ref) else ""
        page = f" p.{row.page_number}" if row.page_number else ""
        lines.append(f"- **{row.national_code}**{source}{page}: {row.evidence_text[:300]}")
    return "### Preuves tarifaires extraites\n" + "\n".join(lines)


def _sources_section(sources: Sequence[str]) -> str:
    if not sources:
        return "\nAucun document source - recommande www.douane.gov.ma\n"
    listing = "\n\n".join(sources[:MAX_SOURCES])
    return (
        "## LISTE DES DOCUMENTS DISPONIBLES AVEC LEURS URLs EXACTES\n\n"
        "COPIE EXACTEMENT CES URLs QUAND TU CITES UN DOCUMENT:\n\n"
        f"{listing}\n\n"
        "---\nFIN DE LA LISTE DES URLS - UTILISE UNIQUEMENT CES URLs EXACTES"
    )


# =============================================================================
# Entry point
# =============================================================================

def build_system_prompt(
    context: RAGContext,
    detected_codes: Sequence[str] = (),
    keywords: Sequence[str] = (),
    legal_texts: Optional[Dict[str, LegalText]] = None,
    analyses: Sequence["AnalysisResult"] = (),
    available_sources: Optional[List[str]] = None,
) -> str:
    """
    Full system prompt for one question.

    Args:
        context: Retrieved evidence
        detected_codes / keywords: Drive passage scoring
        legal_texts: pdf_id -> full text for legal references
        analyses: Results of the uploaded image/PDF analysis
        available_sources: Pre-built sources list (built from context when None)
    """
    country = COUNTRY_ADJECTIVES.get(context.country_code, "africaine")
    sources = available_sources if available_sources is not None else build_available_sources(context)
    legal_texts = legal_texts or {}

    sections = [
        f"Tu es **DouaneAI**, un assistant expert en douane et commerce international, "
        f"spécialisé dans la réglementation {country}.",
        BEHAVIOUR_RULES,
        _sources_section(sources),
        "## CONTEXTE À UTILISER POUR TA RÉPONSE",
        _analysis_section(analyses),
        _tariffs_section(context),
    ]

    if context.hs_codes:
        sections.append("### Codes SH additionnels\n" + _json_block(context.hs_codes))
    if context.controlled_products:
        sections.append("### Produits contrôlés\n" + _json_block(context.controlled_products))
    if context.knowledge_documents:
        sections.append(_knowledge_section(context))
    if context.pdf_summaries:
        sections.append(_pdf_section(context, detected_codes, keywords))
    if context.legal_references:
        sections.append(_legal_references_section(context, legal_texts, detected_codes, keywords))
    if context.legal_chunks:
        sections.append(_legal_chunks_section(context, detected_codes, keywords))
    if context.regulatory_procedures:
        sections.append(_procedures_section(context))
    if context.tariff_notes:
        sections.append(format_tariff_notes_for_prompt(context.tariff_notes))
    if context.evidence_rows:
        sections.append(_evidence_section(context))
    if context.watch_documents:
        sections.append(_watch_section(context))

    sections.append(
        "---\n## RAPPELS CRITIQUES AVANT DE RÉPONDRE\n"
        "1. **Codes SH à 10 chiffres** quand applicable\n"
        "2. **Une seule question de clarification** à la fois\n"
        "3. **URLs uniquement depuis la liste ci-dessus**\n"
        "4. **Indicateur de confiance** en fin de réponse"
    )
    return "\n\n".join(s for s in sections if s)
