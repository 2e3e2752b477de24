"""
Hierarchical Tariff Inheritance

Resolves the effective tariff for a code at any level of the nomenclature.

Resolution order (each stage decides whether the next one runs):
1. Direct match: a national line equal to the code (or sharing its 6-digit
   subheading). Rate and flags are copied as-is, controls are fetched, and
   resolution stops there.
2. Descendants: for a coarse code (e.g. "8471"), every national line below
   it. One distinct rate -> "inherited"; several -> "range" with min/max.
3. Ancestors: legal notes attached to the chapter/heading/subheading above
   the code, prepended root-first.
4. Controls: exact code or 4-digit heading; rows from another code are
   flagged as inherited.

Storage errors never propagate: the partial record built so far is returned.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.config import DEFAULT_COUNTRY, DEFAULT_VAT_RATE
from app.rag.evidence import TariffNote
from app.services.hs_codes import ancestors, chapter, format_code, level, normalize
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

RATE_DIRECT = "direct"
RATE_INHERITED = "inherited"
RATE_RANGE = "range"
RATE_NOT_FOUND = "not_found"


@dataclass
class TariffControl:
    type: str
    authority: str
    inherited: bool = False


@dataclass
class EffectiveTariff:
    """Best-known applicable tariff for a queried code."""
    code: str
    code_clean: str
    chapter: int
    level: str
    found: bool = False
    description: str = ""
    duty_rate: Optional[float] = None
    duty_rate_min: Optional[float] = None
    duty_rate_max: Optional[float] = None
    vat_rate: float = DEFAULT_VAT_RATE
    rate_source: str = RATE_NOT_FOUND
    children_count: int = 0
    is_prohibited: bool = False
    is_restricted: bool = False
    has_children_prohibited: bool = False
    has_children_restricted: bool = False
    legal_notes: List[str] = field(default_factory=list)
    controls: List[TariffControl] = field(default_factory=list)
    country_code: str = DEFAULT_COUNTRY
    download_url: Optional[str] = None

    @classmethod
    def empty(cls, code: str, country: str = DEFAULT_COUNTRY) -> "EffectiveTariff":
        clean = normalize(code)
        return cls(
            code=format_code(clean),
            code_clean=clean,
            chapter=chapter(clean),
            level=level(clean),
            country_code=country,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InheritanceResolver:
    """
    Resolves EffectiveTariff records against a CustomsStore.

    Usage:
        resolver = InheritanceResolver(store)
        tariff = resolver.resolve("8471.30", country="MA")
    """

    def __init__(self, store: CustomsStore):
        self.store = store

    def resolve(self, code: str, country: str = DEFAULT_COUNTRY) -> EffectiveTariff:
        result = EffectiveTariff.empty(code, country)
        clean = result.code_clean
        if not clean:
            return result

        try:
            # 1. Nomenclature entry for the code itself
            hs_row = self.store.get_hs_code(clean)
            if hs_row is not None:
                result.description = hs_row.description_fr or ""
                if hs_row.legal_notes:
                    result.legal_notes.append(hs_row.legal_notes)

            # 2. Direct tariff line: short-circuit
            direct = self.store.find_direct_tariff(country, clean)
            if direct is not None:
                result.found = True
                result.duty_rate = direct.duty_rate
                result.duty_rate_min = direct.duty_rate
                result.duty_rate_max = direct.duty_rate
                result.vat_rate = direct.vat_rate if direct.vat_rate is not None else DEFAULT_VAT_RATE
                result.is_prohibited = direct.is_prohibited
                result.is_restricted = direct.is_restricted
                result.rate_source = RATE_DIRECT
                result.download_url = direct.download_url
                if direct.description_local:
                    result.description = direct.description_local
                result.controls = self._controls(country, clean)
                return result

            # 3. Descendant lines
            children = self.store.find_child_tariffs(country, clean)
            if children:
                self._apply_children(result, children)

            # 4. Ancestor notes, root first, ahead of the code's own notes
            parent_codes = ancestors(clean)
            if parent_codes:
                parent_rows = self.store.get_hs_codes_with_notes(parent_codes)
                by_code = {row.code_clean: row for row in parent_rows}
                inherited_notes = [
                    f"[{format_code(p)}] {by_code[p].legal_notes}"
                    for p in parent_codes if p in by_code and by_code[p].legal_notes
                ]
                result.legal_notes = inherited_notes + result.legal_notes

            # 5. Controls
            result.controls = self._controls(country, clean)

        except Exception as e:
            logger.error(f"Inheritance resolution failed for {clean} ({country}): {e}")

        return result

    def resolve_many(self, codes: Sequence[str], country: str = DEFAULT_COUNTRY,
                     limit: int = 5) -> List[EffectiveTariff]:
        """Resolve distinct codes in order, at most `limit` of them."""
        seen = set()
        results = []
        for code in codes:
            clean = normalize(code)
            if not clean or clean in seen:
                continue
            seen.add(clean)
            results.append(self.resolve(clean, country))
            if len(results) >= limit:
                break
        return results

    def _apply_children(self, result: EffectiveTariff, children) -> None:
        # lines exist even when none carries a rate; rate_source stays not_found then
        result.found = bool(children)
        result.children_count = len(children)
        rates = [c.duty_rate for c in children if c.duty_rate is not None]
        if rates:
            low, high = min(rates), max(rates)
            result.duty_rate_min = low
            result.duty_rate_max = high
            if low == high:
                result.duty_rate = low
                result.rate_source = RATE_INHERITED
            else:
                result.duty_rate = None
                result.rate_source = RATE_RANGE

        vat_rates = [c.vat_rate for c in children if c.vat_rate is not None]
        if vat_rates:
            result.vat_rate = vat_rates[0]

        result.has_children_prohibited = any(c.is_prohibited for c in children)
        result.has_children_restricted = any(c.is_restricted for c in children)

        if not result.description:
            result.description = children[0].description_local or ""

    def _controls(self, country: str, clean: str) -> List[TariffControl]:
        return [
            TariffControl(
                type=row.control_type,
                authority=row.control_authority or "N/A",
                inherited=normalize(row.hs_code) != clean,
            )
            for row in self.store.find_controls(country, clean)
        ]


# ============================================================================
# Prompt formatting
# ============================================================================

def format_tariff_for_prompt(tariff: EffectiveTariff) -> str:
    """Markdown block describing one resolved tariff."""
    lines = [
        f"## Code {tariff.code}",
        f"**Description:** {tariff.description or 'Non disponible'}",
        f"**Niveau:** {tariff.level} | **Chapitre:** {tariff.chapter}",
        "",
    ]

    if tariff.rate_source == RATE_RANGE and tariff.duty_rate_min is not None:
        lines.append(f"**DDI:** {tariff.duty_rate_min}% à {tariff.duty_rate_max}% (selon sous-position)")
        lines.append(
            f"Ce code a {tariff.children_count} sous-positions avec des taux différents. "
            f"Précisez le code complet."
        )
    elif tariff.duty_rate is not None:
        suffix = ""
        if tariff.rate_source == RATE_INHERITED:
            suffix = f" (hérité de {tariff.children_count} sous-position(s))"
        lines.append(f"**DDI:** {tariff.duty_rate}%{suffix}")
    else:
        lines.append("**DDI:** Non trouvé")
    lines.append(f"**TVA:** {tariff.vat_rate}%")
    lines.append("")

    if tariff.is_prohibited:
        lines.append("**INTERDIT à l'importation**")
    if tariff.is_restricted:
        lines.append("**RESTREINT** - licence potentiellement requise")
    if tariff.has_children_prohibited:
        lines.append("Certaines sous-positions sont INTERDITES")
    if tariff.has_children_restricted:
        lines.append("Certaines sous-positions sont RESTREINTES")

    if tariff.controls:
        lines.append("")
        lines.append("**Contrôles requis:**")
        for control in tariff.controls:
            marker = " [hérité du parent]" if control.inherited else ""
            lines.append(f"- {control.type} par {control.authority}{marker}")

    if tariff.legal_notes:
        lines.append("")
        lines.append("**Notes légales:**")
        lines.extend(f"> {note}" for note in tariff.legal_notes)

    return "\n".join(lines) + "\n"


NOTE_TYPE_LABELS = {
    "definition": "📖 Définition",
    "chapter_note": "📋 Note",
    "exclusion": "⛔ Exclusion",
    "subheading_note": "📌 Note de sous-position",
}


def format_tariff_notes_for_prompt(notes: Optional[List[TariffNote]]) -> str:
    """Chapter notes grouped by chapter; empty string when there are none."""
    if not notes:
        return ""

    grouped: Dict[str, List[TariffNote]] = defaultdict(list)
    for note in notes:
        grouped[str(note.chapter_number) if note.chapter_number else "Général"].append(note)

    parts = ["## Notes et Définitions Tarifaires\n"]
    for chapter_key, chapter_notes in grouped.items():
        parts.append(f"### Chapitre {chapter_key}")
        for note in chapter_notes:
            label = NOTE_TYPE_LABELS.get(note.note_type, "ℹ️ Information")
            anchor = f" ({note.anchor})" if note.anchor else ""
            parts.append(f"**{label}**{anchor}:\n{note.note_text}\n")
    return "\n".join(parts)
