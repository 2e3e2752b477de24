"""
DUM Analyzer

Reads a Moroccan DUM (déclaration unique de marchandises) and recomputes
what it should cost:

1. Extraction: the vision model reads an image of the declaration; a PDF
   is read with pdfplumber and its text handed to the PDF model. Output is
   expected as JSON (DumExtraction), repaired by parse_model_json.
2. Normalization: amounts written as "12 500,00" become numbers, HS codes
   become 10-digit national codes (None when fewer than 4 digits survive).
3. Taxes per goods line: freight and insurance are shared out by line
   value, the customs value comes from compute_caf, amounts are converted
   to MAD and duties computed with calculate_duties. The DDI rate printed
   on the declaration wins ("extracted"), then the resolved tariff
   ("database"), otherwise the line is listed in missing_rates.
4. Verification: missing DUM number or goods and prohibited goods are
   errors; restricted goods, codes absent from the nomenclature and
   extraction warnings are warnings. Controls of every line are collected
   once per (type, authority).

Declarations are not persisted.

Usage:
    analyzer = DumAnalyzer(get_store(db.session))
    analysis = analyzer.analyze(pdf_base64, "application/pdf", country="MA")
    print(format_dum_analysis(analysis))
"""

import logging
import re
import time
from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from app.chat.logging_utils import generate_run_id, log_pipeline_event
from app.chat.output_schemas import DumExtraction, DumItem, DumSourceRef
from app.config import DEFAULT_COUNTRY, VISION_MODEL
from app.rag.errors import AnalysisError
from app.rag.inheritance import RATE_DIRECT, EffectiveTariff, InheritanceResolver
from app.rag.json_utils import parse_model_json
from app.rag.llm import GenerationService
from app.services.document_analysis import SUPPORTED_IMAGE_TYPES, DocumentAnalyzer, decode_base64
from app.services.duty_calculator import calculate_duties, compute_caf, convert_to_mad, select_duty_rate
from app.services.hs_codes import format_code, normalize_strict_6, normalize_strict_10, parse_detected_code
from app.storage.base import CustomsStore

logger = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"
MAX_DUM_PROMPT_CHARS = 60000
MIN_DUM_INDICATORS = 4

RATE_EXTRACTED = "extracted"
RATE_DATABASE = "database"
RATE_MISSING = "missing"

DUM_INDICATORS = [
    re.compile(r"D\.?U\.?M", re.IGNORECASE),
    re.compile(r"DECLARATION\s+(UNIQUE|A\s+ENREGISTREMENT)", re.IGNORECASE),
    re.compile(r"ADMINISTRATION\s+DES\s+DOUANES", re.IGNORECASE),
    re.compile(r"Importateur\s*/\s*Destinataire", re.IGNORECASE),
    re.compile(r"Exportateur\s*/\s*Exp[ée]diteur", re.IGNORECASE),
    re.compile(r"DOS\s*N", re.IGNORECASE),
    re.compile(r"LIQUIDATION\s+DES\s+DROITS", re.IGNORECASE),
    re.compile(r"Poids\s+brut\s+total", re.IGNORECASE),
    re.compile(r"Code\s+marchandises", re.IGNORECASE),
    re.compile(r"bureau\s+\d{3}", re.IGNORECASE),
]

DUM_EXTRACTION_PROMPT = """Tu es un expert en extraction de données douanières. Analyse cette Déclaration Unique de Marchandises (DUM) marocaine.

Champs à extraire:
- En-tête: dum_number (ex: 123456/2024), regime_code (ex: 10, 40), bureau_code (ex: 300), bureau_name (ex: Casa Port), dum_date (YYYY-MM-DD)
- Parties: importer {name, id (ICE ou RC), country}, exporter {name, id, country}
- Commercial: incoterm (EXW, FOB, CIF...), currency_code (MAD, EUR, USD...), invoice_value, freight_value, insurance_value
- Lignes marchandises (items): line_no, description, quantity, unit (KG, U, M2...), unit_price, value, origin_country, hs_code, duty_rate (taux DDI si visible)

Réponds UNIQUEMENT avec un objet JSON:
{
  "dum_number": "...",
  "regime_code": "...",
  "bureau_code": "...",
  "bureau_name": "...",
  "dum_date": "YYYY-MM-DD",
  "importer": {"name": "...", "id": "...", "country": "MA", "source": {"page": 1, "field_anchor": "Case 8", "confidence": "high"}},
  "exporter": {"name": "...", "id": null, "country": "CN", "source": {"page": 1, "field_anchor": "Case 2", "confidence": "high"}},
  "incoterm": "CIF",
  "currency_code": "EUR",
  "invoice_value": {"value": 12500.00, "currency": "EUR", "source": {"page": 1, "field_anchor": "Case 22", "confidence": "high"}},
  "freight_value": {"value": 850.00, "currency": "EUR", "source": {"page": 1, "field_anchor": "Case 23", "confidence": "medium"}},
  "insurance_value": {"value": 125.00, "currency": "EUR", "source": {"page": 1, "field_anchor": "Case 23", "confidence": "medium"}},
  "items": [
    {"line_no": 1, "description": "Machines à laver le linge", "quantity": 100, "unit": "U", "unit_price": 125.00,
     "value": 12500.00, "origin_country": "CN", "hs_code": "8450110000", "duty_rate": 2.5,
     "source": {"page": 2, "field_anchor": "Article 1", "confidence": "high"}}
  ],
  "page_count": 3,
  "extraction_warnings": ["Taux DDI non visible pour l'article 2"]
}

Règles:
1. Les valeurs numériques sont des nombres, pas des chaînes
2. Codes SH sur 10 chiffres si possible
3. Indique la source (page, case, confiance) de chaque donnée
4. Donnée illisible ou absente: null
5. Pays en code ISO 2 lettres, dates en YYYY-MM-DD"""


def detect_dum_document(text: str) -> bool:
    """True when the text carries at least MIN_DUM_INDICATORS DUM markers."""
    if not text:
        return False
    return sum(1 for pattern in DUM_INDICATORS if pattern.search(text)) >= MIN_DUM_INDICATORS


# ============================================================================
# Normalization
# ============================================================================

def _number(value: Any) -> Optional[float]:
    """Number from model output: 12500, "12500.00", "12 500,00", "1.250,50 EUR"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = re.sub(r"[^\d,.\-]", "", str(value))
    if "," in text and "." in text:
        # the last separator is the decimal one
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def _dum_code(raw: Any) -> Optional[str]:
    if raw is None or not parse_detected_code(str(raw)):
        return None
    return normalize_strict_10(str(raw))


def _source(raw: Any) -> Dict[str, Any]:
    return raw if isinstance(raw, dict) else {}


def _amount(raw: Any, currency: Optional[str]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {"value": raw}
    return {
        "value": _number(raw.get("value")),
        "currency": raw.get("currency") or currency,
        "source": _source(raw.get("source")),
    }


def prepare_extraction(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce model JSON into the shape DumExtraction validates."""
    warnings = [str(w) for w in raw.get("extraction_warnings") or [] if w]
    currency = raw.get("currency_code") or None

    items = []
    for position, item in enumerate(raw.get("items") or [], start=1):
        if not isinstance(item, dict):
            continue
        line_no = int(_number(item.get("line_no")) or position)
        hs_code = _dum_code(item.get("hs_code"))
        if item.get("hs_code") and hs_code is None:
            warnings.append(f"Ligne {line_no}: code SH illisible ({item['hs_code']})")
        items.append({
            "line_no": line_no,
            "description": item.get("description") or None,
            "quantity": _number(item.get("quantity")),
            "unit": item.get("unit") or None,
            "unit_price": _number(item.get("unit_price")),
            "value": _number(item.get("value")),
            "origin_country": item.get("origin_country") or None,
            "hs_code": hs_code,
            "duty_rate": _number(item.get("duty_rate")),
            "source": _source(item.get("source")),
        })

    importer = raw.get("importer") if isinstance(raw.get("importer"), dict) else {}
    exporter = raw.get("exporter") if isinstance(raw.get("exporter"), dict) else {}
    return {
        "dum_number": raw.get("dum_number") or None,
        "regime_code": raw.get("regime_code") or None,
        "bureau_code": raw.get("bureau_code") or None,
        "bureau_name": raw.get("bureau_name") or None,
        "dum_date": raw.get("dum_date") or None,
        "importer": {**importer, "country": importer.get("country") or DEFAULT_COUNTRY,
                     "source": _source(importer.get("source"))},
        "exporter": {**exporter, "source": _source(exporter.get("source"))},
        "incoterm": (raw.get("incoterm") or "").upper() or None,
        "currency_code": currency,
        "invoice_value": _amount(raw.get("invoice_value"), currency),
        "freight_value": _amount(raw.get("freight_value"), currency),
        "insurance_value": _amount(raw.get("insurance_value"), currency),
        "items": items,
        "page_count": int(_number(raw.get("page_count")) or 1),
        "extraction_warnings": warnings,
    }


# ============================================================================
# Results
# ============================================================================

@dataclass
class ItemTaxes:
    line_no: int
    hs_code: Optional[str]
    description: Optional[str]
    cif_value: float
    duty_rate: Optional[float]
    duty_rate_source: str
    duty_amount: float
    vat_rate: float
    vat_amount: float
    total_taxes: float
    grand_total: float
    warnings: List[str] = field(default_factory=list)


@dataclass
class DumTotals:
    total_cif: float = 0.0
    total_duty: float = 0.0
    total_vat: float = 0.0
    grand_total: float = 0.0
    currency: str = "MAD"
    missing_rates: List[str] = field(default_factory=list)
    is_complete: bool = True


@dataclass
class DumVerification:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    controls_required: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class DumAnalysis:
    extraction: DumExtraction
    items: List[ItemTaxes]
    totals: DumTotals
    verification: DumVerification
    sources: List[Dict[str, Any]]
    country_code: str = DEFAULT_COUNTRY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country_code": self.country_code,
            "extracted_json": self.extraction.model_dump(),
            "items": [asdict(i) for i in self.items],
            "computed_totals": asdict(self.totals),
            "verification": asdict(self.verification),
            "sources": self.sources,
            "summary": format_dum_analysis(self),
        }


def build_sources(extraction: DumExtraction) -> List[Dict[str, Any]]:
    """Where each extracted value was read (fields without a page or anchor are left out)."""
    refs: List[Tuple[str, DumSourceRef]] = [
        ("importer", extraction.importer.source),
        ("exporter", extraction.exporter.source),
        ("invoice_value", extraction.invoice_value.source),
        ("freight_value", extraction.freight_value.source),
        ("insurance_value", extraction.insurance_value.source),
    ]
    refs.extend((f"item_{item.line_no}", item.source) for item in extraction.items)
    return [
        {"field": name, "page": ref.page, "anchor": ref.field_anchor, "confidence": ref.confidence}
        for name, ref in refs
        if ref.page or ref.field_anchor
    ]


# ============================================================================
# Analyzer
# ============================================================================

class DumAnalyzer:
    """
    Args:
        store: Customs store used for tariffs, nomenclature and controls
        vision: Generation service for images of the declaration
        pdf: Generation service for the PDF text
    """

    def __init__(self, store: CustomsStore, vision: Optional[GenerationService] = None,
                 pdf: Optional[GenerationService] = None):
        self.store = store
        self.resolver = InheritanceResolver(store)
        self.vision = vision or GenerationService(model=VISION_MODEL, service="vision")
        self.pdf = pdf or GenerationService(service="pdf")

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(self, content_base64: str, media_type: str = PDF_MEDIA_TYPE) -> DumExtraction:
        """
        Structured content of a declaration.

        Raises:
            AnalysisError: Unsupported media type, empty PDF text or unusable model output
            ServiceUnavailableError: Model unavailable after retries
        """
        notes: List[str] = []
        page_count = None

        if media_type == PDF_MEDIA_TYPE:
            text, _, page_count = DocumentAnalyzer.extract_pages(decode_base64(content_base64))
            if not text.strip():
                raise AnalysisError("PDF sans texte extractible: envoyez une image de la DUM")
            if not detect_dum_document(text):
                notes.append("Le document ne ressemble pas à une DUM: vérifiez les valeurs extraites")
            result = self.pdf.complete(
                DUM_EXTRACTION_PROMPT,
                f"Pages: {page_count}\n\n{text[:MAX_DUM_PROMPT_CHARS]}",
                max_tokens=8000,
                temperature=0.0,
            )
        elif media_type in SUPPORTED_IMAGE_TYPES:
            url = content_base64 if content_base64.startswith("data:") else \
                f"data:{media_type};base64,{content_base64}"
            result = self.vision.complete(
                DUM_EXTRACTION_PROMPT,
                [{"role": "user", "content": [
                    {"type": "image_url", "image_url": {"url": url}},
                    {"type": "text", "text": "Extrais toutes les données de cette DUM en JSON strict, avec les sources."},
                ]}],
                max_tokens=8000,
                temperature=0.0,
            )
        else:
            raise AnalysisError(f"Type de document non supporté: {media_type}")

        parsed = parse_model_json(result.text)
        if not parsed.success or not parsed.data:
            raise AnalysisError(f"Extraction DUM illisible: {parsed.error}")
        if parsed.partial:
            logger.warning(f"DUM JSON recovered partially: {parsed.recovered_fields[:5]}")

        prepared = prepare_extraction(parsed.data)
        if page_count and not parsed.data.get("page_count"):
            prepared["page_count"] = page_count
        prepared["extraction_warnings"] = notes + prepared["extraction_warnings"]
        try:
            return DumExtraction.model_validate(prepared)
        except ValidationError as e:
            raise AnalysisError(f"Extraction DUM invalide: {e.errors()[0].get('msg')}")

    # ------------------------------------------------------------------
    # Taxes
    # ------------------------------------------------------------------

    def _line_rate(self, item: DumItem, tariff: EffectiveTariff) -> Tuple[EffectiveTariff, str]:
        if item.duty_rate is not None:
            return replace(tariff, duty_rate=item.duty_rate, rate_source=RATE_DIRECT), RATE_EXTRACTED
        if tariff.found and select_duty_rate(tariff) is not None:
            return tariff, RATE_DATABASE
        return tariff, RATE_MISSING

    def compute_taxes(self, extraction: DumExtraction, tariffs: Dict[int, EffectiveTariff],
                      notes: List[str]) -> Tuple[List[ItemTaxes], DumTotals]:
        """
        Per-line duties and their totals in MAD.

        Amounts stay in the declaration currency when it has no MAD rate;
        the totals are then flagged incomplete.
        """
        currency = (extraction.currency_code or extraction.invoice_value.currency or "MAD").upper()
        convertible = True
        try:
            convert_to_mad(0, currency)
        except ValueError:
            convertible = False
            notes.append(f"Devise {currency} non supportée: montants laissés en {currency}")

        def to_mad(amount: Optional[float], amount_currency: Optional[str] = None) -> Optional[float]:
            if amount is None:
                return None
            if not convertible:
                return amount
            try:
                return convert_to_mad(amount, amount_currency or currency)
            except ValueError:
                return convert_to_mad(amount, currency)

        total_value = sum(item.value or 0 for item in extraction.items)
        freight = extraction.freight_value.value
        insurance = extraction.insurance_value.value
        incoterm = extraction.incoterm or ("FOB" if freight or insurance else "CIF")

        items: List[ItemTaxes] = []
        missing: List[str] = []
        for item in extraction.items:
            ratio = (item.value or 0) / total_value if total_value else 0
            freight_share = to_mad(freight * ratio, extraction.freight_value.currency) if freight else None
            insurance_share = to_mad(insurance * ratio, extraction.insurance_value.currency) if insurance else None
            cif = compute_caf(to_mad(item.value or 0), incoterm, freight_share, insurance_share)

            tariff = tariffs.get(item.line_no) or EffectiveTariff.empty("")
            applied, rate_source = self._line_rate(item, tariff)
            if rate_source == RATE_MISSING:
                missing.append(item.hs_code or f"Ligne {item.line_no}")

            calculation = calculate_duties(applied, cif)
            items.append(ItemTaxes(
                line_no=item.line_no,
                hs_code=item.hs_code,
                description=item.description,
                cif_value=calculation.cif_value,
                duty_rate=calculation.duty_rate_used if rate_source != RATE_MISSING else None,
                duty_rate_source=rate_source,
                duty_amount=calculation.duty_amount,
                vat_rate=calculation.vat_rate,
                vat_amount=calculation.vat_amount,
                total_taxes=calculation.total_duties,
                grand_total=calculation.total_cost,
                warnings=calculation.warnings,
            ))

        def total(attr: str) -> float:
            return float(sum(Decimal(str(getattr(i, attr))) for i in items))

        missing = list(dict.fromkeys(missing))
        totals = DumTotals(
            total_cif=total("cif_value"),
            total_duty=total("duty_amount"),
            total_vat=total("vat_amount"),
            grand_total=total("grand_total"),
            currency="MAD" if convertible else currency,
            missing_rates=missing,
            is_complete=not missing and convertible,
        )
        return items, totals

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, extraction: DumExtraction, tariffs: Dict[int, EffectiveTariff],
               notes: List[str]) -> DumVerification:
        errors: List[str] = []
        warnings: List[str] = list(extraction.extraction_warnings) + notes
        controls: List[Dict[str, str]] = []
        seen = set()

        if not extraction.dum_number:
            errors.append("Numéro de DUM non trouvé")
        if not extraction.items:
            errors.append("Aucune marchandise déclarée")

        for item in extraction.items:
            label = item.description or f"Ligne {item.line_no}"
            if not item.hs_code:
                warnings.append(f"Ligne {item.line_no}: code SH absent")
                continue

            display = format_code(item.hs_code)
            if self.store.get_hs_code(item.hs_code) is None and \
                    self.store.get_hs_code(normalize_strict_6(item.hs_code)) is None:
                warnings.append(f"Code SH {display} non trouvé dans la nomenclature")

            tariff = tariffs.get(item.line_no)
            if tariff is None:
                continue
            if tariff.is_prohibited:
                errors.append(f"PRODUIT INTERDIT: {label} ({display})")
            elif tariff.is_restricted:
                warnings.append(f"Produit restreint: {label} ({display}), licence requise")
            for control in tariff.controls:
                key = (control.type, control.authority)
                if key in seen:
                    continue
                seen.add(key)
                controls.append({
                    "type": control.type,
                    "authority": control.authority or "Non spécifié",
                    "reason": f"Requis pour le code {display}",
                })

        return DumVerification(is_valid=not errors, errors=errors, warnings=warnings, controls_required=controls)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def analyze(self, content_base64: str, media_type: str = PDF_MEDIA_TYPE,
                country: str = DEFAULT_COUNTRY) -> DumAnalysis:
        """Extract, compute and verify one declaration."""
        run_id = generate_run_id()
        start = time.time()
        try:
            extraction = self.extract(content_base64, media_type)
            extraction_ms = round((time.time() - start) * 1000, 2)
            analysis = self.analyze_extraction(extraction, country)
        except Exception as e:
            log_pipeline_event("dum_analysis", {
                "run_id": run_id,
                "status": "error",
                "duration_ms": round((time.time() - start) * 1000, 2),
                "error": str(e),
            })
            raise

        log_pipeline_event("dum_analysis", {
            "run_id": run_id,
            "status": "success",
            "duration_ms": round((time.time() - start) * 1000, 2),
            "extraction_ms": extraction_ms,
            "items_extracted": len(extraction.items),
            "missing_rates": len(analysis.totals.missing_rates),
            "errors_count": len(analysis.verification.errors),
        })
        return analysis

    def analyze_extraction(self, extraction: DumExtraction, country: str = DEFAULT_COUNTRY) -> DumAnalysis:
        """Taxes and verification for an already extracted declaration."""
        tariffs = {
            item.line_no: self.resolver.resolve(item.hs_code, country)
            for item in extraction.items if item.hs_code
        }
        notes: List[str] = []
        items, totals = self.compute_taxes(extraction, tariffs, notes)
        verification = self.verify(extraction, tariffs, notes)
        logger.info(f"DUM {extraction.dum_number or '?'}: {len(items)} line(s), "
                    f"grand total {totals.grand_total} {totals.currency}, valid={verification.is_valid}")
        return DumAnalysis(
            extraction=extraction,
            items=items,
            totals=totals,
            verification=verification,
            sources=build_sources(extraction),
            country_code=country,
        )


# ============================================================================
# Formatting
# ============================================================================

def _amount_text(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:,.2f}".replace(",", " ")


def format_dum_analysis(analysis: DumAnalysis) -> str:
    """Markdown summary of an analysis."""
    extraction = analysis.extraction
    totals = analysis.totals
    verification = analysis.verification

    lines = [
        f"## Analyse de la DUM {extraction.dum_number or 'N/A'}",
        "",
        "| Champ | Valeur |",
        "|-------|--------|",
        f"| Bureau | {extraction.bureau_code or 'N/A'} {extraction.bureau_name or ''} |",
        f"| Date | {extraction.dum_date or 'N/A'} |",
        f"| Régime | {extraction.regime_code or 'N/A'} |",
        f"| Importateur | {extraction.importer.name or 'N/A'} |",
        f"| Exportateur | {extraction.exporter.name or 'N/A'} ({extraction.exporter.country or '?'}) |",
        f"| Incoterm | {extraction.incoterm or 'N/A'} |",
        "",
        "### Droits et taxes par article",
        "",
        "| Ligne | Code SH | Valeur CAF | DDI | TVA | Total taxes |",
        "|-------|---------|------------|-----|-----|-------------|",
    ]
    for item in analysis.items:
        rate = "N/A" if item.duty_rate is None else f"{item.duty_rate:g}% ({item.duty_rate_source})"
        code = format_code(item.hs_code) if item.hs_code else "N/A"
        lines.append(
            f"| {item.line_no} | {code} | {_amount_text(item.cif_value)} | {rate} "
            f"| {_amount_text(item.vat_amount)} | {_amount_text(item.total_taxes)} |"
        )

    lines += [
        "",
        f"**Valeur CAF totale:** {_amount_text(totals.total_cif)} {totals.currency}",
        f"**DDI:** {_amount_text(totals.total_duty)} {totals.currency}",
        f"**TVA:** {_amount_text(totals.total_vat)} {totals.currency}",
        f"**Total à payer (CAF + taxes):** {_amount_text(totals.grand_total)} {totals.currency}",
    ]
    if totals.missing_rates:
        lines.append(f"Taux manquants: {', '.join(totals.missing_rates)}")

    if verification.controls_required:
        lines += ["", "### Contrôles requis"]
        lines += [f"- {c['type']} ({c['authority']}): {c['reason']}" for c in verification.controls_required]
    if verification.errors:
        lines += ["", "### Erreurs"]
        lines += [f"- {e}" for e in verification.errors]
    if verification.warnings:
        lines += ["", "### Avertissements"]
        lines += [f"- {w}" for w in verification.warnings]

    lines += ["", "### Statut"]
    lines.append(
        "La déclaration semble conforme." if verification.is_valid
        else "La déclaration présente des anomalies à corriger."
    )
    return "\n".join(lines)
