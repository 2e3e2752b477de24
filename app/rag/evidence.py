"""
Evidence Records

One dataclass per evidence category. Every record carries a class-level
`kind` tag and a `key` used to deduplicate results coming from several
retrieval strategies. Scorer, prompt builder and validator dispatch on
`kind`; an unknown kind is a programming error and raises.

RAGContext is the per-request bag of everything retrieved for one question.
"""

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Union

if TYPE_CHECKING:
    from app.rag.inheritance import EffectiveTariff


@dataclass
class HsCodeRow:
    kind: ClassVar[str] = "hs_code"
    code: str
    code_clean: str
    description_fr: str = ""
    description_en: Optional[str] = None
    description_ar: Optional[str] = None
    chapter_number: Optional[int] = None
    level: Optional[str] = None
    legal_notes: Optional[str] = None
    similarity: float = 0.0

    @property
    def key(self) -> str:
        return self.code_clean


@dataclass
class TariffRow:
    kind: ClassVar[str] = "tariff"
    country_code: str
    national_code: str
    hs_code_6: str = ""
    description_local: str = ""
    duty_rate: Optional[float] = None
    vat_rate: Optional[float] = None
    is_prohibited: bool = False
    is_restricted: bool = False
    source_pdf: Optional[str] = None
    source_page: Optional[int] = None
    source_evidence: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.country_code}:{self.national_code}"


@dataclass
class ControlRow:
    kind: ClassVar[str] = "control"
    hs_code: str
    control_type: str
    control_authority: Optional[str] = None
    required_documents: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    country_code: str = "MA"

    @property
    def key(self) -> str:
        return f"{self.hs_code}:{self.control_type}"


@dataclass
class LegalChunk:
    kind: ClassVar[str] = "legal_chunk"
    id: int
    source_id: int
    chunk_text: str
    chunk_index: int = 0
    page_number: Optional[int] = None
    article_number: Optional[str] = None
    section_title: Optional[str] = None
    source_type: Optional[str] = None
    source_ref: Optional[str] = None
    source_title: Optional[str] = None
    source_url: Optional[str] = None
    pdf_id: Optional[str] = None
    download_url: Optional[str] = None
    language: str = "fr"
    similarity: float = 0.0

    @property
    def key(self) -> str:
        return str(self.id)


@dataclass
class TariffNote:
    kind: ClassVar[str] = "tariff_note"
    id: int
    note_text: str
    note_type: str = "chapter_note"
    chapter_number: Optional[str] = None
    anchor: Optional[str] = None
    country_code: str = "MA"
    page_number: Optional[int] = None
    source_pdf: Optional[str] = None
    similarity: float = 0.0

    @property
    def key(self) -> str:
        return str(self.id)


@dataclass
class KnowledgeDocument:
    kind: ClassVar[str] = "knowledge"
    id: str
    title: str
    content: str
    category: Optional[str] = None
    source_url: Optional[str] = None
    similarity: float = 0.0

    @property
    def key(self) -> str:
        return self.id


@dataclass
class PdfExtract:
    kind: ClassVar[str] = "pdf"
    pdf_id: str
    title: str
    category: Optional[str] = None
    summary: Optional[str] = None
    key_points: List[str] = field(default_factory=list)
    extracted_text: Optional[str] = None
    mentioned_hs_codes: List[str] = field(default_factory=list)
    file_path: Optional[str] = None
    download_url: Optional[str] = None
    country_code: Optional[str] = None
    similarity: float = 0.0
    relevance_score: float = 0.0

    @property
    def key(self) -> str:
        return self.pdf_id


@dataclass
class WatchDocument:
    kind: ClassVar[str] = "watch"
    id: str
    title: str
    content: Optional[str] = None
    source_url: Optional[str] = None
    source_name: Optional[str] = None
    category: Optional[str] = None
    importance: str = "moyenne"
    mentioned_hs_codes: List[str] = field(default_factory=list)
    similarity: float = 0.0
    relevance_score: float = 0.0

    @property
    def key(self) -> str:
        return self.id


@dataclass
class LegalReference:
    kind: ClassVar[str] = "legal_reference"
    id: str
    reference_type: str
    reference_number: str
    title: Optional[str] = None
    reference_date: Optional[str] = None
    context: Optional[str] = None
    pdf_id: Optional[str] = None
    pdf_title: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def key(self) -> str:
        return self.id


@dataclass
class Procedure:
    kind: ClassVar[str] = "procedure"
    id: str
    procedure_name: str
    authority: Optional[str] = None
    required_documents: List[str] = field(default_factory=list)
    deadlines: Optional[str] = None
    penalties: Optional[str] = None
    pdf_id: Optional[str] = None
    pdf_title: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def key(self) -> str:
        return self.id


@dataclass
class EvidenceRow:
    kind: ClassVar[str] = "evidence"
    id: int
    national_code: str
    evidence_text: str
    source_id: Optional[int] = None
    hs_code_6: Optional[str] = None
    page_number: Optional[int] = None
    confidence: Optional[str] = None
    source_ref: Optional[str] = None
    source_title: Optional[str] = None
    download_url: Optional[str] = None
    country_code: str = "MA"

    @property
    def key(self) -> str:
        return str(self.id)


Evidence = Union[
    HsCodeRow, TariffRow, ControlRow, LegalChunk, TariffNote, KnowledgeDocument,
    PdfExtract, WatchDocument, LegalReference, Procedure, EvidenceRow,
]

EVIDENCE_KINDS = {
    cls.kind: cls for cls in (
        HsCodeRow, TariffRow, ControlRow, LegalChunk, TariffNote, KnowledgeDocument,
        PdfExtract, WatchDocument, LegalReference, Procedure, EvidenceRow,
    )
}


def evidence_to_dict(item: Evidence) -> Dict[str, Any]:
    """Serialize a record with its kind tag."""
    data = asdict(item)
    data["kind"] = item.kind
    return data


@dataclass
class RAGContext:
    """Everything retrieved for one question, already scoped to its country."""
    country_code: str = "MA"
    tariffs_with_inheritance: List["EffectiveTariff"] = field(default_factory=list)
    hs_codes: List[HsCodeRow] = field(default_factory=list)
    tariffs: List[TariffRow] = field(default_factory=list)
    controlled_products: List[ControlRow] = field(default_factory=list)
    knowledge_documents: List[KnowledgeDocument] = field(default_factory=list)
    pdf_summaries: List[PdfExtract] = field(default_factory=list)
    legal_references: List[LegalReference] = field(default_factory=list)
    regulatory_procedures: List[Procedure] = field(default_factory=list)
    tariff_notes: List[TariffNote] = field(default_factory=list)
    legal_chunks: List[LegalChunk] = field(default_factory=list)
    watch_documents: List[WatchDocument] = field(default_factory=list)
    evidence_rows: List[EvidenceRow] = field(default_factory=list)

    def summary_counts(self) -> Dict[str, int]:
        return {
            "tariffs_with_inheritance": len(self.tariffs_with_inheritance),
            "hs_codes": len(self.hs_codes),
            "tariffs": len(self.tariffs),
            "controlled_products": len(self.controlled_products),
            "knowledge_documents": len(self.knowledge_documents),
            "pdf_summaries": len(self.pdf_summaries),
            "legal_references": len(self.legal_references),
            "regulatory_procedures": len(self.regulatory_procedures),
            "tariff_notes": len(self.tariff_notes),
            "legal_chunks": len(self.legal_chunks),
            "watch_documents": len(self.watch_documents),
            "evidence_rows": len(self.evidence_rows),
        }

    def is_empty(self) -> bool:
        return not any(self.summary_counts().values())
