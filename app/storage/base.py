"""
Abstract Customs Store

Defines the read-only query interface the advisory pipeline consumes.
Every lookup is parametrized (exact code, prefix, set-membership or text
pattern) and scoped by the active flag and, where the table has one, by
the jurisdiction code. Implementations return evidence records from
app.rag.evidence, never ORM objects.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from app.rag.evidence import (
    ControlRow,
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


class CustomsStore(ABC):
    """Abstract base class for customs data backends."""

    # ------------------------------------------------------------------
    # Nomenclature
    # ------------------------------------------------------------------

    @abstractmethod
    def get_hs_code(self, code_clean: str) -> Optional[HsCodeRow]:
        """Active HS code row by exact clean code."""
        pass

    @abstractmethod
    def get_hs_codes_with_notes(self, codes: Sequence[str]) -> List[HsCodeRow]:
        """Active HS code rows in `codes` that carry legal notes."""
        pass

    @abstractmethod
    def search_hs_codes(self, terms: Sequence[str], limit: int = 10) -> List[HsCodeRow]:
        """Keyword search over HS descriptions (any term matches)."""
        pass

    # ------------------------------------------------------------------
    # Tariff lines
    # ------------------------------------------------------------------

    @abstractmethod
    def find_direct_tariff(self, country: str, code_clean: str) -> Optional[TariffRow]:
        """
        Exact tariff line for a code.

        Matches national_code == code_clean, or hs_code_6 == code_clean[:6].
        An exact national_code match wins over the 6-digit match.
        """
        pass

    @abstractmethod
    def find_child_tariffs(self, country: str, prefix: str) -> List[TariffRow]:
        """Tariff lines whose national_code starts with prefix, excluding prefix itself."""
        pass

    @abstractmethod
    def find_tariffs_by_prefix(self, country: str, prefix: str, limit: int = 20) -> List[TariffRow]:
        """Tariff lines whose national_code starts with prefix (prefix included)."""
        pass

    @abstractmethod
    def search_tariffs(self, country: str, terms: Sequence[str], limit: int = 10) -> List[TariffRow]:
        """Keyword search over national descriptions."""
        pass

    @abstractmethod
    def find_controls(self, country: str, code_clean: str) -> List[ControlRow]:
        """Controls at the exact code or at its 4-digit heading prefix."""
        pass

    # ------------------------------------------------------------------
    # Notes and legal text
    # ------------------------------------------------------------------

    @abstractmethod
    def find_tariff_notes(self, country: str, chapters: Sequence[str], limit: int = 20) -> List[TariffNote]:
        pass

    @abstractmethod
    def search_tariff_notes(self, country: str, terms: Sequence[str], limit: int = 10) -> List[TariffNote]:
        pass

    @abstractmethod
    def search_legal_chunks(self, terms: Sequence[str], language: Optional[str] = None,
                            limit: int = 10, country: Optional[str] = None) -> List[LegalChunk]:
        """Chunk text search; country scopes through the chunk's legal source."""
        pass

    @abstractmethod
    def find_legal_chunks_by_article(self, articles: Sequence[str], limit: int = 20,
                                     country: Optional[str] = None) -> List[LegalChunk]:
        """Chunks whose article number matches, ignoring case and spaces."""
        pass

    @abstractmethod
    def find_evidence_rows(self, country: str, codes: Sequence[str], limit: int = 20) -> List[EvidenceRow]:
        """hs_evidence rows whose hs_code_6 matches the 6-digit prefix of any code."""
        pass

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    def search_pdfs(self, terms: Sequence[str], country: Optional[str] = None,
                    limit: int = 5) -> List[PdfExtract]:
        """Keyword search over PDF titles and extractions; relevance_score holds the hit count."""
        pass

    @abstractmethod
    def find_pdfs_by_title(self, patterns: Sequence[str], category: Optional[str] = None,
                           limit: int = 5) -> List[PdfExtract]:
        """PDFs whose title or file name contains any pattern (case-insensitive)."""
        pass

    @abstractmethod
    def find_pdfs_mentioning_codes(self, codes: Sequence[str], limit: int = 5,
                                   country: Optional[str] = None) -> List[PdfExtract]:
        """PDFs whose extraction mentions a code of the same heading; country-less PDFs always qualify."""
        pass

    @abstractmethod
    def search_knowledge(self, country: str, terms: Sequence[str], limit: int = 5) -> List[KnowledgeDocument]:
        pass

    @abstractmethod
    def search_watch_documents(self, terms: Sequence[str], limit: int = 5,
                               country: Optional[str] = None) -> List[WatchDocument]:
        pass

    @abstractmethod
    def find_legal_references(self, terms: Sequence[str], country: str, limit: int = 10) -> List[LegalReference]:
        pass

    @abstractmethod
    def find_procedures(self, terms: Sequence[str], country: str, limit: int = 5) -> List[Procedure]:
        pass

    # ------------------------------------------------------------------
    # Hydration for vector hits
    # ------------------------------------------------------------------

    @abstractmethod
    def fetch_by_keys(self, kind: str, keys: Sequence[str]) -> Dict[str, object]:
        """
        Load evidence records of one kind by key.

        Args:
            kind: Evidence kind tag (see app.rag.evidence.EVIDENCE_KINDS)
            keys: Record keys as stored in the vector index

        Returns:
            Dict of key -> evidence record (missing keys are omitted)
        """
        pass

    @abstractmethod
    def resolve_legal_source_url(self, source_id: int) -> Optional[str]:
        """Download URL for a legal source: source URL, else its linked PDF."""
        pass
