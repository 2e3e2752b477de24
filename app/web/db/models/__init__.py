from .base import BaseModel as Model
from .customs_tables import (
    HSCode,
    CountryTariff,
    ControlledProduct,
    TariffNote,
)
from .document_tables import (
    PdfDocument,
    PdfExtraction,
    LegalSource,
    LegalChunk,
    HSEvidence,
    LegalReference,
    RegulatoryProcedure,
    KnowledgeDocument,
    VeilleDocument,
)
from .response_cache import ResponseCacheEntry
