"""
Output schemas for structured model calls and the chat API.

Provides Pydantic models for:
- Passage re-ranking tool call (rank_passages)
- Document / image extraction
- DUM (customs declaration) extraction
- Query expansion
- Chat request validation

Tool schemas are handed to the generation service as JSON Schema via
`tool_definition()`.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Type


CURRENT_SCHEMA_VERSION = "1.0"


# ============================================================================
# Re-ranking
# ============================================================================

class PassageScore(BaseModel):
    """Relevance score for one passage."""
    index: int = Field(description="Passage index [0..N]")
    score: float = Field(description="Relevance score 0-10")


class RankPassagesArgs(BaseModel):
    """Arguments of the rank_passages tool call."""
    scores: List[PassageScore] = Field(default=[], description="One score per passage")


# ============================================================================
# Document analysis
# ============================================================================

class DocumentExtraction(BaseModel):
    """What the vision model extracts from an image or PDF."""
    schema_version: str = Field(default=CURRENT_SCHEMA_VERSION, description="Schema version for compatibility")
    summary: str = Field(default="", description="Short summary of the document")
    product_description: Optional[str] = Field(default=None, description="Goods described in the document")
    suggested_codes: List[str] = Field(default=[], description="Candidate HS codes")
    key_points: List[str] = Field(default=[], description="Regulatory key points")
    full_text: str = Field(default="", description="Transcribed text")
    questions: List[str] = Field(default=[], description="Clarification questions for the user")


# ============================================================================
# DUM (déclaration unique de marchandises) extraction
# ============================================================================

class DumSourceRef(BaseModel):
    """Where a value was read on the declaration."""
    page: Optional[int] = Field(default=None, description="1-based page")
    field_anchor: Optional[str] = Field(default=None, description="Box or label, e.g. 'Case 22'")
    confidence: str = Field(default="low", description="high, medium or low")


class DumParty(BaseModel):
    name: Optional[str] = None
    id: Optional[str] = Field(default=None, description="ICE, RC or tax id")
    country: Optional[str] = Field(default=None, description="ISO 3166 alpha-2")
    source: DumSourceRef = Field(default_factory=DumSourceRef)


class DumAmount(BaseModel):
    value: Optional[float] = None
    currency: Optional[str] = None
    source: DumSourceRef = Field(default_factory=DumSourceRef)


class DumItem(BaseModel):
    """One goods line (article) of the declaration."""
    line_no: int = Field(description="Line number, 1-based")
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    value: Optional[float] = Field(default=None, description="Line value in the declaration currency")
    origin_country: Optional[str] = None
    hs_code: Optional[str] = Field(default=None, description="10-digit national code")
    duty_rate: Optional[float] = Field(default=None, description="DDI rate printed on the declaration")
    source: DumSourceRef = Field(default_factory=DumSourceRef)


class DumExtraction(BaseModel):
    """Structured content of a DUM."""
    dum_number: Optional[str] = None
    regime_code: Optional[str] = None
    bureau_code: Optional[str] = None
    bureau_name: Optional[str] = None
    dum_date: Optional[str] = Field(default=None, description="YYYY-MM-DD")
    importer: DumParty = Field(default_factory=DumParty)
    exporter: DumParty = Field(default_factory=DumParty)
    incoterm: Optional[str] = None
    currency_code: Optional[str] = None
    invoice_value: DumAmount = Field(default_factory=DumAmount)
    freight_value: DumAmount = Field(default_factory=DumAmount)
    insurance_value: DumAmount = Field(default_factory=DumAmount)
    items: List[DumItem] = Field(default=[])
    page_count: int = Field(default=1)
    extraction_warnings: List[str] = Field(default=[])


# ============================================================================
# Query expansion
# ============================================================================

class QueryExpansion(BaseModel):
    """Enrichment of a user question for retrieval."""
    expanded_terms: List[str] = Field(default=[], description="French synonyms and customs terminology")
    arabic_terms: List[str] = Field(default=[], description="Arabic translation of the product terms")
    hs_hints: List[str] = Field(default=[], description="Probable HS chapters or headings, e.g. '07' or '0702'")


# ============================================================================
# Chat API
# ============================================================================

class HistoryTurn(BaseModel):
    role: str = Field(description="user or assistant")
    content: str = Field(default="")


class ChatRequestSchema(BaseModel):
    """Body of POST /api/chat."""
    question: str = Field(default="", description="User question")
    session_id: str = Field(default="", alias="sessionId")
    images: List[Dict[str, Any]] = Field(default=[], description="[{base64, media_type}]")
    pdf_documents: List[Dict[str, Any]] = Field(default=[], alias="pdfDocuments")
    conversation_history: List[HistoryTurn] = Field(default=[], alias="conversationHistory")

    model_config = {"populate_by_name": True}


def tool_definition(name: str, description: str, schema: Type[BaseModel]) -> Dict[str, Any]:
    """OpenAI function-tool definition for a Pydantic argument model."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": schema.model_json_schema(),
        },
    }
