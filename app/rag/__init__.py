"""
RAG Pipeline Module

Implements the advisory pipeline:
1. Question analysis and tariff inheritance
2. Hybrid retrieval (semantic + keyword, concurrent per category)
3. Passage scoring and re-ranking
4. Prompt assembly and generation
5. Source validation and response cache
6. Orchestrator: coordinates the full pipeline

Usage:
    from app.rag import ChatOrchestrator, ChatRequest

    orchestrator = ChatOrchestrator(store, embeddings, index)
    response = orchestrator.handle(ChatRequest(question="Quel est le taux pour 8471.30 ?"))

Note: Imports are lazy; the storage layer imports app.rag.evidence, and the
orchestrator imports the storage layer.
"""

_EXPORTS = {
    "ChatOrchestrator": "app.rag.orchestrator",
    "ChatRequest": "app.rag.orchestrator",
    "ChatResponse": "app.rag.orchestrator",
    "InheritanceResolver": "app.rag.inheritance",
    "EffectiveTariff": "app.rag.inheritance",
    "HybridRetriever": "app.rag.retrieval",
    "SourceValidator": "app.rag.source_validator",
    "ResponseCache": "app.rag.response_cache",
    "RAGContext": "app.rag.evidence",
    "analyze_question": "app.rag.question_analyzer",
}


def __getattr__(name):
    """Lazy import to avoid circular imports."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'app.rag' has no attribute '{name}'")

    import importlib
    return getattr(importlib.import_module(module_name), name)


__all__ = list(_EXPORTS)
