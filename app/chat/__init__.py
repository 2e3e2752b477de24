"""
Chat support: vector search, structured output schemas and pipeline logging.

Import from the submodules directly:
    from app.chat.vector_stores import EmbeddingService, get_vector_index
    from app.chat.logging_utils import PipelineLogger
"""
