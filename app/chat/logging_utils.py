"""
Logging utilities for the advisory pipeline.

Provides structured JSON logging for:
- Pipeline stages (cache, analysis, retrieval, generation, validation)
- Retrieval counts per evidence category
- Performance metrics

Usage:
    from app.chat.logging_utils import log_pipeline_event, PipelineLogger

    # Simple logging
    log_pipeline_event("cache_hit", {
        "run_id": "...",
        "similarity": 0.97
    })

    # Context manager for timing
    with PipelineLogger(session_id) as plog:
        plog.log_stage("analyze", {"intent": "classify"})
        plog.log_retrieve(context.summary_counts())
        plog.log_generate(answer, citations)
"""

import json
import logging
import time
import uuid
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional


# Configure logger
logger = logging.getLogger("pipeline_runs")
logger.setLevel(logging.INFO)

# JSON formatter for structured logging
class JSONFormatter(logging.Formatter):
    def format(self, record):
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, ensure_ascii=False, default=str)
        return super().format(record)


# Add handler if not already present
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


# ============================================================================
# Simple Logging Functions
# ============================================================================

def log_pipeline_event(event_type: str, payload: Dict[str, Any]) -> None:
    """
    Log a pipeline event with structured data.

    Args:
        event_type: Type of event (e.g., "run_start", "stage", "cache_hit")
        payload: Event data including run_id, session_id, etc.
    """
    event = {
        "timestamp": datetime.utcnow().isoformat(),
        "event_type": event_type,
        **payload
    }
    logger.info(event)


def log_stage(
    stage: str,
    run_id: str,
    session_id: Optional[str],
    data: Optional[Dict] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None
) -> None:
    """Log one pipeline stage."""
    log_pipeline_event("stage", {
        "stage": stage,
        "run_id": run_id,
        "session_id": session_id,
        "data": _truncate_dict(data) if data else None,
        "duration_ms": duration_ms,
        "error": error
    })


# ============================================================================
# PipelineLogger Class
# ============================================================================

class PipelineLogger:
    """
    Context manager for logging one chat request.

    The run id defaults to the chat session id so every event of a request
    can be correlated with the client conversation.
    """

    def __init__(self, session_id: Optional[str] = None, run_id: Optional[str] = None):
        self.session_id = session_id
        self.run_id = run_id or session_id or generate_run_id()
        self.start_time: Optional[float] = None
        self.events: List[Dict] = []

    def __enter__(self):
        self.start_time = time.time()
        log_pipeline_event("run_start", {
            "run_id": self.run_id,
            "session_id": self.session_id,
        })
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        log_pipeline_event("run_end" if exc_val is None else "run_error", {
            "run_id": self.run_id,
            "session_id": self.session_id,
            "duration_ms": round(duration_ms, 2),
            "error": str(exc_val) if exc_val else None,
            "num_events": len(self.events)
        })

    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return round((time.time() - self.start_time) * 1000, 2)

    def log_stage(self, stage: str, data: Optional[Dict] = None, duration_ms: Optional[float] = None) -> None:
        event = {
            "stage": stage,
            "timestamp": datetime.utcnow().isoformat(),
            "data": _truncate_dict(data) if data else None
        }
        self.events.append(event)
        log_stage(stage, self.run_id, self.session_id, data=data, duration_ms=duration_ms)

    def log_retrieve(self, counts: Dict[str, int], duration_ms: Optional[float] = None) -> None:
        self.log_stage("retrieve", {
            "counts": counts,
            "total": sum(counts.values()),
        }, duration_ms=duration_ms)

    def log_generate(self, answer: str, citations: Optional[List] = None) -> None:
        self.log_stage("generate", {
            "answer_length": len(answer) if answer else 0,
            "num_citations": len(citations) if citations else 0
        })


# ============================================================================
# Decorator for Stage Timing
# ============================================================================

def timed_stage(stage: str):
    """
    Decorator to time and log a pipeline stage.

    The wrapped callable may receive a `plog` keyword (PipelineLogger) to
    attach the timing to a request; otherwise the event carries run_id
    "unknown".

    Usage:
        @timed_stage("retrieve")
        def build_context(query, plog=None):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.time()
            error = None
            plog = kwargs.get("plog")

            try:
                return func(*args, **kwargs)
            except Exception as e:
                error = str(e)
                raise
            finally:
                duration_ms = round((time.time() - start) * 1000, 2)
                log_stage(
                    stage,
                    run_id=plog.run_id if plog else "unknown",
                    session_id=plog.session_id if plog else None,
                    duration_ms=duration_ms,
                    error=error
                )

        return wrapper
    return decorator


# ============================================================================
# Helper Functions
# ============================================================================

def _truncate_dict(d: Dict, max_str_len: int = 200) -> Dict:
    """Truncate string values in dict for logging."""
    if not d:
        return d

    result = {}
    for key, value in d.items():
        if isinstance(value, str) and len(value) > max_str_len:
            result[key] = value[:max_str_len] + "..."
        elif isinstance(value, list) and len(value) > 10:
            result[key] = value[:10]
        elif isinstance(value, dict):
            result[key] = _truncate_dict(value, max_str_len)
        else:
            result[key] = value
    return result


def generate_run_id() -> str:
    """Generate a new run ID."""
    return str(uuid.uuid4())
