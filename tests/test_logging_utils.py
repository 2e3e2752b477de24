"""
Pipeline Logging Tests

Tests:
- PipelineLogger run start/end/error events
- Stage payload truncation
- timed_stage decorator (standalone and attached to a run)
"""

import logging

import pytest


def _events(caplog):
    return [r.msg for r in caplog.records if r.name == "pipeline_runs" and isinstance(r.msg, dict)]


class TestPipelineLogger:

    def test_run_events(self, caplog):
        from app.chat.logging_utils import PipelineLogger

        with caplog.at_level(logging.INFO, logger="pipeline_runs"):
            with PipelineLogger("session-42") as plog:
                plog.log_retrieve({"hs_codes": 2, "tariffs": 3})
                plog.log_generate("Réponse", citations=[{"id": "a"}])

        events = _events(caplog)
        assert [e["event_type"] for e in events] == ["run_start", "stage", "stage", "run_end"]
        assert events[0]["run_id"] == "session-42"
        assert events[1]["data"] == {"counts": {"hs_codes": 2, "tariffs": 3}, "total": 5}
        assert events[2]["data"]["num_citations"] == 1
        assert events[-1]["num_events"] == 2

    def test_run_error(self, caplog):
        from app.chat.logging_utils import PipelineLogger

        with caplog.at_level(logging.INFO, logger="pipeline_runs"):
            with pytest.raises(RuntimeError):
                with PipelineLogger() as plog:
                    raise RuntimeError("generation down")

        last = _events(caplog)[-1]
        assert last["event_type"] == "run_error"
        assert last["error"] == "generation down"
        assert plog.run_id

    def test_stage_data_truncated(self):
        from app.chat.logging_utils import PipelineLogger

        plog = PipelineLogger("s")
        plog.log_stage("analyze_question", {"question": "x" * 500, "codes": list(range(20))})

        data = plog.events[0]["data"]
        assert len(data["question"]) == 203
        assert data["codes"] == list(range(10))


def test_timed_stage_logs_errors(caplog):
    from app.chat.logging_utils import timed_stage

    @timed_stage("retrieve")
    def failing():
        raise ValueError("boom")

    with caplog.at_level(logging.INFO, logger="pipeline_runs"):
        with pytest.raises(ValueError):
            failing()

    event = _events(caplog)[-1]
    assert event["stage"] == "retrieve"
    assert event["run_id"] == "unknown"
    assert event["error"] == "boom"


def test_timed_stage_attaches_to_run(caplog):
    from app.chat.logging_utils import PipelineLogger, timed_stage

    @timed_stage("generation")
    def generate(prompt, *, plog):
        return prompt.upper()

    with caplog.at_level(logging.INFO, logger="pipeline_runs"):
        with PipelineLogger("session-9") as plog:
            assert generate("ok", plog=plog) == "OK"
            assert plog.elapsed_ms() >= 0

    event = [e for e in _events(caplog) if e.get("stage") == "generation"][0]
    assert event["run_id"] == "session-9"
    assert event["duration_ms"] >= 0
    assert event["error"] is None
