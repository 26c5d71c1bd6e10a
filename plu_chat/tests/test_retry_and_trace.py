import pytest

from plu_chat.engine.retry import RetryPolicy
from plu_chat.engine.trace import TurnTrace


def test_default_policy_attempts():
    policy = RetryPolicy()
    delays = list(policy.delays())
    assert delays[0] == 0.0
    assert delays[1:] == [0.35] * 8
    assert policy.max_attempts == 9


def test_backoff_policy():
    delays = list(RetryPolicy(window_ms=1000, interval_ms=100, backoff=2.0).delays())
    assert delays == [0.0, 0.1, 0.2, 0.4]


def test_policy_validation():
    with pytest.raises(ValueError):
        RetryPolicy(window_ms=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff=0.5)


def test_trace_rejects_illegal_transition():
    trace = TurnTrace()
    trace.transition("sent")
    trace.transition("reconciled")
    with pytest.raises(ValueError):
        trace.transition("awaiting_server")


def test_trace_finalize_without_dir():
    trace = TurnTrace(conversation_id="c-1", document_id="doc-1")
    trace.transition("failed", code="NETWORK_ERROR")
    trace.finalize()
    assert trace.data["final_state"] == "failed"
    assert trace.transitions[0]["code"] == "NETWORK_ERROR"


def test_trace_file_named_after_trace_id_when_unbound(tmp_path):
    trace = TurnTrace(trace_dir=tmp_path)
    trace.transition("failed")
    trace.finalize()
    assert (tmp_path / f"{trace.trace_id}.json").exists()


def test_trace_write_failure_does_not_raise(tmp_path):
    blocker = tmp_path / "traces"
    blocker.write_text("not a directory", encoding="utf-8")
    trace = TurnTrace(trace_dir=blocker)
    trace.transition("failed")
    trace.finalize()
    assert trace.data["final_state"] == "failed"
