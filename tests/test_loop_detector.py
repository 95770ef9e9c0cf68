"""Tests for tool-call loop detection."""

import pytest

from core.loop_detector import NORMAL, LoopDetector, LoopVerdict, fingerprint_input


def feed(detector, calls, conversation="chat-1"):
    """Record (tool_name, tool_input, result_size) tuples in order."""
    for name, tool_input, size in calls:
        detector.record_call(conversation, name, tool_input, size)


def test_fingerprint_ignores_key_order():
    assert fingerprint_input({"a": 1, "b": 2}) == fingerprint_input({"b": 2, "a": 1})
    assert fingerprint_input({"a": 1}) != fingerprint_input({"a": 2})
    assert len(fingerprint_input({})) == 64


def test_normal_below_minimum_history():
    det = LoopDetector()
    feed(det, [("bash", {"command": "ls"}, 500)] * 9)
    assert det.detect("chat-1") == NORMAL


def test_exact_repeat_stops():
    det = LoopDetector()
    feed(det, [("bash", {"command": "ls"}, 500)] * 20)
    verdict = det.detect("chat-1")
    assert verdict.looping is True
    assert verdict.should_stop is True
    assert verdict.reason == "exact call bash repeated 20 times"


def test_same_tool_different_inputs_warns():
    det = LoopDetector()
    feed(det, [("bash", {"command": f"echo {i}"}, 500) for i in range(20)])
    verdict = det.detect("chat-1")
    assert verdict.looping is True
    assert verdict.should_stop is False
    assert verdict.warning == "bash called 20 times in a row"


# ============================================================
# Check order: exact repeat, then polling, then ping-pong
# ============================================================

def test_exact_repeat_reason_wins_over_polling():
    det = LoopDetector()
    feed(det, [("read_file", {"path": "a.txt"}, 0)] * 20)
    verdict = det.detect("chat-1")
    assert verdict.should_stop is True
    assert verdict.reason == "exact call read_file repeated 20 times"


def test_exact_repeat_warning_wins_over_polling_stop():
    det = LoopDetector()
    feed(det, [("read_file", {"path": f"{i}.txt"}, 0) for i in range(20)])
    verdict = det.detect("chat-1")
    assert verdict.looping is True
    assert verdict.should_stop is False
    assert verdict.warning == "read_file called 20 times in a row"


def test_exact_repeat_warning_wins_over_ping_pong_stop():
    det = LoopDetector()
    feed(det, [("bash", {"command": f"make step{i}"}, 500) for i in range(20)])
    verdict = det.detect("chat-1")
    assert verdict.should_stop is False
    assert verdict.reason != "alternating pattern detected"
    # With one other call in the window the bash run is judged as ping-pong
    det.clear_history("chat-1")
    calls = [("bash", {"command": f"make step{i}"}, 500) for i in range(19)]
    feed(det, [("glob", {"pattern": "*.py"}, 500)] + calls)
    assert det.detect("chat-1").reason == "alternating pattern detected"


def test_poll_without_progress_stops():
    det = LoopDetector()
    feed(det, [("grep", {"pattern": f"needle{i}"}, 5) for i in range(10)])
    verdict = det.detect("chat-1")
    assert verdict.should_stop is True
    assert verdict.reason == "repeated no-result polling"


def test_poll_with_results_is_normal():
    det = LoopDetector()
    feed(det, [("grep", {"pattern": f"needle{i}"}, 5000) for i in range(10)])
    assert det.detect("chat-1") == NORMAL


def test_ping_pong_stops():
    det = LoopDetector()
    calls = [("glob", {"pattern": f"*.{i}"}, 5000) for i in range(6)]
    calls += [
        ("read_file", {"path": "a.py"}, 5000),
        ("write_file", {"path": "a.py", "content": "x"}, 5000),
        ("read_file", {"path": "a.py"}, 5000),
        ("write_file", {"path": "a.py", "content": "y"}, 5000),
    ]
    feed(det, calls)
    verdict = det.detect("chat-1")
    assert verdict.should_stop is True
    assert verdict.reason == "alternating pattern detected"


def test_detect_is_idempotent():
    det = LoopDetector()
    feed(det, [("bash", {"command": "ls"}, 500)] * 20)
    first = det.detect("chat-1")
    assert det.detect("chat-1") == first
    assert len(det.history("chat-1")) == 20


def test_clear_history_resets_verdict():
    det = LoopDetector()
    feed(det, [("bash", {"command": "ls"}, 500)] * 20)
    det.clear_history("chat-1")
    assert det.detect("chat-1") == NORMAL
    assert det.history("chat-1") == []


def test_ring_buffer_capacity():
    det = LoopDetector()
    feed(det, [("bash", {"command": f"echo {i}"}, 500) for i in range(60)])
    history = det.history("chat-1")
    assert len(history) == 50
    assert history[0].input_fingerprint == fingerprint_input({"command": "echo 10"})


def test_conversations_are_isolated():
    det = LoopDetector()
    feed(det, [("bash", {"command": "ls"}, 500)] * 20, conversation="a")
    assert det.detect("b") == NORMAL
    assert det.conversations() == ["a"]


def test_record_call_validates_result_size():
    det = LoopDetector()
    for bad in (-1, "10", True, 1.5):
        with pytest.raises(ValueError):
            det.record_call("c", "bash", {}, bad)
    with pytest.raises(TypeError):
        det.record_call("c", None, {}, 1)


def test_set_thresholds():
    det = LoopDetector()
    det.set_thresholds(5, 8)
    feed(det, [("bash", {"command": "ls"}, 500)] * 8)
    assert det.detect("chat-1").reason == "exact call bash repeated 8 times"
    with pytest.raises(ValueError):
        det.set_thresholds(10, 100)
    with pytest.raises(ValueError):
        det.set_thresholds(0, 20)


def test_verdict_to_dict():
    assert NORMAL.to_dict() == {"looping": False, "warning": None, "should_stop": False, "reason": None}
    assert LoopVerdict(looping=True, warning="w").to_dict()["warning"] == "w"
