"""Tool-call loop detection.

Keeps a bounded history of executed tool calls per conversation and flags
runaway behaviour before the next call is attempted:

  exact-repeat       the same tool for a whole window (stop if the input is
                     identical too, otherwise a warning)
  poll-no-progress   read/search tools that keep coming back near-empty
  ping-pong          a fixed set of alternating tool sequences

Checks run in that order; the first non-normal verdict wins. The detector
never resets itself: on a stop verdict the caller must clear_history(),
otherwise the same verdict fires again on the next detect().
"""

import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass, asdict


# History capacity per conversation (oldest evicted first)
MAX_HISTORY = 50

# Below this many records every verdict is NORMAL
WARNING_THRESHOLD = 10

# Window size, and the repeat count that triggers exact-repeat
CRITICAL_THRESHOLD = 20

# Poll-no-progress thresholds
POLL_MIN_WINDOW = 8
POLL_MIN_CALLS = 6
POLL_MIN_EMPTY = 4
EMPTY_RESULT_SIZE = 100

POLL_TOOLS = {"search", "web_search", "web_fetch", "glob", "grep", "read_file", "list_directory"}

# Fixed, reviewed set. Matched as a contiguous run inside the last 6 calls.
PING_PONG_WINDOW = 6
PING_PONG_PATTERNS = (
    ("read_file", "write_file", "read_file", "write_file"),
    ("bash", "bash", "bash", "bash"),
    ("search", "read_file", "search", "read_file"),
)


@dataclass(frozen=True)
class ToolCallRecord:
    """One executed tool call."""
    tool_name: str
    input_fingerprint: str
    timestamp: float
    result_size: int


@dataclass(frozen=True)
class LoopVerdict:
    looping: bool
    warning: str | None = None
    should_stop: bool = False
    reason: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


NORMAL = LoopVerdict(looping=False)


def fingerprint_input(tool_input) -> str:
    """Stable SHA-256 fingerprint of a tool input (key order does not matter)."""
    canonical = json.dumps(tool_input, sort_keys=True, separators=(",", ":"),
                           ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _contains_run(actual: list, pattern: tuple) -> bool:
    """True if `pattern` occurs as a contiguous run inside `actual`."""
    n = len(pattern)
    return any(tuple(actual[i:i + n]) == pattern for i in range(len(actual) - n + 1))


class LoopDetector:
    """Per-conversation ring buffers of ToolCallRecord plus loop heuristics.

    One in-flight call per conversation is assumed; buffers are never
    shared between conversations.
    """

    def __init__(
        self,
        max_history: int = MAX_HISTORY,
        warning_threshold: int = WARNING_THRESHOLD,
        critical_threshold: int = CRITICAL_THRESHOLD,
    ):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.max_history = max_history
        self._history: dict = {}
        self.set_thresholds(warning_threshold, critical_threshold)

    def set_thresholds(self, warning: int, critical: int) -> None:
        """Change the minimum history length and the repeat window."""
        if warning < 1 or critical < 1:
            raise ValueError("thresholds must be positive")
        if critical > self.max_history:
            raise ValueError(f"critical threshold {critical} exceeds history capacity "
                             f"{self.max_history}")
        self.warning_threshold = warning
        self.critical_threshold = critical

    def record_call(self, conversation_id, tool_name: str, tool_input, result_size: int) -> ToolCallRecord:
        """Append an executed call to the conversation's ring buffer.

        Args:
            conversation_id: Opaque key (chat id, session id).
            tool_name: Name of the executed tool.
            tool_input: The structured input (fingerprinted, not stored).
            result_size: Length of the result handed back to the model.
        """
        if not isinstance(tool_name, str):
            raise TypeError(f"tool_name must be a str, got {type(tool_name).__name__}")
        if isinstance(result_size, bool) or not isinstance(result_size, int) or result_size < 0:
            raise ValueError(f"result_size must be a non-negative int, got {result_size!r}")

        record = ToolCallRecord(
            tool_name=tool_name,
            input_fingerprint=fingerprint_input(tool_input),
            timestamp=time.time(),
            result_size=result_size,
        )
        buffer = self._history.setdefault(conversation_id, deque(maxlen=self.max_history))
        buffer.append(record)
        return record

    def detect(self, conversation_id) -> LoopVerdict:
        """Classify the conversation's recent history. Pure: no state changes."""
        history = list(self._history.get(conversation_id, ()))
        if len(history) < self.warning_threshold:
            return NORMAL

        recent = history[-self.critical_threshold:]
        return (self._detect_exact_repeat(recent)
                or self._detect_poll_no_progress(recent)
                or self._detect_ping_pong(recent)
                or NORMAL)

    def _detect_exact_repeat(self, recent: list) -> LoopVerdict | None:
        if len(recent) < self.critical_threshold:
            return None
        tool = recent[0].tool_name
        if any(r.tool_name != tool for r in recent):
            return None

        first = recent[0].input_fingerprint
        same_inputs = sum(1 for r in recent if r.input_fingerprint == first)
        if same_inputs >= self.critical_threshold:
            return LoopVerdict(
                looping=True,
                should_stop=True,
                reason=f"exact call {tool} repeated {same_inputs} times",
            )
        return LoopVerdict(
            looping=True,
            warning=f"{tool} called {len(recent)} times in a row",
        )

    def _detect_poll_no_progress(self, recent: list) -> LoopVerdict | None:
        if len(recent) < POLL_MIN_WINDOW:
            return None
        polls = [r for r in recent if r.tool_name in POLL_TOOLS]
        empty = [r for r in polls if r.result_size < EMPTY_RESULT_SIZE]
        if len(polls) >= POLL_MIN_CALLS and len(empty) >= POLL_MIN_EMPTY:
            return LoopVerdict(
                looping=True,
                warning=f"{len(empty)} of {len(polls)} read/search calls returned almost nothing",
                should_stop=True,
                reason="repeated no-result polling",
            )
        return None

    def _detect_ping_pong(self, recent: list) -> LoopVerdict | None:
        if len(recent) < PING_PONG_WINDOW:
            return None
        names = [r.tool_name for r in recent[-PING_PONG_WINDOW:]]
        for pattern in PING_PONG_PATTERNS:
            if _contains_run(names, pattern):
                return LoopVerdict(
                    looping=True,
                    warning=f"alternating {' -> '.join(pattern)}",
                    should_stop=True,
                    reason="alternating pattern detected",
                )
        return None

    def clear_history(self, conversation_id) -> None:
        """Forget a conversation. Required after a stop verdict."""
        self._history.pop(conversation_id, None)

    def history(self, conversation_id) -> list[ToolCallRecord]:
        """Oldest-first copy of the conversation's records."""
        return list(self._history.get(conversation_id, ()))

    def conversations(self) -> list:
        return list(self._history)
