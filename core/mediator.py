"""Tool-call mediation: the single entry point between a model and its tools.

A turn goes through begin_turn() once (rate limit, loop verdict), then each
proposed call goes through check_tool_call() before execution and
record_result() after it. run() does check, execute, format and record in
one step against a ToolRegistry.

Every denial comes back as a refusal dict:
    {"ok": False, "error_kind": str, "message": str, "refusal": str}
where `refusal` is the sentence to show the user. Nothing here raises for
a denied call.
"""

import json

from core.config import PolicyStore
from core.loop_detector import LoopDetector
from core.rate_limiter import RateLimiter
from core.tool_policy import check_command, is_tool_allowed
from core.validation import (
    DEFAULT_MAX_PATTERN_LENGTH, ErrorKind, guard_path, guard_pattern, guard_url,
)


# Input fields checked on every call, whatever the tool
PATH_FIELDS = ("path",)
PATTERN_FIELDS = ("pattern", "glob_filter")
COMMAND_FIELDS = ("command",)
URL_FIELDS = ("url",)

# Bound by build_registry; a model must never supply these
RESERVED_FIELDS = ("workspace", "allow_absolute", "timeout_seconds")

_REFUSALS = {
    ErrorKind.INVALID_ENCODING: "I can't use that input: it is malformed ({message}).",
    ErrorKind.EMPTY_INPUT: "I can't run that: a required value is empty.",
    ErrorKind.PATH_TRAVERSAL: "That path leads outside the project folder, so I won't touch it.",
    ErrorKind.OUTSIDE_WORKSPACE: "That path is outside the project folder. Please use a relative path.",
    ErrorKind.SENSITIVE_PATH: "That location holds credentials or system files, so it is off limits.",
    ErrorKind.INJECTION_PATTERN: "This command has been blocked for safety: {message}.",
    ErrorKind.TOO_LONG: "That pattern is too long to search with safely.",
    ErrorKind.PATTERN_COMPLEXITY: "That pattern is too complex to search with safely.",
    ErrorKind.INVALID_URL: "That doesn't look like a valid web address.",
    ErrorKind.UNSUPPORTED_SCHEME: "Only http and https addresses can be fetched.",
    ErrorKind.PRIVATE_ADDRESS: "That address points at a private or internal network, so I won't fetch it.",
    ErrorKind.POLICY_DENIED: "This action is not permitted by the current policy: {message}",
    ErrorKind.OBFUSCATION_DETECTED: "This command looks deliberately disguised, so it has been blocked.",
    ErrorKind.LOOP_STOP: "Detected a loop and stopped: {message}. Let's try something different!",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment before trying again.",
}


def format_refusal(kind: str, message: str = "") -> str:
    """User-facing sentence for a denial of the given kind."""
    template = _REFUSALS.get(kind, "This action was refused: {message}")
    return template.format(message=(message or "").rstrip("."))


def _result_size(result: dict) -> int:
    """Size of what the tool produced, without the result framing."""
    payload = result.get("data") if result.get("ok") else result.get("error", "")
    return len(json.dumps(payload, default=str))


def refusal(kind: str, message: str) -> dict:
    return {
        "ok": False,
        "error_kind": kind,
        "message": message,
        "refusal": format_refusal(kind, message),
    }


class ToolMediator:
    """Applies guards, tool policy, loop detection and rate limits to tool calls."""

    def __init__(
        self,
        workspace_root: str = ".",
        policy_store: PolicyStore = None,
        loop_detector: LoopDetector = None,
        rate_limiter: RateLimiter = None,
        audit=None,
        allow_absolute_paths: bool = False,
        max_pattern_length: int = DEFAULT_MAX_PATTERN_LENGTH,
        tool_timeout: int = 30,
    ):
        self.workspace_root = workspace_root
        self.policy_store = policy_store or PolicyStore(audit=audit)
        self.loop_detector = loop_detector or LoopDetector()
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.allow_absolute_paths = allow_absolute_paths
        self.max_pattern_length = max_pattern_length
        self.tool_timeout = tool_timeout
        self.decisions = 0
        self.denials = 0

    @classmethod
    def from_config(cls, config: dict, audit=None) -> "ToolMediator":
        """Build a mediator from a dict returned by load_config()."""
        limiter = None
        if config.get("rate_limit"):
            limiter = RateLimiter(max_requests=config.get("rate_limit_per_minute", 20))
        return cls(
            workspace_root=config.get("workspace") or ".",
            policy_store=PolicyStore.from_config(config, audit=audit),
            loop_detector=LoopDetector(
                max_history=config.get("loop_history", 50),
                warning_threshold=config.get("loop_min_history", 10),
                critical_threshold=config.get("loop_window", 20),
            ),
            rate_limiter=limiter,
            audit=audit,
            allow_absolute_paths=config.get("allow_absolute_paths", False),
            max_pattern_length=config.get("max_pattern_length", DEFAULT_MAX_PATTERN_LENGTH),
            tool_timeout=config.get("tool_timeout", 30),
        )

    # ----------------------------------------------------------------
    # Audit helpers
    # ----------------------------------------------------------------

    def _deny(self, conversation_id, tool_name, kind: str, message: str) -> dict:
        self.decisions += 1
        self.denials += 1
        if self.audit:
            self.audit.decision(str(tool_name), False, kind, message, conversation_id)
        return refusal(kind, message)

    def _loop_check(self, conversation_id):
        """Return a refusal on a stop verdict (history cleared), else the warning or None."""
        verdict = self.loop_detector.detect(conversation_id)
        if verdict.should_stop:
            self.loop_detector.clear_history(conversation_id)
            if self.audit:
                self.audit.loop_stop(conversation_id, verdict.reason)
            return refusal(ErrorKind.LOOP_STOP, verdict.reason), None
        if verdict.warning:
            if self.audit:
                self.audit.loop_warning(conversation_id, verdict.warning)
            return None, verdict.warning
        return None, None

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    def begin_turn(self, conversation_id, user_id=None) -> dict:
        """Gate a new turn: per-user rate limit, then the loop verdict.

        Returns {"ok": True} (with "warning" when the detector warns) or a refusal.
        """
        if self.rate_limiter is not None and user_id is not None:
            if not self.rate_limiter.is_allowed(user_id):
                reset_in = self.rate_limiter.info(user_id)["reset_in"]
                if self.audit:
                    self.audit.rate_limited(user_id, reset_in)
                return refusal(ErrorKind.RATE_LIMITED,
                               f"Rate limit exceeded, resets in {reset_in:.0f}s")

        stop, warning = self._loop_check(conversation_id)
        if stop is not None:
            return stop
        result = {"ok": True}
        if warning:
            result["warning"] = warning
        return result

    def check_tool_call(self, conversation_id, tool_name, tool_input) -> dict:
        """Decide whether a proposed tool call may run.

        Args:
            conversation_id: Key of the conversation's loop history.
            tool_name: Tool the model wants to call.
            tool_input: The model's arguments, a dict.

        Returns:
            {"ok": True, "input": <sanitized copy>} plus "warning" when the
            loop detector warns, or a refusal dict.
        """
        stop, warning = self._loop_check(conversation_id)
        if stop is not None:
            self.decisions += 1
            self.denials += 1
            return stop

        if not isinstance(tool_name, str) or not tool_name:
            return self._deny(conversation_id, tool_name, ErrorKind.INVALID_ENCODING,
                              "tool name must be a non-empty string")
        if not isinstance(tool_input, dict):
            return self._deny(conversation_id, tool_name, ErrorKind.INVALID_ENCODING,
                              f"tool input must be an object, got {type(tool_input).__name__}")

        policy = self.policy_store.current
        gate = is_tool_allowed(tool_name, policy)
        if not gate["allowed"]:
            return self._deny(conversation_id, tool_name, ErrorKind.POLICY_DENIED, gate["reason"])

        reserved = [k for k in RESERVED_FIELDS if k in tool_input]
        if reserved:
            return self._deny(conversation_id, tool_name, ErrorKind.POLICY_DENIED,
                              f"argument '{reserved[0]}' cannot be set by the caller")

        sanitized = dict(tool_input)
        for field, value in tool_input.items():
            guard = self._guard_for(field, policy)
            if guard is None or value is None:
                continue
            if not isinstance(value, str):
                return self._deny(conversation_id, tool_name, ErrorKind.INVALID_ENCODING,
                                  f"field '{field}' must be a string")
            result = guard(value)
            if not result.ok:
                return self._deny(conversation_id, tool_name, result.error_kind, result.message)
            sanitized[field] = result.value

        self.decisions += 1
        if self.audit:
            self.audit.decision(tool_name, True, conversation=conversation_id)
        decision = {"ok": True, "input": sanitized}
        if warning:
            decision["warning"] = warning
        return decision

    def _guard_for(self, field: str, policy):
        if field in COMMAND_FIELDS:
            return lambda v: check_command(v, policy)
        if field in PATH_FIELDS:
            return lambda v: guard_path(v, self.workspace_root, self.allow_absolute_paths)
        if field in PATTERN_FIELDS:
            return lambda v: guard_pattern(v, self.max_pattern_length)
        if field in URL_FIELDS:
            return guard_url
        return None

    def record_result(self, conversation_id, tool_name: str, tool_input, result_size: int) -> None:
        """Feed an executed call into the loop detector."""
        self.loop_detector.record_call(conversation_id, tool_name, tool_input, result_size)

    def run(self, conversation_id, tool_name, tool_input, registry) -> dict:
        """Check, execute, format and record one tool call.

        Returns:
            {"ok", "output", "result"} where output is the text for the model,
            or a refusal dict with "output" set to the refusal sentence.
        """
        decision = self.check_tool_call(conversation_id, tool_name, tool_input)
        if not decision["ok"]:
            return {**decision, "output": decision["refusal"]}

        result = registry.execute_tool(tool_name, decision["input"], self.tool_timeout)
        output = registry.format_result(tool_name, result)
        self.record_result(conversation_id, tool_name, decision["input"], _result_size(result))

        if self.audit:
            self.audit.tool_call(tool_name, str(decision["input"]), result["ok"],
                                 result.get("duration_ms", 0), result.get("error", ""))

        response = {"ok": result["ok"], "output": output, "result": result}
        if "warning" in decision:
            response["warning"] = decision["warning"]
        return response

    def close(self) -> None:
        """Write the session summary to the audit log, if one is attached."""
        if self.audit:
            self.audit.session_end(self.decisions, self.denials)
