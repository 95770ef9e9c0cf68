"""Structured audit logging for toolgate.

Logs every mediation decision, loop verdict, tool execution and config
reload to a JSONL (JSON Lines) file. Each line is a self-contained JSON
object.

Log files are written to the audit directory as
.toolgate-audit-YYYYMMDD-HHMMSS.jsonl.
"""

import json
import os
import time
from datetime import datetime, timezone


def _clip(value, limit: int) -> str:
    text = "" if value is None else str(value)
    return text[:limit]


class AuditLog:
    """Append-only structured logger for mediation events."""

    def __init__(self, log_dir: str = "."):
        """Initialize audit logger.

        Args:
            log_dir: Directory to write log files. Defaults to cwd.
        """
        self.log_dir = log_dir
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        self.log_path = os.path.join(log_dir, f".toolgate-audit-{ts}.jsonl")
        self._session_id = ts
        self._event_count = 0
        self._start_time = time.time()
        self._file = None

    def _ensure_open(self):
        """Lazily open the log file on first write."""
        if self._file is None:
            os.makedirs(self.log_dir, exist_ok=True)
            self._file = open(self.log_path, "a", encoding="utf-8")

    def _write(self, event_type: str, data: dict) -> None:
        """Write a single event to the log."""
        self._ensure_open()
        self._event_count += 1
        entry = {
            "seq": self._event_count,
            "ts": datetime.now(timezone.utc).isoformat(),
            "elapsed_s": round(time.time() - self._start_time, 2),
            "event": event_type,
            **data,
        }
        self._file.write(json.dumps(entry, separators=(",", ":"), default=str) + "\n")
        self._file.flush()

    def session_start(self, workspace: str, policy: str, profile: str,
                      config_file: str = "") -> None:
        """Log session start with the effective policy."""
        self._write("session_start", {
            "session_id": self._session_id,
            "workspace": workspace,
            "policy": policy,
            "profile": profile,
            "config_file": config_file or "",
        })

    def session_end(self, decisions: int, denials: int) -> None:
        """Log session end with summary stats."""
        self._write("session_end", {
            "decisions": decisions,
            "denials": denials,
            "duration_s": round(time.time() - self._start_time, 1),
        })
        self.close()

    def decision(self, tool: str, allowed: bool, error_kind: str = "",
                 message: str = "", conversation=None) -> None:
        """Log a mediation decision."""
        self._write("decision", {
            "tool": tool,
            "allowed": allowed,
            "error_kind": error_kind or "",
            "message": _clip(message, 300),
            "conversation": _clip(conversation, 100),
        })

    def loop_warning(self, conversation, warning: str) -> None:
        self._write("loop_warning", {
            "conversation": _clip(conversation, 100),
            "warning": _clip(warning, 300),
        })

    def loop_stop(self, conversation, reason: str) -> None:
        self._write("loop_stop", {
            "conversation": _clip(conversation, 100),
            "reason": _clip(reason, 300),
        })

    def rate_limited(self, user, reset_in: float) -> None:
        self._write("rate_limited", {
            "user": _clip(user, 100),
            "reset_in_s": round(reset_in, 1),
        })

    def tool_call(self, name: str, args: str, ok: bool, duration_ms: int,
                  error: str = "") -> None:
        """Log a tool execution."""
        self._write("tool_call", {
            "tool": name,
            "args": _clip(args, 500),
            "ok": ok,
            "duration_ms": duration_ms,
            "error": _clip(error, 300),
        })

    def config_reload(self, path: str, policy: str, profile: str) -> None:
        self._write("config_reload", {
            "path": path,
            "policy": policy,
            "profile": profile,
        })

    def error(self, source: str, message: str) -> None:
        """Log an error."""
        self._write("error", {
            "source": source,
            "message": _clip(message, 500),
        })

    def close(self) -> None:
        """Flush and close the log file."""
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None

    @property
    def event_count(self) -> int:
        return self._event_count

    @property
    def session_id(self) -> str:
        return self._session_id
