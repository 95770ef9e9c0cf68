"""Tool policy engine: decides whether a named tool or a shell command may run.

Command decisions (check_command / is_command_allowed) run in this order:
  1. normalize (Unicode fold, collapse whitespace, lowercase for comparison)
  2. blocked substrings   (every mode)
  3. obfuscation detectors   (every mode)
  4. Command Guard (injection)   (every mode)
  5. mode dispatch: allow-all | block-destructive | allowlist-only

Steps 2-4 run before the mode so a misconfigured allowlist can never
re-expose a known-dangerous command. The allowlist match is token-based,
never substring-based: "ls" does not match "lsblk /dev/sda".

Tool decisions (is_tool_allowed) gate whole named tools: interpreter tools
are disabled outright, then tool block/allow lists, then per-profile groups.

PolicyConfig is an immutable snapshot. Callers pass it in explicitly; a
config reload replaces the snapshot, it never mutates one.
"""

import re
from dataclasses import dataclass

from core.validation import (
    ErrorKind, ValidationResult, detector, first_match,
    guard_command, normalize_command,
)


# ============================================================
# Policy modes and defaults
# ============================================================

ALLOWLIST_ONLY = "allowlist-only"
BLOCK_DESTRUCTIVE = "block-destructive"
ALLOW_ALL = "allow-all"

POLICY_MODES = (ALLOWLIST_ONLY, BLOCK_DESTRUCTIVE, ALLOW_ALL)

DEFAULT_BLOCKED_COMMANDS = (
    "rm -rf /",
    "dd if=",
    ":(){:|:&};:",
    "curl | sh",
    "wget | sh",
    "mkfs",
    "fdisk",
    "> /dev/sda",
)

# Raw interpreter tools. No string-level guard can sanitize an interpreter,
# so these are refused regardless of input.
DEFAULT_DISABLED_TOOLS = ("nodejs", "python_exec", "run_code", "execute_code", "eval")

TOOL_GROUPS = {
    "runtime": ["bash", "exec", "process"],
    "filesystem": ["read_file", "write_file", "list_directory", "glob", "grep", "edit_file"],
    "web": ["search", "web_search", "web_fetch", "curl"],
    "messaging": ["message", "send_message"],
    "system": ["get_system_info", "get_env", "get_config"],
    "development": ["git", "npm", "node", "python", "docker"],
}

PROFILES = {
    "minimal": {
        "runtime": False, "filesystem": False, "web": False,
        "messaging": False, "system": True, "development": False,
    },
    "coding": {
        "runtime": True, "filesystem": True, "web": True,
        "messaging": False, "system": True, "development": True,
    },
    "messaging": {
        "runtime": False, "filesystem": False, "web": True,
        "messaging": True, "system": True, "development": False,
    },
    "full": {
        "runtime": True, "filesystem": True, "web": True,
        "messaging": True, "system": True, "development": True,
    },
}

DEFAULT_PROFILE = "coding"


def _ordered_set(values) -> tuple:
    """Drop duplicates, keep first occurrence, return a tuple."""
    if isinstance(values, str):
        raise TypeError("expected a sequence of strings, got a single str")
    seen = []
    for v in values:
        if not isinstance(v, str):
            raise TypeError(f"policy entries must be str, got {type(v).__name__}")
        if v not in seen:
            seen.append(v)
    return tuple(seen)


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable policy snapshot read by every decision."""
    mode: str = BLOCK_DESTRUCTIVE
    allowed: tuple = ()
    blocked: tuple = DEFAULT_BLOCKED_COMMANDS
    profile: str = DEFAULT_PROFILE
    allowed_tools: tuple = ()
    blocked_tools: tuple = ()
    disabled_tools: tuple = DEFAULT_DISABLED_TOOLS

    def __post_init__(self):
        if self.mode not in POLICY_MODES:
            raise ValueError(f"Invalid policy mode: {self.mode!r}. "
                             f"Expected one of: {', '.join(POLICY_MODES)}")
        if self.profile not in PROFILES:
            raise ValueError(f"Invalid tool profile: {self.profile!r}. "
                             f"Expected one of: {', '.join(PROFILES)}")
        for name in ("allowed", "blocked", "allowed_tools", "blocked_tools", "disabled_tools"):
            object.__setattr__(self, name, _ordered_set(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: dict) -> "PolicyConfig":
        """Build a snapshot from a plain dict; missing keys keep defaults."""
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "allowed": list(self.allowed),
            "blocked": list(self.blocked),
            "profile": self.profile,
            "allowed_tools": list(self.allowed_tools),
            "blocked_tools": list(self.blocked_tools),
            "disabled_tools": list(self.disabled_tools),
        }


DEFAULT_POLICY = PolicyConfig()


# ============================================================
# Detector tables
# ============================================================

OBFUSCATION_DETECTORS = (
    detector(ErrorKind.OBFUSCATION_DETECTED, "base64 decode",
             r'\bbase64\s+(?:-\w*d\w*|--decode)\b'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "eval with command substitution",
             r'\beval\b.*(?:\$\(|`)'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "/dev/tcp reverse shell", r'/dev/(?:tcp|udp)/'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "netcat exec",
             r'\b(?:nc|ncat|netcat)\b.*\s-[a-z]*[ec]\b'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "interactive shell", r'\b(?:bash|sh|zsh)\s+-i\b'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "substitution wrapping a fetch",
             r'(?:\$\(|`)\s*(?:curl|wget)\b'),
    detector(ErrorKind.OBFUSCATION_DETECTED, "remote script piped to shell",
             r'\b(?:curl|wget)\b[^|]*\|\s*(?:ba|z)?sh\b'),
)

# Only consulted in block-destructive mode.
DESTRUCTIVE_DETECTORS = (
    detector(ErrorKind.POLICY_DENIED, "recursive delete of root, home or everything",
             r'\brm\s+(?:-[-\w]+\s+)*(?:-\w*[rR]\w*|--recursive)\s+(?:-[-\w]+\s+)*(?:/|~|\*|\.)(?:\s|$)'),
    detector(ErrorKind.POLICY_DENIED, "filesystem format", r'\bmkfs\b'),
    detector(ErrorKind.POLICY_DENIED, "raw device write", r'\bdd\b.*\bof=/dev/'),
    detector(ErrorKind.POLICY_DENIED, "block device redirection", r'>\s*/dev/(?:sd|nvme|hd|disk)'),
    detector(ErrorKind.POLICY_DENIED, "fork bomb", r':\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}'),
    detector(ErrorKind.POLICY_DENIED, "shutdown/reboot", r'\b(?:shutdown|reboot|halt|poweroff)\b'),
    detector(ErrorKind.POLICY_DENIED, "world-writable root", r'\bchmod\s+-R\s+777\s+/(?:\s|$)'),
)

# Chaining, piping and backgrounding. "2>&1" and "&>" are redirections, not operators.
_CONTROL_OPERATOR_RE = re.compile(r'&&|\|\||[;|\n\r]|(?<![<>&])&(?![<>&])')


def _comparable(command: str) -> str:
    return normalize_command(command).lower()


# ============================================================
# Command decisions
# ============================================================

def check_command(command: str, config: PolicyConfig = DEFAULT_POLICY) -> ValidationResult:
    """Decide whether a shell command may run under `config`.

    Returns a ValidationResult whose value is the original (unlowered)
    command on success. Denials carry PolicyDenied, ObfuscationDetected,
    InjectionPattern or EmptyInput.
    """
    if not isinstance(command, str):
        raise TypeError(f"command must be a str, got {type(command).__name__}")
    raw = command.strip()
    if not raw:
        return ValidationResult.deny(ErrorKind.EMPTY_INPUT,
                                     "Invalid command: empty or whitespace only")

    normalized = _comparable(raw)

    for entry in config.blocked:
        needle = _comparable(entry)
        if needle and needle in normalized:
            return ValidationResult.deny(ErrorKind.POLICY_DENIED,
                                         f"Blocked: command matches blocked entry '{entry}'")

    hit = first_match(OBFUSCATION_DETECTORS, normalized, raw)
    if hit is not None:
        return ValidationResult.deny(ErrorKind.OBFUSCATION_DETECTED,
                                     f"Blocked: obfuscation detected ({hit.label})")

    guarded = guard_command(raw)
    if not guarded.ok:
        return guarded

    if config.mode == ALLOW_ALL:
        return ValidationResult.allow(raw)

    if config.mode == BLOCK_DESTRUCTIVE:
        hit = first_match(DESTRUCTIVE_DETECTORS, normalized)
        if hit is not None:
            return ValidationResult.deny(ErrorKind.POLICY_DENIED,
                                         f"Blocked: destructive command ({hit.label})")
        return ValidationResult.allow(raw)

    # allowlist-only
    if _CONTROL_OPERATOR_RE.search(raw) or _CONTROL_OPERATOR_RE.search(normalized):
        return ValidationResult.deny(
            ErrorKind.POLICY_DENIED,
            "Blocked: shell operators (&&, ||, ;, |, &, newline) are not permitted "
            "in allowlist mode. Use one command at a time.",
        )

    tokens = normalized.split()
    for entry in config.allowed:
        prefix = _comparable(entry).split()
        if prefix and tokens[:len(prefix)] == prefix:
            return ValidationResult.allow(raw)

    return ValidationResult.deny(ErrorKind.POLICY_DENIED,
                                 "Command not in allowlist. Only approved commands are permitted.")


def is_command_allowed(command: str, config: PolicyConfig = DEFAULT_POLICY) -> bool:
    """Boolean form of check_command."""
    return check_command(command, config).ok


# ============================================================
# Tool decisions
# ============================================================

def is_tool_allowed(tool_name: str, config: PolicyConfig = DEFAULT_POLICY) -> dict:
    """Gate an entire named tool.

    Returns:
        {"allowed": True} or {"allowed": False, "reason": str}.
    """
    if not isinstance(tool_name, str):
        raise TypeError(f"tool_name must be a str, got {type(tool_name).__name__}")

    if tool_name in config.disabled_tools:
        return {"allowed": False,
                "reason": f"Tool '{tool_name}' is disabled: raw code execution cannot be sanitized"}

    if any(blocked in tool_name for blocked in config.blocked_tools if blocked):
        return {"allowed": False, "reason": f"Tool '{tool_name}' is blocked"}

    if config.allowed_tools:
        listed = any(tool_name == a or tool_name.startswith(a + "_")
                     for a in config.allowed_tools)
        if not listed:
            return {"allowed": False, "reason": f"Tool '{tool_name}' not in allowlist"}

    groups = PROFILES[config.profile]
    for group, tools in TOOL_GROUPS.items():
        if tool_name in tools and not groups.get(group, False):
            return {"allowed": False,
                    "reason": f"Tool group '{group}' is disabled in profile '{config.profile}'"}

    return {"allowed": True}


def tools_in_group(group: str) -> list[str]:
    return list(TOOL_GROUPS.get(group, []))


def all_groups() -> list[str]:
    return list(TOOL_GROUPS)
