"""Input guards for tool calls proposed by the model.

Every guard takes untrusted text and returns a ValidationResult:
- guard_path: confine a file path to the workspace root, block sensitive paths
- guard_command: reject shell injection shapes before any allowlist logic
- guard_pattern: bound glob/grep patterns (length, traversal, backtracking)
- guard_url: public http(s) hosts only (SSRF defense)

Denial is an expected outcome and is returned, not raised. Only programmer
misuse (a non-string where a string is required) raises TypeError.
"""

import ipaddress
import os
import re
import socket
import unicodedata
from dataclasses import dataclass, asdict
from urllib.parse import urlsplit


class ErrorKind:
    """Denial categories shared by every guard and by the policy engine."""
    INVALID_ENCODING = "InvalidEncoding"
    EMPTY_INPUT = "EmptyInput"
    PATH_TRAVERSAL = "PathTraversal"
    OUTSIDE_WORKSPACE = "OutsideWorkspace"
    SENSITIVE_PATH = "SensitivePath"
    INJECTION_PATTERN = "InjectionPattern"
    TOO_LONG = "TooLong"
    PATTERN_COMPLEXITY = "PatternComplexity"
    INVALID_URL = "InvalidUrl"
    UNSUPPORTED_SCHEME = "UnsupportedScheme"
    PRIVATE_ADDRESS = "PrivateAddress"
    POLICY_DENIED = "PolicyDenied"
    OBFUSCATION_DETECTED = "ObfuscationDetected"
    LOOP_STOP = "LoopStop"
    RATE_LIMITED = "RateLimited"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a guard. `value` is set on success, `error_kind` on denial."""
    ok: bool
    value: str | None = None
    error_kind: str | None = None
    message: str | None = None

    @classmethod
    def allow(cls, value: str) -> "ValidationResult":
        return cls(ok=True, value=value)

    @classmethod
    def deny(cls, kind: str, message: str) -> "ValidationResult":
        return cls(ok=False, error_kind=kind, message=message)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class Detector:
    """One entry of a detector table: a labelled, compiled pattern."""
    kind: str
    label: str
    pattern: re.Pattern

    def test(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def detector(kind: str, label: str, regex: str, flags: int = re.IGNORECASE) -> Detector:
    """Compile a Detector. Tables are built from these at import time."""
    return Detector(kind=kind, label=label, pattern=re.compile(regex, flags))


def first_match(detectors, *texts: str) -> Detector | None:
    """Return the first detector (in table order) that fires on any text."""
    for det in detectors:
        for text in texts:
            if det.test(text):
                return det
    return None


def _require_str(value, name: str) -> None:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")


def normalize_command(command: str) -> str:
    """Normalize a command string before pattern checks.

    Strips zero-width characters, folds Unicode to ASCII (NFKD), joins
    backslash-newline continuations and collapses whitespace. This closes
    regex evasion via homoglyphs and multiline tricks.
    """
    command = re.sub(r'[\u200b-\u200f\u2028-\u202f\u2060\ufeff]', '', command)
    command = unicodedata.normalize('NFKD', command)
    command = command.encode('ascii', errors='ignore').decode('ascii')
    command = command.replace('\\\n', '')
    return re.sub(r'\s+', ' ', command).strip()


# ============================================================
# Path Guard
# ============================================================

# Segment-anchored, matched against the normalized path with "/" separators.
_SENSITIVE_PATH_RE = [
    re.compile(p, re.IGNORECASE) for p in (
        r'(?:^|/)proc(?:/|$)',                       # process info
        r'(?:^|/)sys(?:/|$)',                        # kernel interfaces
        r'(?:^|/)dev(?:/|$)',                        # device nodes
        r'(?:^|/)etc/(?:shadow|passwd|sudoers|gshadow)(?:/|$)',
        r'(?:^|/)\.ssh(?:/|$)',
        r'(?:^|/)\.gnupg(?:/|$)',
        r'(?:^|/)\.aws(?:/|$)',
        r'(?:^|/)\.azure(?:/|$)',
        r'(?:^|/)\.kube(?:/|$)',
        r'(?:^|/)\.docker(?:/|$)',
        r'(?:^|/)\.config/gcloud(?:/|$)',
    )
]


def _is_parent_ref(rel: str) -> bool:
    return rel == os.pardir or rel.startswith(os.pardir + os.sep)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def guard_path(path: str, workspace_root, allow_absolute: bool = False) -> ValidationResult:
    """Normalize a file path and confine it to the workspace root.

    The check is purely lexical, so it works for paths that do not exist
    yet (writes). On success the value is the workspace-relative path;
    callers join it against workspace_root themselves.

    Args:
        path: Path proposed by the model.
        workspace_root: Directory all relative file operations live under.
        allow_absolute: Keep absolute paths as-is instead of re-rooting them.

    Returns:
        ValidationResult with the normalized path, or a denial.
    """
    _require_str(path, "path")
    root = os.path.normpath(os.path.abspath(os.fspath(workspace_root)))

    if "\0" in path:
        return ValidationResult.deny(ErrorKind.INVALID_ENCODING,
                                     "Invalid path: contains null bytes")
    if not path.strip():
        return ValidationResult.deny(ErrorKind.EMPTY_INPUT, "Invalid path: empty")

    normalized = os.path.normpath(path)

    if os.path.isabs(normalized) and not allow_absolute:
        rel = os.path.relpath(normalized, root)
        if _is_parent_ref(rel):
            return ValidationResult.deny(
                ErrorKind.OUTSIDE_WORKSPACE,
                "Absolute paths outside the workspace are not allowed. Use relative paths.",
            )
        normalized = rel

    # normpath leaves only leading ".." segments, but "a/../b" style input
    # must still be allowed when it lands inside the root.
    if os.pardir in normalized.split(os.sep) and not os.path.isabs(normalized):
        resolved = os.path.normpath(os.path.join(root, normalized))
        if not _within(resolved, root):
            return ValidationResult.deny(
                ErrorKind.PATH_TRAVERSAL,
                "Path traversal detected: access outside the workspace is not allowed",
            )
        normalized = os.path.relpath(resolved, root)

    slashed = normalized.replace("\\", "/")
    for pattern in _SENSITIVE_PATH_RE:
        if pattern.search(slashed):
            return ValidationResult.deny(ErrorKind.SENSITIVE_PATH,
                                         f"Access to sensitive paths is not allowed: {path}")

    return ValidationResult.allow(normalized)


# ============================================================
# Command Guard
# ============================================================

INJECTION_DETECTORS = (
    detector(ErrorKind.INJECTION_PATTERN, "command substitution $()", r'\$\('),
    detector(ErrorKind.INJECTION_PATTERN, "backtick substitution", r'`[^`]*`'),
    detector(ErrorKind.INJECTION_PATTERN, "process substitution", r'[<>]\('),
    detector(ErrorKind.INJECTION_PATTERN, "chained rm",
             r'(?:;|\||&&|\n)\s*rm\b'),
    detector(ErrorKind.INJECTION_PATTERN, "chained network fetch",
             r'(?:;|\||&&|\n)\s*(?:curl|wget)\b'),
    detector(ErrorKind.INJECTION_PATTERN, "chained cat (exfiltration)",
             r'(?:;|\||&&|\n)\s*cat\b'),
    detector(ErrorKind.INJECTION_PATTERN, "device redirection", r'[<>]\s*/dev/'),
)


def guard_command(command: str) -> ValidationResult:
    """Reject shell injection shapes in a free-form command.

    Runs before, and independently of, any allowlist. Both the raw command
    and its normalized form are scanned.
    """
    _require_str(command, "command")
    stripped = command.strip()
    if not stripped:
        return ValidationResult.deny(ErrorKind.EMPTY_INPUT,
                                     "Invalid command: empty or whitespace only")

    hit = first_match(INJECTION_DETECTORS, stripped, normalize_command(stripped))
    if hit is not None:
        return ValidationResult.deny(
            ErrorKind.INJECTION_PATTERN,
            f"Command contains a dangerous injection pattern ({hit.label})",
        )
    return ValidationResult.allow(stripped)


# ============================================================
# Pattern Guard
# ============================================================

DEFAULT_MAX_PATTERN_LENGTH = 500
MAX_PATTERN_NESTING = 10
MAX_REPETITION_BOUND = 100

BACKTRACKING_DETECTORS = (
    detector(ErrorKind.PATTERN_COMPLEXITY, "quantified group",
             r'\(\?[:=!].*\)\s*[*+]', 0),
)

_REPETITION_RE = re.compile(r'\{(\d+)(?:,(\d*))?\}')
_OPEN_REPEAT_RE = re.compile(r'\{\d+,')


def _repeats_at(pattern: str, i: int) -> bool:
    """True when an unbounded-style quantifier (*, +, {n,) starts at index i."""
    return pattern[i:i + 1] in ("*", "+") or _OPEN_REPEAT_RE.match(pattern, i) is not None


def _has_nested_quantifier(pattern: str) -> bool:
    """True when a quantified group holds a quantifier at any depth.

    Catches (a+)+, ((a+))+, ((a)+)+ and (a|(b+))*. Escapes and character
    classes are skipped.
    """
    inner = []  # one flag per open group: a quantifier appeared inside
    in_class = False
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
        elif ch == "(":
            inner.append(False)
        elif ch == ")":
            had_quantifier = inner.pop() if inner else False
            quantified = _repeats_at(pattern, i + 1)
            if had_quantifier and quantified:
                return True
            if inner and (had_quantifier or quantified):
                inner[-1] = True
        elif inner and _repeats_at(pattern, i):
            inner[-1] = True
        i += 1
    return False


def _nesting_depth(pattern: str) -> int:
    """Deepest nesting of (...) groups and [...] classes, honouring escapes."""
    depth = deepest = 0
    in_class = False
    escaped = False
    for ch in pattern:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif in_class:
            if ch == "]":
                in_class = False
                depth -= 1
        elif ch == "[":
            in_class = True
            depth += 1
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        deepest = max(deepest, depth)
    return deepest


def guard_pattern(pattern: str, max_length: int = DEFAULT_MAX_PATTERN_LENGTH) -> ValidationResult:
    """Bound a user-supplied glob or grep pattern.

    A conservative complexity cap against catastrophic backtracking and
    traversal through the pattern, not a proof of regex safety.
    """
    _require_str(pattern, "pattern")
    if not pattern:
        return ValidationResult.deny(ErrorKind.EMPTY_INPUT, "Invalid pattern: empty")

    if len(pattern) > max_length:
        return ValidationResult.deny(ErrorKind.TOO_LONG,
                                     f"Pattern too long (max {max_length} characters)")

    if ".." in pattern:
        return ValidationResult.deny(ErrorKind.PATH_TRAVERSAL,
                                     "Pattern contains path traversal")

    if _nesting_depth(pattern) > MAX_PATTERN_NESTING:
        return ValidationResult.deny(ErrorKind.PATTERN_COMPLEXITY,
                                     "Pattern too complex (too many nested groups)")

    if _has_nested_quantifier(pattern):
        return ValidationResult.deny(ErrorKind.PATTERN_COMPLEXITY,
                                     "Pattern contains a dangerous regex construct (nested quantifier)")

    hit = first_match(BACKTRACKING_DETECTORS, pattern)
    if hit is not None:
        return ValidationResult.deny(ErrorKind.PATTERN_COMPLEXITY,
                                     f"Pattern contains a dangerous regex construct ({hit.label})")

    for m in _REPETITION_RE.finditer(pattern):
        bounds = [int(b) for b in m.groups() if b]
        if any(b > MAX_REPETITION_BOUND for b in bounds):
            return ValidationResult.deny(
                ErrorKind.PATTERN_COMPLEXITY,
                f"Repetition range too large: {m.group(0)} (max {MAX_REPETITION_BOUND})",
            )

    return ValidationResult.allow(pattern)


# ============================================================
# URL Guard
# ============================================================

ALLOWED_SCHEMES = {"http", "https"}

_BLOCKED_NETWORKS = [
    ipaddress.ip_network(n) for n in (
        "127.0.0.0/8",      # loopback
        "10.0.0.0/8",       # RFC1918
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",   # link-local (cloud metadata)
        "0.0.0.0/8",        # "this network"
        "::/96",            # unspecified, loopback, IPv4-compatible
        "fe80::/10",
        "fc00::/7",         # unique-local
    )
]

_LEGACY_IPV4_RE = re.compile(r'^(?:0x[0-9a-f]+|[0-9]+)(?:\.(?:0x[0-9a-f]+|[0-9]+)){0,3}$')


def _parse_ip_literal(host: str):
    """Parse host as an IP literal, including legacy IPv4 forms. None if not one."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # 2130706433, 127.1, 0x7f.0.0.1 all reach loopback through inet_aton
    if _LEGACY_IPV4_RE.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def _is_private_host(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    addr = _parse_ip_literal(host)
    if addr is None:
        return False
    mapped = getattr(addr, "ipv4_mapped", None)
    candidates = [addr] if mapped is None else [addr, mapped]
    return any(a in net for a in candidates for net in _BLOCKED_NETWORKS
               if a.version == net.version)


def guard_url(url: str) -> ValidationResult:
    """Restrict outbound fetches to public http(s) hosts.

    Only the literal hostname is inspected; no DNS resolution is done, so a
    public name that resolves to a private address is not caught here.
    """
    _require_str(url, "url")
    candidate = url.strip()
    if not candidate:
        return ValidationResult.deny(ErrorKind.INVALID_URL, "Invalid URL: empty")

    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        return ValidationResult.deny(ErrorKind.INVALID_URL, f"Invalid URL format: {e}")

    scheme = parts.scheme.lower()
    if not scheme:
        return ValidationResult.deny(ErrorKind.INVALID_URL, f"Invalid URL format: {url}")
    if scheme not in ALLOWED_SCHEMES:
        return ValidationResult.deny(ErrorKind.UNSUPPORTED_SCHEME,
                                     f"Scheme '{scheme}' not allowed. Use http or https.")
    if not hostname:
        return ValidationResult.deny(ErrorKind.INVALID_URL, f"No hostname in URL: {url}")

    host = hostname.lower().rstrip(".")
    if _is_private_host(host):
        return ValidationResult.deny(ErrorKind.PRIVATE_ADDRESS,
                                     f"Access to private/internal host '{host}' is not allowed")

    return ValidationResult.allow(candidate)


def resolve_in_workspace(path: str, workspace_root, allow_absolute: bool = False) -> str | None:
    """Join a guarded relative path to the root and resolve symlinks.

    Returns the absolute real path, or None if a symlink leads outside the
    workspace. Executors call this after guard_path has already passed.
    With allow_absolute, an absolute path is resolved but not confined.
    """
    if allow_absolute and os.path.isabs(path):
        return os.path.realpath(path)
    root = os.path.realpath(os.fspath(workspace_root))
    full = os.path.realpath(os.path.join(root, path))
    if not _within(full, root):
        return None
    return full


def stays_under(path, root) -> bool:
    """True when the real location of path is root or below it."""
    return _within(os.path.realpath(os.fspath(path)), os.path.realpath(os.fspath(root)))
