"""Read file contents with line numbers, offset/limit and encoding detection."""

from pathlib import Path

from core.validation import resolve_in_workspace

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_READ_LINES = 500


def file_read(path: str, offset: int = 0, limit: int = 100, workspace: str = ".",
              allow_absolute: bool = False) -> dict:
    """Read file contents and return with line numbers.

    Args:
        path: Workspace-relative path (already guarded).
        offset: Line number to start from (0-based). Default 0.
        limit: Max lines to return. 0 means MAX_READ_LINES.
        workspace: Root the path is resolved against.
        allow_absolute: Accept absolute paths outside the workspace.

    Returns:
        dict with ok, content, lines_count, encoding, or ok=False with error.
    """
    resolved = resolve_in_workspace(path, workspace, allow_absolute)
    if resolved is None:
        return {"ok": False, "error": f"Symlink escapes the workspace: {path}"}

    p = Path(resolved)

    if not p.exists():
        return {"ok": False, "error": f"File not found: {path}"}

    if not p.is_file():
        return {"ok": False, "error": f"Not a file: {path}"}

    size = p.stat().st_size
    if size > MAX_FILE_SIZE:
        return {"ok": False, "error": f"File too large ({size:,} bytes, max {MAX_FILE_SIZE:,})"}

    # Binary detection: read first 8KB and check for null bytes
    try:
        with open(p, "rb") as f:
            head = f.read(8192)
        if b"\x00" in head:
            return {"ok": False, "error": f"Binary file detected ({size} bytes): {path}"}
    except PermissionError:
        return {"ok": False, "error": f"Permission denied: {path}"}

    # Try encodings in order
    content = None
    detected_encoding = None
    for enc in ("utf-8", "utf-8-sig", "latin-1"):
        try:
            content = p.read_text(encoding=enc)
            detected_encoding = enc
            break
        except (UnicodeDecodeError, ValueError):
            continue

    if content is None:
        return {"ok": False, "error": f"Could not decode file: {path}"}

    lines = content.splitlines()
    total_lines = len(lines)

    offset = max(0, int(offset))
    effective_limit = int(limit) if limit and int(limit) > 0 else MAX_READ_LINES
    effective_limit = min(effective_limit, MAX_READ_LINES)
    window = lines[offset:offset + effective_limit]

    numbered = [f"{offset + i + 1:>6}\t{line.rstrip()}" for i, line in enumerate(window)]

    result = {
        "ok": True,
        "content": "\n".join(numbered),
        "lines_count": total_lines,
        "encoding": detected_encoding,
    }
    if offset + len(window) < total_lines:
        result["truncated"] = True
        result["note"] = (
            f"Showing lines {offset + 1}-{offset + len(window)} of {total_lines}. "
            f"Use offset/limit to read remaining sections."
        )
    return result
