"""Find workspace files by glob pattern, newest first."""

import os
from pathlib import Path

from core.validation import resolve_in_workspace, stays_under

MAX_MATCHES = 50


def glob_search(pattern: str, path: str = ".", workspace: str = ".",
                allow_absolute: bool = False) -> dict:
    """Find files matching a glob pattern.

    Args:
        pattern: Glob pattern (e.g., "**/*.py", "*.txt"), already guarded.
        path: Directory to search from, relative to the workspace.
        workspace: Root the path is resolved against.
        allow_absolute: Accept absolute paths outside the workspace.

    Returns:
        dict with ok, matches (workspace-relative, newest first), and
        truncated when more than MAX_MATCHES files matched.
    """
    resolved = resolve_in_workspace(path, workspace, allow_absolute)
    if resolved is None:
        return {"ok": False, "error": f"Symlink escapes the workspace: {path}"}

    root = Path(resolved)

    if not root.exists():
        return {"ok": False, "error": f"Directory not found: {path}"}

    if not root.is_dir():
        return {"ok": False, "error": f"Not a directory: {path}"}

    base = os.path.realpath(os.fspath(workspace))
    limit = base if stays_under(resolved, base) else resolved

    try:
        matches = [p for p in root.glob(pattern) if p.is_file() and stays_under(p, limit)]
    except (ValueError, NotImplementedError) as e:
        return {"ok": False, "error": f"Invalid glob pattern: {e}"}

    # Sort by modification time, newest first
    matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)

    result = {
        "ok": True,
        "matches": [os.path.relpath(m, base) for m in matches[:MAX_MATCHES]],
    }
    if len(matches) > MAX_MATCHES:
        result["truncated"] = True
        result["total"] = len(matches)
    return result
