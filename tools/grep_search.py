"""Search workspace file contents by regex pattern."""

import os
import re
from pathlib import Path

from core.validation import resolve_in_workspace, stays_under


def grep_search(
    pattern: str,
    path: str = ".",
    glob_filter: str = None,
    max_results: int = 50,
    workspace: str = ".",
    allow_absolute: bool = False,
) -> dict:
    """Search files for lines matching a regex pattern.

    Args:
        pattern: Regex pattern to search for (already guarded).
        path: Directory or single file to search, relative to the workspace.
        glob_filter: Optional glob to filter which files to search (e.g., "*.py").
        max_results: Maximum number of matches to return. Default 50.
        workspace: Root the path is resolved against.
        allow_absolute: Accept absolute paths outside the workspace.

    Returns:
        dict with ok, matches (list of dicts with file, line_number, line_text).
    """
    try:
        regex = re.compile(pattern)
    except re.error as e:
        return {"ok": False, "error": f"Invalid regex: {e}"}

    resolved = resolve_in_workspace(path, workspace, allow_absolute)
    if resolved is None:
        return {"ok": False, "error": f"Symlink escapes the workspace: {path}"}

    root = Path(resolved)
    base = os.path.realpath(os.fspath(workspace))
    # Symlinked files found by rglob must not lead out of the searched tree
    limit = base if stays_under(resolved, base) else resolved
    matches = []

    if root.is_file():
        files = [root]
    elif root.is_dir():
        files = sorted(root.rglob(glob_filter or "*"))
        files = [f for f in files if f.is_file() and stays_under(f, limit)]
    else:
        return {"ok": False, "error": f"Path not found: {path}"}

    for fpath in files:
        if len(matches) >= max_results:
            break

        # Skip binary files
        try:
            with open(fpath, "rb") as f:
                if b"\x00" in f.read(512):
                    continue
            text = fpath.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue

        for i, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append({
                    "file": os.path.relpath(fpath, base),
                    "line_number": i,
                    "line_text": line.rstrip(),
                })
                if len(matches) >= max_results:
                    break

    return {"ok": True, "matches": matches}
