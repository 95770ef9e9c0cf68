"""Write string content to a file in the workspace, with parent creation and backup."""

import shutil
import time
from pathlib import Path

from core.validation import resolve_in_workspace

MAX_WRITE_BYTES = 10 * 1024 * 1024


def file_write(path: str, content: str, workspace: str = ".", allow_absolute: bool = False) -> dict:
    """Write content to a file, creating parent directories if needed.

    If the file already exists, a backup is created with a .bak.{timestamp} suffix.

    Args:
        path: Workspace-relative path (already guarded).
        content: String content to write.
        workspace: Root the path is resolved against.
        allow_absolute: Accept absolute paths outside the workspace.

    Returns:
        dict with ok, path, bytes_written, backup_path (if backup was made), or error.
    """
    if not isinstance(content, str):
        return {"ok": False, "error": f"content must be a string, got {type(content).__name__}"}

    size = len(content.encode("utf-8"))
    if size > MAX_WRITE_BYTES:
        return {"ok": False, "error": f"Content too large ({size:,} bytes, max {MAX_WRITE_BYTES:,})"}

    resolved = resolve_in_workspace(path, workspace, allow_absolute)
    if resolved is None:
        return {"ok": False, "error": f"Symlink escapes the workspace: {path}"}

    p = Path(resolved)
    backup_path = None

    try:
        p.parent.mkdir(parents=True, exist_ok=True)

        if p.exists() and p.is_file():
            ts = int(time.time())
            backup = p.with_suffix(f"{p.suffix}.bak.{ts}")
            shutil.copy2(str(p), str(backup))
            backup_path = str(backup)

        written = p.write_text(content, encoding="utf-8")

        result = {"ok": True, "path": path, "bytes_written": written}
        if backup_path:
            result["backup_path"] = backup_path
        return result

    except PermissionError:
        return {"ok": False, "error": f"Permission denied: {path}"}
    except IsADirectoryError:
        return {"ok": False, "error": f"Is a directory: {path}"}
    except OSError as e:
        return {"ok": False, "error": f"OS error: {e}"}
