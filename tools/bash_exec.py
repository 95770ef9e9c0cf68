"""Execute an already-approved shell command in the workspace."""

import subprocess
import time

# Per-stream cap on captured output
MAX_OUTPUT_BYTES = 1024 * 1024


def truncate_output(text: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    """Clip output to `limit` bytes, noting how much was dropped."""
    if not text:
        return ""
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    kept = encoded[:limit].decode("utf-8", errors="ignore")
    return kept + f"\n... [truncated, {len(encoded) - limit:,} bytes omitted]"


def bash_exec(command: str, timeout_seconds: int = 30, workspace: str = ".") -> dict:
    """Execute a shell command and return stdout, stderr, and return code.

    The command must already have passed check_command; no policy is
    applied here.

    Args:
        command: The shell command string to execute.
        timeout_seconds: Max seconds before killing the process. Default 30.
        workspace: Working directory for the process.

    Returns:
        dict with ok, stdout, stderr, returncode, duration_ms.
    """
    start = time.time()

    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=workspace,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
        duration_ms = int((time.time() - start) * 1000)

        return {
            "ok": result.returncode == 0,
            "stdout": truncate_output(result.stdout),
            "stderr": truncate_output(result.stderr),
            "returncode": result.returncode,
            "duration_ms": duration_ms,
        }

    except subprocess.TimeoutExpired as e:
        duration_ms = int((time.time() - start) * 1000)
        stdout = e.stdout.decode("utf-8", "replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        return {
            "ok": False,
            "stdout": truncate_output(stdout),
            "stderr": truncate_output(stderr),
            "returncode": -1,
            "duration_ms": duration_ms,
            "error": f"Command timed out after {timeout_seconds}s.",
        }

    except OSError as e:
        duration_ms = int((time.time() - start) * 1000)
        return {
            "ok": False,
            "stdout": "",
            "stderr": str(e),
            "returncode": -1,
            "duration_ms": duration_ms,
            "error": f"OS error: {e}",
        }
