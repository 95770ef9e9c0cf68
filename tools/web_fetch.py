"""Fetch and extract text content from a public URL."""

import re
import html
from urllib.request import HTTPRedirectHandler, Request, build_opener
from urllib.error import URLError, HTTPError

from core.validation import guard_url


# Hard cap on response size (512KB) to prevent context flooding
MAX_RESPONSE_BYTES = 512 * 1024

FETCH_TIMEOUT = 30


class RedirectBlocked(HTTPError):
    """A redirect pointed at a URL that guard_url refuses."""

    def __init__(self, url, code, headers, fp, check):
        super().__init__(url, code, f"Redirect blocked: {check.message}", headers, fp)
        self.check = check


class GuardedRedirectHandler(HTTPRedirectHandler):
    """Run guard_url on every redirect target before it is requested."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        check = guard_url(newurl)
        if not check.ok:
            raise RedirectBlocked(newurl, code, headers, fp, check)
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def _strip_html(raw_html: str) -> str:
    """Convert HTML to readable plain text."""
    # Remove script and style blocks entirely
    text = re.sub(r"<script[^>]*>.*?</script>", "", raw_html, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.DOTALL | re.IGNORECASE)
    # Convert common block elements to newlines
    text = re.sub(r"<(br|hr|/p|/div|/h[1-6]|/li|/tr)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    # Collapse whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _decode(raw: bytes, content_type: str) -> str:
    encoding = "utf-8"
    match = re.search(r"charset=([\w-]+)", content_type)
    if match:
        encoding = match.group(1)
    try:
        return raw.decode(encoding, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def web_fetch(url: str, max_lines: int = 200) -> dict:
    """Fetch a URL and return its text content.

    The URL is re-checked here, and each redirect target is checked before
    it is requested, so a public page cannot bounce the fetch to a private
    host.

    Args:
        url: The URL to fetch (must be public http or https).
        max_lines: Max lines of text to return. Default 200.

    Returns:
        dict with ok, content, url, lines_count, or ok=False with error.
    """
    check = guard_url(url)
    if not check.ok:
        return {"ok": False, "error": check.message, "error_kind": check.error_kind}

    opener = build_opener(GuardedRedirectHandler)
    try:
        req = Request(check.value, headers={"User-Agent": "toolgate/1.0 (web_fetch)"})
        with opener.open(req, timeout=FETCH_TIMEOUT) as resp:
            final_url = resp.geturl()
            content_type = resp.headers.get("Content-Type", "")
            raw = resp.read(MAX_RESPONSE_BYTES)
    except RedirectBlocked as e:
        e.close()
        return {"ok": False, "error": e.reason, "error_kind": e.check.error_kind}
    except HTTPError as e:
        return {"ok": False, "error": f"HTTP {e.code}: {e.reason}"}
    except URLError as e:
        return {"ok": False, "error": f"URL error: {e.reason}"}
    except TimeoutError:
        return {"ok": False, "error": f"Request timed out ({FETCH_TIMEOUT}s)"}
    except (OSError, ValueError) as e:
        return {"ok": False, "error": f"Fetch failed: {e}"}

    text = _decode(raw, content_type)

    stripped = text.lstrip()
    if "html" in content_type.lower() or stripped.startswith("<!") or stripped.startswith("<html"):
        text = _strip_html(text)

    lines = text.splitlines()
    total_lines = len(lines)
    truncated = total_lines > max_lines
    lines = lines[:max_lines]

    result = {
        "ok": True,
        "content": "\n".join(lines),
        "url": final_url,
        "lines_count": total_lines,
    }
    if truncated:
        result["truncated"] = True
        result["note"] = (
            f"Output capped at {max_lines} lines (page has {total_lines}). "
            f"Use max_lines to read more."
        )
    return result
