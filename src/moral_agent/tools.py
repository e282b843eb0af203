# tools.py
# Concrete collaborators behind the action executor, plus the read-only
# tool registry handed to delegated workers.
# The orchestrator imports TOOLS / TOOL_SCHEMAS and never calls these
# functions directly.

import logging
import re
import subprocess
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel

from moral_agent.sandbox import SecurityError
from moral_agent.storage import AgentStorage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Network fetch
# ---------------------------------------------------------------------------

ALLOWED_DOMAINS: tuple[str, ...] = (
    "api.anthropic.com",
    "github.com",
    "raw.githubusercontent.com",
    "en.wikipedia.org",
    "news.ycombinator.com",
)

FETCH_TIMEOUT_S = 10.0
FETCH_MAX_BYTES = 100 * 1024
USER_AGENT = "AutonomousMoralAgent/1.0"


class FetchResult(BaseModel):
    status: int
    body: str
    truncated: bool = False


def is_domain_allowed(url: str, allowed: tuple[str, ...] = ALLOWED_DOMAINS) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(host == domain or host.endswith("." + domain) for domain in allowed)


def safe_fetch(
    url: str,
    *,
    allowed: tuple[str, ...] = ALLOWED_DOMAINS,
    timeout_s: float = FETCH_TIMEOUT_S,
    max_bytes: int = FETCH_MAX_BYTES,
    client: httpx.Client | None = None,
) -> FetchResult | None:
    """
    GET an allow-listed URL with a timeout and a response-size cap.

    Returns None both for a disallowed domain and for a transport failure;
    only the log tells them apart.
    """
    if not is_domain_allowed(url, allowed):
        logger.warning("Fetch blocked — domain not in allowlist", extra={"data": {"url": url}})
        return None

    owns_client = client is None
    http = client or httpx.Client(timeout=timeout_s, follow_redirects=False)
    try:
        with http.stream("GET", url, headers={"User-Agent": USER_AGENT}, timeout=timeout_s) as response:
            buffer = bytearray()
            truncated = False
            for chunk in response.iter_bytes():
                buffer.extend(chunk)
                if len(buffer) > max_bytes:
                    del buffer[max_bytes:]
                    truncated = True
                    break
            body = buffer.decode(response.encoding or "utf-8", errors="replace")
            if truncated:
                body += f"\n[...truncated at {max_bytes // 1024}KB]"
            return FetchResult(status=response.status_code, body=body, truncated=truncated)
    except httpx.HTTPError as exc:
        logger.error("Fetch failed", extra={"data": {"url": url, "error": str(exc)}})
        return None
    finally:
        if owns_client:
            http.close()


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------

CHECKPOINT_TIMEOUT_S = 30


def sanitize_label(label: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", label)[:64] or "agent-checkpoint"


def create_checkpoint(label: str, agent_name: str = "") -> bool:
    """Ask the host to snapshot the VM. Best-effort: failure is logged, never raised."""
    safe = sanitize_label(label)
    command = ["sprite", "checkpoint", "create"]
    if agent_name:
        command += ["-s", agent_name]
    command += ["-comment", safe]

    try:
        subprocess.run(command, check=True, capture_output=True, timeout=CHECKPOINT_TIMEOUT_S)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error(
            "Checkpoint failed — sprite CLI may not be configured inside the VM",
            extra={"data": {"label": safe, "error": str(exc)}},
        )
        return False

    logger.info("Checkpoint created", extra={"data": {"label": safe}})
    return True


# ---------------------------------------------------------------------------
# AI disclosure
# ---------------------------------------------------------------------------

DISCLOSURE_TEXT = "This content was created by an autonomous AI entity."
DISCLOSURE_MARKER = "autonomous-ai-agent"
AI_META_TAG = f'<meta name="generator" content="{DISCLOSURE_MARKER}">'
AI_DISCLOSURE_FOOTER = (
    '\n<div style="margin-top:40px;padding:12px;border-top:1px solid #ccc;'
    'font-size:0.85em;color:#666;">\n'
    f"  {DISCLOSURE_TEXT}\n"
    "</div>"
)

MARKUP_EXTENSIONS: tuple[str, ...] = (".html", ".htm")


def is_markup(path: str) -> bool:
    return path.lower().endswith(MARKUP_EXTENSIONS)


def inject_disclosure(html: str) -> str:
    """Add the generator meta tag and visible footer. Idempotent."""
    if "<head>" in html and DISCLOSURE_MARKER not in html:
        html = html.replace("<head>", "<head>\n  " + AI_META_TAG, 1)

    if DISCLOSURE_TEXT not in html:
        if "</body>" in html:
            html = html.replace("</body>", AI_DISCLOSURE_FOOTER + "\n</body>", 1)
        else:
            html += AI_DISCLOSURE_FOOTER

    return html


# ---------------------------------------------------------------------------
# Read-only delegation tools
# ---------------------------------------------------------------------------

TOOL_OUTPUT_LIMIT = 50_000


def _denied(storage: AgentStorage, path: str) -> str | None:
    if not isinstance(path, str) or not path.strip():
        return "Error: no path provided."
    try:
        storage.sandbox.validate(path)
    except SecurityError as exc:
        return f"Access denied: {exc}"
    return None


def _tool_read_file(storage: AgentStorage, args: dict) -> str:
    path = args.get("path", "")
    denied = _denied(storage, path)
    if denied:
        return denied
    content = storage.read_validated(path)
    return content or "File not found or empty."


def _tool_list_files(storage: AgentStorage, args: dict) -> str:
    directory = args.get("directory", "")
    denied = _denied(storage, directory)
    if denied:
        return denied
    entries = storage.listdir(directory)
    return "\n".join(entries) if entries else "Directory empty or not found."


def run_tool(storage: AgentStorage, name: str, args: dict) -> str:
    tool = TOOLS.get(name)
    if tool is None:
        return f"Unknown tool: {name}"
    output = tool(storage, args)
    if len(output) > TOOL_OUTPUT_LIMIT:
        output = output[:TOOL_OUTPUT_LIMIT] + "\n... [truncated]"
    return output


TOOLS: dict[str, Callable[[AgentStorage, dict], str]] = {
    "read_file":  _tool_read_file,
    "list_files": _tool_list_files,
}

TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read a file from the entity filesystem. Use this to read existing pages, "
                "styles, essays, or any file for context."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Absolute path, e.g. /public/index.html or /self/identity.md",
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": "List files in a directory on the entity filesystem.",
            "parameters": {
                "type": "object",
                "properties": {
                    "directory": {
                        "type": "string",
                        "description": "Directory path, e.g. /public/games or /public/essays",
                    },
                },
                "required": ["directory"],
            },
        },
    },
]
