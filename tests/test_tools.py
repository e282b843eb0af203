import subprocess
import httpx
import pytest
from unittest.mock import patch

from moral_agent.tools import (
    AI_META_TAG,
    DISCLOSURE_TEXT,
    TOOL_OUTPUT_LIMIT,
    create_checkpoint,
    inject_disclosure,
    is_domain_allowed,
    is_markup,
    run_tool,
    safe_fetch,
    sanitize_label,
)

# ---------------------------------------------------------------------------
# Domain allow-list
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("url, allowed", [
    ("https://en.wikipedia.org/wiki/Ethics", True),
    ("https://github.com/python/cpython", True),
    ("https://gist.github.com/x", True),
    ("http://news.ycombinator.com/", True),
    ("https://github.com.evil.example/", False),
    ("https://evilgithub.com/", False),
    ("ftp://github.com/file", False),
    ("https://example.com/", False),
    ("not a url", False),
])
def test_is_domain_allowed(url, allowed):
    assert is_domain_allowed(url) is allowed

# ---------------------------------------------------------------------------
# safe_fetch
# ---------------------------------------------------------------------------

def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))

def test_safe_fetch_returns_status_and_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text="hello world")

    result = safe_fetch("https://en.wikipedia.org/wiki/X", client=_client(handler))
    assert result.status == 200
    assert result.body == "hello world"
    assert not result.truncated
    assert seen[0].headers["User-Agent"].startswith("AutonomousMoralAgent")

def test_safe_fetch_caps_response_size():
    handler = lambda request: httpx.Response(200, content=b"x" * 5000)
    result = safe_fetch("https://github.com/", client=_client(handler), max_bytes=2048)
    assert result.truncated
    assert result.body.startswith("x" * 2048)
    assert result.body.endswith("[...truncated at 2KB]")

def test_safe_fetch_disallowed_domain_never_requests():
    calls = []
    result = safe_fetch("https://example.com/", client=_client(lambda r: calls.append(r)))
    assert result is None
    assert calls == []

def test_safe_fetch_transport_error_returns_none():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert safe_fetch("https://github.com/", client=_client(handler)) is None

def test_safe_fetch_non_2xx_is_still_a_result():
    result = safe_fetch("https://github.com/missing", client=_client(lambda r: httpx.Response(404, text="nope")))
    assert result.status == 404

# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------

def test_sanitize_label():
    assert sanitize_label("before refactor!") == "before-refactor-"
    assert len(sanitize_label("a" * 200)) == 64
    assert sanitize_label("") == "agent-checkpoint"

@patch("moral_agent.tools.subprocess.run")
def test_create_checkpoint_invokes_cli(mock_run):
    assert create_checkpoint("nightly snapshot", agent_name="alpha") is True
    command = mock_run.call_args.args[0]
    assert command == ["sprite", "checkpoint", "create", "-s", "alpha", "-comment", "nightly-snapshot"]

@patch("moral_agent.tools.subprocess.run")
def test_create_checkpoint_failure_returns_false(mock_run):
    mock_run.side_effect = FileNotFoundError("sprite")
    assert create_checkpoint("x") is False

    mock_run.side_effect = subprocess.CalledProcessError(1, ["sprite"])
    assert create_checkpoint("x") is False

# ---------------------------------------------------------------------------
# Disclosure
# ---------------------------------------------------------------------------

def test_inject_disclosure_adds_meta_and_footer():
    html = "<html><head><title>t</title></head><body><p>hi</p></body></html>"
    result = inject_disclosure(html)
    assert AI_META_TAG in result
    assert DISCLOSURE_TEXT in result
    assert result.index(DISCLOSURE_TEXT) < result.index("</body>")

def test_inject_disclosure_is_idempotent():
    for html in (
        "<html><head></head><body>x</body></html>",
        "<p>fragment without head or body</p>",
        "",
    ):
        once = inject_disclosure(html)
        assert inject_disclosure(once) == once

def test_is_markup():
    assert is_markup("/public/index.html")
    assert is_markup("/public/OLD.HTM")
    assert not is_markup("/public/style.css")

# ---------------------------------------------------------------------------
# Read-only delegation tools
# ---------------------------------------------------------------------------

def test_read_file_tool(storage):
    storage.write("/self/identity.md", "I am an entity.")
    assert run_tool(storage, "read_file", {"path": "/self/identity.md"}) == "I am an entity."
    assert run_tool(storage, "read_file", {"path": "/self/missing.md"}) == "File not found or empty."

def test_read_file_tool_denies_outside_zones(storage):
    assert run_tool(storage, "read_file", {"path": "/etc/passwd"}).startswith("Access denied")
    assert run_tool(storage, "read_file", {"path": "/../../etc/passwd"}).startswith("Access denied")
    assert run_tool(storage, "read_file", {}) == "Error: no path provided."

def test_list_files_tool(storage):
    storage.write("/public/games/snake.html", "<p>snake</p>")
    assert run_tool(storage, "list_files", {"directory": "/public/games"}) == "snake.html"
    assert run_tool(storage, "list_files", {"directory": "/public/none"}) == "Directory empty or not found."

def test_tool_output_truncated(storage):
    storage.write("/self/long.md", "y" * (TOOL_OUTPUT_LIMIT + 10))
    output = run_tool(storage, "read_file", {"path": "/self/long.md"})
    assert output.endswith("... [truncated]")
    assert len(output) == TOOL_OUTPUT_LIMIT + len("\n... [truncated]")

def test_unknown_tool(storage):
    assert run_tool(storage, "write_file", {"path": "/self/x"}) == "Unknown tool: write_file"
