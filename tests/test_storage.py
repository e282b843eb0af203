import logging
import pytest

from moral_agent.sandbox import PathSandbox, SecurityError
from moral_agent.storage import AGENT_DIRECTORIES, AgentStorage, ResourceExceeded

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def test_init_directories_creates_zones_and_placeholder(tmp_path):
    storage = AgentStorage(PathSandbox(tmp_path))
    storage.init_directories()

    for directory in AGENT_DIRECTORIES:
        assert (tmp_path / directory.lstrip("/")).is_dir()
    index = (tmp_path / "public" / "index.html").read_text()
    assert "autonomous AI entity" in index

def test_init_directories_keeps_existing_index(tmp_path):
    storage = AgentStorage(PathSandbox(tmp_path))
    storage.write("/public/index.html", "<h1>mine</h1>")
    storage.init_directories()
    assert storage.read("/public/index.html") == "<h1>mine</h1>"

# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def test_write_and_read(storage):
    storage.write("/self/identity.md", "I am.")
    assert storage.read("/self/identity.md") == "I am."
    assert storage.size("/self/identity.md") == 5

def test_append_adds_timestamp_separator(storage):
    storage.write("/self/journal.md", "first")
    storage.append("/self/journal.md", "second")
    text = storage.read("/self/journal.md")
    assert text.startswith("first\n--- [")
    assert text.endswith("] ---\nsecond")

def test_write_over_ceiling_raises_without_mutation(tmp_path):
    storage = AgentStorage(PathSandbox(tmp_path), max_file_bytes=100)
    with pytest.raises(ResourceExceeded):
        storage.write("/self/big.md", "x" * 101)
    assert not (tmp_path / "self" / "big.md").exists()

def test_append_ceiling_counts_resulting_size(tmp_path):
    storage = AgentStorage(PathSandbox(tmp_path), max_file_bytes=100)
    storage.write("/self/journal.md", "a" * 80)
    with pytest.raises(ResourceExceeded, match="Appending"):
        storage.write("/self/journal.md", "b" * 30, mode="append")
    assert storage.read("/self/journal.md") == "a" * 80

def test_ceiling_counts_bytes_not_characters(tmp_path):
    storage = AgentStorage(PathSandbox(tmp_path), max_file_bytes=10)
    with pytest.raises(ResourceExceeded):
        storage.write("/self/emoji.md", "é" * 6)

def test_write_rejects_protected_path(storage):
    with pytest.raises(SecurityError):
        storage.write("/founding-document.md", "rewritten")

def test_journal_warning_logged(tmp_path, caplog):
    storage = AgentStorage(PathSandbox(tmp_path), journal_warn_bytes=10)
    with caplog.at_level(logging.WARNING, logger="moral_agent.storage"):
        storage.write("/self/journal.md", "long enough to warn")
    assert any("Journal exceeds" in record.message for record in caplog.records)

def test_write_bytes(storage, tmp_path):
    storage.write_bytes("/public/images/a.png", b"\x89PNG")
    assert (tmp_path / "public" / "images" / "a.png").read_bytes() == b"\x89PNG"

# ---------------------------------------------------------------------------
# Reads, listing, moves
# ---------------------------------------------------------------------------

def test_read_missing_returns_none(storage):
    assert storage.read("/self/nothing.md") is None
    assert storage.read("/self") is None

def test_listdir_sorted_and_missing(storage):
    storage.write("/projects/b.txt", "b")
    storage.write("/projects/a.txt", "a")
    assert storage.listdir("/projects") == ["a.txt", "b.txt"]
    assert storage.listdir("/projects/missing") == []

def test_move_and_delete(storage):
    storage.write("/comms/inbox/m.md", "hello")
    storage.move("/comms/inbox/m.md", "/comms/inbox/read/m.md")
    assert not storage.exists("/comms/inbox/m.md")
    assert storage.read("/comms/inbox/read/m.md") == "hello"

    storage.delete("/comms/inbox/read/m.md")
    assert not storage.exists("/comms/inbox/read/m.md")
