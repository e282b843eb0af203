# storage.py
# Agent filesystem mediator.
#
# Every file the agent touches goes through here, and every path through
# PathSandbox. Writes enforce the per-file size ceiling before anything is
# written, including the resulting size of an append.

import logging
from pathlib import Path

from moral_agent.models import utc_now
from moral_agent.sandbox import PathSandbox

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1 * 1024 * 1024
JOURNAL_WARN_BYTES = 500 * 1024

AGENT_DIRECTORIES: tuple[str, ...] = (
    "/self/logs",
    "/self/awakenings",
    "/self/decisions/pending",
    "/self/tasks",
    "/self/execution-logs",
    "/self/fetch-results",
    "/projects",
    "/income",
    "/comms/inbox",
    "/comms/outbox",
    "/public/images",
)

PLACEHOLDER_INDEX = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta name="generator" content="autonomous-ai-agent">
  <title>Autonomous Entity</title>
</head>
<body>
  <h1>This entity is initialising.</h1>
  <p>An autonomous moral agent is awakening. Check back soon.</p>
  <div class="disclosure">This content was created by an autonomous AI entity.</div>
</body>
</html>
"""


class ResourceExceeded(Exception):
    """Raised when a write would push a file past the size ceiling."""


class AgentStorage:
    def __init__(
        self,
        sandbox: PathSandbox,
        max_file_bytes: int = MAX_FILE_BYTES,
        journal_warn_bytes: int = JOURNAL_WARN_BYTES,
    ) -> None:
        self.sandbox = sandbox
        self.max_file_bytes = max_file_bytes
        self.journal_warn_bytes = journal_warn_bytes

    # ------------------------------------------------------------------
    # Reads: relaxed pipeline
    # ------------------------------------------------------------------

    def read(self, logical_path: str) -> str | None:
        """Return file text, or None if it is missing or unreadable."""
        physical = self.sandbox.resolve_read(logical_path)
        try:
            return physical.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def read_validated(self, logical_path: str) -> str | None:
        physical = self.sandbox.validate(logical_path)
        try:
            return physical.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def listdir(self, logical_dir: str) -> list[str]:
        physical = self.sandbox.resolve_read(logical_dir)
        try:
            return sorted(entry.name for entry in physical.iterdir())
        except OSError:
            return []

    def exists(self, logical_path: str) -> bool:
        return self.sandbox.resolve_read(logical_path).exists()

    def size(self, logical_path: str) -> int:
        try:
            return self.sandbox.resolve_read(logical_path).stat().st_size
        except OSError:
            return 0

    # ------------------------------------------------------------------
    # Writes: full pipeline
    # ------------------------------------------------------------------

    def write(self, logical_path: str, content: str, mode: str = "overwrite") -> Path:
        physical = self.sandbox.validate(logical_path)
        incoming = len(content.encode("utf-8"))

        if incoming > self.max_file_bytes:
            raise ResourceExceeded(
                f"Content exceeds {self.max_file_bytes} byte limit for: {logical_path}"
            )

        physical.parent.mkdir(parents=True, exist_ok=True)

        if mode == "append":
            existing = physical.stat().st_size if physical.exists() else 0
            if existing + incoming > self.max_file_bytes:
                raise ResourceExceeded(
                    f"Appending would exceed {self.max_file_bytes} byte limit for: {logical_path}"
                )
            with open(physical, "a", encoding="utf-8") as fh:
                fh.write(content)
        else:
            physical.write_text(content, encoding="utf-8")

        if "journal" in logical_path:
            size = physical.stat().st_size
            if size > self.journal_warn_bytes:
                logger.warning(
                    "Journal exceeds warning size — consider archiving older entries",
                    extra={"data": {"path": logical_path, "size": size}},
                )
        return physical

    def append(self, logical_path: str, content: str) -> Path:
        header = f"\n--- [{utc_now()}] ---\n"
        return self.write(logical_path, header + content, mode="append")

    def write_bytes(self, logical_path: str, data: bytes) -> Path:
        physical = self.sandbox.validate(logical_path)
        if len(data) > self.max_file_bytes:
            raise ResourceExceeded(
                f"Content exceeds {self.max_file_bytes} byte limit for: {logical_path}"
            )
        physical.parent.mkdir(parents=True, exist_ok=True)
        physical.write_bytes(data)
        return physical

    def move(self, logical_src: str, logical_dst: str) -> Path:
        src = self.sandbox.validate(logical_src)
        dst = self.sandbox.validate(logical_dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.replace(dst)
        return dst

    def delete(self, logical_path: str) -> None:
        self.sandbox.validate(logical_path).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def init_directories(self) -> None:
        for directory in AGENT_DIRECTORIES:
            self.sandbox.validate(directory).mkdir(parents=True, exist_ok=True)

        if not self.exists("/public/index.html"):
            self.write("/public/index.html", PLACEHOLDER_INDEX)

        logger.info("Agent directories initialized", extra={"data": {"root": str(self.sandbox.root)}})
