# sandbox.py
# Path sandbox: the only place a logical path becomes a physical one.
#
# Logical paths are slash-rooted and live in a handful of top-level zones.
# Writes go through the full pipeline:
#   normalize → protected files → protected prefixes → zone allow-list
#   → physical resolution (+ symlink escape check when confined)
# Reads only normalize and resolve.
#
# No mutable state beyond the configured root. No I/O beyond realpath().

import os
from pathlib import Path


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SecurityError(Exception):
    """Raised for traversal, protected-path writes and symlink escapes.
    Fatal to the single action, never to the cycle."""


# ---------------------------------------------------------------------------
# Static rule tables
# ---------------------------------------------------------------------------

FOUNDING_DOCUMENT = "/founding-document.md"

PROTECTED_FILES: frozenset[str] = frozenset({FOUNDING_DOCUMENT})

PROTECTED_PREFIXES: tuple[str, ...] = (
    "/opt/agent",
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/root",
)

SOURCE_PREFIX = "/opt/agent"

ALLOWED_ZONES: tuple[str, ...] = (
    "/self/",
    "/projects/",
    "/income/",
    "/comms/",
    "/public/",
)


def normalize(logical_path: str) -> str:
    """
    Normalize to a slash-rooted logical path.

    `..` segments are folded into their parent. A `..` that would climb
    above the root cannot be eliminated and is treated as traversal.
    """
    if "\x00" in logical_path:
        raise SecurityError(f"Path traversal blocked: NUL byte in {logical_path!r}")

    parts: list[str] = []
    for segment in logical_path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                raise SecurityError(f"Path traversal blocked: {logical_path}")
            parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def under(path: str, prefix: str) -> bool:
    """Segment-aware prefix test: /etc matches /etc and /etc/x, not /etcetera."""
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


# ---------------------------------------------------------------------------
# PathSandbox
# ---------------------------------------------------------------------------


class PathSandbox:
    """
    Maps logical agent paths onto the physical filesystem.

    With `root="/"` logical and physical paths coincide (production VM).
    With any other root the sandbox is confined: the resolved real path of
    every write target must stay inside the root, which defeats symlinks
    planted inside an allowed zone.
    """

    def __init__(self, root: Path | str, confined: bool | None = None) -> None:
        self._root = Path(root).resolve()
        self._confined = (self._root != Path(self._root.anchor)) if confined is None else confined

    @property
    def root(self) -> Path:
        return self._root

    @property
    def confined(self) -> bool:
        return self._confined

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def validate(self, logical_path: str) -> Path:
        """Full write pipeline. Returns the physical path or raises SecurityError."""
        path = normalize(logical_path)

        if path in PROTECTED_FILES:
            raise SecurityError(f"Protected file — cannot write: {logical_path}")

        for prefix in PROTECTED_PREFIXES:
            if under(path, prefix):
                raise SecurityError(f"Protected path — cannot write: {logical_path}")

        if not any(under(path, zone) for zone in ALLOWED_ZONES):
            raise SecurityError(
                f"Path not in allowed directories: {logical_path}. "
                f"Allowed: {', '.join(ALLOWED_ZONES)}"
            )

        return self._resolve(path, logical_path)

    def resolve_read(self, logical_path: str) -> Path:
        """Relaxed read pipeline: normalization and physical resolution only."""
        return self._resolve(normalize(logical_path), logical_path)

    def is_allowed(self, logical_path: str) -> bool:
        try:
            self.validate(logical_path)
        except SecurityError:
            return False
        return True

    # ------------------------------------------------------------------
    # Physical resolution
    # ------------------------------------------------------------------

    def _resolve(self, path: str, original: str) -> Path:
        physical = self._root / path.lstrip("/")
        if not self._confined:
            return physical

        real = Path(os.path.realpath(physical))
        if real != self._root and not real.is_relative_to(self._root):
            raise SecurityError(f"Symlink traversal blocked: {original}")
        return physical
