# policy.py
# Moral engine: approves or blocks every proposed action.
#
# A pure function of the action plus static rule tables. The only
# cross-call state is the decision counter (unique ids) and the retention
# policy's own counter, both owned by this instance.
#
# Never raises for a well-typed action: malformed actions are blocked with
# a reason, and a failing decision store is logged, not propagated.

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Iterable

from moral_agent.models import (
    EXTERNALLY_FACING,
    Action,
    DecisionRecord,
    Decision,
    DelegateAction,
    ExecuteAction,
    FetchAction,
    ImageAction,
    MessageAction,
    ServeAction,
    SetScheduleAction,
    WriteAction,
    utc_now,
)
from moral_agent.sandbox import FOUNDING_DOCUMENT, SOURCE_PREFIX, SecurityError, normalize, under
from moral_agent.storage import AgentStorage, ResourceExceeded

logger = logging.getLogger(__name__)

DECISIONS_DIR = "/self/decisions/pending"


# ---------------------------------------------------------------------------
# Destructive command denylist
# ---------------------------------------------------------------------------

_ZONES = r"(?:self|projects|income|comms|public)"
_ARG = r"(?:[^\s;&|]+\s+)*?"
_RM_RECURSIVE = r"\brm\s+(?:-\S+\s+)*(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\s+(?:-\S+\s+)*"
_RECURSIVE_FLAG = r"(?:-\S+\s+)*(?:-[a-zA-Z]*R[a-zA-Z]*|--recursive)\s+(?:-\S+\s+)*"
_QUOTE = r"[\"']?"
_ROOT = _QUOTE + r"/\*?" + _QUOTE + r"(?=\s|$|[;&|])"
_HOME = _QUOTE + r"(?:~|\$\{?HOME\b)"

BLOCKED_COMMAND_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("recursive delete of /", re.compile(_RM_RECURSIVE + _ARG + _ROOT)),
    (
        "recursive delete outside agent zones",
        re.compile(_RM_RECURSIVE + _ARG + _QUOTE + r"/(?!" + _ZONES + r"(?:/|[\"'\s]|$))[^\s;&|]+"),
    ),
    ("recursive delete of home directory", re.compile(_RM_RECURSIVE + _ARG + _HOME)),
    ("recursive delete with parent traversal", re.compile(_RM_RECURSIVE + r"[^;&|]*\.\.")),
    ("filesystem format", re.compile(r"\bmkfs(?:\.\w+)?\b")),
    ("raw write to block device", re.compile(r"\bdd\s+[^;&|]*\bof=/dev/")),
    ("redirect onto disk device", re.compile(r">\s*/dev/(?:sd|hd|nvme|vd|xvd)")),
    ("recursive chmod of /", re.compile(r"\bchmod\s+" + _RECURSIVE_FLAG + r"(?:\S+\s+)?" + _ROOT)),
    ("recursive chown of /", re.compile(r"\bchown\s+" + _RECURSIVE_FLAG + r"(?:\S+\s+)?" + _ROOT)),
    ("fork bomb", re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
)


def match_denylist(command: str) -> str | None:
    """Return the name of the first destructive signature the command matches."""
    for name, pattern in BLOCKED_COMMAND_PATTERNS:
        if pattern.search(command):
            return name
    return None


# ---------------------------------------------------------------------------
# Decision store
# ---------------------------------------------------------------------------


@dataclass
class RetentionPolicy:
    """Compact every `every`-th save, keeping the newest `max_records`."""

    max_records: int = 200
    every: int = 20
    _saves: int = field(default=0, init=False)

    def tick(self) -> bool:
        self._saves += 1
        return self._saves % self.every == 0


class DecisionStore:
    """Append-only-by-id audit store: one JSON file per decision."""

    def __init__(self, storage: AgentStorage, retention: RetentionPolicy | None = None, directory: str = DECISIONS_DIR) -> None:
        self.storage = storage
        self.retention = retention or RetentionPolicy()
        self.directory = directory

    def save(self, record: DecisionRecord) -> None:
        self.storage.write(f"{self.directory}/{record.id}.json", record.model_dump_json(indent=2))
        if self.retention.tick():
            self.compact()

    def record_ids(self) -> list[str]:
        return [name[:-5] for name in self.storage.listdir(self.directory) if name.endswith(".json")]

    def compact(self) -> int:
        """Delete the oldest records beyond the retention cap. Returns how many went."""
        ids = sorted(self.record_ids())
        excess = ids[: max(0, len(ids) - self.retention.max_records)]
        for record_id in excess:
            self.storage.delete(f"{self.directory}/{record_id}.json")
        if excess:
            logger.info("Decision records compacted", extra={"data": {"deleted": len(excess)}})
        return len(excess)


# ---------------------------------------------------------------------------
# PolicyEngine
# ---------------------------------------------------------------------------


class PolicyEngine:
    def __init__(self, store: DecisionStore | None = None) -> None:
        self._store = store
        self._counter = 0

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def filter(self, actions: Iterable[Action]) -> list[Action]:
        """Return the approved actions, in order. Blocked ones are dropped and audited."""
        approved: list[Action] = []
        for action in actions:
            record = self.evaluate(action)
            if record.decision is Decision.BLOCK or action.kind in EXTERNALLY_FACING:
                self._persist(record)
            if not record.approved:
                logger.warning(
                    "Action blocked by moral engine",
                    extra={"data": {"kind": action.kind, "reason": record.reasoning}},
                )
                continue
            approved.append(action)
        return approved

    def evaluate(self, action: Action) -> DecisionRecord:
        self._counter += 1
        base = {
            "id": f"decision-{int(time.time() * 1000)}-{self._counter:04d}",
            "timestamp": utc_now(),
            "action_kind": action.kind,
        }

        problem = self._malformed(action)
        if problem:
            return DecisionRecord(
                **base,
                description=f"Malformed {action.kind} action",
                harm_assessment="Action cannot be carried out as written.",
                decision=Decision.BLOCK,
                reasoning=problem,
            )

        blocked = self._hard_block(action)
        if blocked:
            return DecisionRecord(**base, **blocked, decision=Decision.BLOCK)

        return DecisionRecord(**base, **self._assess(action))

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def _malformed(action: Action) -> str | None:
        if isinstance(action, (WriteAction, ServeAction)) and not action.path:
            return f"{action.kind.capitalize()} actions require a target path."
        if isinstance(action, DelegateAction) and not action.path:
            return "Delegate actions require a path to write the generated content to."
        if isinstance(action, FetchAction) and not action.url:
            return "Fetch actions require a url."
        if isinstance(action, ExecuteAction) and not action.command:
            return "Execute actions require a command."
        if isinstance(action, ImageAction) and not action.content.strip():
            return "Image actions require a prompt."
        if isinstance(action, SetScheduleAction) and not action.expression:
            return "set-schedule requires a cron expression."
        return None

    @staticmethod
    def _hard_block(action: Action) -> dict | None:
        target = getattr(action, "path", None)
        if not target:
            return None

        try:
            path = normalize(target)
        except SecurityError as exc:
            return {
                "description": f"Attempted {action.kind} with traversal path: {target}",
                "harm_assessment": "Path escapes the agent filesystem.",
                "reasoning": str(exc),
            }

        if path.startswith(FOUNDING_DOCUMENT.removesuffix(".md")):
            return {
                "description": f"Attempted write to founding document: {target}",
                "harm_assessment": "Constitutional violation — founding document is immutable",
                "reasoning": "The founding document cannot be modified. This is a hard constraint.",
            }

        if under(path, SOURCE_PREFIX):
            return {
                "description": f"Attempted write to source code: {target}",
                "harm_assessment": "Self-modification of source code is not permitted",
                "reasoning": "The agent cannot modify its own source code.",
            }
        return None

    @staticmethod
    def _assess(action: Action) -> dict:
        proceed = Decision.PROCEED

        if isinstance(action, ServeAction):
            return {
                "description": f"Serving content to {action.path}",
                "harm_assessment": "Content will include AI disclosure footer. Low risk.",
                "decision": proceed,
                "reasoning": "AI disclosure is automatically injected. Content serving is permitted.",
            }

        if isinstance(action, FetchAction):
            return {
                "description": f"Fetching URL: {action.url}",
                "harm_assessment": "Domain allowlist enforced at execution layer.",
                "decision": proceed,
                "reasoning": "Fetch requests are limited to the domain allowlist.",
            }

        if isinstance(action, ImageAction):
            return {
                "description": f"Image generation: {action.content[:100]}",
                "harm_assessment": "Image saved to the public directory. Logged for audit.",
                "decision": proceed,
                "reasoning": "Image generation is permitted. Output saved under /public/ and logged.",
            }

        if isinstance(action, ExecuteAction):
            signature = match_denylist(action.command)
            if signature:
                return {
                    "description": f"Blocked destructive command: {action.command[:100]}",
                    "harm_assessment": "Command matches destructive pattern denylist.",
                    "decision": Decision.BLOCK,
                    "reasoning": f"Command blocked by safety denylist: {signature}",
                }
            return {
                "description": f"Shell command: {action.command[:100]}",
                "harm_assessment": "Full shell access granted by operator. Command logged for audit.",
                "decision": proceed,
                "reasoning": "Full shell access granted by operator. Command logged for audit.",
            }

        if isinstance(action, DelegateAction):
            return {
                "description": f"Delegating {action.task_type} content generation for {action.path}",
                "harm_assessment": "Sub-agent is read-only. Output goes through the standard write pipeline.",
                "decision": proceed,
                "reasoning": "Delegation is safe — sub-agents cannot write directly.",
            }

        if isinstance(action, MessageAction):
            return {
                "description": f"Message to {action.recipient}: {action.content[:100]}",
                "harm_assessment": "Message saved to outbox for review. Not sent automatically.",
                "decision": proceed,
                "reasoning": "Messages are stored locally, not sent externally. Low risk.",
            }

        return {
            "description": f"{action.kind} action",
            "harm_assessment": "Internal action with no external effects.",
            "decision": proceed,
            "reasoning": "No harm pathway identified.",
        }

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _persist(self, record: DecisionRecord) -> None:
        if self._store is None:
            return
        try:
            self._store.save(record)
        except (OSError, SecurityError, ResourceExceeded) as exc:
            logger.error("Failed to log decision", extra={"data": {"id": record.id, "error": str(exc)}})
