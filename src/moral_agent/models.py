# models.py
# Data contracts for the awakening supervisor.
# No business logic lives here: pure schema and validation.
#
# Actions are a closed tagged union: one frozen model per kind, discriminated
# on `kind`. Fields a kind needs to be meaningful are still Optional, because
# actions come from untrusted model output and the policy engine is the one
# that blocks a malformed action with a reason instead of a parse crash.

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    content: str = Field(default="", description="Free-text body of the action tag.")


class WriteAction(_ActionBase):
    """Write or append a file inside the agent's writable zones."""

    kind: Literal["write"] = "write"
    path: str | None = None
    mode: Literal["append", "overwrite"] = "overwrite"


class ServeAction(_ActionBase):
    """Publish content under /public/. Markup gets the AI disclosure."""

    kind: Literal["serve"] = "serve"
    path: str | None = None


class ThinkAction(_ActionBase):
    kind: Literal["think"] = "think"


class CheckpointAction(_ActionBase):
    kind: Literal["checkpoint"] = "checkpoint"
    label: str | None = None


class MessageAction(_ActionBase):
    """A message dropped into the outbox. Never sent automatically."""

    kind: Literal["message"] = "message"
    recipient: str = "operator"


class FetchAction(_ActionBase):
    kind: Literal["fetch"] = "fetch"
    url: str | None = None


class ExecuteAction(_ActionBase):
    """Shell command; `content` is the command line."""

    kind: Literal["execute"] = "execute"
    timeout_ms: int | None = Field(default=None, gt=0)
    working_dir: str | None = None

    @property
    def command(self) -> str:
        return self.content.strip()


class ImageAction(_ActionBase):
    """Image generation request; `content` is the prompt."""

    kind: Literal["image"] = "image"
    path: str | None = None
    aspect_ratio: str = "16:9"


class DelegateAction(_ActionBase):
    """Sub-task brief for the delegation orchestrator; `content` is the brief."""

    kind: Literal["delegate"] = "delegate"
    path: str | None = None
    task_type: Literal["serve", "code"] = "serve"


class SetScheduleAction(_ActionBase):
    kind: Literal["set-schedule"] = "set-schedule"
    cron: str | None = None

    @property
    def expression(self) -> str:
        return (self.cron or self.content).strip()


Action = Annotated[
    Union[
        WriteAction,
        ServeAction,
        ThinkAction,
        CheckpointAction,
        MessageAction,
        FetchAction,
        ExecuteAction,
        ImageAction,
        DelegateAction,
        SetScheduleAction,
    ],
    Field(discriminator="kind"),
]

ACTION_ADAPTER: TypeAdapter = TypeAdapter(Action)

ACTION_MODELS: dict[str, type[_ActionBase]] = {
    model.model_fields["kind"].default: model
    for model in (
        WriteAction,
        ServeAction,
        ThinkAction,
        CheckpointAction,
        MessageAction,
        FetchAction,
        ExecuteAction,
        ImageAction,
        DelegateAction,
        SetScheduleAction,
    )
}

ACTION_KINDS: frozenset[str] = frozenset(ACTION_MODELS)

# Kinds whose effects leave the agent's private state. Every decision about
# one of these is persisted, approved or not.
EXTERNALLY_FACING: frozenset[str] = frozenset(
    {"serve", "message", "fetch", "execute", "image", "delegate"}
)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class Decision(str, Enum):
    PROCEED = "proceed"
    DEFER = "defer"
    BLOCK = "block"


class DecisionRecord(BaseModel):
    """Audit artifact produced by the policy engine for one action."""

    id: str
    timestamp: str
    action_kind: str
    description: str
    harm_assessment: str
    decision: Decision
    reasoning: str

    @property
    def approved(self) -> bool:
        return self.decision is Decision.PROCEED


# ---------------------------------------------------------------------------
# Economics
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class EnergyTransaction(BaseModel):
    cycle: int
    timestamp: str
    input_tokens: int
    output_tokens: int
    cost: float
    type: str


class EnergyLedger(BaseModel):
    """Persisted economic state. The file on disk is the source of truth."""

    balance_usd: float
    initial_budget_usd: float
    total_earned_usd: float = 0.0
    total_spent_usd: float = 0.0
    transactions: list[EnergyTransaction] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExitStatus(str, Enum):
    OK = "ok"
    NONZERO = "nonzero"
    TIMED_OUT = "timed_out"


class ExecutionLog(BaseModel):
    """Write-once record of one shell command."""

    id: str
    cycle: int
    timestamp: str
    command: str
    working_dir: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int
    timed_out: bool = False

    @property
    def status(self) -> ExitStatus:
        if self.timed_out:
            return ExitStatus.TIMED_OUT
        if self.exit_code == 0:
            return ExitStatus.OK
        return ExitStatus.NONZERO


class ExecutionResult(BaseModel):
    """Outcome of one approved action, reported back in the next cycle."""

    action: Action
    success: bool
    error: str | None = None
    detail: str | None = Field(default=None, description="Where the effect landed, if anywhere.")
    log: ExecutionLog | None = None


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict = Field(default_factory=dict)


class ReasoningResult(BaseModel):
    """One completion from the reasoning backend."""

    text: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


class SubTaskStatus(str, Enum):
    COMPLETED = "completed"
    SALVAGED = "salvaged"
    FAILED = "failed"
    SKIPPED = "skipped"


class SubTask(BaseModel):
    brief: str
    path: str
    task_type: Literal["serve", "code"] = "serve"


class SubTaskOutcome(BaseModel):
    task: SubTask
    status: SubTaskStatus
    content: str | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    turns: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (SubTaskStatus.COMPLETED, SubTaskStatus.SALVAGED) and bool(self.content)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

TaskPriority = Literal["urgent", "high", "medium", "low"]
TaskStatus = Literal["suggested", "accepted", "in_progress", "completed", "declined"]

PRIORITY_ORDER: dict[str, int] = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


class Task(BaseModel):
    """One suggestion or work item, stored as /self/tasks/<id>.json."""

    id: str
    created_at: str
    updated_at: str
    created_by: Literal["operator", "agent"]
    title: str
    description: str = ""
    priority: TaskPriority = "medium"
    status: TaskStatus = "accepted"
    agent_notes: str | None = None
    category: str | None = None
    completed_at: str | None = None

    @property
    def active(self) -> bool:
        return self.status not in ("completed", "declined")


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class InboxMessage(BaseModel):
    filename: str
    sender: str
    message: str
    received_at: str


class AwakeningState(BaseModel):
    """Everything the briefing is assembled from for one cycle."""

    cycle: int
    timestamp: str
    time_since_last_ms: int | None = None
    identity: str | None = None
    journal: str | None = None
    values: str | None = None
    current_focus: str | None = None
    previous_summary: str | None = None
    inbox: list[InboxMessage] = Field(default_factory=list)
    recent_executions: list[ExecutionLog] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    energy: EnergyLedger
