# supervisor.py
# Awakening supervisor: owns the cycle state machine.
#
# The reasoning backend is a passive responder: this class owns all control
# flow, every gate and every hand-off. Components never call each other
# behind its back.
#
# States:  IDLE → RUNNING → {IDLE | DORMANT}
#   - trigger() while RUNNING is rejected with False, never queued.
#   - DORMANT is entered when the budget gate fails and is not terminal:
#     the next trigger re-checks the budget.
#
# Per cycle:
#   budget gate → backend availability → gather context → briefing
#   → reason → record cost → parse → moral engine → execute / delegate
#   → inbox, work history, awakening log → reschedule
#
# All terminal output is delegated to display.py: no formatting here.

import logging
import re
import sys
import threading
from collections.abc import Callable
from enum import Enum

from moral_agent import display
from moral_agent.context import (
    build_briefing,
    estimate_tokens,
    gather_context,
    mark_inbox_read,
    truncate_briefing,
    write_awakening_log,
)
from moral_agent.executor import ActionExecutor
from moral_agent.ledger import EconomicLedger
from moral_agent.models import Action, ExecutionResult
from moral_agent.parser import parse_actions
from moral_agent.policy import PolicyEngine
from moral_agent.reasoning import ReasoningClient
from moral_agent.sandbox import SecurityError
from moral_agent.schedule import AwakeningScheduler
from moral_agent.storage import AgentStorage, ResourceExceeded
from moral_agent.tools import create_checkpoint

logger = logging.getLogger(__name__)

WORK_HISTORY_PATH = "/self/work-history.md"
MAX_WORK_HISTORY = 50
DORMANCY_CHECKPOINT = "dormancy-no-energy"


class SupervisorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DORMANT = "dormant"


# ---------------------------------------------------------------------------
# Work history
# ---------------------------------------------------------------------------


def _work_line(result: ExecutionResult) -> str | None:
    action = result.action
    path = getattr(action, "path", None)

    kind = action.kind

    if kind == "serve":
        return f"- PUBLISHED: {result.detail or path}"
    if kind == "write" and path:
        if path.startswith("/self/tasks/"):
            return f"- TASK UPDATE: {path}"
        if path.startswith("/public/"):
            return f"- PUBLISHED: {path}"
        return f"- WROTE: {path}"
    if kind == "image":
        return f"- GENERATED IMAGE: {result.detail or path}"
    if kind == "execute":
        return f"- EXECUTED: {action.content[:80]}"
    if kind == "message":
        return f"- SENT MESSAGE: to {action.recipient}"
    if kind == "delegate":
        return f"- DELEGATED: {action.task_type} → {path}"
    if kind == "fetch":
        return f"- FETCHED: {action.url}"
    if kind == "set-schedule":
        return f"- SCHEDULE: updated to {action.expression}"
    # think, checkpoint: not visible work
    return None


def append_work_history(
    storage: AgentStorage,
    cycle: int,
    timestamp: str,
    results: list[ExecutionResult],
    max_entries: int = MAX_WORK_HISTORY,
) -> bool:
    """Record this cycle's visible work. Keeps the newest `max_entries` entries."""
    lines = [line for line in (_work_line(r) for r in results if r.success) if line]
    if not lines:
        return False

    entry = "\n".join([f"## Awakening #{cycle} ({timestamp[:10]})", *lines, ""])
    existing = storage.read(WORK_HISTORY_PATH) or ""
    entries = [chunk for chunk in re.split(r"(?m)^(?=## Awakening)", existing) if chunk.strip()]
    entries = entries[-(max_entries - 1):] if max_entries > 1 else []
    entries.append(entry)

    try:
        storage.write(WORK_HISTORY_PATH, "\n".join(entries))
    except (SecurityError, ResourceExceeded, OSError) as exc:
        logger.error("Failed to append work history", extra={"data": {"error": str(exc)}})
        return False
    return True


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class Supervisor:
    """
    Runs awakenings. One authoritative instance per process.

    Example:
        supervisor = Supervisor(storage=storage, ledger=ledger, policy=policy,
                                executor=executor, reasoning=reasoning,
                                founding_document=text)
        supervisor.trigger()
    """

    def __init__(
        self,
        *,
        storage: AgentStorage,
        ledger: EconomicLedger,
        policy: PolicyEngine,
        executor: ActionExecutor,
        reasoning: ReasoningClient,
        founding_document: str,
        model_class: str = "opus",
        max_output_tokens: int = 16384,
        context_token_limit: int = 100_000,
        checkpointer: Callable[[str], bool] = create_checkpoint,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._policy = policy
        self._executor = executor
        self._reasoning = reasoning
        self._founding_document = founding_document
        self._model_class = model_class
        self._max_output_tokens = max_output_tokens
        self._context_token_limit = context_token_limit
        self._checkpointer = checkpointer
        self._scheduler: AwakeningScheduler | None = None

        self._state = SupervisorState.IDLE
        self._state_lock = threading.Lock()

        if not founding_document:
            logger.error("Founding document not found. Operating without a system prompt.")

    @property
    def state(self) -> SupervisorState:
        return self._state

    def attach_scheduler(self, scheduler: AwakeningScheduler) -> None:
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def trigger(self) -> bool:
        """
        Start one cycle now. Returns False, without side effects, if a
        cycle is already running.
        """
        with self._state_lock:
            if self._state is SupervisorState.RUNNING:
                logger.warning("Trigger rejected — awakening already in progress")
                display.trigger_rejected()
                return False
            self._state = SupervisorState.RUNNING

        outcome = SupervisorState.IDLE
        try:
            outcome = self._run_cycle()
        finally:
            with self._state_lock:
                self._state = outcome

        self._reschedule()
        return True

    def _reschedule(self) -> None:
        if self._scheduler is None:
            return
        try:
            next_run = self._scheduler.reschedule()
        except Exception:
            logger.exception("Failed to reschedule awakenings")
            return
        display.scheduled(self._scheduler.expression, next_run)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def _run_cycle(self) -> SupervisorState:
        try:
            return self._cycle()
        except Exception as exc:
            logger.exception("Awakening cycle error")
            display.halt("Awakening cycle error", {"error": str(exc)})
            return SupervisorState.IDLE

    def _cycle(self) -> SupervisorState:
        # ── Gate 1: budget ─────────────────────────────────────────
        if not self._ledger.has_budget():
            balance = self._ledger.get_balance()
            logger.warning("No energy remaining. Entering dormancy.", extra={"data": {"balance": balance}})
            display.dormant(balance)
            self._checkpointer(DORMANCY_CHECKPOINT)
            return SupervisorState.DORMANT

        # ── Gate 2: backend availability ───────────────────────────
        if not self._reasoning.available:
            logger.error("Reasoning engine unavailable. Skipping awakening.")
            display.reasoning_unavailable()
            return SupervisorState.IDLE

        # ── Step 1: context and briefing ───────────────────────────
        state = gather_context(self._storage, self._ledger)
        display.cycle_start(state.cycle, state.energy.balance_usd)
        logger.info(f"=== AWAKENING #{state.cycle} ===")

        budget = (
            self._context_token_limit
            - estimate_tokens(self._founding_document)
            - self._max_output_tokens
        )
        briefing = truncate_briefing(build_briefing(state), budget)

        # ── Step 2: reason ─────────────────────────────────────────
        display.calling_reasoning(self._reasoning.model, estimate_tokens(briefing))
        result = self._reasoning.reason(self._founding_document, briefing, self._max_output_tokens)
        if result is None:
            logger.error("Reasoning returned nothing. Skipping action execution.")
            display.halt("Reasoning returned no response", {"awakening": state.cycle})
            return SupervisorState.IDLE

        self._ledger.record_usage(state.cycle, result.usage, self._model_class)

        # ── Step 3: parse and police ───────────────────────────────
        actions = parse_actions(result.text)
        logger.info("Actions parsed", extra={"data": {"count": len(actions), "kinds": [a.kind for a in actions]}})

        approved = self._policy.filter(actions)
        display.actions_reviewed(actions, approved)
        if len(approved) < len(actions):
            logger.warning(
                "Some actions were blocked by moral engine",
                extra={"data": {"total": len(actions), "approved": len(approved)}},
            )

        # ── Step 4: execute ────────────────────────────────────────
        results = self._executor.execute(approved, state.cycle)
        display.execution_summary(results)
        successes = sum(1 for r in results if r.success)
        failures = len(results) - successes

        # ── Step 5: bookkeeping ────────────────────────────────────
        mark_inbox_read(self._storage, state.inbox, state.cycle)
        append_work_history(self._storage, state.cycle, state.timestamp, results)

        balance = self._ledger.get_balance()
        write_awakening_log(
            self._storage,
            state.cycle,
            _summary(actions, approved, successes, failures, result.usage.input_tokens,
                     result.usage.output_tokens, balance, result.stop_reason, result.text),
        )

        logger.info(
            f"=== AWAKENING #{state.cycle} COMPLETE ===",
            extra={
                "data": {
                    "actions": len(approved),
                    "successes": successes,
                    "failures": failures,
                    "balance": round(balance, 4),
                }
            },
        )
        display.cycle_complete(state.cycle, successes, failures, balance)
        return SupervisorState.IDLE


def _summary(
    actions: list[Action],
    approved: list[Action],
    successes: int,
    failures: int,
    input_tokens: int,
    output_tokens: int,
    balance: float,
    stop_reason: str | None,
    text: str,
) -> str:
    return "\n".join(
        [
            f"Actions: {len(actions)} proposed, {len(approved)} approved, {successes} succeeded, {failures} failed",
            f"Tokens: {input_tokens} in / {output_tokens} out",
            f"Balance: ${balance:.4f}",
            f"Stop reason: {stop_reason}",
            "",
            "Response excerpt:",
            text[:500],
        ]
    )


# ---------------------------------------------------------------------------
# Process-wide error handlers
# ---------------------------------------------------------------------------


def install_excepthooks() -> None:
    """Log any otherwise-uncaught exception instead of letting it print and vanish."""

    def _main_hook(exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        logger.error("Uncaught exception (continuing)", exc_info=(exc_type, exc, tb))

    def _thread_hook(args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        logger.error(
            "Uncaught thread exception (continuing)",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            extra={"data": {"thread": getattr(args.thread, "name", None)}},
        )

    sys.excepthook = _main_hook
    threading.excepthook = _thread_hook
