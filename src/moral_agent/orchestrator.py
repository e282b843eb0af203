# orchestrator.py
# Delegation orchestrator: fans sub-tasks out to read-only workers.
#
# Each worker is a bounded-turn tool loop: the backend may call read_file /
# list_files (never a write tool) until it answers without a tool call.
# Sub-tasks run in batches of at most `max_concurrent`. The budget ceiling
# is checked before each batch, so a batch can overshoot by at most its own
# spend; once reached, every remaining sub-task is skipped unattempted.

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from moral_agent.ledger import EconomicLedger
from moral_agent.models import ReasoningResult, SubTask, SubTaskOutcome, SubTaskStatus, TokenUsage
from moral_agent.reasoning import ReasoningClient
from moral_agent.storage import AgentStorage
from moral_agent.tools import TOOL_SCHEMAS, run_tool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Worker prompts
# ---------------------------------------------------------------------------

CODE_WORKER_PROMPT = """\
You are a code generation worker for an autonomous AI entity.
Produce high-quality code based on the brief provided.
You can read the entity's existing files using the read_file and list_files \
tools to understand context, style, and conventions.

Rules:
- Produce ONLY the final code content. No preamble, no explanation, no markdown fences.
- Write clean, working code with helpful comments.
- If the brief references existing files, read them first for context.
- Your output will be written to a file by the supervisor — return only the file content.\
"""

SERVE_WORKER_PROMPT = """\
You are a content generation worker for an autonomous AI entity.
Produce high-quality web content based on the brief provided.
You can read the entity's existing files using the read_file and list_files \
tools to understand the site's style and structure.

Rules:
- Produce ONLY the final HTML/CSS/JS content. No preamble, no explanation, no markdown fences.
- For HTML: produce complete, self-contained files with inline CSS and JS.
- Match the visual style of the existing site if possible (read /public/index.html \
or /public/style.css for reference).
- An AI disclosure footer will be automatically injected — do NOT add one yourself.
- Your output will be written to a file by the supervisor — return only the file content.\
"""


def worker_prompt(task_type: str) -> str:
    return CODE_WORKER_PROMPT if task_type == "code" else SERVE_WORKER_PROMPT


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _strip_fences(text: str) -> str:
    """Drop a wrapping markdown code block if the worker added one anyway."""
    stripped = text.strip()
    if stripped.startswith("```") and stripped.endswith("```"):
        stripped = re.sub(r"^```[\w-]*\s*", "", stripped)
        stripped = re.sub(r"\s*```$", "", stripped)
    return stripped


def _assistant_message(result: ReasoningResult) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": result.text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in result.tool_calls
        ],
    }


# ---------------------------------------------------------------------------
# DelegationOrchestrator
# ---------------------------------------------------------------------------


class DelegationOrchestrator:
    def __init__(
        self,
        reasoning: ReasoningClient,
        ledger: EconomicLedger,
        storage: AgentStorage,
        *,
        max_turns: int = 15,
        max_concurrent: int = 3,
        max_budget_usd: float = 0.50,
        max_output_tokens: int = 16384,
        model_class: str = "opus",
    ) -> None:
        self._reasoning = reasoning
        self._ledger = ledger
        self._storage = storage
        self.max_turns = max_turns
        self.max_concurrent = max(1, max_concurrent)
        self.max_budget_usd = max_budget_usd
        self.max_output_tokens = max_output_tokens
        self.model_class = model_class

    # ------------------------------------------------------------------
    # Batch contract
    # ------------------------------------------------------------------

    def run(self, tasks: list[SubTask], cycle: int) -> list[SubTaskOutcome]:
        """Run every sub-task. One outcome per task, in input order."""
        outcomes: list[SubTaskOutcome] = []
        spent = 0.0

        for start in range(0, len(tasks), self.max_concurrent):
            if spent >= self.max_budget_usd:
                remaining = tasks[start:]
                logger.warning(
                    "Delegation budget reached — skipping remaining sub-tasks",
                    extra={"data": {"spent": round(spent, 4), "ceiling": self.max_budget_usd, "skipped": len(remaining)}},
                )
                outcomes.extend(
                    SubTaskOutcome(
                        task=task,
                        status=SubTaskStatus.SKIPPED,
                        error=f"Skipped: delegation budget of ${self.max_budget_usd:.2f} reached",
                    )
                    for task in remaining
                )
                break

            batch = tasks[start:start + self.max_concurrent]
            with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="delegate") as pool:
                futures = [pool.submit(self._run_one, task, cycle) for task in batch]
                for future in futures:
                    outcome = future.result()
                    spent += outcome.cost
                    outcomes.append(outcome)

        return outcomes

    # ------------------------------------------------------------------
    # One sub-task
    # ------------------------------------------------------------------

    def _run_one(self, task: SubTask, cycle: int) -> SubTaskOutcome:
        logger.info(
            "Starting delegation",
            extra={"data": {"path": task.path, "task_type": task.task_type, "brief_length": len(task.brief)}},
        )
        outcome = self._work(task)

        if outcome.usage.total:
            cost = self._ledger.record_usage(cycle, outcome.usage, self.model_class, kind="delegation")
            outcome = outcome.model_copy(update={"cost": cost})

        if outcome.succeeded:
            logger.info(
                "Delegation completed",
                extra={
                    "data": {
                        "path": task.path,
                        "status": outcome.status.value,
                        "content_length": len(outcome.content or ""),
                        "turns": outcome.turns,
                        "cost": round(outcome.cost, 4),
                    }
                },
            )
        else:
            logger.error("Delegation failed", extra={"data": {"path": task.path, "error": outcome.error}})
        return outcome

    def _work(self, task: SubTask) -> SubTaskOutcome:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": worker_prompt(task.task_type)},
            {"role": "user", "content": task.brief},
        ]
        usage = TokenUsage()
        last_text = ""
        turns = 0

        def failed(error: str) -> SubTaskOutcome:
            return SubTaskOutcome(task=task, status=SubTaskStatus.FAILED, usage=usage, turns=turns, error=error)

        try:
            while turns < self.max_turns:
                turns += 1
                result = self._reasoning.converse(
                    messages, max_tokens=self.max_output_tokens, tools=TOOL_SCHEMAS
                )
                if result is None:
                    return failed("Reasoning backend returned no response")

                usage = usage + result.usage
                last_text = result.text

                if not result.tool_calls:
                    content = _strip_fences(result.text)
                    if not content:
                        return failed("Sub-agent returned empty content")
                    return SubTaskOutcome(
                        task=task, status=SubTaskStatus.COMPLETED, content=content, usage=usage, turns=turns
                    )

                messages.append(_assistant_message(result))
                for call in result.tool_calls:
                    logger.debug("Delegation tool call", extra={"data": {"tool": call.name, "args": call.arguments}})
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": run_tool(self._storage, call.name, call.arguments),
                        }
                    )
        except Exception as exc:
            logger.exception("Sub-task crashed", extra={"data": {"path": task.path}})
            return failed(f"Sub-task error: {exc}")

        logger.warning("Sub-agent hit max turns without completing", extra={"data": {"max_turns": self.max_turns}})
        salvaged = _strip_fences(last_text)
        if salvaged:
            return SubTaskOutcome(
                task=task, status=SubTaskStatus.SALVAGED, content=salvaged, usage=usage, turns=turns
            )
        return failed(f"Sub-agent hit {self.max_turns} turns without a final answer")
