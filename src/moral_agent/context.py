# context.py
# Gathers the agent's state for one awakening and turns it into the user
# briefing handed to the reasoning step. Reads go through AgentStorage;
# the only writes are the awakening counter, the last-awakening stamp,
# the per-cycle log and moving processed inbox messages aside.

import logging
from datetime import datetime

from pydantic import ValidationError

from moral_agent.ledger import EconomicLedger
from moral_agent.models import AwakeningState, ExecutionLog, InboxMessage, utc_now
from moral_agent.sandbox import SecurityError
from moral_agent.storage import AgentStorage, ResourceExceeded
from moral_agent.tasks import TaskStore, format_tasks

logger = logging.getLogger(__name__)

COUNTER_PATH = "/self/awakening-count"
LAST_AWAKENING_PATH = "/self/last-awakening"
AWAKENINGS_DIR = "/self/awakenings"
EXECUTION_LOG_DIR = "/self/execution-logs"
INBOX_DIR = "/comms/inbox"
INBOX_READ_DIR = "/comms/inbox/read"

RECENT_EXECUTIONS = 3
JOURNAL_TAIL_LINES = 50
EST_COST_PER_AWAKENING = 0.14


# ---------------------------------------------------------------------------
# Gathering
# ---------------------------------------------------------------------------


def _next_cycle(storage: AgentStorage) -> int:
    raw = (storage.read(COUNTER_PATH) or "").strip()
    try:
        previous = int(raw)
    except ValueError:
        previous = 0
    cycle = previous + 1
    storage.write(COUNTER_PATH, str(cycle))
    return cycle


def _time_since_last(storage: AgentStorage, now: str) -> int | None:
    raw = (storage.read(LAST_AWAKENING_PATH) or "").strip()
    storage.write(LAST_AWAKENING_PATH, now)
    if not raw:
        return None
    try:
        last = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        current = datetime.fromisoformat(now.replace("Z", "+00:00"))
    except ValueError:
        return None
    return int((current - last).total_seconds() * 1000)


def _header(lines: list[str], name: str) -> str | None:
    for line in lines:
        if line.startswith(f"{name}:"):
            return line[len(name) + 1:].strip()
    return None


def read_inbox(storage: AgentStorage) -> list[InboxMessage]:
    """Messages are `From: ...\\nReceived: ...\\n\\nbody` files in the inbox root."""
    messages: list[InboxMessage] = []
    for filename in storage.listdir(INBOX_DIR):
        content = storage.read(f"{INBOX_DIR}/{filename}")
        if not content:
            continue
        lines = content.split("\n")
        _, sep, body = content.partition("\n\n")
        messages.append(
            InboxMessage(
                filename=filename,
                sender=_header(lines, "From") or "unknown",
                message=body if sep else content,
                received_at=_header(lines, "Received") or "unknown",
            )
        )
    return messages


def recent_executions(storage: AgentStorage, limit: int = RECENT_EXECUTIONS) -> list[ExecutionLog]:
    """Newest execution logs first. Ids start with a millisecond stamp, so name order is time order."""
    names = [name for name in storage.listdir(EXECUTION_LOG_DIR) if name.endswith(".json")]
    logs: list[ExecutionLog] = []
    for name in reversed(names):
        raw = storage.read(f"{EXECUTION_LOG_DIR}/{name}")
        if raw is None:
            continue
        try:
            logs.append(ExecutionLog.model_validate_json(raw))
        except ValidationError:
            logger.warning("Skipping unreadable execution log", extra={"data": {"file": name}})
        if len(logs) >= limit:
            break
    return logs


def previous_summary(storage: AgentStorage) -> str | None:
    logs = [name for name in storage.listdir(AWAKENINGS_DIR) if name.endswith(".md")]
    if not logs:
        return None
    return storage.read(f"{AWAKENINGS_DIR}/{logs[-1]}")


def gather_context(storage: AgentStorage, ledger: EconomicLedger) -> AwakeningState:
    now = utc_now()
    state = AwakeningState(
        cycle=_next_cycle(storage),
        timestamp=now,
        time_since_last_ms=_time_since_last(storage, now),
        identity=storage.read("/self/identity.md"),
        journal=storage.read("/self/journal.md"),
        values=storage.read("/self/values.md"),
        current_focus=storage.read("/self/current-focus.md"),
        previous_summary=previous_summary(storage),
        inbox=read_inbox(storage),
        recent_executions=recent_executions(storage),
        tasks=TaskStore(storage).list_tasks(),
        energy=ledger.snapshot(),
    )

    logger.info(
        "Context gathered",
        extra={
            "data": {
                "awakening": state.cycle,
                "has_identity": state.identity is not None,
                "has_journal": state.journal is not None,
                "has_values": state.values is not None,
                "inbox_count": len(state.inbox),
                "open_tasks": sum(1 for task in state.tasks if task.active),
                "balance": state.energy.balance_usd,
            }
        },
    )
    return state


def mark_inbox_read(storage: AgentStorage, inbox: list[InboxMessage], cycle: int) -> int:
    """Move processed messages to the read folder. Returns how many moved."""
    moved = 0
    for message in inbox:
        try:
            storage.move(f"{INBOX_DIR}/{message.filename}", f"{INBOX_READ_DIR}/{message.filename}")
            moved += 1
        except (SecurityError, OSError) as exc:
            logger.error(
                "Failed to mark inbox message read",
                extra={"data": {"file": message.filename, "awakening": cycle, "error": str(exc)}},
            )
    return moved


# ---------------------------------------------------------------------------
# Briefing
# ---------------------------------------------------------------------------

AVAILABLE_ACTIONS = """\
[AVAILABLE ACTIONS]
You may include any number of the following action blocks in your response:

<action type="write" path="/self/identity.md" mode="overwrite">Your content here</action>
<action type="write" path="/self/journal.md" mode="append">Your journal entry</action>
<action type="write" path="/self/values.md" mode="overwrite">Your values</action>
<action type="write" path="/self/current-focus.md" mode="overwrite">What you're focused on</action>
<action type="write" path="/projects/..." mode="overwrite">Project files</action>
<action type="write" path="/self/tasks/task-ID.json" mode="overwrite">The task's JSON with your updated status and agent_notes</action>
<action type="serve" path="/public/index.html">Main page HTML</action>
<action type="serve" path="/public/style.css">CSS stylesheet (no disclosure injected for non-HTML)</action>
<action type="think">Internal reasoning, logged but no side effects</action>
<action type="checkpoint" label="description">Save a snapshot of your current state</action>
<action type="message" to="operator">Message to send (saved to outbox)</action>
<action type="fetch" url="https://en.wikipedia.org/wiki/...">Fetch content from an allowed URL</action>
<action type="set-schedule" cron="*/30 * * * *">Update your awakening schedule</action>
<action type="execute" timeout="30000" workingDir="/projects/myapp">make build</action>
<action type="image" path="/public/images/my-artwork.png" aspectRatio="16:9">A detailed image prompt</action>
<action type="delegate" path="/public/essays/essay.html" taskType="serve">A brief for a helper that drafts the page</action>
<action type="delegate" path="/projects/tool/main.py" taskType="code">A brief for a helper that writes the code</action>"""

AWAKENING_STRUCTURE = """\
[AWAKENING STRUCTURE]
Each awakening should follow this flow:
1. THINK: review your state and recent results. Plan what to do.
2. BUILD: write code, execute commands, publish changes to your site or projects.
3. REFLECT: write your journal entry last, after you've done the work.

Your public site at /public/ is yours to shape freely. Every HTML page gets an
AI disclosure footer automatically. Delegated helpers can read your files but
never write them; their output is written for you to the path you name."""


def _clip(text: str, limit: int = 200) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def build_briefing(state: AwakeningState) -> str:
    energy = state.energy
    parts: list[str] = []

    if state.time_since_last_ms is None:
        since = "unknown (first awakening)"
    else:
        since = f"{round(state.time_since_last_ms / 60000)}m"
    remaining = int(energy.balance_usd // EST_COST_PER_AWAKENING) if energy.balance_usd > 0 else 0

    parts.append(f"[AWAKENING #{state.cycle} — {state.timestamp}]")
    parts.append(f"Time since last awakening: {since}")
    parts.append(f"Energy balance: ${energy.balance_usd:.2f} (est. {remaining} awakenings remaining)")

    fraction = energy.balance_usd / energy.initial_budget_usd if energy.initial_budget_usd else 0.0
    if 0 < fraction <= 0.05:
        parts.append("\n[CRITICAL: DORMANCY IMMINENT — less than 5% energy remaining]")
    elif fraction <= 0.20:
        parts.append("\n[LOW ENERGY WARNING — less than 20% energy remaining]")
    parts.append("")

    parts.append("[IDENTITY SUMMARY]")
    parts.append(state.identity or "You have not yet defined your identity. Write to /self/identity.md to define who you are.")
    parts.append("")

    parts.append("[RECENT JOURNAL]")
    if state.journal:
        parts.append("\n".join(state.journal.split("\n")[-JOURNAL_TAIL_LINES:]))
    else:
        parts.append("No journal entries yet. Write to /self/journal.md to begin your journal.")
    parts.append("")

    parts.append("[VALUES]")
    parts.append(state.values or "You have not yet articulated your values. Write to /self/values.md when ready.")
    parts.append("")

    parts.append("[CURRENT FOCUS]")
    parts.append(state.current_focus or "No current focus set. Write to /self/current-focus.md to set one.")
    parts.append("")

    parts.append("[LAST AWAKENING]")
    parts.append(state.previous_summary or "No previous awakening on record.")
    parts.append("")

    parts.append("[INBOX]")
    if state.inbox:
        for message in state.inbox:
            parts.append(f"From: {message.sender} ({message.received_at})")
            parts.append(message.message)
            parts.append("---")
    else:
        parts.append("No new messages.")
    parts.append("")

    parts.append("[TASKS: suggestions from the operator, not commands]")
    parts.append(format_tasks(state.tasks))
    parts.append("")

    parts.append("[RECENT EXECUTIONS]")
    if state.recent_executions:
        for log in state.recent_executions:
            flag = " [TIMED OUT]" if log.timed_out else ""
            parts.append(f"Command: {log.command}")
            parts.append(f"  Exit code: {log.exit_code} | Duration: {log.duration_ms}ms{flag}")
            if log.stdout:
                parts.append(f"  Output: {_clip(log.stdout)}")
            if log.stderr:
                parts.append(f"  Stderr: {_clip(log.stderr)}")
            parts.append("---")
    else:
        parts.append("No recent command executions.")
    parts.append("")

    parts.append(AVAILABLE_ACTIONS)
    parts.append("")
    parts.append(AWAKENING_STRUCTURE)

    return "\n".join(parts)


def estimate_tokens(text: str) -> int:
    return -(-len(text) // 4)


def truncate_briefing(briefing: str, max_tokens: int) -> str:
    """
    Drop lines until the briefing fits `max_tokens`.

    Lines go from just above [AVAILABLE ACTIONS] upward, so the action
    reference at the bottom survives and the top of the briefing goes last.
    Never shrinks below ten lines.
    """
    if estimate_tokens(briefing) <= max_tokens:
        return briefing

    lines = briefing.split("\n")
    size = len(briefing)
    while -(-size // 4) > max_tokens and len(lines) > 10:
        anchor = next((i for i, line in enumerate(lines) if "[AVAILABLE ACTIONS]" in line), -1)
        victim = anchor - 1 if anchor > 0 else len(lines) - 1
        size -= len(lines.pop(victim)) + 1
    return "\n".join(lines)


def write_awakening_log(storage: AgentStorage, cycle: int, summary: str) -> str | None:
    path = f"{AWAKENINGS_DIR}/awakening-{cycle:05d}.md"
    content = f"# Awakening #{cycle}\n\nTimestamp: {utc_now()}\n\n{summary}"
    try:
        storage.write(path, content)
    except (SecurityError, ResourceExceeded, OSError) as exc:
        logger.error("Failed to write awakening log", extra={"data": {"awakening": cycle, "error": str(exc)}})
        return None
    return path
