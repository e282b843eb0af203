# run.py
# Entry point. Config and wiring only: no logic lives here.
#
# Every component is built once here and handed to its collaborators
# through constructors; the Supervisor owns the resulting graph.
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import logging
import signal
import sys
import threading
from functools import partial
from pathlib import Path

from moral_agent import display
from moral_agent.config import AgentConfig, ConfigError, load_config
from moral_agent.executor import ActionExecutor
from moral_agent.ledger import LEDGER_PATH, EconomicLedger
from moral_agent.logging_utils import LOG_FILE, configure_logging
from moral_agent.models import PRIORITY_ORDER
from moral_agent.orchestrator import DelegationOrchestrator
from moral_agent.policy import DecisionStore, PolicyEngine, RetentionPolicy
from moral_agent.reasoning import ReasoningClient
from moral_agent.sandbox import FOUNDING_DOCUMENT, PathSandbox
from moral_agent.schedule import AwakeningScheduler
from moral_agent.storage import AgentStorage
from moral_agent.supervisor import Supervisor, install_excepthooks
from moral_agent.tasks import TaskStore
from moral_agent.tools import create_checkpoint, safe_fetch

logger = logging.getLogger(__name__)


def _founding_document(storage: AgentStorage, config: AgentConfig) -> str:
    text = storage.read(FOUNDING_DOCUMENT)
    if not text and config.testing:
        local = Path.cwd() / FOUNDING_DOCUMENT.lstrip("/")
        text = local.read_text(encoding="utf-8") if local.exists() else None
    return text or ""


def build_supervisor(config: AgentConfig) -> tuple[Supervisor, AgentStorage]:
    sandbox = PathSandbox(config.base_dir, confined=config.confined)
    storage = AgentStorage(sandbox, config.max_file_bytes, config.journal_warn_bytes)
    storage.init_directories()

    configure_logging(config.log_level, sandbox.validate(LOG_FILE))
    install_excepthooks()

    ledger = EconomicLedger.open(sandbox.validate(LEDGER_PATH), config.initial_budget)

    reasoning = ReasoningClient(config.api_key, config.reasoning_model)
    delegation = ReasoningClient(config.api_key, config.delegation_model, backoff_s=(2.0, 4.0))

    orchestrator = DelegationOrchestrator(
        delegation,
        ledger,
        storage,
        max_turns=config.swarm_max_turns,
        max_concurrent=config.swarm_max_concurrent,
        max_budget_usd=config.swarm_max_budget,
        max_output_tokens=config.max_tokens_per_cycle,
        model_class=config.delegation_model_class,
    )

    checkpointer = partial(create_checkpoint, agent_name=config.agent_name)
    executor = ActionExecutor(
        storage,
        orchestrator,
        command_timeout_ms=config.command_timeout_ms,
        fetcher=partial(safe_fetch, timeout_s=config.fetch_timeout_s, max_bytes=config.fetch_max_bytes),
        checkpointer=checkpointer,
    )

    policy = PolicyEngine(
        DecisionStore(storage, RetentionPolicy(config.decision_retention, config.decision_compact_every))
    )

    supervisor = Supervisor(
        storage=storage,
        ledger=ledger,
        policy=policy,
        executor=executor,
        reasoning=reasoning,
        founding_document=_founding_document(storage, config),
        model_class=config.reasoning_model_class,
        max_output_tokens=config.max_tokens_per_cycle,
        context_token_limit=config.context_token_limit,
        checkpointer=checkpointer,
    )

    display.banner(config.agent_name, config.reasoning_model, config.delegation_model, ledger.get_balance())
    logger.info(
        "Supervisor starting",
        extra={
            "data": {
                "agent": config.agent_name,
                "interval": config.awakening_interval_minutes,
                "budget": config.initial_budget,
                "testing": config.testing,
                "base_dir": str(config.base_dir),
            }
        },
    )
    return supervisor, storage


def manage_tasks(config: AgentConfig, args: argparse.Namespace) -> int:
    storage = AgentStorage(PathSandbox(config.base_dir, confined=config.confined), config.max_file_bytes)
    storage.init_directories()
    tasks = TaskStore(storage)

    if args.archive_task:
        task = tasks.archive(args.archive_task)
        if task is None:
            display.halt(f"No such task: {args.archive_task}")
            return 1
    else:
        task = tasks.create(args.suggest_task, args.description, args.priority, created_by="operator")
    display.task_recorded(task.id, task.title, task.status)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="moral-agent", description="Run the autonomous moral agent supervisor.")
    parser.add_argument("--once", action="store_true", help="run a single awakening and exit")
    parser.add_argument("--suggest-task", metavar="TITLE", help="leave a task suggestion for the agent and exit")
    parser.add_argument("--description", default="", help="description for --suggest-task")
    parser.add_argument("--priority", default="medium", choices=sorted(PRIORITY_ORDER, key=PRIORITY_ORDER.get))
    parser.add_argument("--archive-task", metavar="TASK_ID", help="mark a task completed by the operator and exit")
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigError as exc:
        display.halt(str(exc))
        return 1

    if args.suggest_task or args.archive_task:
        return manage_tasks(config, args)

    supervisor, storage = build_supervisor(config)

    if args.once:
        supervisor.trigger()
        return 0

    scheduler = AwakeningScheduler(storage, config.awakening_interval_minutes, supervisor.trigger)
    supervisor.attach_scheduler(scheduler)

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        display.shutdown(signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    # First awakening runs immediately; trigger() arms the schedule afterwards.
    supervisor.trigger()
    logger.info("Supervisor running. Awaiting next awakening cycle.")

    while not stop.wait(timeout=1.0):
        continue

    scheduler.cancel()
    return 0


if __name__ == "__main__":
    sys.exit(main())
