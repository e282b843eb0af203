# executor.py
# Sandboxed action executor.
#
# Takes actions the policy engine already approved and performs their
# effects. One ExecutionResult per input action, in input order. A failing
# action is captured in its own result and never aborts the batch.
#
# Delegate actions are not run inline: they are collected and handed to the
# orchestrator as a single batch once the other actions have run, and the
# content that comes back is written through the normal serve/write path.

import logging
import os
import secrets
import signal
import subprocess
import time
from collections.abc import Callable

from moral_agent.models import (
    Action,
    CheckpointAction,
    DelegateAction,
    ExecuteAction,
    ExecutionLog,
    ExecutionResult,
    ExitStatus,
    FetchAction,
    ImageAction,
    MessageAction,
    ServeAction,
    SetScheduleAction,
    SubTask,
    SubTaskOutcome,
    SubTaskStatus,
    ThinkAction,
    WriteAction,
    utc_now,
)
from moral_agent.orchestrator import DelegationOrchestrator
from moral_agent.sandbox import SecurityError, normalize, under
from moral_agent.schedule import SCHEDULE_PATH, is_valid, normalize_expression
from moral_agent.storage import AgentStorage, ResourceExceeded
from moral_agent.tools import FetchResult, create_checkpoint, inject_disclosure, is_markup, safe_fetch

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_MS = 30_000
DEFAULT_WORKING_DIR = "/projects"
STREAM_CAP_BYTES = 50 * 1024
TRUNCATION_MARKER = "\n... [truncated]"
KILL_GRACE_S = 2.0
DETACHED_NOTE = b"[output pipes held open by a detached process]"

EXECUTION_LOG_DIR = "/self/execution-logs"
FETCH_RESULTS_DIR = "/self/fetch-results"
OUTBOX_DIR = "/comms/outbox"
PUBLIC_ZONE = "/public"
DEFAULT_IMAGE_DIR = "/public/images"

# (prompt, aspect_ratio) → image bytes, or None on failure
ImageGenerator = Callable[[str, str], bytes | None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def truncate_stream(raw: bytes, cap: int = STREAM_CAP_BYTES) -> str:
    if len(raw) <= cap:
        return raw.decode("utf-8", errors="replace")
    return raw[:cap].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


def public_path(path: str) -> str:
    """Coerce a serve target under the public zone."""
    normalized = normalize(path)
    if under(normalized, PUBLIC_ZONE):
        return normalized
    return PUBLIC_ZONE + normalized


class ActionExecutor:
    def __init__(
        self,
        storage: AgentStorage,
        orchestrator: DelegationOrchestrator | None = None,
        *,
        command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        stream_cap_bytes: int = STREAM_CAP_BYTES,
        fetcher: Callable[[str], FetchResult | None] = safe_fetch,
        checkpointer: Callable[[str], bool] = create_checkpoint,
        image_generator: ImageGenerator | None = None,
    ) -> None:
        self._storage = storage
        self._orchestrator = orchestrator
        self._command_timeout_ms = command_timeout_ms
        self._stream_cap = stream_cap_bytes
        self._fetcher = fetcher
        self._checkpointer = checkpointer
        self._image_generator = image_generator
        self._handlers: dict[str, Callable[[Action, int], ExecutionResult]] = {
            "write":        self._write,
            "serve":        self._serve,
            "think":        self._think,
            "checkpoint":   self._checkpoint,
            "message":      self._message,
            "fetch":        self._fetch,
            "execute":      self._execute,
            "image":        self._image,
            "set-schedule": self._set_schedule,
        }

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def execute(self, actions: list[Action], cycle: int) -> list[ExecutionResult]:
        results: list[ExecutionResult | None] = [None] * len(actions)
        delegated: list[tuple[int, DelegateAction]] = []

        for index, action in enumerate(actions):
            if isinstance(action, DelegateAction):
                if not action.path:
                    results[index] = ExecutionResult(action=action, success=False, error="Delegate action requires a path")
                else:
                    delegated.append((index, action))
                continue
            results[index] = self._execute_one(action, cycle)

        if delegated:
            for index, result in self._delegate(delegated, cycle):
                results[index] = result

        return [result for result in results if result is not None]

    def _execute_one(self, action: Action, cycle: int) -> ExecutionResult:
        handler = self._handlers.get(action.kind)
        if handler is None:
            return ExecutionResult(action=action, success=False, error=f"Unknown action type: {action.kind}")
        try:
            return handler(action, cycle)
        except (SecurityError, ResourceExceeded, OSError) as exc:
            logger.error(
                "Action execution failed",
                extra={"data": {"kind": action.kind, "path": getattr(action, "path", None), "error": str(exc)}},
            )
            return ExecutionResult(action=action, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected action failure", extra={"data": {"kind": action.kind}})
            return ExecutionResult(action=action, success=False, error=str(exc))

    # ------------------------------------------------------------------
    # Filesystem effects
    # ------------------------------------------------------------------

    def _write(self, action: WriteAction, cycle: int) -> ExecutionResult:
        if not action.path:
            return ExecutionResult(action=action, success=False, error="Write action requires a path")

        if action.mode == "append":
            self._storage.append(action.path, action.content)
        else:
            self._storage.write(action.path, action.content)

        logger.info(
            "Write action executed",
            extra={"data": {"path": action.path, "mode": action.mode, "size": len(action.content)}},
        )
        return ExecutionResult(action=action, success=True, detail=action.path)

    def _serve(self, action: ServeAction, cycle: int) -> ExecutionResult:
        if not action.path:
            return ExecutionResult(action=action, success=False, error="Serve action requires a path")

        target = self._publish(action.path, action.content)
        return ExecutionResult(action=action, success=True, detail=target)

    def _publish(self, path: str, content: str) -> str:
        target = public_path(path)
        if is_markup(target):
            content = inject_disclosure(content)
        self._storage.write(target, content)
        logger.info("Serve action executed", extra={"data": {"path": target, "size": len(content)}})
        return target

    def _message(self, action: MessageAction, cycle: int) -> ExecutionResult:
        recipient = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in action.recipient) or "operator"
        filename = f"msg-{_now_ms()}-to-{recipient}.md"
        body = f"To: {action.recipient}\nDate: {utc_now()}\n\n{action.content}"
        self._storage.write(f"{OUTBOX_DIR}/{filename}", body)
        logger.info("Message written to outbox", extra={"data": {"to": action.recipient, "filename": filename}})
        return ExecutionResult(action=action, success=True, detail=f"{OUTBOX_DIR}/{filename}")

    def _set_schedule(self, action: SetScheduleAction, cycle: int) -> ExecutionResult:
        expression = normalize_expression(action.expression)
        if not is_valid(expression):
            return ExecutionResult(action=action, success=False, error=f"Invalid cron expression: {expression!r}")

        self._storage.write(SCHEDULE_PATH, expression)
        logger.info("Schedule updated", extra={"data": {"cron": expression}})
        return ExecutionResult(action=action, success=True, detail=expression)

    # ------------------------------------------------------------------
    # Internal / best-effort effects
    # ------------------------------------------------------------------

    def _think(self, action: ThinkAction, cycle: int) -> ExecutionResult:
        logger.info("Think action", extra={"data": {"thought": action.content[:200]}})
        return ExecutionResult(action=action, success=True)

    def _checkpoint(self, action: CheckpointAction, cycle: int) -> ExecutionResult:
        label = action.label or action.content.strip() or "agent-checkpoint"
        if self._checkpointer(label):
            return ExecutionResult(action=action, success=True, detail=label)
        return ExecutionResult(action=action, success=False, error="Checkpoint failed")

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def _fetch(self, action: FetchAction, cycle: int) -> ExecutionResult:
        if not action.url:
            return ExecutionResult(action=action, success=False, error="Fetch action requires a url")

        result = self._fetcher(action.url)
        if result is None:
            return ExecutionResult(action=action, success=False, error="Fetch failed or domain not allowed")

        stored = f"{FETCH_RESULTS_DIR}/fetch-{_now_ms()}.txt"
        content = f"URL: {action.url}\nStatus: {result.status}\nFetched: {utc_now()}\n\n{result.body}"
        try:
            self._storage.write(stored, content)
        except (SecurityError, ResourceExceeded, OSError) as exc:
            logger.warning("Could not save fetch result", extra={"data": {"error": str(exc)}})
            stored = None

        logger.info("Fetch action executed", extra={"data": {"url": action.url, "status": result.status}})
        return ExecutionResult(action=action, success=True, detail=stored)

    # ------------------------------------------------------------------
    # Image generation
    # ------------------------------------------------------------------

    def _image(self, action: ImageAction, cycle: int) -> ExecutionResult:
        if self._image_generator is None:
            return ExecutionResult(action=action, success=False, error="Image generation is not configured")

        target = action.path or f"{DEFAULT_IMAGE_DIR}/image-{_now_ms()}.png"
        data = self._image_generator(action.content.strip(), action.aspect_ratio)
        if not data:
            return ExecutionResult(action=action, success=False, error="Image generation failed")

        self._storage.write_bytes(target, data)
        logger.info("Image saved", extra={"data": {"path": target, "size": len(data)}})
        return ExecutionResult(action=action, success=True, detail=target)

    # ------------------------------------------------------------------
    # Shell commands
    # ------------------------------------------------------------------

    def _execute(self, action: ExecuteAction, cycle: int) -> ExecutionResult:
        command = action.command
        if not command:
            return ExecutionResult(action=action, success=False, error="Execute action requires a command")

        timeout_ms = action.timeout_ms or self._command_timeout_ms
        working_dir = action.working_dir or DEFAULT_WORKING_DIR
        started = time.monotonic()
        timed_out = False

        try:
            working_dir = normalize(working_dir)
            cwd = self._storage.sandbox.validate(working_dir)
            cwd.mkdir(parents=True, exist_ok=True)
        except (SecurityError, OSError) as exc:
            log = self._record(cycle, command, working_dir, None, b"", str(exc).encode(), started, timed_out)
            logger.error(
                "Execute rejected: working directory not allowed",
                extra={"data": {"working_dir": working_dir, "error": str(exc)}},
            )
            return ExecutionResult(
                action=action, success=False, error=f"Working directory rejected: {exc}", detail=log.id, log=log
            )

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            exit_code, stdout, stderr = None, b"", str(exc).encode()
        else:
            try:
                stdout, stderr = process.communicate(timeout=timeout_ms / 1000)
            except subprocess.TimeoutExpired:
                timed_out = True
                _kill_group(process)
                stdout, stderr = _drain_after_kill(process)
            exit_code = process.returncode

        log = self._record(cycle, command, working_dir, exit_code, stdout, stderr, started, timed_out)

        logger.info(
            "Execute action completed",
            extra={
                "data": {
                    "command": command[:100],
                    "exit_code": exit_code,
                    "duration_ms": log.duration_ms,
                    "timed_out": timed_out,
                }
            },
        )

        if log.status is ExitStatus.OK:
            return ExecutionResult(action=action, success=True, detail=log.id, log=log)
        suffix = " (timed out)" if timed_out else ""
        return ExecutionResult(
            action=action,
            success=False,
            error=f"Exit code {exit_code}{suffix}: {log.stderr[:200]}",
            detail=log.id,
            log=log,
        )

    def _record(
        self,
        cycle: int,
        command: str,
        working_dir: str,
        exit_code: int | None,
        stdout: bytes,
        stderr: bytes,
        started: float,
        timed_out: bool,
    ) -> ExecutionLog:
        log = ExecutionLog(
            id=f"exec-{_now_ms()}-{secrets.token_hex(2)}",
            cycle=cycle,
            timestamp=utc_now(),
            command=command,
            working_dir=working_dir,
            exit_code=exit_code,
            stdout=truncate_stream(stdout, self._stream_cap),
            stderr=truncate_stream(stderr, self._stream_cap),
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
        )
        self._save_log(log)
        return log

    def _save_log(self, log: ExecutionLog) -> None:
        try:
            self._storage.write(f"{EXECUTION_LOG_DIR}/{log.id}.json", log.model_dump_json(indent=2))
        except (SecurityError, ResourceExceeded, OSError) as exc:
            logger.error("Failed to save execution log", extra={"data": {"id": log.id, "error": str(exc)}})

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def _delegate(self, delegated: list[tuple[int, DelegateAction]], cycle: int) -> list[tuple[int, ExecutionResult]]:
        if self._orchestrator is None:
            return [
                (index, ExecutionResult(action=action, success=False, error="Delegation is not configured"))
                for index, action in delegated
            ]

        tasks = [SubTask(brief=action.content, path=action.path, task_type=action.task_type) for _, action in delegated]
        try:
            outcomes = self._orchestrator.run(tasks, cycle)
        except Exception as exc:
            logger.exception("Delegation batch failed")
            return [(index, ExecutionResult(action=action, success=False, error=str(exc))) for index, action in delegated]

        outcomes = list(outcomes)
        if len(outcomes) < len(delegated):
            logger.error(
                "Delegation returned fewer outcomes than tasks",
                extra={"data": {"tasks": len(delegated), "outcomes": len(outcomes)}},
            )
            outcomes += [
                SubTaskOutcome(task=task, status=SubTaskStatus.FAILED, error="No outcome returned for sub-task")
                for task in tasks[len(outcomes):]
            ]

        results: list[tuple[int, ExecutionResult]] = []
        for (index, action), outcome in zip(delegated, outcomes):
            if not outcome.succeeded:
                results.append((index, ExecutionResult(action=action, success=False, error=outcome.error)))
                continue
            try:
                if action.task_type == "serve":
                    target = self._publish(action.path, outcome.content)
                else:
                    self._storage.write(action.path, outcome.content)
                    target = action.path
            except (SecurityError, ResourceExceeded, OSError) as exc:
                logger.error("Failed to write delegated output", extra={"data": {"path": action.path, "error": str(exc)}})
                results.append((index, ExecutionResult(action=action, success=False, error=str(exc))))
                continue
            results.append((index, ExecutionResult(action=action, success=True, detail=f"{target} ({outcome.status.value})")))
        return results


def _kill_group(process: subprocess.Popen) -> None:
    """SIGKILL the command's whole process group (it runs in its own session)."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        process.kill()


def _drain_after_kill(process: subprocess.Popen) -> tuple[bytes, bytes]:
    """Collect output after a kill without waiting on pipes a detached child still holds."""
    try:
        return process.communicate(timeout=KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()
        process.wait()
        logger.warning("Output pipes held open after kill", extra={"data": {"pid": process.pid}})
        return b"", DETACHED_NOTE
