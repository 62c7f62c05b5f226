"""Single-slot supervisor for the external worker process."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
from collections import deque
from pathlib import Path

from spider_queue.orchestrator.backend.process import build_worker_argv, terminate_process
from spider_queue.orchestrator.contracts import (
    config_snapshot,
    config_to_payload,
    validate_spider_config,
)
from spider_queue.orchestrator.errors import AlreadyRunningError, WorkerStartError
from spider_queue.orchestrator.events import EventChannel
from spider_queue.orchestrator.models import (
    ExecutionOutcome,
    SpiderConfig,
    SupervisorState,
    TaskStatus,
    TaskView,
)
from spider_queue.orchestrator.protocol import (
    MessageProtocol,
    ProgressMessage,
    TerminalOutcome,
    WorkerEvent,
)
from spider_queue.orchestrator.repository import TaskStore
from spider_queue.orchestrator.session import SessionManager

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
STOPPED_MESSAGE = "Stopped by user"


class ProcessSupervisor:
    """Runs at most one worker at a time and turns its output into task state.

    States move idle → starting → running → (stopping →) idle. A reader
    thread feeds stdout lines to `MessageProtocol`; when the execution ends
    the task row is finalized first, the supervisor returns to idle, and only
    then is the `ExecutionOutcome` published on `outcomes`.
    """

    def __init__(
        self,
        *,
        task_store: TaskStore,
        session: SessionManager,
        worker_command: str,
        worker_cwd: Path | None = None,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        self._task_store = task_store
        self._session = session
        self._worker_command = worker_command
        self._worker_cwd = worker_cwd
        self._stop_grace_seconds = stop_grace_seconds
        self.events: EventChannel[WorkerEvent] = EventChannel("worker-events")
        self.outcomes: EventChannel[ExecutionOutcome] = EventChannel("execution-outcomes")

        self._lock = threading.RLock()
        self._state = SupervisorState.IDLE
        self._process: subprocess.Popen[str] | None = None
        self._protocol: MessageProtocol | None = None
        self._task_id: int | None = None
        self._reader: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stop_requested = False
        self._finished = threading.Event()
        self._finished.set()

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def current_task_id(self) -> int | None:
        with self._lock:
            return self._task_id if self._state is not SupervisorState.IDLE else None

    def is_running(self) -> bool:
        with self._lock:
            return self._state is not SupervisorState.IDLE

    def last_progress(self) -> ProgressMessage | None:
        with self._lock:
            protocol = self._protocol
        return protocol.last_progress if protocol is not None else None

    def start(self, config: SpiderConfig, *, queue_item_id: int | None = None) -> TaskView:
        """Create the task and spawn the worker with `config` on stdin.

        Raises AlreadyRunningError unless idle, ConfigurationError for an
        unusable config, and WorkerStartError when the worker cannot be
        launched (the task is then marked failed).
        """

        with self._lock:
            if self._state is not SupervisorState.IDLE:
                raise AlreadyRunningError(
                    f"Worker is {self._state.value}; only one execution may be active.",
                )
            validate_spider_config(config)
            self._state = SupervisorState.STARTING

        try:
            task = self._task_store.create_task(
                config.task_type.value,
                config.params,
                config_snapshot(config),
                queue_item_id=queue_item_id,
            )
        except BaseException:
            self._reset_idle()
            raise

        process = self._spawn(task.task_id, config)
        protocol = MessageProtocol(
            task.task_id,
            task_store=self._task_store,
            session=self._session,
            events=self.events,
        )
        with self._lock:
            self._process = process
            self._protocol = protocol
            self._task_id = task.task_id
            self._stop_requested = False
            self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
            self._finished = threading.Event()
            self._stderr_reader = threading.Thread(
                target=self._drain_stderr,
                args=(process, task.task_id, self._stderr_tail),
                name=f"worker-stderr-{task.task_id}",
                daemon=True,
            )
            self._reader = threading.Thread(
                target=self._read_stdout,
                args=(process, protocol, self._finished, self._stderr_reader),
                name=f"worker-stdout-{task.task_id}",
                daemon=True,
            )
            self._state = SupervisorState.RUNNING
            self._stderr_reader.start()
            self._reader.start()
        logger.info("Worker pid=%d started for task %d", process.pid, task.task_id)
        return task

    def stop(self, timeout: float | None = None) -> bool:
        """Terminate the running worker and wait until its task is finalized.

        Returns False when nothing was running or finalization did not
        complete within `timeout`.
        """

        with self._lock:
            if self._state is not SupervisorState.RUNNING or self._process is None:
                return False
            self._state = SupervisorState.STOPPING
            self._stop_requested = True
            process = self._process
            reader = self._reader
            finished = self._finished
            task_id = self._task_id

        logger.info("Stopping worker pid=%d for task %s", process.pid, task_id)
        terminate_process(process, grace_seconds=self._stop_grace_seconds)
        if reader is threading.current_thread():
            return True
        return finished.wait(timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current execution (if any) is finalized."""

        with self._lock:
            finished = self._finished
        return finished.wait(timeout)

    def _spawn(self, task_id: int, config: SpiderConfig) -> subprocess.Popen[str]:
        env = os.environ.copy()
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONIOENCODING"] = "utf-8"
        try:
            argv = build_worker_argv(self._worker_command)
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self._worker_cwd,
                env=env,
            )
        except (OSError, ValueError) as error:
            message = f"Failed to start worker: {error}"
            self._fail_start(task_id, message)
            raise WorkerStartError(message, task_id=task_id) from error

        try:
            if process.stdin is None:
                raise BrokenPipeError("worker stdin is not available")
            process.stdin.write(json.dumps(config_to_payload(config), ensure_ascii=False) + "\n")
            process.stdin.close()
        except OSError as error:
            terminate_process(process)
            message = f"Worker did not accept its configuration: {error}"
            self._fail_start(task_id, message)
            raise WorkerStartError(message, task_id=task_id) from error
        return process

    def _fail_start(self, task_id: int, message: str) -> None:
        logger.error("Task %d: %s", task_id, message)
        self._task_store.update_task_status(task_id, TaskStatus.FAILED, error_message=message)
        self._reset_idle()

    def _reset_idle(self) -> None:
        with self._lock:
            self._state = SupervisorState.IDLE
            self._process = None
            self._task_id = None

    def _read_stdout(
        self,
        process: subprocess.Popen[str],
        protocol: MessageProtocol,
        finished: threading.Event,
        stderr_reader: threading.Thread,
    ) -> None:
        outcome: TerminalOutcome | None = None
        internal_error: str | None = None
        try:
            if process.stdout is not None:
                for line in process.stdout:
                    outcome = protocol.handle_line(line)
                    if outcome is not None:
                        break
        except Exception as error:
            logger.exception("Task %d: failed to process worker output", protocol.task_id)
            internal_error = f"Failed to process worker output: {error}"

        if outcome is None and internal_error is not None:
            terminate_process(process)
        exit_code = self._await_exit(process)
        stderr_reader.join(timeout=self._stop_grace_seconds)
        try:
            execution = self._finalize(protocol.task_id, outcome, exit_code, internal_error)
        finally:
            with self._lock:
                self._state = SupervisorState.IDLE
                self._process = None
                self._task_id = None
            finished.set()
        logger.info(
            "Task %d finished: %s (exit code %s)",
            execution.task_id,
            execution.status.value,
            exit_code,
        )
        self.outcomes.publish(execution)

    def _await_exit(self, process: subprocess.Popen[str]) -> int | None:
        try:
            return process.wait(timeout=self._stop_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Worker pid=%d did not exit in time; terminating", process.pid)
            return terminate_process(process)

    def _finalize(
        self,
        task_id: int,
        outcome: TerminalOutcome | None,
        exit_code: int | None,
        internal_error: str | None,
    ) -> ExecutionOutcome:
        with self._lock:
            stop_requested = self._stop_requested
            stderr_tail = list(self._stderr_tail)

        if outcome is None:
            if stop_requested:
                self._task_store.update_task_status(
                    task_id,
                    TaskStatus.STOPPED,
                    error_message=STOPPED_MESSAGE,
                )
            else:
                message = internal_error or (
                    f"Worker terminated unexpectedly (exit code {exit_code})"
                )
                if stderr_tail and internal_error is None:
                    message = f"{message}: {' | '.join(stderr_tail[-3:])}"
                logger.warning("Task %d: %s", task_id, message)
                self._task_store.update_task_status(
                    task_id,
                    TaskStatus.FAILED,
                    error_message=message,
                )

        task = self._task_store.get_task(task_id)
        if task is None:
            status = outcome.status if outcome is not None else TaskStatus.FAILED
            return ExecutionOutcome(task_id=task_id, status=status, exit_code=exit_code)
        return ExecutionOutcome(
            task_id=task_id,
            status=task.status,
            error_message=task.error_message,
            result_count=task.result_count,
            exit_code=exit_code,
        )

    def _drain_stderr(
        self,
        process: subprocess.Popen[str],
        task_id: int,
        tail: deque[str],
    ) -> None:
        if process.stderr is None:
            return
        for line in process.stderr:
            text = line.rstrip()
            if not text:
                continue
            tail.append(text)
            logger.warning("Worker stderr (task %d): %s", task_id, text)
