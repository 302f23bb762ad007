"""Ephemeral worker: run one task directly, then exit.

The worker claims the task, hands the instruction to an executor and
either closes the task (cascading to unblocked dependents) or resets it
to open. A self-destruct timer and SIGINT/SIGTERM handlers make sure a
killed or stuck worker never leaves its task in wip without a trace.

Exit codes:
    0  work succeeded and the task was closed
    1  work failed, task reset to open
    2  timed out, task reset to open
    130  interrupted by a signal, task reset to open
"""

import logging
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable

import yaml

from . import config
from .db import Store
from .dispatch import EventSink, build_instruction, close_and_cascade, print_event, reset_task
from .errors import GatewayError
from .gateway import Gateway, SpawnRequest

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKER_AGENT = "worker"

# (task, instruction, cancelled) -> True when the work succeeded.
# Executors should return promptly once ``cancelled`` is set.
Executor = Callable[[dict[str, Any], str, threading.Event], bool]


class WorkerInterrupted(Exception):
    """Raised inside the worker when a termination signal arrives."""

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum


class GatewayExecutor:
    """Run the instruction as a gateway session and wait for it to end.

    The session counts as finished once the gateway no longer lists a
    session with the worker's label.

    Args:
        gateway: Execution gateway
        model: Optional model override
        timeout_seconds: Run timeout handed to the gateway
        poll_interval: Seconds between session checks
    """

    def __init__(
        self,
        gateway: Gateway,
        model: str | None = None,
        timeout_seconds: int = config.DEFAULT_WORKER_TIMEOUT_SECONDS,
        poll_interval: float = 5.0,
    ):
        self.gateway = gateway
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

    def __call__(self, task: dict[str, Any], instruction: str, cancelled: threading.Event) -> bool:
        label = f"worker-{task['id']}"
        response = self.gateway.spawn(
            SpawnRequest(
                instruction=instruction,
                label=label,
                cleanup="delete",
                timeout_seconds=self.timeout_seconds,
                model=self.model,
            )
        )
        if not response.ok:
            raise GatewayError(response.error or "Spawn rejected")

        logger.info("Worker session %s started for %s", response.session_key, task["id"])
        while not cancelled.wait(self.poll_interval):
            if not self.gateway.is_session_active(label):
                return True
        return False


class EphemeralWorker:
    """Run-then-die execution of a single task.

    Args:
        store: Store handle
        task_id: Task to work
        executor: Callable doing the actual work
        timeout_seconds: Self-destruct timeout
        agent: Assignee and journal author
        gateway: Gateway used to dispatch dependents after closing
        sink: Receives UNBLOCKED events when dependents cannot be dispatched
        workdir: Working directory named in the instruction
    """

    def __init__(
        self,
        store: Store,
        task_id: str,
        executor: Executor,
        timeout_seconds: int = config.DEFAULT_WORKER_TIMEOUT_SECONDS,
        agent: str = DEFAULT_WORKER_AGENT,
        gateway: Gateway | None = None,
        sink: EventSink = print_event,
        workdir: Path | str | None = None,
    ):
        self.store = store
        self.task_id = task_id
        self.executor = executor
        self.timeout_seconds = timeout_seconds
        self.agent = agent
        self.gateway = gateway
        self.sink = sink
        self.workdir = workdir

        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self._finished = False
        self._exit_code: int | None = None
        self._timer: threading.Timer | None = None
        self._previous_handlers: dict[int, Any] = {}

    # =========================================================================
    # Abort paths
    # =========================================================================

    def _abort(self, reason: str, exit_code: int) -> bool:
        """Reset the task once. Returns False if the worker already finished."""
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            self._exit_code = exit_code

        logger.warning("Worker for %s aborting: %s", self.task_id, reason)
        try:
            reset_task(self.store, self.task_id, reason, author=self.agent)
        finally:
            # Executors only wake once the task is back to open
            self.cancelled.set()
        return True

    def _on_timeout(self) -> None:
        self._abort(f"Worker timed out after {self.timeout_seconds}s", EXIT_TIMEOUT)

    def _on_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if self._abort(f"Worker interrupted by signal {name}", EXIT_INTERRUPTED):
            raise WorkerInterrupted(signum)

    def _install_signal_handlers(self) -> None:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    # =========================================================================
    # Run
    # =========================================================================

    def _claim(self, task: dict[str, Any]) -> dict[str, Any]:
        if task["status"] == "wip" and task["assigned_to"] == self.agent:
            return task
        with self.store.connection() as conn:
            task = self.store.update_task(self.task_id, conn=conn, status="wip", assigned_to=self.agent)
            self.store.append_journal(
                self.task_id, f"Worker started (agent: {self.agent})", author=self.agent, conn=conn
            )
        self.store.after_write()
        return task

    def _finish(self, success: bool, error: str = "") -> int:
        with self._lock:
            if self._finished:
                return self._exit_code
            self._finished = True

        if not success:
            reason = "Worker failed" + (f": {error}" if error else "")
            reset_task(self.store, self.task_id, reason, author=self.agent)
            return EXIT_FAILURE

        self.store.append_journal(self.task_id, "Worker completed successfully", author=self.agent)
        closed = close_and_cascade(
            self.store, self.task_id, gateway=self.gateway, sink=self.sink, author=self.agent
        )
        if not closed.ok:
            # The agent may have closed the task itself
            logger.warning("Worker could not close %s: %s", self.task_id, closed.message)
        return EXIT_SUCCESS

    def run(self) -> int:
        """Do the work and return the process exit code."""
        task = self.store.get_task(self.task_id)
        if task is None:
            logger.error("Task not found: %s", self.task_id)
            return EXIT_FAILURE
        if task["status"] in config.TERMINAL_STATUSES:
            logger.info("Task %s is already %s", self.task_id, task["status"])
            return EXIT_SUCCESS

        started = time.monotonic()
        self._install_signal_handlers()
        self._timer = threading.Timer(self.timeout_seconds, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

        try:
            task = self._claim(task)
            instruction = build_instruction(task, self.workdir, worker=True)
            self.store.append_journal(self.task_id, "Worker executing work instruction", author=self.agent)

            try:
                success = self.executor(task, instruction, self.cancelled)
                error = ""
            except WorkerInterrupted:
                return EXIT_INTERRUPTED
            except Exception as e:
                logger.exception("Worker executor raised for %s", self.task_id)
                self.store.append_journal(self.task_id, f"Worker error: {e}", author=self.agent)
                success, error = False, str(e)

            return self._finish(bool(success), error)
        except WorkerInterrupted:
            return EXIT_INTERRUPTED
        finally:
            self._timer.cancel()
            # A timeout already in progress must finish its reset before exit
            self._timer.join()
            self._restore_signal_handlers()
            logger.info("Worker for %s finished in %.1fs", self.task_id, time.monotonic() - started)


def run_worker(
    store: Store,
    task_id: str,
    gateway: Gateway,
    timeout: int | str | None = None,
    model: str | None = None,
    executor: Executor | None = None,
    **kwargs: Any,
) -> int:
    """Run one task through an ephemeral worker.

    Args:
        store: Store handle
        task_id: Task to run
        gateway: Gateway that executes the work and receives cascades
        timeout: Worker timeout override (seconds or ``5m`` style)
        model: Model override for the gateway session
        executor: Custom executor; defaults to a GatewayExecutor
        **kwargs: Passed to EphemeralWorker (agent, sink, workdir)

    Returns:
        Exit code (0 success, 1 failure, 2 timeout, 130 signal)
    """
    task = store.get_task(task_id)
    try:
        timeout_seconds = config.resolve_timeout(timeout, task, config.DEFAULT_WORKER_TIMEOUT_SECONDS)
        if executor is None:
            executor = GatewayExecutor(
                gateway,
                model=model or store.config_value("dispatch.model"),
                timeout_seconds=timeout_seconds,
            )
    except (ValueError, yaml.YAMLError) as e:
        logger.error("Invalid worker settings for %s: %s", task_id, e)
        return EXIT_FAILURE

    worker = EphemeralWorker(
        store,
        task_id,
        executor,
        timeout_seconds=timeout_seconds,
        gateway=gateway,
        **kwargs,
    )
    return worker.run()
