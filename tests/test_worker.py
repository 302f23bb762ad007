"""Tests for trak.worker ephemeral execution."""

import os
import signal
import threading

import pytest

from trak.dispatch import task_label
from trak.errors import GatewayError
from trak.tasks import add_dependency, create_task
from trak.worker import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    EphemeralWorker,
    GatewayExecutor,
    run_worker,
)


def _entries(store, task_id):
    return [e["entry"] for e in store.get_journal(task_id)]


def _succeed(task, instruction, cancelled):
    return True


def _fail(task, instruction, cancelled):
    return False


def _explode(task, instruction, cancelled):
    raise RuntimeError("disk full")


def _hang(task, instruction, cancelled):
    cancelled.wait(5)
    return not cancelled.is_set()


class TestEphemeralWorker:
    """Run-then-die outcomes."""

    def test_success_closes_task(self, quiet_store, events):
        task = create_task(quiet_store, "Work")
        worker = EphemeralWorker(quiet_store, task["id"], _succeed, sink=events.append)

        assert worker.run() == EXIT_SUCCESS

        assert quiet_store.get_task(task["id"])["status"] == "done"
        entries = _entries(quiet_store, task["id"])
        assert "Worker started (agent: worker)" in entries
        assert "Worker completed successfully" in entries

    def test_success_cascades(self, quiet_store, gateway, events):
        task = create_task(quiet_store, "Work")
        child = create_task(quiet_store, "Next", autonomy="auto")
        add_dependency(quiet_store, child["id"], task["id"])

        code = EphemeralWorker(quiet_store, task["id"], _succeed, gateway=gateway, sink=events.append).run()

        assert code == EXIT_SUCCESS
        assert gateway.spawned_labels == [task_label(child["id"])]

    def test_success_without_gateway_emits_events(self, quiet_store, events):
        task = create_task(quiet_store, "Work")
        child = create_task(quiet_store, "Next", autonomy="auto")
        add_dependency(quiet_store, child["id"], task["id"])

        EphemeralWorker(quiet_store, task["id"], _succeed, sink=events.append).run()

        assert events == [f"TRAK_EVENT:UNBLOCKED:{child['id']}:Next"]

    def test_failure_resets(self, quiet_store):
        task = create_task(quiet_store, "Work")

        assert EphemeralWorker(quiet_store, task["id"], _fail).run() == EXIT_FAILURE

        task = quiet_store.get_task(task["id"])
        assert task["status"] == "open"
        assert task["assigned_to"] == ""
        assert _entries(quiet_store, task["id"])[-1] == "Worker failed; task reset to open"

    def test_executor_error_resets(self, quiet_store):
        task = create_task(quiet_store, "Work")

        assert EphemeralWorker(quiet_store, task["id"], _explode).run() == EXIT_FAILURE

        entries = _entries(quiet_store, task["id"])
        assert "Worker error: disk full" in entries
        assert entries[-1] == "Worker failed: disk full; task reset to open"
        assert quiet_store.get_task(task["id"])["status"] == "open"

    def test_timeout_resets(self, quiet_store):
        task = create_task(quiet_store, "Slow")
        worker = EphemeralWorker(quiet_store, task["id"], _hang, timeout_seconds=0.1)

        assert worker.run() == EXIT_TIMEOUT

        assert quiet_store.get_task(task["id"])["status"] == "open"
        assert _entries(quiet_store, task["id"])[-1] == "Worker timed out after 0.1s; task reset to open"

    def test_sigterm_resets_and_restores_handler(self, quiet_store):
        task = create_task(quiet_store, "Interrupted")
        before = signal.getsignal(signal.SIGTERM)

        def terminate(task, instruction, cancelled):
            os.kill(os.getpid(), signal.SIGTERM)
            cancelled.wait(5)
            return True

        code = EphemeralWorker(quiet_store, task["id"], terminate).run()

        assert code == EXIT_INTERRUPTED
        assert quiet_store.get_task(task["id"])["status"] == "open"
        assert _entries(quiet_store, task["id"])[-1] == (
            "Worker interrupted by signal SIGTERM; task reset to open"
        )
        assert signal.getsignal(signal.SIGTERM) == before

    def test_missing_task(self, quiet_store):
        assert EphemeralWorker(quiet_store, "trak-nope00", _succeed).run() == EXIT_FAILURE

    def test_done_task_is_noop(self, quiet_store):
        task = create_task(quiet_store, "Done", status="done")
        calls = []

        code = EphemeralWorker(quiet_store, task["id"], lambda *args: calls.append(args)).run()

        assert code == EXIT_SUCCESS
        assert calls == []

    def test_instruction_passed_to_executor(self, quiet_store):
        task = create_task(quiet_store, "Inspect")
        seen = {}

        def record(task, instruction, cancelled):
            seen["instruction"] = instruction
            return True

        EphemeralWorker(quiet_store, task["id"], record, sink=lambda line: None).run()

        assert f"## Task: Inspect ({task['id']})" in seen["instruction"]
        assert "closed for you" in seen["instruction"]


class TestGatewayExecutor:
    """Gateway-backed executor polls until the session ends."""

    def test_session_ends(self, gateway):
        executor = GatewayExecutor(gateway, timeout_seconds=60, poll_interval=0.01)

        assert executor({"id": "trak-abc123"}, "do it", threading.Event())
        assert gateway.spawn_calls[0].label == "worker-trak-abc123"
        assert gateway.spawn_calls[0].timeout_seconds == 60

    def test_cancelled_while_running(self, gateway):
        gateway.active_labels.add("worker-trak-abc123")
        cancelled = threading.Event()
        cancelled.set()

        assert not GatewayExecutor(gateway, poll_interval=0.01)({"id": "trak-abc123"}, "do it", cancelled)

    def test_spawn_rejected_raises(self, make_gateway):
        gateway = make_gateway(spawn_ok=False, error="no capacity")
        with pytest.raises(GatewayError, match="no capacity"):
            GatewayExecutor(gateway)({"id": "trak-abc123"}, "do it", threading.Event())

    def test_run_worker_uses_gateway(self, quiet_store, gateway):
        task = create_task(quiet_store, "Remote", timeout_seconds=90)

        code = run_worker(quiet_store, task["id"], gateway, sink=lambda line: None)

        assert code == EXIT_SUCCESS
        assert gateway.spawn_calls[0].timeout_seconds == 90
        assert quiet_store.get_task(task["id"])["status"] == "done"
