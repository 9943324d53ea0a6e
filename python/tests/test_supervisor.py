"""
Tests for the worker supervisor, using real short-lived processes.

Tests cover:
- Launching the real worker and connecting
- Spawn failures and connect timeouts leaving the supervisor FAULTED
- Relaunch after a crash with a new channel identifier
- No relaunch during shutdown
- Bounded restarts ending in DEGRADED, and re-arming with start()
- abandon() and record_success()
- Default logger honoring the configured level and log file
"""

import json
import os
import sys
import threading
import time

import psutil
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tripleslash.core.channel import HAS_UNIX_SOCKETS
from tripleslash.core.config import RestartPolicy, TripleSlashConfig
from tripleslash.core.logging import StructuredLogger
from tripleslash.core.supervisor import WorkerState, WorkerSupervisor

pytestmark = pytest.mark.skipif(not HAS_UNIX_SOCKETS, reason="requires Unix domain sockets")

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))

WORKER = [sys.executable, "-m", "tripleslash.worker"]
CRASHER = [sys.executable, "-c", "import sys; sys.exit(3)"]
SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


def worker_env():
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [SRC_DIR, env.get("PYTHONPATH")]))
    env.pop("TRIPLESLASH_CONFIG", None)
    return env


def make_config(parser_timeout_ms=5000, max_attempts=5):
    return TripleSlashConfig(
        parser_timeout_ms=parser_timeout_ms,
        restart_policy=RestartPolicy(
            max_attempts=max_attempts,
            backoff_base=0.01,
            backoff_max=0.05,
            stable_after=10.0,
        ),
    )


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestLaunch:
    """Test bringing a worker up."""

    def test_start_real_worker(self):
        entries = []
        supervisor = WorkerSupervisor(
            config=make_config(),
            worker_command=WORKER,
            env=worker_env(),
            logger=StructuredLogger(handler=entries.append),
        )
        try:
            assert supervisor.state is WorkerState.NOT_STARTED
            assert supervisor.start()
            assert supervisor.is_ready
            assert supervisor.state is WorkerState.READY
            assert supervisor.channel_identifier.startswith("qsts-")
            assert supervisor.pid is not None
            assert supervisor.current_channel() is not None
            assert supervisor.launch_count == 1
            assert supervisor.restart_count == 0
            assert supervisor.metrics.snapshot().worker_state == "ready"
            assert {"worker_spawn", "worker_ready"} <= {e.event for e in entries}

            # Already running
            assert supervisor.start()
            assert supervisor.launch_count == 1
        finally:
            supervisor.close()

    def test_spawn_failure(self):
        supervisor = WorkerSupervisor(
            config=make_config(), worker_command=["/nonexistent/tripleslash-worker"]
        )
        try:
            assert not supervisor.start()
            assert supervisor.state is WorkerState.FAULTED
            assert supervisor.current_channel() is None
            assert supervisor.launch_count == 0
            assert supervisor.metrics.snapshot().launch_failures == 1
        finally:
            supervisor.close()

    def test_logs_to_configured_file(self, tmp_path):
        log_file = tmp_path / "host.log"
        supervisor = WorkerSupervisor(
            config=TripleSlashConfig(log_file=str(log_file)),
            worker_command=["/nonexistent/tripleslash-worker"],
        )
        try:
            assert not supervisor.start()
        finally:
            supervisor.close()

        entries = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        spawn = [e for e in entries if e["event"] == "worker_spawn"]
        assert spawn and spawn[0]["level"] == "error"
        assert spawn[0]["component"] == "supervisor"

    def test_configured_level_applies(self, tmp_path):
        log_file = tmp_path / "host.log"
        supervisor = WorkerSupervisor(
            config=TripleSlashConfig(log_file=str(log_file), log_level=None),
            worker_command=["/nonexistent/tripleslash-worker"],
        )
        supervisor.start()
        supervisor.close()

        assert not log_file.exists()

    def test_connect_timeout_kills_worker(self):
        supervisor = WorkerSupervisor(
            config=make_config(parser_timeout_ms=300, max_attempts=0),
            worker_command=SLEEPER,
        )
        try:
            started = time.monotonic()
            assert not supervisor.start()
            assert time.monotonic() - started < 5.0

            assert wait_for(lambda: supervisor.state is WorkerState.DEGRADED)
            assert supervisor.pid is None
            assert supervisor.launch_count == 1
            assert supervisor.metrics.snapshot().launch_failures == 1
        finally:
            supervisor.close()

    def test_wait_until_ready_times_out(self):
        supervisor = WorkerSupervisor(config=make_config())
        assert not supervisor.wait_until_ready(timeout=0.1)
        supervisor.close()


class TestRestart:
    """Test relaunching after unexpected exits."""

    def test_kill_causes_exactly_one_relaunch(self):
        supervisor = WorkerSupervisor(
            config=make_config(), worker_command=WORKER, env=worker_env()
        )
        try:
            assert supervisor.start()
            first_identifier = supervisor.channel_identifier
            first_pid = supervisor.pid

            psutil.Process(first_pid).kill()

            assert wait_for(lambda: supervisor.launch_count == 2 and supervisor.is_ready)
            assert supervisor.restart_count == 1
            assert supervisor.channel_identifier != first_identifier
            assert supervisor.pid != first_pid

            time.sleep(0.5)
            assert supervisor.launch_count == 2
            assert supervisor.metrics.snapshot().worker_restarts == 1
        finally:
            supervisor.close()

    def test_crash_loop_degrades(self):
        supervisor = WorkerSupervisor(
            config=make_config(max_attempts=2), worker_command=CRASHER
        )
        try:
            assert not supervisor.start()
            assert wait_for(lambda: supervisor.state is WorkerState.DEGRADED)

            assert supervisor.launch_count == 3
            assert supervisor.restart_count == 2
            assert supervisor.current_channel() is None
            assert supervisor.metrics.snapshot().degraded_count == 1

            time.sleep(0.3)
            assert supervisor.launch_count == 3
        finally:
            supervisor.close()

    def test_start_rearms_degraded(self):
        supervisor = WorkerSupervisor(
            config=make_config(max_attempts=0), worker_command=CRASHER
        )
        try:
            supervisor.start()
            assert wait_for(lambda: supervisor.state is WorkerState.DEGRADED)
            assert supervisor.launch_count == 1

            supervisor.start()
            assert wait_for(lambda: supervisor.launch_count == 2)
            assert wait_for(lambda: supervisor.state is WorkerState.DEGRADED)
        finally:
            supervisor.close()

    def test_abandon_relaunches(self):
        supervisor = WorkerSupervisor(
            config=make_config(), worker_command=WORKER, env=worker_env()
        )
        try:
            assert supervisor.start()
            channel = supervisor.current_channel()

            supervisor.abandon(channel)

            assert wait_for(lambda: supervisor.launch_count == 2 and supervisor.is_ready)
            assert supervisor.current_channel() is not channel
            assert channel.closed

            # A stale channel is ignored
            supervisor.abandon(channel)
            time.sleep(0.3)
            assert supervisor.launch_count == 2
        finally:
            supervisor.close()

    def test_record_success_resets_failures(self):
        supervisor = WorkerSupervisor(
            config=make_config(), worker_command=WORKER, env=worker_env()
        )
        try:
            assert supervisor.start()
            psutil.Process(supervisor.pid).kill()
            assert wait_for(lambda: supervisor.launch_count == 2 and supervisor.is_ready)
            assert supervisor.consecutive_failures == 1

            supervisor.record_success()
            assert supervisor.consecutive_failures == 0
        finally:
            supervisor.close()


class TestShutdown:
    """Test explicit shutdown."""

    def test_close_stops_worker_without_relaunch(self):
        supervisor = WorkerSupervisor(
            config=make_config(), worker_command=WORKER, env=worker_env()
        )
        assert supervisor.start()
        pid = supervisor.pid
        channel = supervisor.current_channel()

        supervisor.close()

        assert supervisor.state is WorkerState.TERMINATED
        assert channel.closed
        assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        time.sleep(0.3)
        assert supervisor.launch_count == 1
        assert supervisor.restart_count == 0
        assert supervisor.current_channel() is None

    def test_close_kills_unresponsive_worker(self):
        supervisor = WorkerSupervisor(
            config=make_config(parser_timeout_ms=5000), worker_command=SLEEPER
        )
        # Start in the background so close() races a pending connection
        thread = threading.Thread(target=supervisor.start, daemon=True)
        thread.start()
        assert wait_for(lambda: supervisor.pid is not None)
        pid = supervisor.pid

        supervisor.close()
        thread.join(timeout=5.0)

        assert not thread.is_alive()
        assert supervisor.state is WorkerState.TERMINATED
        assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        assert supervisor.launch_count == 1

    def test_close_is_idempotent(self):
        supervisor = WorkerSupervisor(config=make_config())
        supervisor.close()
        supervisor.close()
        assert supervisor.state is WorkerState.TERMINATED
        assert not supervisor.start()

    def test_context_manager(self):
        with WorkerSupervisor(
            config=make_config(), worker_command=WORKER, env=worker_env()
        ) as supervisor:
            assert supervisor.is_ready
        assert supervisor.state is WorkerState.TERMINATED
