"""
Worker process supervisor.

Owns the worker subprocess and its channel: launches the worker, waits for
it to connect, notices when it exits, and relaunches it with a fresh channel
after an unexpected exit. Relaunches are bounded by a
:class:`~tripleslash.core.config.RestartPolicy`; once the budget is spent
the supervisor parks in ``DEGRADED`` until :meth:`WorkerSupervisor.start`
is called again.
"""

import subprocess
import sys
import threading
import time
from enum import Enum
from typing import Dict, List, Optional, Sequence

import psutil

from .channel import Channel, ConnectResult
from .config import TripleSlashConfig, build_logger
from .errors import TransportError
from .logging import LogEvent, StructuredLogger
from .metrics import Metrics

DEFAULT_WORKER_COMMAND = [sys.executable, "-m", "tripleslash.worker"]

# Seconds the worker gets to exit on its own after its channel closes
_GRACEFUL_EXIT_TIMEOUT = 2.0
_TERMINATE_TIMEOUT = 1.0


class WorkerState(Enum):
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    AWAITING_CONNECTION = "awaiting_connection"
    READY = "ready"
    FAULTED = "faulted"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


_STOPPED_STATES = (WorkerState.SHUTTING_DOWN, WorkerState.TERMINATED)


class _Launch(Enum):
    READY = "ready"
    # A process was started; its exit drives whatever happens next
    NOT_READY = "not_ready"
    # Nothing was started, so no exit will follow
    FAILED = "failed"
    CANCELLED = "cancelled"


def kill_process_tree(process: subprocess.Popen, timeout: float = _TERMINATE_TIMEOUT):
    """Kill a process and everything it spawned."""
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass

    process.kill()
    psutil.wait_procs(children, timeout=timeout)
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        pass


class WorkerSupervisor:
    """
    Keeps one worker process connected to this host.

    Usage:
        with WorkerSupervisor(config=load_config()) as supervisor:
            client = SignatureClient(supervisor)
            response = client.request_method_signature("operation Foo () : Unit {}")

    A single instance is created by the host and handed to whatever needs the
    worker. Exit notifications arrive on a monitor thread per process; the
    current channel is only ever swapped while holding the supervisor lock.
    """

    def __init__(
        self,
        config: Optional[TripleSlashConfig] = None,
        worker_command: Optional[Sequence[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
        channel_directory: Optional[str] = None,
    ):
        """
        Args:
            config: Timeouts and restart policy (defaults when omitted)
            worker_command: Command line to start the worker; the channel
                identifier is appended as the last argument
            env: Environment for the worker process (inherits when omitted)
            cwd: Working directory for the worker process
            logger: Structured logger for lifecycle events (built from the
                config's level and log file when omitted)
            metrics: Collector for launch and restart counters
            channel_directory: Where channel sockets are created (system temp
                directory when omitted)
        """
        self.config = config or TripleSlashConfig()
        self.worker_command: List[str] = list(worker_command or DEFAULT_WORKER_COMMAND)
        self.env = env
        self.cwd = cwd
        self.channel_directory = channel_directory

        self._logger = logger or build_logger(self.config, component="supervisor")
        self._metrics = metrics or Metrics()

        self._lock = threading.Lock()
        self._state_changed = threading.Condition(self._lock)
        self._stopping = threading.Event()

        self._state = WorkerState.NOT_STARTED
        self._channel: Optional[Channel] = None
        self._process: Optional[subprocess.Popen] = None
        self._generation = 0
        self._launched_at = 0.0
        self._launch_count = 0
        self._restart_count = 0
        self._consecutive_failures = 0
        self._monitors: List[threading.Thread] = []

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is WorkerState.READY

    @property
    def channel_identifier(self) -> Optional[str]:
        """Identifier of the current channel, if a worker is attached."""
        with self._lock:
            return self._channel.identifier if self._channel else None

    @property
    def pid(self) -> Optional[int]:
        """Process id of the current worker, if one is running."""
        with self._lock:
            return self._process.pid if self._process else None

    @property
    def launch_count(self) -> int:
        return self._launch_count

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _set_state(self, state: WorkerState):
        # Caller holds self._lock
        self._state = state
        self._metrics.record_state(state.value)
        self._state_changed.notify_all()

    def start(self) -> bool:
        """
        Launch the worker and wait for it to connect.

        Also re-arms a ``DEGRADED`` or ``FAULTED`` supervisor. Returns True
        when a worker is connected.
        """
        with self._lock:
            state = self._state
            if state in _STOPPED_STATES:
                return False
            if state is WorkerState.READY:
                return True
            launching = state in (WorkerState.LAUNCHING, WorkerState.AWAITING_CONNECTION)
            if not launching:
                self._consecutive_failures = 0

        if launching:
            # A relaunch is already under way on a monitor thread
            return self.wait_until_ready(self.config.parser_timeout)

        return self._launch() is _Launch.READY

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until a worker is connected, relaunching stops, or timeout elapses."""
        settled = (
            WorkerState.READY,
            WorkerState.DEGRADED,
            WorkerState.SHUTTING_DOWN,
            WorkerState.TERMINATED,
        )
        with self._state_changed:
            self._state_changed.wait_for(lambda: self._state in settled, timeout=timeout)
            return self._state is WorkerState.READY

    def current_channel(self) -> Optional[Channel]:
        """The connected channel, or None when no worker is ready."""
        with self._lock:
            if self._state is not WorkerState.READY:
                return None
            return self._channel

    def record_success(self):
        """Note a successful round trip; clears the consecutive failure count."""
        with self._lock:
            self._consecutive_failures = 0

    def abandon(self, channel: Channel):
        """
        Give up on the worker behind ``channel``.

        Used when a request timed out: a late reply would answer the wrong
        request, so the worker is killed and the normal exit path relaunches it.
        """
        with self._lock:
            if channel is not self._channel or self._process is None:
                return
            process = self._process

        self._logger.warn(
            LogEvent.WORKER_STOP,
            "Abandoning unresponsive worker",
            pid=process.pid,
            channel_id=channel.identifier,
        )
        kill_process_tree(process)

    def _launch(self) -> _Launch:
        """Start one worker process on a brand-new channel."""
        with self._lock:
            if self._state in _STOPPED_STATES:
                return _Launch.CANCELLED
            stale_channel, stale_process = self._channel, self._process
            self._channel = None
            self._process = None
            self._generation += 1
            generation = self._generation
            self._set_state(WorkerState.LAUNCHING)

        if stale_channel is not None:
            stale_channel.close()
        if stale_process is not None:
            kill_process_tree(stale_process)

        try:
            channel = Channel.create(self.channel_directory)
        except TransportError as e:
            self._launch_failed(generation, f"Failed to create channel: {e}", e)
            return _Launch.FAILED

        command = self.worker_command + [channel.identifier]
        try:
            process = subprocess.Popen(
                command,
                env=self.env,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            channel.close()
            self._launch_failed(generation, f"Failed to start worker {command[0]}: {e}", e)
            return _Launch.FAILED

        with self._lock:
            current = generation == self._generation and self._state is WorkerState.LAUNCHING
            if current:
                self._channel = channel
                self._process = process
                self._launched_at = time.monotonic()
                self._launch_count += 1
                attempt = self._launch_count
                self._set_state(WorkerState.AWAITING_CONNECTION)

        if not current:
            # Shut down while the process was starting
            channel.close()
            kill_process_tree(process)
            return _Launch.CANCELLED

        self._metrics.record_launch()
        self._logger.worker_spawn(process.pid, channel.identifier, attempt)

        monitor = threading.Thread(
            target=self._monitor,
            args=(process, generation),
            name=f"tripleslash-monitor-{process.pid}",
            daemon=True,
        )
        with self._lock:
            self._monitors = [t for t in self._monitors if t.is_alive()] + [monitor]
        monitor.start()

        timeout = self.config.parser_timeout
        result = channel.accept_connection(timeout)

        with self._lock:
            owned = self._channel is channel and self._state is WorkerState.AWAITING_CONNECTION
            if owned and result is ConnectResult.CONNECTED:
                self._set_state(WorkerState.READY)
            elif owned:
                self._set_state(WorkerState.FAULTED)

        if not owned:
            # Exit path or shutdown already took the channel away
            if result is ConnectResult.CONNECTED:
                channel.close()
            return _Launch.NOT_READY

        if result is ConnectResult.CONNECTED:
            self._logger.info(
                LogEvent.WORKER_READY,
                "Worker connected",
                pid=process.pid,
                channel_id=channel.identifier,
            )
            return _Launch.READY

        self._metrics.record_launch_failure()
        if result is ConnectResult.TIMED_OUT:
            self._logger.error(
                LogEvent.CHANNEL_TIMEOUT,
                f"Worker did not connect within {int(timeout * 1000)}ms",
                pid=process.pid,
                channel_id=channel.identifier,
            )
        else:
            self._logger.error(
                LogEvent.CHANNEL_CONNECT,
                "Failed waiting for the worker to connect",
                pid=process.pid,
                channel_id=channel.identifier,
            )
        # Never leak a worker that missed its connection window
        kill_process_tree(process)
        return _Launch.NOT_READY

    def _launch_failed(self, generation: int, message: str, error: Exception):
        self._metrics.record_launch_failure()
        self._logger.error(
            LogEvent.WORKER_SPAWN,
            message,
            error=str(error),
            error_type=type(error).__name__,
        )
        with self._lock:
            if generation == self._generation and self._state is WorkerState.LAUNCHING:
                self._set_state(WorkerState.FAULTED)

    def _monitor(self, process: subprocess.Popen, generation: int):
        """Wait for one worker process to exit and react to it."""
        exit_code = process.wait()

        with self._lock:
            if generation != self._generation or self._state in _STOPPED_STATES:
                # Superseded or intentionally stopped
                return
            channel = self._channel
            self._channel = None
            self._process = None

            lifetime = time.monotonic() - self._launched_at
            if lifetime >= self.config.restart_policy.stable_after:
                self._consecutive_failures = 1
            else:
                self._consecutive_failures += 1
            self._set_state(WorkerState.FAULTED)

        self._logger.worker_exit(process.pid, exit_code, expected=False)
        if channel is not None:
            channel.close()

        self._relaunch(generation)

    def _relaunch(self, generation: int):
        """Relaunch after a failure, honoring the restart policy."""
        policy = self.config.restart_policy

        while True:
            with self._lock:
                if self._state in _STOPPED_STATES or generation != self._generation:
                    return
                failures = self._consecutive_failures
                if policy.exhausted(failures):
                    self._set_state(WorkerState.DEGRADED)
                    degraded = True
                else:
                    degraded = False

            if degraded:
                self._metrics.record_degraded()
                self._logger.error(
                    LogEvent.WORKER_DEGRADED,
                    f"Worker failed {failures} times in a row; no longer relaunching",
                    metadata={"failures": failures, "max_attempts": policy.max_attempts},
                )
                return

            delay = policy.delay_for(failures)
            if delay > 0 and self._stopping.wait(delay):
                return

            with self._lock:
                # start() may have relaunched during the backoff
                if generation != self._generation or self._state is not WorkerState.FAULTED:
                    return
                self._restart_count += 1
                restart = self._restart_count

            self._metrics.record_restart()
            self._logger.info(
                LogEvent.WORKER_RESTART,
                f"Relaunching worker (failure {failures}/{policy.max_attempts})",
                metadata={"restart": restart, "failures": failures, "delay": delay},
            )

            if self._launch() is not _Launch.FAILED:
                return

            with self._lock:
                self._consecutive_failures += 1
                generation = self._generation

    def close(self):
        """Stop the worker for good. Safe to call more than once."""
        with self._lock:
            if self._state in _STOPPED_STATES:
                return
            self._set_state(WorkerState.SHUTTING_DOWN)
            self._stopping.set()
            channel, process = self._channel, self._process
            self._channel = None
            self._process = None

        self._logger.info(
            LogEvent.WORKER_STOP,
            "Shutting down worker",
            pid=process.pid if process else None,
        )

        # The worker treats the end of its channel as a request to exit
        if channel is not None:
            channel.close()
        if process is not None:
            self._stop_process(process)

        with self._lock:
            monitors = list(self._monitors)
            self._monitors = []
        for monitor in monitors:
            if monitor is not threading.current_thread():
                monitor.join(timeout=_TERMINATE_TIMEOUT)

        with self._lock:
            self._set_state(WorkerState.TERMINATED)

    def _stop_process(self, process: subprocess.Popen):
        try:
            exit_code = process.wait(timeout=_GRACEFUL_EXIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.terminate()
            try:
                exit_code = process.wait(timeout=_TERMINATE_TIMEOUT)
            except subprocess.TimeoutExpired:
                kill_process_tree(process)
                exit_code = process.returncode
        self._logger.worker_exit(process.pid, exit_code, expected=True)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"<WorkerSupervisor {self._state.value} pid={self.pid}>"
