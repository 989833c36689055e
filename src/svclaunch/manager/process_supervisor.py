"""Process supervisor for workspace services.

Spawns one child per resolved launch, relays its output with a service
label, tracks liveness, and terminates every child together when the
operator interrupts the run.

Per child the supervisor runs:
- two reader tasks, one per output stream, feeding the shared OutputRelay
- one monitor task that waits for exit and retires the entry

The active set in SupervisorState is the only state shared between
tasks; it is only touched while holding SupervisorState.lock.
"""

import asyncio
import logging
import os
import signal
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from svclaunch.core.config import DEFAULT_RUNNER, DEFAULT_SHUTDOWN_TIMEOUT, LauncherConfig
from svclaunch.core.exceptions import SpawnError
from svclaunch.core.platform_command import IS_WINDOWS, build_launch_command

from .output import OutputRelay, StreamName
from .process_context import ManagedProcess
from .resolver import ResolvedLaunch

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
# Seconds to let readers flush after a child exits (grandchildren may hold the pipes)
STREAM_DRAIN_GRACE = 2.0
# Seconds to wait after SIGKILL before giving up on a child
KILL_WAIT = 5.0


@dataclass
class LaunchFailure:
    """A launch that never produced a running child."""

    service_name: str
    command: str
    reason: str


@dataclass
class SupervisorState:
    """State of one supervisor invocation.

    Attributes:
        processes: Every ManagedProcess spawned, in spawn order.
        active: Entries currently RUNNING. Guarded by ``lock``.
        failures: Launches that failed to spawn.
        shutdown_requested: Set once by the interrupt handler or shutdown().

    """

    processes: list[ManagedProcess] = field(default_factory=list)
    active: list[ManagedProcess] = field(default_factory=list)
    failures: list[LaunchFailure] = field(default_factory=list)
    shutdown_requested: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def running_names(self) -> list[str]:
        return [mp.service_name for mp in self.active]

    def to_summary(self) -> list[dict[str, Any]]:
        return [mp.to_summary() for mp in self.processes]


class ProcessSupervisor:
    """Concurrent launcher and coordinated terminator for service processes.

    Attributes:
        relay: Shared writer for labeled child output and notices.
        runner: Runner prefix, e.g. ("npm", "run"); empty for shell mode.
        shutdown_timeout: Seconds to wait after SIGTERM before SIGKILL.
            None waits indefinitely.
        exit_when_idle: Return from run() once all children exited on their own.
        state: State of the current invocation.

    """

    def __init__(
        self,
        relay: OutputRelay | None = None,
        runner: Sequence[str] = DEFAULT_RUNNER,
        shutdown_timeout: float | None = DEFAULT_SHUTDOWN_TIMEOUT,
        exit_when_idle: bool = True,
    ) -> None:
        self.relay = relay or OutputRelay()
        self.runner = tuple(runner)
        self.shutdown_timeout = shutdown_timeout
        self.exit_when_idle = exit_when_idle
        self.state = SupervisorState()
        self._monitors: list[tuple[ManagedProcess, asyncio.Task[None]]] = []
        self._shutdown_event = asyncio.Event()
        self._idle_event = asyncio.Event()
        self._shutdown_task: asyncio.Future[None] | None = None

    @classmethod
    def from_config(cls, config: LauncherConfig, relay: OutputRelay | None = None) -> "ProcessSupervisor":
        return cls(
            relay=relay,
            runner=config.runner,
            shutdown_timeout=config.shutdown_timeout,
            exit_when_idle=config.exit_when_idle,
        )

    async def launch(self, launches: Sequence[ResolvedLaunch]) -> SupervisorState:
        """Spawn one child per launch without waiting on any of them.

        A launch that fails to spawn is recorded in ``state.failures`` and
        the remaining launches still proceed. Once shutdown has been
        requested no further children are spawned.

        Args:
            launches: Resolved launches in spawn order.

        Returns:
            The supervisor state.

        """
        for launch in launches:
            if self.state.shutdown_requested:
                logger.info("Shutdown requested; not starting %s", launch.service.name)
                continue
            self.relay.notice(f"Starting {launch.service.name} with script '{launch.command}'...")
            try:
                managed = await self._spawn(launch)
            except SpawnError as e:
                self.state.failures.append(
                    LaunchFailure(service_name=e.service_name, command=e.command, reason=str(e))
                )
                logger.error("Failed to start service %s: %s", launch.service.name, e)
                self.relay.notice(f"✗ Failed to start {launch.service.name}: {e}", style="red")
                continue

            self.relay.notice(
                f"✓ Service {launch.service.name} started with '{launch.command}'", style="green"
            )
            task = asyncio.create_task(self._monitor(managed), name=f"monitor-{launch.service.name}")
            self._monitors.append((managed, task))

        return self.state

    async def _spawn(self, launch: ResolvedLaunch) -> ManagedProcess:
        """Start the child for one launch and register it as RUNNING.

        Raises:
            SpawnError: If the argv cannot be built or the OS refuses to start it.

        """
        service = launch.service
        try:
            argv = build_launch_command(self.runner, launch.command, launch.invocation)
        except ValueError as e:
            raise SpawnError(str(e), service_name=service.name, command=launch.command) from e

        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Own process group: Ctrl+C reaches only the supervisor, and
            # termination can target the runner's whole tree.
            kwargs["start_new_session"] = True

        logger.info("Spawning %s in %s: %s", service.name, service.path, " ".join(argv))
        try:
            handle = await asyncio.create_subprocess_exec(
                *argv,
                cwd=service.path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(
                f"{type(e).__name__}: {e}", service_name=service.name, command=launch.command
            ) from e

        managed = ManagedProcess(service_name=service.name, command=launch.command, handle=handle)
        async with self.state.lock:
            self.state.processes.append(managed)
            self.state.active.append(managed)
            self._idle_event.clear()
            managed.set_running()
        return managed

    async def _drain(self, managed: ManagedProcess, reader: asyncio.StreamReader, stream: StreamName) -> None:
        """Relay one child stream line by line until EOF.

        Reads in chunks so a line of any length is handled; a trailing
        partial line is flushed as-is when the stream closes.
        """
        buffer = bytearray()
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            # Only the new bytes can hold a newline
            scan_from = len(buffer)
            buffer += chunk
            line_start = 0
            newline = buffer.find(b"\n", scan_from)
            while newline != -1:
                self._emit(managed, stream, buffer[line_start:newline])
                line_start = newline + 1
                newline = buffer.find(b"\n", line_start)
            if line_start:
                del buffer[:line_start]
        if buffer:
            self._emit(managed, stream, buffer)

    def _emit(self, managed: ManagedProcess, stream: StreamName, raw: bytes | bytearray) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        self.relay.write_line(managed.service_name, stream, line)

    async def _monitor(self, managed: ManagedProcess) -> None:
        """Drain both streams, wait for exit, then retire the entry."""
        handle = managed.handle
        readers = [
            asyncio.create_task(self._drain(managed, handle.stdout, StreamName.STDOUT)),
            asyncio.create_task(self._drain(managed, handle.stderr, StreamName.STDERR)),
        ]
        try:
            exit_code = await handle.wait()
            _, pending = await asyncio.wait(readers, timeout=STREAM_DRAIN_GRACE)
            for task in pending:
                task.cancel()
            for task in readers:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Output reader for %s failed: %s", managed.service_name, task.exception()
                    )
        except asyncio.CancelledError:
            for task in readers:
                task.cancel()
            raise

        async with self.state.lock:
            if managed.is_running():
                managed.set_exited(exit_code)
                self.state.active.remove(managed)
                self.relay.notice(f"[{managed.service_name}] Process ended with code {exit_code}")
            else:
                managed.record_exit_code(exit_code)
                self.relay.notice(f"✓ Service {managed.service_name} stopped", style="green")
            if not self.state.active:
                self._idle_event.set()

    def request_shutdown(self) -> None:
        """Interrupt handler entry point. Safe to call repeatedly."""
        if self.state.shutdown_requested:
            logger.info("Shutdown already in progress")
            return
        self.state.shutdown_requested = True
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Terminate every running child and wait for all of them.

        Idempotent: concurrent and later calls wait for the first one to
        finish and never signal a child twice.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        self.state.shutdown_requested = True
        self._shutdown_event.set()

        async with self.state.lock:
            targets = list(self.state.active)
            if targets:
                self.relay.notice("\nStopping all services...")
                logger.info("Stopping %s", ", ".join(self.state.running_names()))
            for managed in targets:
                try:
                    self._send_signal(managed, kill=False)
                except ProcessLookupError:
                    # Exited on its own; the monitor records it as EXITED.
                    logger.debug("%s exited before termination", managed.service_name)
                    continue
                except OSError as e:
                    logger.error("Failed to terminate %s (PID %d): %s", managed.service_name, managed.pid, e)
                    continue
                managed.set_killed()
                self.state.active.remove(managed)

        pending = [task for _, task in self._monitors if not task.done()]
        if not targets and not pending:
            return

        if pending:
            _, timed_out = await asyncio.wait(pending, timeout=self.shutdown_timeout)
            if timed_out:
                await self._force_kill(timed_out)

        if targets:
            self.relay.notice("All services stopped!", style="bold green")

    async def _force_kill(self, monitors: set[asyncio.Task[None]]) -> None:
        """SIGKILL children whose monitors are still pending, then stop waiting on them."""
        stuck = [mp for mp, task in self._monitors if task in monitors]
        logger.warning(
            "Shutdown timed out after %ss; killing %s",
            self.shutdown_timeout,
            ", ".join(mp.service_name for mp in stuck),
        )
        async with self.state.lock:
            for managed in stuck:
                if managed.is_running():
                    # SIGTERM never reached it
                    if managed.handle.returncode is None:
                        managed.set_killed()
                    else:
                        managed.set_exited(managed.handle.returncode)
                    self.state.active.remove(managed)
                try:
                    self._send_signal(managed, kill=True)
                except ProcessLookupError:
                    logger.debug("%s already gone", managed.service_name)
                except OSError as e:
                    logger.error("Failed to kill %s (PID %d): %s", managed.service_name, managed.pid, e)

        _, still_pending = await asyncio.wait(monitors, timeout=KILL_WAIT)
        for managed, task in self._monitors:
            if task not in still_pending:
                continue
            logger.error("Giving up on %s (PID %d)", managed.service_name, managed.pid)
            task.cancel()
            if managed.exit_code is None:
                managed.record_exit_code(managed.handle.returncode)

    def _send_signal(self, managed: ManagedProcess, kill: bool) -> None:
        """Send SIGTERM (or SIGKILL) to the child's process group.

        SIGKILL goes to the group even after the leader exited, so runner
        grandchildren holding the output pipes are reaped too.

        Raises:
            OSError: If the signal cannot be delivered.

        """
        handle = managed.handle
        if IS_WINDOWS:
            if handle.returncode is not None:
                raise ProcessLookupError(f"process {managed.pid} already exited")
            if kill:
                handle.kill()
            else:
                handle.terminate()
            return
        if not kill and handle.returncode is not None:
            raise ProcessLookupError(f"process {managed.pid} already exited")
        sig = signal.SIGKILL if kill else signal.SIGTERM
        logger.debug("Sending %s to %s (PGID %d)", sig.name, managed.service_name, managed.pid)
        os.killpg(managed.pid, sig)

    async def run(self, launches: Sequence[ResolvedLaunch], install_signal_handlers: bool = True) -> SupervisorState:
        """Launch everything and supervise until interrupted or idle.

        Args:
            launches: Resolved launches.
            install_signal_handlers: Route SIGINT to request_shutdown().

        Returns:
            Final supervisor state; every child is terminal on return.

        """
        # Children live in their own process groups, so SIGINT must be
        # routed to shutdown before the first one is spawned.
        restore = self._install_signal_handlers() if install_signal_handlers else None
        try:
            state = await self.launch(launches)
            if not state.processes:
                self.relay.notice("No services started.")
            elif not state.shutdown_requested:
                self.relay.notice("\nServices started successfully.", style="bold green")
                self.relay.notice("Press Ctrl+C to stop all services.")
                await self._wait_for_stop()
        finally:
            await self.shutdown()
            if restore is not None:
                restore()
        return self.state

    async def _wait_for_stop(self) -> None:
        """Block until shutdown is requested or, with exit_when_idle, every child exited."""
        waiters = [asyncio.create_task(self._shutdown_event.wait())]
        if self.exit_when_idle:
            waiters.append(asyncio.create_task(self._idle_event.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()

    def _install_signal_handlers(self):
        """Route SIGINT to request_shutdown().

        Returns:
            Callable that restores the previous handler.

        """
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_shutdown)
            return lambda: loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            previous = signal.signal(
                signal.SIGINT, lambda *_: loop.call_soon_threadsafe(self.request_shutdown)
            )
            return lambda: signal.signal(signal.SIGINT, previous)
