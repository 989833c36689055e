"""Tests for ProcessSupervisor.

Spawns real children through the shell runner (empty runner prefix), so
these tests need a POSIX shell.
"""

import asyncio
import io
import os
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from svclaunch.core.config import LauncherConfig
from svclaunch.manager import (
    ManagedProcess,
    OutputRelay,
    ProcessState,
    ProcessSupervisor,
    ResolvedLaunch,
    ScriptResolver,
    ServiceDescriptor,
    StreamName,
    discover,
    resolve_selection,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh and process groups")

SLEEPER = "import time; print('ready', flush=True); time.sleep(30)"


def _launch(tmp_path: Path, name: str, invocation: str, command: str = "start") -> ResolvedLaunch:
    service_dir = tmp_path / name
    service_dir.mkdir(exist_ok=True)
    service = ServiceDescriptor(name=name, path=service_dir, runnable_commands={command: invocation})
    return ResolvedLaunch(service=service, command=command)


def _supervisor(relay: OutputRelay, **kwargs) -> ProcessSupervisor:
    kwargs.setdefault("shutdown_timeout", 5.0)
    return ProcessSupervisor(relay=relay, runner=(), **kwargs)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class _FakeProcess:
    """Stand-in for asyncio.subprocess.Process with closed pipes and a controllable exit."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_eof()
        self._exited = asyncio.Event()

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()


class TestLaunch:
    """Tests for launch()."""

    @pytest.mark.asyncio
    async def test_children_exit_naturally(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """Natural exit records the code and empties the active set."""
        supervisor = _supervisor(relay)
        launches = [
            _launch(tmp_path, "ok", python_cmd("print('hello')")),
            _launch(tmp_path, "fail", python_cmd("import sys; sys.exit(3)")),
        ]

        state = await supervisor.run(launches, install_signal_handlers=False)

        codes = {mp.service_name: (mp.state, mp.exit_code) for mp in state.processes}
        assert codes == {
            "ok": (ProcessState.EXITED, 0),
            "fail": (ProcessState.EXITED, 3),
        }
        assert state.active == []
        assert relay.lines_for("ok") == ["hello"]

    @pytest.mark.asyncio
    async def test_exit_notice(self, tmp_path: Path, relay: OutputRelay, console_buffer: io.StringIO, python_cmd):
        supervisor = _supervisor(relay)

        await supervisor.run([_launch(tmp_path, "api", python_cmd("raise SystemExit(2)"))], install_signal_handlers=False)

        assert "[api] Process ended with code 2" in console_buffer.getvalue()

    @pytest.mark.asyncio
    async def test_spawn_failures_are_isolated(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """k failing launches out of N leave N-k running and raise nothing."""
        good = [_launch(tmp_path, f"good{i}", python_cmd(SLEEPER)) for i in range(2)]
        missing_dir = ServiceDescriptor(
            name="ghost", path=tmp_path / "does-not-exist", runnable_commands={"start": "true"}
        )
        empty = _launch(tmp_path, "empty", "   ")
        launches = [good[0], ResolvedLaunch(missing_dir, "start"), empty, good[1]]
        supervisor = _supervisor(relay)

        state = await supervisor.launch(launches)
        try:
            assert [mp.service_name for mp in state.processes] == ["good0", "good1"]
            assert all(mp.state == ProcessState.RUNNING for mp in state.processes)
            assert sorted(f.service_name for f in state.failures) == ["empty", "ghost"]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_runner_not_found(self, tmp_path: Path, relay: OutputRelay):
        supervisor = ProcessSupervisor(relay=relay, runner=("definitely-not-a-runner-xyz", "run"))

        state = await supervisor.run([_launch(tmp_path, "api", "node .")], install_signal_handlers=False)

        assert state.processes == []
        assert len(state.failures) == 1
        assert state.failures[0].service_name == "api"
        assert state.failures[0].command == "start"

    @pytest.mark.asyncio
    async def test_runs_in_service_directory(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        supervisor = _supervisor(relay)
        launch = _launch(tmp_path, "where", python_cmd("import os; print(os.getcwd())"))

        await supervisor.run([launch], install_signal_handlers=False)

        assert Path(relay.lines_for("where")[0]).resolve() == (tmp_path / "where").resolve()


class TestOutput:
    """Tests for stream draining."""

    @pytest.mark.asyncio
    async def test_stdout_and_stderr_labeled(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        code = "import sys; print('out'); print('err', file=sys.stderr)"
        supervisor = _supervisor(relay)

        await supervisor.run([_launch(tmp_path, "api", python_cmd(code))], install_signal_handlers=False)

        assert ("api", StreamName.STDOUT, "out") in relay.history
        assert ("api", StreamName.STDERR, "err") in relay.history

    @pytest.mark.asyncio
    async def test_partial_last_line_flushed(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        code = "import sys; sys.stdout.write('first\\nno newline')"
        supervisor = _supervisor(relay)

        await supervisor.run([_launch(tmp_path, "api", python_cmd(code))], install_signal_handlers=False)

        assert relay.lines_for("api") == ["first", "no newline"]

    @pytest.mark.asyncio
    async def test_very_long_line(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """Lines longer than the read chunk are reassembled."""
        supervisor = _supervisor(relay)

        await supervisor.run([_launch(tmp_path, "api", python_cmd("print('x' * 200000)"))], install_signal_handlers=False)

        assert relay.lines_for("api") == ["x" * 200000]

    @pytest.mark.asyncio
    async def test_crlf_and_invalid_utf8(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        code = "import sys; sys.stdout.buffer.write(b'win\\r\\nbad\\xff\\n')"
        supervisor = _supervisor(relay)

        await supervisor.run([_launch(tmp_path, "api", python_cmd(code))], install_signal_handlers=False)

        assert relay.lines_for("api") == ["win", "bad\ufffd"]

    @pytest.mark.asyncio
    async def test_lines_split_across_chunks(self, relay: OutputRelay):
        """Lines are reassembled however the reads happen to split them."""
        supervisor = _supervisor(relay)
        managed = ManagedProcess(service_name="api", command="start", handle=MagicMock(pid=1))
        reader = asyncio.StreamReader()
        reader.feed_data(b"partial\nx\n\nlong-line-without-newline")
        reader.feed_eof()

        with patch("svclaunch.manager.process_supervisor.READ_CHUNK_SIZE", 3):
            await supervisor._drain(managed, reader, StreamName.STDOUT)

        assert relay.lines_for("api") == ["partial", "x", "", "long-line-without-newline"]

    @pytest.mark.asyncio
    async def test_per_service_order_preserved(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """Each service's lines keep their order however services interleave."""
        code_a = "import time\nfor i in range(1, 6):\n    print(f'A{i}', flush=True); time.sleep(0.01)"
        code_b = "import time\nfor i in range(1, 6):\n    print(f'B{i}', flush=True); time.sleep(0.013)"
        supervisor = _supervisor(relay)

        await supervisor.run(
            [_launch(tmp_path, "a", python_cmd(code_a)), _launch(tmp_path, "b", python_cmd(code_b))],
            install_signal_handlers=False,
        )

        assert relay.lines_for("a") == ["A1", "A2", "A3", "A4", "A5"]
        assert relay.lines_for("b") == ["B1", "B2", "B3", "B4", "B5"]


class TestShutdown:
    """Tests for coordinated termination."""

    @pytest.mark.asyncio
    async def test_shutdown_terminates_all(self, tmp_path: Path, relay: OutputRelay, console_buffer: io.StringIO, python_cmd):
        supervisor = _supervisor(relay)
        state = await supervisor.launch([_launch(tmp_path, n, python_cmd(SLEEPER)) for n in ("a", "b", "c")])
        await _wait_until(lambda: len(relay.history) == 3)

        await supervisor.shutdown()

        assert all(mp.state == ProcessState.KILLED for mp in state.processes)
        assert all(mp.handle.returncode is not None for mp in state.processes)
        assert state.active == []
        assert state.shutdown_requested
        output = console_buffer.getvalue()
        assert "Stopping all services..." in output
        for name in ("a", "b", "c"):
            assert f"Service {name} stopped" in output
        assert "All services stopped!" in output

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """Repeated shutdown calls signal each child exactly once."""
        supervisor = _supervisor(relay)
        state = await supervisor.launch([_launch(tmp_path, n, python_cmd(SLEEPER)) for n in ("a", "b")])
        await _wait_until(lambda: len(relay.history) == 2)

        with patch.object(supervisor, "_send_signal", wraps=supervisor._send_signal) as spy:
            await asyncio.gather(supervisor.shutdown(), supervisor.shutdown())
            await supervisor.shutdown()

        assert spy.call_count == 2
        assert all(mp.state == ProcessState.KILLED for mp in state.processes)

    @pytest.mark.asyncio
    async def test_shutdown_with_nothing_running_is_noop(self, relay: OutputRelay, console_buffer: io.StringIO):
        supervisor = _supervisor(relay)

        await supervisor.shutdown()

        assert console_buffer.getvalue() == ""

    @pytest.mark.asyncio
    async def test_shutdown_after_natural_exit(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """Children that already exited stay EXITED."""
        supervisor = _supervisor(relay)
        state = await supervisor.run([_launch(tmp_path, "api", python_cmd("pass"))], install_signal_handlers=False)

        await supervisor.shutdown()

        assert state.processes[0].state == ProcessState.EXITED

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_kill(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        code = (
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('ready', flush=True); time.sleep(30)"
        )
        supervisor = _supervisor(relay, shutdown_timeout=0.5)
        state = await supervisor.launch([_launch(tmp_path, "stubborn", python_cmd(code))])
        await _wait_until(lambda: relay.lines_for("stubborn") == ["ready"])

        await supervisor.shutdown()

        managed = state.processes[0]
        assert managed.state == ProcessState.KILLED
        assert managed.handle.returncode == -9

    @pytest.mark.asyncio
    async def test_terminate_failure_does_not_block_others(
        self, tmp_path: Path, relay: OutputRelay, console_buffer: io.StringIO, python_cmd
    ):
        """A child that ignores the failed SIGTERM is force-killed and recorded as KILLED."""
        supervisor = _supervisor(relay, shutdown_timeout=0.5)
        state = await supervisor.launch([_launch(tmp_path, n, python_cmd(SLEEPER)) for n in ("a", "b")])
        await _wait_until(lambda: len(relay.history) == 2)
        original = supervisor._send_signal

        def flaky(managed, kill):
            if managed.service_name == "a" and not kill:
                raise PermissionError("denied")
            return original(managed, kill)

        with patch.object(supervisor, "_send_signal", side_effect=flaky):
            await supervisor.shutdown()

        by_name = {mp.service_name: mp for mp in state.processes}
        assert by_name["b"].state == ProcessState.KILLED
        assert by_name["a"].state == ProcessState.KILLED
        assert by_name["a"].exit_code == -9
        assert all(mp.handle.returncode is not None for mp in state.processes)
        assert state.active == []
        assert "[a] Process ended" not in console_buffer.getvalue()

    @pytest.mark.asyncio
    async def test_unkillable_child_abandoned_as_killed(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """A child that survives SIGKILL is given up on but still ends terminal."""
        supervisor = _supervisor(relay, shutdown_timeout=0.2)
        state = await supervisor.launch([_launch(tmp_path, "a", python_cmd(SLEEPER))])
        await _wait_until(lambda: relay.lines_for("a") == ["ready"])
        managed = state.processes[0]

        try:
            with (
                patch.object(supervisor, "_send_signal", side_effect=PermissionError("denied")),
                patch("svclaunch.manager.process_supervisor.KILL_WAIT", 0.2),
            ):
                await supervisor.shutdown()

            assert managed.state == ProcessState.KILLED
            assert managed.is_terminal()
            assert state.active == []
        finally:
            os.killpg(managed.pid, signal.SIGKILL)
            await managed.handle.wait()

    @pytest.mark.asyncio
    async def test_children_sharing_a_pid_are_each_awaited(self, tmp_path: Path, relay: OutputRelay):
        """Shutdown waits for every child, even when the OS reused a PID."""
        handles = [_FakeProcess(4242), _FakeProcess(4242)]
        supervisor = _supervisor(relay)
        loop = asyncio.get_running_loop()

        def terminate(managed, kill):
            if managed.service_name == "a":
                loop.call_later(0.3, managed.handle.exit, -15)
            else:
                managed.handle.exit(-15)

        with (
            patch(
                "svclaunch.manager.process_supervisor.asyncio.create_subprocess_exec",
                AsyncMock(side_effect=handles),
            ),
            patch.object(supervisor, "_send_signal", side_effect=terminate),
        ):
            state = await supervisor.launch([_launch(tmp_path, n, "serve") for n in ("a", "b")])
            await supervisor.shutdown()

        assert [mp.state for mp in state.processes] == [ProcessState.KILLED, ProcessState.KILLED]
        assert [mp.exit_code for mp in state.processes] == [-15, -15]


class TestRun:
    """Tests for the run() coordinator."""

    @pytest.mark.asyncio
    async def test_request_shutdown_twice(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """A repeated interrupt neither raises nor double-terminates."""
        supervisor = _supervisor(relay)
        task = asyncio.create_task(
            supervisor.run([_launch(tmp_path, "api", python_cmd(SLEEPER))], install_signal_handlers=False)
        )
        await _wait_until(lambda: relay.lines_for("api") == ["ready"])

        supervisor.request_shutdown()
        supervisor.request_shutdown()
        state = await asyncio.wait_for(task, timeout=10)

        assert state.processes[0].state == ProcessState.KILLED
        assert state.active == []

    @pytest.mark.asyncio
    async def test_interrupt_during_launch_stops_spawned_children(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        """SIGINT between two spawns stops the child already started and skips the rest."""
        supervisor = _supervisor(relay)
        spawn = supervisor._spawn

        async def spawn_then_interrupt(launch):
            managed = await spawn(launch)
            os.kill(os.getpid(), signal.SIGINT)
            await _wait_until(lambda: supervisor.state.shutdown_requested)
            return managed

        launches = [_launch(tmp_path, n, python_cmd(SLEEPER)) for n in ("a", "b")]
        with patch.object(supervisor, "_spawn", side_effect=spawn_then_interrupt):
            state = await asyncio.wait_for(supervisor.run(launches), timeout=20)

        assert [mp.service_name for mp in state.processes] == ["a"]
        assert state.processes[0].state == ProcessState.KILLED
        assert state.processes[0].handle.returncode is not None
        assert state.active == []

    @pytest.mark.asyncio
    async def test_shutdown_requested_before_launch_spawns_nothing(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        supervisor = _supervisor(relay)
        supervisor.request_shutdown()

        state = await supervisor.run([_launch(tmp_path, "api", python_cmd(SLEEPER))], install_signal_handlers=False)

        assert state.processes == []

    @pytest.mark.asyncio
    async def test_stays_up_when_not_exit_when_idle(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        supervisor = _supervisor(relay, exit_when_idle=False)
        task = asyncio.create_task(
            supervisor.run([_launch(tmp_path, "api", python_cmd("pass"))], install_signal_handlers=False)
        )
        await _wait_until(lambda: supervisor.state.processes and supervisor.state.processes[0].is_terminal())
        await asyncio.sleep(0.1)

        assert not task.done()
        supervisor.request_shutdown()
        state = await asyncio.wait_for(task, timeout=5)
        assert state.processes[0].state == ProcessState.EXITED

    @pytest.mark.asyncio
    async def test_no_launches(self, relay: OutputRelay, console_buffer: io.StringIO):
        supervisor = _supervisor(relay)

        state = await supervisor.run([], install_signal_handlers=False)

        assert state.processes == []
        assert "No services started." in console_buffer.getvalue()

    @pytest.mark.asyncio
    async def test_signal_handler_installed_and_removed(self, tmp_path: Path, relay: OutputRelay, python_cmd):
        supervisor = _supervisor(relay)
        loop = asyncio.get_running_loop()

        with (
            patch.object(loop, "add_signal_handler") as add_handler,
            patch.object(loop, "remove_signal_handler") as remove_handler,
        ):
            await supervisor.run([_launch(tmp_path, "api", python_cmd("pass"))])

        add_handler.assert_called_once()
        assert add_handler.call_args.args[1] == supervisor.request_shutdown
        remove_handler.assert_called_once()


class TestFromConfig:
    def test_from_config(self, relay: OutputRelay):
        config = LauncherConfig(runner=("yarn", "run"), shutdown_timeout=3, exit_when_idle=False)

        supervisor = ProcessSupervisor.from_config(config, relay=relay)

        assert supervisor.runner == ("yarn", "run")
        assert supervisor.shutdown_timeout == 3
        assert supervisor.exit_when_idle is False
        assert supervisor.relay is relay


class TestEndToEnd:
    """Registry → selector → resolver → supervisor."""

    @pytest.mark.asyncio
    async def test_select_all_launches_runnable_services(self, scenario_workspace: Path, relay: OutputRelay):
        """alpha and beta run; gamma has nothing runnable and is skipped quietly."""
        services = list(discover(scenario_workspace))
        selection = resolve_selection("all", services)
        chooser_calls = []
        resolver = ScriptResolver(lambda s, c: chooser_calls.append(s.name))
        launches = resolver.resolve_all(selection.services)

        assert len(services) == 3
        assert sorted((l.service.name, l.command) for l in launches) == [("alpha", "start"), ("beta", "serve")]
        assert chooser_calls == []
        assert list(resolver.skipped) == ["gamma"]

        supervisor = _supervisor(relay)
        state = await supervisor.run(launches, install_signal_handlers=False)

        assert sorted(mp.service_name for mp in state.processes) == ["alpha", "beta"]
        assert state.failures == []
        assert relay.lines_for("alpha") == ["alpha up"]
        assert relay.lines_for("beta") == ["beta up"]
