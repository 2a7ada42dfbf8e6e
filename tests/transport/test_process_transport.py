import asyncio
import os
import sys

import pytest
from helpers import ECHO_SERVER

from mcp_bridge.errors import SpawnError, WriteFailure
from mcp_bridge.transport.events import (
    LogLine,
    MessageReceived,
    ProcessClosed,
    TransportEvent,
)
from mcp_bridge.transport.framing import serialize_message
from mcp_bridge.transport.process import (
    ProcessTransport,
    build_environment,
    get_default_environment,
)


async def spawn_python(script: str, env: dict[str, str] | None = None) -> ProcessTransport:
    return await ProcessTransport.spawn(sys.executable, ["-c", script], env)


async def collect_events(
    transport: ProcessTransport, timeout: float = 5.0
) -> list[TransportEvent]:
    events = []

    async def _drain() -> None:
        async for event in transport.events():
            events.append(event)

    await asyncio.wait_for(_drain(), timeout=timeout)
    return events


class TestSpawn:
    async def test_spawn_missing_executable_raises_spawn_error(self):
        with pytest.raises(SpawnError, match="definitely-not-a-real-binary"):
            await ProcessTransport.spawn("definitely-not-a-real-binary")

    async def test_spawn_starts_writable_process(self):
        # Act
        transport = await spawn_python("import sys; sys.stdin.read()")

        # Assert
        assert transport.pid > 0
        assert transport.is_writable
        assert transport.command[1:] == ["-c", "import sys; sys.stdin.read()"]

        # Cleanup
        await transport.aclose()

    async def test_caller_env_reaches_child(self):
        # Arrange
        script = "import os; print(os.environ['BRIDGE_TEST_VALUE'], flush=True)"

        # Act
        transport = await spawn_python(script, env={"BRIDGE_TEST_VALUE": "from-caller"})
        events = await collect_events(transport)

        # Assert
        assert LogLine("stdout", "from-caller", events[0].timestamp) == events[0]


class TestEvents:
    async def test_json_line_becomes_message(self):
        # Arrange
        script = 'print(\'{"jsonrpc": "2.0", "method": "notifications/ready"}\')'

        # Act
        transport = await spawn_python(script)
        events = await collect_events(transport)

        # Assert
        assert isinstance(events[0], MessageReceived)
        assert events[0].payload == {"jsonrpc": "2.0", "method": "notifications/ready"}

    async def test_non_json_stdout_line_becomes_stdout_log(self):
        # Arrange
        script = "print('Server starting on stdio...', flush=True)"

        # Act
        transport = await spawn_python(script)
        events = await collect_events(transport)

        # Assert
        log_lines = [e for e in events if isinstance(e, LogLine)]
        assert [(e.source, e.text) for e in log_lines] == [
            ("stdout", "Server starting on stdio...")
        ]
        assert not any(isinstance(e, MessageReceived) for e in events)

    async def test_stderr_lines_become_stderr_logs(self):
        # Arrange
        script = "import sys; sys.stderr.write('warming up\\n{\"not\": \"a message\"}\\n')"

        # Act
        transport = await spawn_python(script)
        events = await collect_events(transport)

        # Assert
        log_lines = [e for e in events if isinstance(e, LogLine)]
        assert [(e.source, e.text) for e in log_lines] == [
            ("stderr", "warming up"),
            ("stderr", '{"not": "a message"}'),
        ]

    async def test_malformed_line_does_not_affect_following_lines(self):
        # Arrange
        script = (
            "print('{broken', flush=True)\n"
            "print('{\"jsonrpc\": \"2.0\", \"id\": 1, \"result\": {}}', flush=True)\n"
        )

        # Act
        transport = await spawn_python(script)
        events = await collect_events(transport)

        # Assert
        assert isinstance(events[0], LogLine)
        assert events[0].text == "{broken"
        assert isinstance(events[1], MessageReceived)
        assert events[1].payload == {"jsonrpc": "2.0", "id": 1, "result": {}}

    async def test_stdout_order_is_preserved(self):
        # Arrange
        script = (
            "import json\n"
            "for i in range(200):\n"
            "    print(json.dumps({'jsonrpc': '2.0', 'id': i, 'result': {}}))\n"
        )

        # Act
        transport = await spawn_python(script)
        events = await collect_events(transport)

        # Assert
        ids = [e.payload["id"] for e in events if isinstance(e, MessageReceived)]
        assert ids == list(range(200))

    async def test_unterminated_last_line_is_delivered(self):
        script = "import sys; sys.stdout.write('{\"jsonrpc\": \"2.0\", \"id\": 7, \"result\": 1}')"

        transport = await spawn_python(script)
        events = await collect_events(transport)

        assert isinstance(events[0], MessageReceived)
        assert events[0].payload["id"] == 7

    async def test_closed_is_last_and_carries_exit_code(self):
        # Act
        transport = await spawn_python("import sys; print('bye'); sys.exit(3)")
        events = await collect_events(transport)

        # Assert
        closed = [e for e in events if isinstance(e, ProcessClosed)]
        assert len(closed) == 1
        assert events[-1] is closed[0]
        assert closed[0].returncode == 3
        assert closed[0].signal_number is None
        assert transport.is_closed
        assert not transport.is_writable

    async def test_events_after_close_yields_nothing(self):
        transport = await spawn_python("pass")
        await collect_events(transport)

        assert await collect_events(transport) == []


class TestSend:
    async def test_send_writes_one_line_per_message(self, tmp_path):
        # Arrange
        output_file = tmp_path / "stdin.txt"
        script = f"""
import sys
with open(r'{output_file}', 'w') as f:
    for line in sys.stdin:
        f.write(line)
        f.flush()
"""
        transport = await spawn_python(script)
        first = {"jsonrpc": "2.0", "method": "tools/list", "params": {}, "id": "list-1"}
        second = {"jsonrpc": "2.0", "method": "notifications/initialized"}

        # Act
        await transport.send(first)
        await transport.send(second)
        transport._process.stdin.close()
        await collect_events(transport)

        # Assert
        expected = serialize_message(first) + "\n" + serialize_message(second) + "\n"
        assert output_file.read_text() == expected

    async def test_echo_round_trip(self):
        # Arrange
        transport = await spawn_python(ECHO_SERVER)
        request = {"jsonrpc": "2.0", "method": "tools/list", "params": {}, "id": "list-1"}

        # Act
        await transport.send(request)
        event = await asyncio.wait_for(transport.events().__anext__(), timeout=5.0)

        # Assert
        assert isinstance(event, MessageReceived)
        assert event.payload == {"jsonrpc": "2.0", "id": "list-1", "result": {"tools": []}}

        # Cleanup
        await transport.aclose()

    async def test_send_after_terminate_raises_write_failure(self):
        # Arrange
        transport = await spawn_python("import sys; sys.stdin.read()")
        transport.terminate()

        # Act & Assert
        with pytest.raises(WriteFailure):
            await transport.send({"jsonrpc": "2.0", "method": "ping", "id": 1})

        await transport.wait_closed()

    async def test_send_after_exit_raises_write_failure(self):
        # Arrange
        transport = await spawn_python("pass")
        await collect_events(transport)

        # Act & Assert
        with pytest.raises(WriteFailure):
            await transport.send({"jsonrpc": "2.0", "method": "ping", "id": 1})


class TestTerminate:
    async def test_terminate_kills_process(self):
        # Arrange
        transport = await spawn_python("import time; time.sleep(60)")

        # Act
        transport.terminate()
        events = await collect_events(transport)

        # Assert
        closed = events[-1]
        assert isinstance(closed, ProcessClosed)
        assert closed.returncode != 0
        if os.name == "posix":
            assert closed.signal_number == 9

    async def test_terminate_is_idempotent(self):
        # Arrange
        transport = await spawn_python("import time; time.sleep(60)")

        # Act
        transport.terminate()
        transport.terminate()
        await transport.wait_closed()
        transport.terminate()

        # Assert
        assert transport.is_closed

    async def test_terminate_after_exit_is_safe(self):
        transport = await spawn_python("pass")
        await transport.wait_closed()

        transport.terminate()

        assert transport.returncode == 0


class TestEnvironment:
    def test_caller_values_win_over_inherited(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("BRIDGE_SHARED", "inherited")
        monkeypatch.setenv("BRIDGE_ONLY_INHERITED", "kept")

        # Act
        env = build_environment(
            {"BRIDGE_SHARED": "caller"}, defaults={"BRIDGE_SHARED": "default"}
        )

        # Assert
        assert env["BRIDGE_SHARED"] == "caller"
        assert env["BRIDGE_ONLY_INHERITED"] == "kept"

    def test_defaults_apply_under_caller_values(self):
        env = build_environment({"A": "caller"}, defaults={"A": "default", "B": "default"})

        assert env["A"] == "caller"
        assert env["B"] == "default"

    def test_default_environment_skips_shell_functions(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        monkeypatch.setenv("SHELL", "() { :; }")

        defaults = get_default_environment()

        if os.name == "posix":
            assert defaults["PATH"] == "/usr/bin"
            assert "SHELL" not in defaults
