import asyncio
import logging
import os
import shutil
import signal
import sys
import time
from typing import Any, AsyncIterator

from mcp_bridge.errors import MalformedLine, SpawnError, TransportError, WriteFailure
from mcp_bridge.transport.events import (
    LogLine,
    LogSource,
    MessageReceived,
    ProcessClosed,
    TransportEvent,
    TransportFailed,
)
from mcp_bridge.transport.framing import LineDecoder, encode_frame, parse_json_line

logger = logging.getLogger(__name__)

DEFAULT_READ_CHUNK_SIZE = 65536

# Seconds to keep reading stdout/stderr after the process has exited.
STREAM_DRAIN_TIMEOUT = 2.0

if sys.platform == "win32":
    DEFAULT_INHERITED_ENV_VARS = [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
else:
    DEFAULT_INHERITED_ENV_VARS = ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]


def get_default_environment() -> dict[str, str]:
    """Return the fixed set of variables every child inherits."""
    env: dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is None:
            continue
        # Skip exported shell functions
        if value.startswith("()"):
            continue
        env[key] = value
    return env


def build_environment(
    overrides: dict[str, str] | None = None,
    defaults: dict[str, str] | None = None,
) -> dict[str, str]:
    """Merge the child environment.

    Precedence, lowest first: inherited process environment, the default
    inherited set, configured defaults, caller overrides.
    """
    env = dict(os.environ)
    env.update(get_default_environment())
    if defaults:
        env.update(defaults)
    if overrides:
        env.update(overrides)
    return env


def resolve_executable(command: str, env: dict[str, str]) -> str:
    """Resolve a command against the child's PATH.

    Falls back to the command as given so the OS reports the failure.
    """
    return shutil.which(command, path=env.get("PATH")) or command


class ProcessTransport:
    """Owns one child process speaking newline-delimited JSON over stdio.

    Events from stdout and stderr are collected by background readers into a
    queue as soon as the process starts, so nothing is lost before a consumer
    iterates over events(). ProcessClosed is always the final event.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        self._process = process
        self.command = command
        self._read_chunk_size = read_chunk_size
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._terminated = False
        self._closed_delivered = False
        self._monitor_task = asyncio.create_task(
            self._monitor(), name=f"process-monitor-{process.pid}"
        )

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        *,
        default_env: dict[str, str] | None = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> "ProcessTransport":
        """Start a child process and begin reading its output.

        Args:
            command: Executable name or path
            args: Arguments passed to the executable
            env: Caller environment overrides
            default_env: Configured defaults, applied under the overrides
            read_chunk_size: Max bytes per read from stdout/stderr

        Returns:
            A running transport

        Raises:
            SpawnError: If the OS cannot launch the process
        """
        args = args or []
        merged_env = build_environment(env, default_env)
        executable = resolve_executable(command, merged_env)

        logger.debug(f"Starting subprocess: {executable} {args}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start process '{command}': {e}")
            raise SpawnError(f"Failed to start process '{command}': {e}") from e

        logger.debug(f"Subprocess started (PID: {process.pid})")
        return cls(process, [executable, *args], read_chunk_size)

    # ================================
    # State
    # ================================

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_writable(self) -> bool:
        """True if the process is alive and its stdin can accept a message."""
        stdin = self._process.stdin
        return (
            not self._terminated
            and self._process.returncode is None
            and stdin is not None
            and not stdin.is_closing()
        )

    @property
    def is_closed(self) -> bool:
        """True once the process has been reaped and its streams drained."""
        return self._monitor_task.done()

    # ================================
    # Sending
    # ================================

    async def send(self, message: dict[str, Any]) -> None:
        """Write one message to the child's stdin.

        Raises:
            WriteFailure: If the process cannot accept input or the write fails
        """
        if not self.is_writable:
            raise WriteFailure(f"Process {self.pid} is not accepting input")

        try:
            frame = encode_frame(message)
        except ValueError as e:
            raise WriteFailure(str(e)) from e

        try:
            # A single write() per frame keeps concurrent sends from interleaving.
            self._process.stdin.write(frame)
            await self._process.stdin.drain()
        except OSError as e:
            raise WriteFailure(f"Failed to write to process stdin: {e}") from e

        logger.debug(f"Sent {len(frame)} bytes to process {self.pid}")

    # ================================
    # Receiving
    # ================================

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Yield transport events in arrival order, ending with ProcessClosed."""
        if self._closed_delivered:
            return
        while True:
            event = await self._events.get()
            if isinstance(event, ProcessClosed):
                self._closed_delivered = True
                yield event
                return
            yield event

    async def _monitor(self) -> None:
        readers = [
            asyncio.create_task(
                self._read_stream(self._process.stdout, "stdout"),
                name=f"stdout-reader-{self.pid}",
            ),
            asyncio.create_task(
                self._read_stream(self._process.stderr, "stderr"),
                name=f"stderr-reader-{self.pid}",
            ),
        ]

        returncode = await self._process.wait()

        _, pending = await asyncio.wait(readers, timeout=STREAM_DRAIN_TIMEOUT)
        for task in pending:
            logger.debug(f"Process {self.pid} exited but a stream is still open")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.debug(f"Process {self.pid} exited with code {returncode}")
        self._events.put_nowait(ProcessClosed(returncode, time.time()))

    async def _read_stream(
        self, stream: asyncio.StreamReader | None, source: LogSource
    ) -> None:
        if stream is None:
            return

        decoder = LineDecoder()
        try:
            while True:
                chunk = await stream.read(self._read_chunk_size)
                if not chunk:
                    break
                for line in decoder.feed(chunk):
                    self._dispatch_line(source, line)
            for line in decoder.flush():
                self._dispatch_line(source, line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._terminated:
                logger.debug(f"Read from terminated process {self.pid} failed: {e}")
                return
            logger.error(f"Failed to read from process {self.pid} {source}: {e}")
            error = TransportError(f"Failed to read from process {source}: {e}")
            self._events.put_nowait(TransportFailed(error, time.time()))

    def _dispatch_line(self, source: LogSource, line: str) -> None:
        now = time.time()
        if source == "stderr":
            self._events.put_nowait(LogLine("stderr", line, now))
            return

        try:
            message = parse_json_line(line)
        except MalformedLine:
            logger.warning(f"Non-JSON output from process {self.pid}: {line}")
            self._events.put_nowait(LogLine("stdout", line, now))
            return

        self._events.put_nowait(MessageReceived(message, now))

    # ================================
    # Termination
    # ================================

    def terminate(self) -> None:
        """Kill the process immediately. Safe to call repeatedly or after exit."""
        if self._terminated:
            return
        self._terminated = True

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        if self._process.returncode is not None:
            return

        logger.debug(f"Killing process {self.pid}")
        try:
            if os.name == "posix":
                # The child leads its own session; kill the whole group.
                os.killpg(self._process.pid, signal.SIGKILL)
            else:
                self._process.kill()
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already dead, skipping kill")
        except PermissionError:
            self._process.kill()

    async def wait_closed(self) -> int | None:
        """Wait until the process is reaped and its streams are drained."""
        await asyncio.shield(self._monitor_task)
        return self._process.returncode

    async def aclose(self) -> None:
        """Terminate and wait for the process to be reaped."""
        self.terminate()
        await self.wait_closed()
