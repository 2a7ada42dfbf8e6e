import asyncio
import json
import sys
from typing import Any, AsyncIterator, Callable

from mcp_bridge.config import OpenConfig

ECHO_SERVER = """
import json
import sys

for line in sys.stdin:
    message = json.loads(line)
    if message.get("method") == "tools/list":
        response = {"jsonrpc": "2.0", "id": message["id"], "result": {"tools": []}}
        print(json.dumps(response), flush=True)
    else:
        print(line.strip(), flush=True)
"""


def python_config(script: str, env: dict[str, str] | None = None) -> OpenConfig:
    """Open config that runs a Python snippet as the child process."""
    return OpenConfig(
        transport="stdio",
        command=sys.executable,
        args=["-c", script],
        env=env or {},
    )


async def next_frame(frames: AsyncIterator[str], timeout: float = 5.0) -> dict[str, Any]:
    """Read the next SSE frame from an event generator and decode it."""
    frame = await asyncio.wait_for(frames.__anext__(), timeout=timeout)
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[6:-2])


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate until it holds or the timeout expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.05)


async def collect_frames(
    frames: AsyncIterator[str], timeout: float = 5.0
) -> list[dict[str, Any]]:
    """Read frames until the stream ends."""
    collected = []

    async def _drain() -> None:
        async for frame in frames:
            collected.append(json.loads(frame[6:-2]))

    await asyncio.wait_for(_drain(), timeout=timeout)
    return collected
