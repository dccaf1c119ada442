"""Sandbox runtime contract.

The reconciler never owns processes: it lists what the runtime reports, kills
what it decides is stale and starts the launcher. Every wait takes an explicit
timeout; implementations raise ``TimeoutError`` when it elapses.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

PROCESS_STARTING = "starting"
PROCESS_RUNNING = "running"
PROCESS_EXITED = "exited"

LIVE_STATUSES = frozenset({PROCESS_STARTING, PROCESS_RUNNING})


@dataclass(frozen=True)
class ProcessLogs:
    stdout: str = ""
    stderr: str = ""


class SandboxProcess(Protocol):
    id: str
    command: str
    status: str

    async def wait_for_port(self, port: int, timeout_s: float) -> None: ...

    async def wait_for_exit(self, timeout_s: float) -> Optional[int]: ...

    async def get_logs(self) -> ProcessLogs: ...

    async def kill(self) -> None: ...

    async def release(self) -> None: ...


class Sandbox(Protocol):
    async def list_processes(self) -> list[SandboxProcess]: ...

    async def start_process(self, command: str, env: Optional[Mapping[str, str]] = None) -> SandboxProcess: ...

    async def wait_for_port(self, port: int, timeout_s: float) -> None: ...

    async def resolve_host(self) -> str: ...

    async def destroy(self) -> None: ...


async def run_command(sandbox: Sandbox, command: str, timeout_s: float) -> ProcessLogs:
    """Run a short helper command in the sandbox and return its output.

    The process is released afterwards, so helpers leave nothing behind for
    later listings to trip over.
    """
    proc = await sandbox.start_process(command)
    try:
        await proc.wait_for_exit(timeout_s)
        return await proc.get_logs()
    finally:
        await proc.release()
