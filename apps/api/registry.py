import logging
from enum import Enum
from typing import Iterable, Optional

from apps.api.config import GatewayConfig
from apps.api.sandbox import LIVE_STATUSES, Sandbox, SandboxProcess


log = logging.getLogger("clawbox_gateway")


class ProcessRole(str, Enum):
    GATEWAY = "gateway"
    STARTUP_SCRIPT = "startup-script"
    CLI_INVOCATION = "cli-invocation"
    UNKNOWN = "unknown"


def classify_command(command: str, cfg: GatewayConfig) -> ProcessRole:
    command = command or ""
    # CLI helpers share the binary name with the gateway, so they are checked first.
    if any(p in command for p in cfg.cli_patterns):
        return ProcessRole.CLI_INVOCATION
    if cfg.gateway_pattern in command:
        return ProcessRole.GATEWAY
    if cfg.startup_pattern in command:
        return ProcessRole.STARTUP_SCRIPT
    return ProcessRole.UNKNOWN


def find_gateway_process(processes: Iterable[SandboxProcess], cfg: GatewayConfig) -> Optional[SandboxProcess]:
    """Pick the best gateway candidate among live processes.

    The startup script execs into the gateway command once it succeeds, so a
    startup script that is still visible is either booting or a leftover from a
    previous deploy. An exec'd gateway always wins over it. Within a role the
    first process encountered is returned; the runtime gives no ordering.
    """
    startup: Optional[SandboxProcess] = None
    for proc in processes:
        if proc.status not in LIVE_STATUSES:
            continue
        role = classify_command(proc.command, cfg)
        if role == ProcessRole.GATEWAY:
            return proc
        if role == ProcessRole.STARTUP_SCRIPT and startup is None:
            startup = proc
    return startup


async def scan(sandbox: Sandbox, cfg: GatewayConfig) -> Optional[SandboxProcess]:
    try:
        processes = await sandbox.list_processes()
    except Exception as e:  # noqa: BLE001
        log.warning("Could not list sandbox processes: %s", str(e))
        return None
    return find_gateway_process(processes, cfg)
