import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class GatewayConfig:
    port: int = 18789
    launcher_cmd: str = "/usr/local/bin/start-clawbox.sh"
    gateway_pattern: str = "openclaw gateway"
    startup_pattern: str = "start-clawbox.sh"
    cli_patterns: tuple[str, ...] = ("openclaw devices", "openclaw --version")
    token_env_name: str = "OPENCLAW_GATEWAY_TOKEN"
    env_hash_path: str = "/tmp/clawbox-env-hash"
    probe_timeout_s: float = 5.0
    startup_timeout_s: float = 180.0
    command_timeout_s: float = 5.0
    cleanup_timeout_s: float = 10.0
    teardown_pause_s: float = 1.0
    status_probe_timeout_s: float = 3.0
    start_cooldown_s: float = 90.0
    gateway_token: Optional[str] = None
    admin_token: Optional[str] = None
    access_token: Optional[str] = None


@dataclass(frozen=True)
class SandboxConfig:
    image: str = "clawbox-runtime"
    network: str = "clawbox-net"
    sandbox_name: str = "clawbox-sandbox"
    proc_dir: str = "/tmp/clawbox-procs"
    keepalive_cmd: tuple[str, ...] = ("sleep", "infinity")
    api_timeout_s: float = 5.0
    pid_wait_s: float = 5.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    items = tuple(p.strip() for p in raw.split(",") if p.strip())
    return items or default


def load_gateway_config() -> GatewayConfig:
    defaults = GatewayConfig()
    cfg = GatewayConfig(
        port=_env_int("CLAWBOX_GATEWAY_PORT", defaults.port),
        launcher_cmd=os.getenv("CLAWBOX_LAUNCHER_CMD") or defaults.launcher_cmd,
        gateway_pattern=os.getenv("CLAWBOX_GATEWAY_PATTERN") or defaults.gateway_pattern,
        startup_pattern=os.getenv("CLAWBOX_STARTUP_PATTERN") or defaults.startup_pattern,
        cli_patterns=_env_list("CLAWBOX_CLI_PATTERNS", defaults.cli_patterns),
        token_env_name=os.getenv("CLAWBOX_TOKEN_ENV_NAME") or defaults.token_env_name,
        env_hash_path=os.getenv("CLAWBOX_ENV_HASH_PATH") or defaults.env_hash_path,
        probe_timeout_s=_env_float("CLAWBOX_PROBE_TIMEOUT_S", defaults.probe_timeout_s),
        startup_timeout_s=_env_float("CLAWBOX_STARTUP_TIMEOUT_S", defaults.startup_timeout_s),
        command_timeout_s=_env_float("CLAWBOX_COMMAND_TIMEOUT_S", defaults.command_timeout_s),
        cleanup_timeout_s=_env_float("CLAWBOX_CLEANUP_TIMEOUT_S", defaults.cleanup_timeout_s),
        teardown_pause_s=_env_float("CLAWBOX_TEARDOWN_PAUSE_S", defaults.teardown_pause_s),
        status_probe_timeout_s=_env_float("CLAWBOX_STATUS_PROBE_TIMEOUT_S", defaults.status_probe_timeout_s),
        start_cooldown_s=_env_float("CLAWBOX_START_COOLDOWN_S", defaults.start_cooldown_s),
        gateway_token=os.getenv("CLAWBOX_GATEWAY_TOKEN") or None,
        admin_token=os.getenv("CLAWBOX_ADMIN_TOKEN") or None,
        access_token=os.getenv("CLAWBOX_ACCESS_TOKEN") or None,
    )
    # An existing-process probe has to leave room for a fallback spawn.
    if cfg.probe_timeout_s >= cfg.startup_timeout_s:
        raise RuntimeError("CLAWBOX_PROBE_TIMEOUT_S must be lower than CLAWBOX_STARTUP_TIMEOUT_S")
    return cfg


def load_sandbox_config() -> SandboxConfig:
    command_timeout_s = _env_float("CLAWBOX_COMMAND_TIMEOUT_S", 5.0)
    # Keep Docker API calls snappy even when the daemon is slow.
    api_timeout_s = _env_float("CLAWBOX_DOCKER_API_TIMEOUT_S", max(3.0, min(10.0, command_timeout_s)))
    return SandboxConfig(
        image=os.getenv("CLAWBOX_RUNTIME_IMAGE", "clawbox-runtime"),
        network=os.getenv("CLAWBOX_DOCKER_NETWORK", "clawbox-net"),
        sandbox_name=os.getenv("CLAWBOX_SANDBOX_NAME", "clawbox-sandbox"),
        proc_dir=os.getenv("CLAWBOX_PROC_DIR", "/tmp/clawbox-procs"),
        api_timeout_s=api_timeout_s,
    )
