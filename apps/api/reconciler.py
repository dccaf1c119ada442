"""Keep one reachable gateway process alive in the sandbox.

``ensure_gateway`` walks discovery -> liveness probe -> drift check ->
credential check, and either reuses the running gateway or sweeps and spawns a
fresh one. Only the spawn and the ready-wait can fail the call; everything
before them is best-effort and logged.

Concurrent calls are not serialized. Two callers may both sweep and spawn; the
later sweep kills the earlier spawn, and the next call rediscovers whichever
process survived.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from apps.api.config import GatewayConfig
from apps.api.cooldown import StartCooldown
from apps.api.fingerprint import FingerprintStore, compute_env_fingerprint
from apps.api.registry import scan
from apps.api.sandbox import ProcessLogs, Sandbox, SandboxProcess, run_command


log = logging.getLogger("clawbox_gateway")


class Decision(str, Enum):
    REUSE = "reuse"
    RESTART_ENV_DRIFT = "restart_env_drift"
    RESTART_TOKEN_MISMATCH = "restart_token_mismatch"
    RESTART_STALE = "restart_stale"
    FRESH_START = "fresh_start"


class CredentialCheck(str, Enum):
    NOT_CONFIGURED = "not_configured"
    MATCH = "match"
    MISMATCH = "mismatch"
    DIAGNOSTIC_UNAVAILABLE = "diagnostic_unavailable"


@dataclass(frozen=True)
class ReconcileResult:
    process: SandboxProcess
    decision: Decision


@dataclass(frozen=True)
class StatusReport:
    status: str
    spawned: bool = False
    cooldown_remaining_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "running"


class GatewayStartError(RuntimeError):
    def __init__(self, message: str, *, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def _self_excluding_pattern(pattern: str) -> str:
    # "[o]penclaw gateway" matches "openclaw gateway" but not the grep/pgrep line itself.
    if not pattern:
        return pattern
    return f"[{pattern[0]}]{pattern[1:]}"


def _token_preview(token: Optional[str]) -> str:
    if not token:
        return "(empty)"
    return token[:8] + "..."


class GatewayReconciler:
    def __init__(
        self,
        sandbox: Sandbox,
        cfg: GatewayConfig,
        *,
        cooldown: Optional[StartCooldown] = None,
        fingerprints: Optional[FingerprintStore] = None,
    ):
        self.sandbox = sandbox
        self.cfg = cfg
        self.cooldown = cooldown if cooldown is not None else StartCooldown(window_s=cfg.start_cooldown_s)
        self.fingerprints = fingerprints or FingerprintStore(sandbox, cfg.env_hash_path, cfg.command_timeout_s)

    async def ensure_gateway(self, desired_env: Mapping[str, str], credential: Optional[str] = None) -> ReconcileResult:
        existing = await scan(self.sandbox, self.cfg)
        decision = Decision.FRESH_START

        if existing is not None:
            log.info("Found existing gateway process %s (status=%s)", existing.id, existing.status)
            decision = await self._evaluate_existing(existing, desired_env, credential)
            if decision == Decision.REUSE:
                return ReconcileResult(process=existing, decision=decision)

        await self._sweep()
        process = await self._spawn(desired_env)
        await self._wait_ready(process)
        return ReconcileResult(process=process, decision=decision)

    async def _evaluate_existing(
        self,
        existing: SandboxProcess,
        desired_env: Mapping[str, str],
        credential: Optional[str],
    ) -> Decision:
        try:
            log.info("Probing gateway on port %s (timeout %ss)", self.cfg.port, self.cfg.probe_timeout_s)
            await existing.wait_for_port(self.cfg.port, self.cfg.probe_timeout_s)
        except Exception as e:  # noqa: BLE001
            log.info("Existing process %s not reachable (%s), restarting", existing.id, str(e) or type(e).__name__)
            await self._kill(existing)
            return Decision.RESTART_STALE

        expected = compute_env_fingerprint(desired_env)
        stored = await self.fingerprints.read()
        if stored is None:
            log.info("No env fingerprint found, checking token only")
        elif stored != expected:
            log.info("Environment changed since last start, restarting gateway")
            await self._kill(existing)
            await asyncio.sleep(self.cfg.teardown_pause_s)
            return Decision.RESTART_ENV_DRIFT

        check = await self.check_credential(credential)
        if check == CredentialCheck.MISMATCH:
            log.info("Gateway token mismatch, restarting with the configured token")
            await self._kill(existing)
            await asyncio.sleep(self.cfg.teardown_pause_s)
            return Decision.RESTART_TOKEN_MISMATCH
        if check == CredentialCheck.DIAGNOSTIC_UNAVAILABLE:
            log.info("Could not read token from gateway process, assuming OK")
        return Decision.REUSE

    async def check_credential(self, credential: Optional[str]) -> CredentialCheck:
        if not credential:
            return CredentialCheck.NOT_CONFIGURED

        pgrep = shlex.quote(_self_excluding_pattern(self.cfg.gateway_pattern))
        var = shlex.quote(f"^{self.cfg.token_env_name}=")
        command = (
            f"cat /proc/$(pgrep -f {pgrep} | head -1)/environ 2>/dev/null"
            f' | tr "\\0" "\\n" | grep {var} | cut -d= -f2-'
        )
        try:
            logs = await run_command(self.sandbox, command, self.cfg.command_timeout_s)
        except Exception as e:  # noqa: BLE001
            log.warning("Token check failed: %s", str(e) or type(e).__name__)
            return CredentialCheck.DIAGNOSTIC_UNAVAILABLE

        actual = (logs.stdout or "").strip()
        log.info("Expected token %s, gateway token %s", _token_preview(credential), _token_preview(actual))
        if not actual:
            return CredentialCheck.DIAGNOSTIC_UNAVAILABLE
        if actual != credential:
            return CredentialCheck.MISMATCH
        return CredentialCheck.MATCH

    async def _kill(self, process: SandboxProcess) -> None:
        try:
            await process.kill()
        except Exception as e:  # noqa: BLE001
            log.warning("Failed to kill process %s: %s", process.id, str(e))

    def sweep_command(self) -> str:
        parts = []
        for pattern in (self.cfg.gateway_pattern, self.cfg.startup_pattern):
            grep = shlex.quote(_self_excluding_pattern(pattern))
            parts.append(f"ps aux | grep {grep} | awk '{{print $2}}' | xargs -r kill 2>/dev/null")
        parts.append("sleep 1")
        parts.append("echo cleanup_done")
        return "; ".join(parts)

    async def _sweep(self) -> None:
        try:
            log.info("Killing all lingering gateway processes")
            logs = await run_command(self.sandbox, self.sweep_command(), self.cfg.cleanup_timeout_s)
            log.info("Cleanup: %s", (logs.stdout or "").strip())
        except Exception as e:  # noqa: BLE001
            log.warning("Cleanup failed (may be OK on a fresh sandbox): %s", str(e) or type(e).__name__)

    async def _spawn(self, desired_env: Mapping[str, str]) -> SandboxProcess:
        await self.fingerprints.persist(compute_env_fingerprint(desired_env))
        log.info("Starting gateway: %s (env keys: %s)", self.cfg.launcher_cmd, sorted(desired_env))
        try:
            process = await self.sandbox.start_process(self.cfg.launcher_cmd, dict(desired_env) or None)
        except Exception:
            log.exception("Failed to start gateway process")
            raise
        log.info("Gateway process started: %s (status=%s)", process.id, process.status)
        return process

    async def _wait_ready(self, process: SandboxProcess) -> None:
        try:
            await process.wait_for_port(self.cfg.port, self.cfg.startup_timeout_s)
        except Exception as e:
            log.error("Gateway did not become reachable on port %s: %s", self.cfg.port, str(e) or type(e).__name__)
            logs = await self._try_get_logs(process)
            if logs is None:
                raise
            log.error("Gateway startup failed. stderr: %s", logs.stderr)
            log.error("Gateway startup failed. stdout: %s", logs.stdout)
            raise GatewayStartError(
                f"Gateway failed to start. Stderr: {logs.stderr or '(empty)'}",
                stdout=logs.stdout,
                stderr=logs.stderr,
            ) from e

        log.info("Gateway is ready on port %s", self.cfg.port)
        logs = await self._try_get_logs(process)
        if logs is not None and logs.stdout:
            log.info("Gateway stdout: %s", logs.stdout)
        if logs is not None and logs.stderr:
            log.info("Gateway stderr: %s", logs.stderr)

    async def _try_get_logs(self, process: SandboxProcess) -> Optional[ProcessLogs]:
        try:
            return await process.get_logs()
        except Exception as e:  # noqa: BLE001
            log.error("Failed to fetch logs for process %s: %s", process.id, str(e))
            return None

    async def poll_status(self, desired_env: Mapping[str, str]) -> StatusReport:
        """Lightweight health poll that may start the gateway.

        Skips process bookkeeping entirely and only looks at the port. A spawn
        is attempted at most once per cooldown window; a failed launch clears
        the window so the next poll retries.
        """
        try:
            await self.sandbox.wait_for_port(self.cfg.port, self.cfg.status_probe_timeout_s)
        except Exception as e:  # noqa: BLE001
            log.debug("Gateway port %s not responding: %s", self.cfg.port, str(e) or type(e).__name__)
        else:
            return StatusReport(status="running")

        if not self.cooldown.try_begin():
            remaining = self.cooldown.remaining()
            log.info("Start cooldown active, %ss remaining", round(remaining))
            return StatusReport(status="starting", cooldown_remaining_s=remaining)

        log.info("Gateway not responding, starting gateway process")
        try:
            await self.fingerprints.persist(compute_env_fingerprint(desired_env))
            process = await self.sandbox.start_process(self.cfg.launcher_cmd, dict(desired_env) or None)
        except Exception as e:  # noqa: BLE001
            log.error("Failed to start gateway: %s", str(e))
            self.cooldown.reset()
            return StatusReport(status="starting")
        log.info("Gateway process started: %s", process.id)
        return StatusReport(status="starting", spawned=True)
