import logging
import shlex
from typing import Mapping, Optional

from apps.api.sandbox import Sandbox, run_command


log = logging.getLogger("clawbox_gateway")


def compute_env_fingerprint(env: Mapping[str, str]) -> str:
    """Summarize ``env`` as sorted ``key:length`` pairs.

    Values never appear in the result, so it is safe to log and to store in
    the sandbox. Same-length value changes are not detected.
    """
    return ",".join(f"{k}:{len(env[k])}" for k in sorted(env))


class FingerprintStore:
    def __init__(self, sandbox: Sandbox, path: str, timeout_s: float = 5.0):
        self._sandbox = sandbox
        self._path = path
        self._timeout_s = timeout_s

    @property
    def path(self) -> str:
        return self._path

    async def read(self) -> Optional[str]:
        quoted = shlex.quote(self._path)
        try:
            logs = await run_command(self._sandbox, f'cat {quoted} 2>/dev/null || echo ""', self._timeout_s)
        except Exception as e:  # noqa: BLE001
            log.warning("Env fingerprint read failed: %s", str(e))
            return None
        stored = (logs.stdout or "").strip()
        return stored or None

    async def persist(self, fingerprint: str) -> bool:
        quoted = shlex.quote(self._path)
        command = f"printf '%s\\n' {shlex.quote(fingerprint)} > {quoted}"
        try:
            await run_command(self._sandbox, command, self._timeout_s)
        except Exception as e:  # noqa: BLE001
            log.warning("Failed to write env fingerprint to %s: %s", self._path, str(e))
            return False
        return True
