"""Docker-backed sandbox.

One long-lived container per sandbox name plays the role of the sandboxed
compute unit. Processes are ``docker exec`` invocations wrapped so that their
pid, stdout and stderr land in files under ``proc_dir`` inside the container;
listing runs ``ps`` in the container, so pids are container pids and survive
a restart of this service.
"""

import asyncio
import logging
import posixpath
import shlex
import uuid
from typing import Any, Mapping, Optional

from apps.api.config import SandboxConfig
from apps.api.sandbox import PROCESS_EXITED, PROCESS_RUNNING, PROCESS_STARTING, ProcessLogs


log = logging.getLogger("clawbox_gateway")

SANDBOX_LABEL = "io.clawbox.sandbox"


def _parse_ps_output(text: str) -> list[tuple[int, str, str]]:
    out: list[tuple[int, str, str]] = []
    for line in (text or "").splitlines():
        parts = line.strip().split(None, 2)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        args = parts[2] if len(parts) > 2 else ""
        out.append((pid, parts[1], args))
    return out


def _parse_pid_files(text: str) -> dict[int, str]:
    # `grep -H . dir/*.pid` prints "dir/<proc id>.pid:<pid>".
    out: dict[int, str] = {}
    for line in (text or "").splitlines():
        path, sep, raw_pid = line.strip().rpartition(":")
        if not sep:
            continue
        try:
            pid = int(raw_pid)
        except ValueError:
            continue
        name = posixpath.basename(path)
        if name.endswith(".pid"):
            out[pid] = name[: -len(".pid")]
    return out


def _status_from_stat(stat: str) -> str:
    return PROCESS_EXITED if stat[:1] in ("Z", "X") else PROCESS_RUNNING


def _docker_client(cfg: SandboxConfig):
    try:
        import docker  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("Docker sandbox requires the 'docker' Python package") from e
    return docker.from_env(timeout=cfg.api_timeout_s)


def _docker_get_container_sync(cfg: SandboxConfig):
    client = _docker_client(cfg)
    containers = client.containers.list(all=True, filters={"label": [f"{SANDBOX_LABEL}={cfg.sandbox_name}"]})
    return containers[0] if containers else None


def _docker_create_container_sync(cfg: SandboxConfig):
    from docker.errors import ImageNotFound, NotFound  # type: ignore

    client = _docker_client(cfg)
    try:
        client.networks.get(cfg.network)
    except NotFound as e:
        raise RuntimeError(
            f"Docker network '{cfg.network}' not found. "
            "Create it (or run via docker-compose that defines it) and attach the gateway to it."
        ) from e

    try:
        return client.containers.run(
            cfg.image,
            command=list(cfg.keepalive_cmd),
            name=cfg.sandbox_name,
            detach=True,
            network=cfg.network,
            labels={SANDBOX_LABEL: cfg.sandbox_name},
        )
    except ImageNotFound as e:
        raise RuntimeError(
            f"Docker image '{cfg.image}' not found. Build it first (e.g. 'docker build -t {cfg.image} ...')."
        ) from e


def _docker_ensure_running_sync(container):
    container.reload()
    if container.status != "running":
        container.start()
        container.reload()
    return container


def _docker_container_ip_sync(container, network: str) -> Optional[str]:
    container.reload()
    nets = container.attrs.get("NetworkSettings", {}).get("Networks", {}) or {}
    net = nets.get(network)
    if not net:
        return None
    ip = net.get("IPAddress")
    return ip or None


def _docker_remove_container_sync(container):
    container.remove(force=True)


def _docker_exec_sync(container, command: str) -> tuple[int, str, str]:
    res = container.exec_run(["sh", "-c", command], demux=True)
    stdout, stderr = res.output if res.output else (None, None)
    return (
        int(res.exit_code or 0),
        (stdout or b"").decode("utf-8", errors="replace"),
        (stderr or b"").decode("utf-8", errors="replace"),
    )


def _docker_launch_sync(container, command: str, env: Optional[Mapping[str, str]], log_base: str) -> str:
    q = shlex.quote
    wrapper = (
        f"mkdir -p {q(posixpath.dirname(log_base))} && echo $$ > {q(log_base + '.pid')} && "
        f"exec sh -c {q(command)} > {q(log_base + '.out')} 2> {q(log_base + '.err')}"
    )
    api = container.client.api
    created = api.exec_create(container.id, ["sh", "-c", wrapper], environment=dict(env) if env else None)
    exec_id = created["Id"]
    api.exec_start(exec_id, detach=True)
    return exec_id


def _docker_exec_inspect_sync(container, exec_id: str) -> tuple[bool, Optional[int]]:
    info = container.client.api.exec_inspect(exec_id)
    return bool(info.get("Running")), info.get("ExitCode")


async def _wait_for_tcp(host: str, port: int, timeout_s: float):
    deadline = asyncio.get_running_loop().time() + timeout_s
    last_err: Optional[Exception] = None
    while True:
        try:
            remaining = deadline - asyncio.get_running_loop().time()
            return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=max(0.1, remaining))
        except Exception as e:  # noqa: BLE001
            last_err = e
            if asyncio.get_running_loop().time() >= deadline:
                raise TimeoutError(f"Port {host}:{port} not reachable after {timeout_s}s: {last_err}") from last_err
            await asyncio.sleep(0.2)


class DockerProcess:
    def __init__(
        self,
        sandbox: "DockerSandbox",
        *,
        id: str,
        pid: Optional[int],
        command: str,
        status: str,
        exec_id: Optional[str] = None,
        log_base: Optional[str] = None,
    ):
        self._sandbox = sandbox
        self.id = id
        self.pid = pid
        self.command = command
        self.status = status
        self.exec_id = exec_id
        self.log_base = log_base

    def __repr__(self) -> str:
        return f"DockerProcess(id={self.id!r}, pid={self.pid}, status={self.status!r}, command={self.command!r})"

    async def wait_for_port(self, port: int, timeout_s: float) -> None:
        await self._sandbox.wait_for_port(port, timeout_s)
        self._sandbox.clear_starting(self.id)
        self.status = PROCESS_RUNNING

    async def wait_for_exit(self, timeout_s: float) -> Optional[int]:
        container = await self._sandbox.container()
        deadline = asyncio.get_running_loop().time() + timeout_s
        while True:
            if self.exec_id:
                running, exit_code = await asyncio.to_thread(_docker_exec_inspect_sync, container, self.exec_id)
            elif self.pid is not None:
                code, _, _ = await asyncio.to_thread(_docker_exec_sync, container, f"kill -0 {self.pid}")
                running, exit_code = code == 0, None
            else:
                running, exit_code = False, None
            if not running:
                self.status = PROCESS_EXITED
                self._sandbox.clear_starting(self.id)
                return exit_code
            if asyncio.get_running_loop().time() >= deadline:
                raise TimeoutError(f"Process {self.id} still running after {timeout_s}s")
            await asyncio.sleep(0.1)

    async def get_logs(self) -> ProcessLogs:
        if not self.log_base:
            return ProcessLogs()
        container = await self._sandbox.container()
        q = shlex.quote
        _, stdout, _ = await asyncio.to_thread(_docker_exec_sync, container, f"cat {q(self.log_base + '.out')} 2>/dev/null")
        _, stderr, _ = await asyncio.to_thread(_docker_exec_sync, container, f"cat {q(self.log_base + '.err')} 2>/dev/null")
        return ProcessLogs(stdout=stdout, stderr=stderr)

    async def kill(self) -> None:
        if self.pid is None:
            return
        container = await self._sandbox.container()
        # A pid that is already gone is not an error.
        command = f"kill -TERM {self.pid} 2>/dev/null || true"
        if self.log_base:
            # Keep the captured output but stop mapping a recycled pid to this id.
            command += f"; rm -f {shlex.quote(self.log_base + '.pid')}"
        await asyncio.to_thread(_docker_exec_sync, container, command)
        self.status = PROCESS_EXITED
        self._sandbox.clear_starting(self.id)

    async def release(self) -> None:
        self._sandbox.clear_starting(self.id)
        if not self.log_base:
            return
        files = " ".join(shlex.quote(self.log_base + ext) for ext in (".pid", ".out", ".err"))
        try:
            container = await self._sandbox.container()
            await asyncio.to_thread(_docker_exec_sync, container, f"rm -f {files}")
        except Exception as e:  # noqa: BLE001
            log.warning("Failed to remove capture files for process %s: %s", self.id, str(e))


class DockerSandbox:
    def __init__(self, cfg: SandboxConfig):
        self.cfg = cfg
        self._container: Any = None
        self._container_lock = asyncio.Lock()
        # Processes started by this service that have not confirmed their port yet.
        self._starting: set[str] = set()

    async def container(self):
        async with self._container_lock:
            if self._container is not None:
                return self._container
            container = await asyncio.to_thread(_docker_get_container_sync, self.cfg)
            if container is None:
                log.info("Creating sandbox container %s from %s", self.cfg.sandbox_name, self.cfg.image)
                container = await asyncio.to_thread(_docker_create_container_sync, self.cfg)
            else:
                container = await asyncio.to_thread(_docker_ensure_running_sync, container)
            self._container = container
            return container

    def clear_starting(self, proc_id: str) -> None:
        self._starting.discard(proc_id)

    async def list_processes(self) -> list[DockerProcess]:
        container = await self.container()
        code, out, err = await asyncio.to_thread(_docker_exec_sync, container, "ps -eo pid=,stat=,args=")
        if code != 0:
            raise RuntimeError(f"ps failed in sandbox: {err.strip() or code}")
        proc_dir = shlex.quote(self.cfg.proc_dir)
        _, pid_out, _ = await asyncio.to_thread(_docker_exec_sync, container, f"grep -H . {proc_dir}/*.pid 2>/dev/null || true")
        known = _parse_pid_files(pid_out)

        procs: list[DockerProcess] = []
        for pid, stat, args in _parse_ps_output(out):
            proc_id = known.get(pid)
            status = _status_from_stat(stat)
            if status == PROCESS_RUNNING and proc_id in self._starting:
                status = PROCESS_STARTING
            procs.append(
                DockerProcess(
                    self,
                    id=proc_id or f"pid-{pid}",
                    pid=pid,
                    command=args,
                    status=status,
                    log_base=posixpath.join(self.cfg.proc_dir, proc_id) if proc_id else None,
                )
            )
        return procs

    async def start_process(self, command: str, env: Optional[Mapping[str, str]] = None) -> DockerProcess:
        container = await self.container()
        proc_id = uuid.uuid4().hex[:12]
        log_base = posixpath.join(self.cfg.proc_dir, proc_id)
        exec_id = await asyncio.to_thread(_docker_launch_sync, container, command, env, log_base)
        self._starting.add(proc_id)

        pid: Optional[int] = None
        pid_file = shlex.quote(log_base + ".pid")
        deadline = asyncio.get_running_loop().time() + self.cfg.pid_wait_s
        while pid is None and asyncio.get_running_loop().time() < deadline:
            _, out, _ = await asyncio.to_thread(_docker_exec_sync, container, f"cat {pid_file} 2>/dev/null")
            try:
                pid = int(out.strip())
            except ValueError:
                await asyncio.sleep(0.05)
        if pid is None:
            log.warning("No pid recorded for process %s (%s)", proc_id, command)

        return DockerProcess(
            self,
            id=proc_id,
            pid=pid,
            command=command,
            status=PROCESS_STARTING,
            exec_id=exec_id,
            log_base=log_base,
        )

    async def resolve_host(self) -> str:
        container = await self.container()
        deadline = asyncio.get_running_loop().time() + self.cfg.api_timeout_s
        while True:
            ip = await asyncio.to_thread(_docker_container_ip_sync, container, self.cfg.network)
            if ip:
                return ip
            if asyncio.get_running_loop().time() >= deadline:
                raise TimeoutError("Timed out waiting for sandbox container IP")
            await asyncio.sleep(0.1)

    async def wait_for_port(self, port: int, timeout_s: float) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        host = await asyncio.wait_for(self.resolve_host(), timeout=timeout_s)
        remaining = max(0.1, timeout_s - (loop.time() - started))
        _, writer = await _wait_for_tcp(host, port, remaining)
        writer.close()

    async def destroy(self) -> None:
        async with self._container_lock:
            container = self._container
            self._container = None
            self._starting.clear()
        if container is None:
            container = await asyncio.to_thread(_docker_get_container_sync, self.cfg)
        if container is None:
            return
        log.info("Removing sandbox container %s", self.cfg.sandbox_name)
        await asyncio.to_thread(_docker_remove_container_sync, container)
