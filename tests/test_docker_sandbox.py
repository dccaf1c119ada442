import asyncio
from types import SimpleNamespace

from apps.api.config import SandboxConfig
from apps.api.docker_sandbox import DockerSandbox, _parse_pid_files, _parse_ps_output
from apps.api.sandbox import PROCESS_EXITED, PROCESS_RUNNING, PROCESS_STARTING, run_command


PS_OUTPUT = """\
    1 Ss   sleep infinity
   42 Sl   openclaw gateway --port 18789 --bind lan
   57 Z    [start-clawbox.s] <defunct>
   90 R    ps -eo pid=,stat=,args=
"""


class _FakeContainer:
    def __init__(self, outputs: dict[str, str]):
        self.outputs = outputs
        self.commands: list[str] = []

    def exec_run(self, cmd, demux=False):
        command = cmd[-1]
        self.commands.append(command)
        for prefix, out in self.outputs.items():
            if command.startswith(prefix):
                return SimpleNamespace(exit_code=0, output=(out.encode("utf-8"), b""))
        return SimpleNamespace(exit_code=0, output=(None, None))


def _sandbox_with(container: _FakeContainer) -> DockerSandbox:
    sandbox = DockerSandbox(SandboxConfig(proc_dir="/tmp/clawbox-procs"))
    sandbox._container = container
    return sandbox


def test_parse_ps_output() -> None:
    rows = _parse_ps_output(PS_OUTPUT + "garbage\n\n")
    assert rows[0] == (1, "Ss", "sleep infinity")
    assert rows[1] == (42, "Sl", "openclaw gateway --port 18789 --bind lan")
    assert rows[2][1] == "Z"
    assert len(rows) == 4


def test_parse_pid_files() -> None:
    text = "/tmp/clawbox-procs/abc123.pid:42\n/tmp/clawbox-procs/def456.pid:oops\nnoise\n"
    assert _parse_pid_files(text) == {42: "abc123"}


def test_list_processes_maps_status_and_log_paths() -> None:
    container = _FakeContainer(
        {
            "ps -eo": PS_OUTPUT,
            "grep -H": "/tmp/clawbox-procs/abc123.pid:42\n",
        }
    )
    sandbox = _sandbox_with(container)

    procs = asyncio.run(sandbox.list_processes())
    by_pid = {p.pid: p for p in procs}

    assert by_pid[42].id == "abc123"
    assert by_pid[42].status == PROCESS_RUNNING
    assert by_pid[42].log_base == "/tmp/clawbox-procs/abc123"
    assert by_pid[57].status == PROCESS_EXITED
    assert by_pid[1].id == "pid-1"
    assert by_pid[1].log_base is None


def test_processes_started_here_report_starting_until_ready() -> None:
    container = _FakeContainer({"ps -eo": PS_OUTPUT, "grep -H": "/tmp/clawbox-procs/abc123.pid:42\n"})
    sandbox = _sandbox_with(container)
    sandbox._starting.add("abc123")

    procs = asyncio.run(sandbox.list_processes())
    assert next(p for p in procs if p.pid == 42).status == PROCESS_STARTING

    sandbox.clear_starting("abc123")
    procs = asyncio.run(sandbox.list_processes())
    assert next(p for p in procs if p.pid == 42).status == PROCESS_RUNNING


def test_kill_sends_term_and_ignores_missing_pid() -> None:
    container = _FakeContainer({"ps -eo": PS_OUTPUT})
    sandbox = _sandbox_with(container)
    procs = asyncio.run(sandbox.list_processes())
    gateway = next(p for p in procs if p.pid == 42)

    asyncio.run(gateway.kill())

    assert container.commands[-1] == "kill -TERM 42 2>/dev/null || true"
    assert gateway.status == PROCESS_EXITED


def test_logs_are_read_from_capture_files() -> None:
    container = _FakeContainer(
        {
            "cat /tmp/clawbox-procs/abc123.out": "hello\n",
            "cat /tmp/clawbox-procs/abc123.err": "boom\n",
            "ps -eo": PS_OUTPUT,
            "grep -H": "/tmp/clawbox-procs/abc123.pid:42\n",
        }
    )
    sandbox = _sandbox_with(container)
    gateway = next(p for p in asyncio.run(sandbox.list_processes()) if p.pid == 42)

    logs = asyncio.run(gateway.get_logs())

    assert logs.stdout == "hello\n"
    assert logs.stderr == "boom\n"


def test_kill_forgets_the_pid_file_but_keeps_output() -> None:
    container = _FakeContainer({"ps -eo": PS_OUTPUT, "grep -H": "/tmp/clawbox-procs/abc123.pid:42\n"})
    sandbox = _sandbox_with(container)
    sandbox._starting.add("abc123")
    gateway = next(p for p in asyncio.run(sandbox.list_processes()) if p.pid == 42)

    asyncio.run(gateway.kill())

    assert container.commands[-1] == "kill -TERM 42 2>/dev/null || true; rm -f /tmp/clawbox-procs/abc123.pid"
    assert sandbox._starting == set()


class _ExecApi:
    def __init__(self):
        self.created = 0

    def exec_create(self, container_id, cmd, environment=None):
        self.created += 1
        return {"Id": f"exec-{self.created}"}

    def exec_start(self, exec_id, detach=False):
        return None

    def exec_inspect(self, exec_id):
        return {"Running": False, "ExitCode": 0}


class _HelperContainer:
    """Container whose helper execs finish at once and print a stored fingerprint."""

    id = "c1"

    def __init__(self):
        self.client = SimpleNamespace(api=_ExecApi())
        self.commands: list[str] = []

    def exec_run(self, cmd, demux=False):
        command = cmd[-1]
        self.commands.append(command)
        out = b""
        if command.startswith("cat ") and ".pid " in command:
            out = b"4242\n"
        elif command.startswith("cat ") and ".out " in command:
            out = b"A:3\n"
        return SimpleNamespace(exit_code=0, output=(out, b""))


def test_helper_commands_leave_no_bookkeeping_behind() -> None:
    container = _HelperContainer()
    sandbox = _sandbox_with(container)

    async def _run_many():
        return [await run_command(sandbox, "cat /tmp/clawbox-env-hash", 1) for _ in range(50)]

    results = asyncio.run(_run_many())

    assert {r.stdout for r in results} == {"A:3\n"}
    assert sandbox._starting == set()
    removals = [c for c in container.commands if c.startswith("rm -f ")]
    assert len(removals) == 50
    assert all(".pid" in c and ".out" in c and ".err" in c for c in removals)
