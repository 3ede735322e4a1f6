import dataclasses
import errno
import os
import shutil
import signal
import sys
import threading
import time

import pytest

from conftest import WORKLOADS
from coderunner.core.utils import new_session_id
from coderunner.executor.base import ExecSpec
from coderunner.executor.host import HostExecutor
from coderunner.runner.limiter import CancelToken, ResourceLimiter

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not sys.platform.startswith("linux"), reason="needs Linux process control"),
]


@pytest.fixture
def host(settings, registry):
    ex = HostExecutor(settings)
    spec = registry.resolve("sh")
    handle = ex.build(spec, "0" * 64)
    return ex, handle, ResourceLimiter(ex, max_output_bytes=settings.max_output_bytes, kill_grace_s=0.5), spec


def _run(host, cmd, stdin=None, cancel=None, files=None, **limits):
    ex, handle, limiter, spec = host
    lim = dataclasses.replace(spec.default_limits, **limits)
    workdir = handle.root / new_session_id()
    ex.prepare_scratch(handle, workdir, files or {})
    try:
        return limiter.run(
            handle,
            ExecSpec(cmd=cmd, workdir=workdir, limits=lim, name=workdir.name, stdin=stdin),
            cancel=cancel,
        )
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


@pytest.fixture
def python3(settings):
    # the sandbox uid may not see the test interpreter or the repo
    exe = shutil.which("python3", path=settings.sandbox_path)
    if exe is None:
        pytest.skip("python3 not on the sandbox PATH")
    return exe


def _workload(name):
    return {name: (WORKLOADS / name).read_text()}


def _group_gone(pgid, within=3.0):
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return True
        time.sleep(0.05)
    return False


def test_exit_code_and_output(host):
    out = _run(host, ["sh", "-c", "echo out; echo err >&2; exit 3"])
    assert out.exit_code == 3
    assert out.signal is None
    assert out.stdout == b"out\n"
    assert out.stderr == b"err\n"
    assert not (out.timed_out or out.memory_exceeded or out.cpu_exceeded)


def test_stdin_is_delivered(host):
    out = _run(host, ["cat"], stdin=b"hello sandbox\n")
    assert out.exit_code == 0
    assert out.stdout == b"hello sandbox\n"


def test_minimal_environment(host, monkeypatch):
    monkeypatch.setenv("RUNNER_TEST_SECRET", "do-not-leak")
    out = _run(host, ["env"])
    env = dict(line.split("=", 1) for line in out.stdout.decode().splitlines() if "=" in line)
    assert "RUNNER_TEST_SECRET" not in env
    assert env["LANG"] == "C.UTF-8"
    assert env["TZ"] == "UTC"
    assert env["HOME"] == env["TMPDIR"]
    assert env["HOME"].startswith(str(host[1].root))


def test_wall_timeout_kills_the_whole_group(host):
    start = time.monotonic()
    out = _run(host, ["sh", "-c", "echo $$; sleep 30 & sleep 30"], wall_timeout_seconds=0.5)
    took = time.monotonic() - start

    assert out.timed_out
    assert out.signal == signal.SIGKILL
    assert took < 0.5 + 3.0
    pgid = int(out.stdout.split()[0])
    assert _group_gone(pgid)


def test_background_children_do_not_outlive_leader(host):
    out = _run(host, ["sh", "-c", "echo $$; sleep 30 &"])
    assert out.exit_code == 0
    assert not out.timed_out
    assert _group_gone(int(out.stdout.split()[0]))


def test_output_truncated_at_ceiling(host, settings):
    out = _run(host, ["sh", "-c", "yes | head -c 200000"])
    assert len(out.stdout) == settings.max_output_bytes
    assert out.stdout_truncated
    assert not out.stderr_truncated


def test_crash_reports_signal(host):
    out = _run(host, ["sh", "-c", "kill -SEGV $$"])
    assert out.exit_code is None
    assert out.signal == signal.SIGSEGV


def test_missing_command(host):
    out = _run(host, ["definitely-not-a-real-binary"])
    assert out.exit_code == 127
    assert "definitely-not-a-real-binary" in out.launch_error


def test_submissions_never_run_as_root(host):
    out = _run(host, ["id", "-u"])
    assert out.exit_code == 0
    uid = int(out.stdout)
    assert uid != 0
    if os.geteuid() == 0:
        assert uid == host[0].uid


def test_cancel_kills_promptly(host):
    token = CancelToken()
    threading.Timer(0.3, token.cancel).start()
    start = time.monotonic()
    out = _run(host, ["sleep", "30"], cancel=token)
    assert out.cancelled
    assert not out.timed_out
    assert time.monotonic() - start < 5


def test_cpu_limit(host, python3):
    out = _run(
        host,
        [python3, "cpu_burn.py"],
        files=_workload("cpu_burn.py"),
        cpu_seconds=1,
        wall_timeout_seconds=10,
    )
    assert out.cpu_exceeded
    assert not out.timed_out
    assert out.signal in (signal.SIGXCPU, signal.SIGKILL)


def test_memory_limit(host, python3):
    out = _run(
        host,
        [python3, "mem_stress.py"],
        files=_workload("mem_stress.py"),
        memory_bytes=160 * 1024 * 1024,
        wall_timeout_seconds=10,
    )
    assert out.memory_exceeded
    assert b"MEMORYERROR" in out.stdout


def test_file_size_limit(host):
    out = _run(host, ["sh", "-c", "head -c 4000000 /dev/zero > big.bin"], max_file_bytes=1024 * 1024)
    assert out.exit_code != 0 or out.signal is not None


def test_process_cap(host, python3):
    out = _run(
        host,
        [python3, "pid_stress.py"],
        files=_workload("pid_stress.py"),
        max_processes=8,
        wall_timeout_seconds=10,
    )
    assert b"SPAWN_FAILED" in out.stdout


USERNS_SCRIPT = """\
import ctypes
libc = ctypes.CDLL(None, use_errno=True)
rc = libc.unshare(0x10000000)  # CLONE_NEWUSER
print(rc, ctypes.get_errno())
"""


def test_seccomp_denies_listed_syscalls(settings, registry, python3):
    try:
        import pyseccomp  # noqa: F401
    except (ImportError, OSError, AttributeError) as e:
        pytest.skip(f"libseccomp binding unavailable: {e}")
    ex = HostExecutor(settings.model_copy(update={"seccomp_enabled": True}))
    spec = registry.resolve("sh")
    filtered = (ex, ex.build(spec, "1" * 64), ResourceLimiter(ex, max_output_bytes=settings.max_output_bytes, kill_grace_s=0.5), spec)

    out = _run(filtered, [python3, "userns.py"], files={"userns.py": USERNS_SCRIPT})
    assert out.exit_code == 0, out.stderr
    rc, err = out.stdout.split()
    assert int(rc) == -1
    assert int(err) == errno.EPERM

    assert _run(filtered, ["sh", "-c", "echo still works"]).stdout == b"still works\n"
