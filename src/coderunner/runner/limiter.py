from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from typing import Callable, List, Optional

import structlog

from ..core.models import RunOutcome, SandboxHandle
from ..executor.base import ExecSpec, Executor, LaunchPlan
from .output import ChunkCallback, OutputCollector

log = structlog.get_logger(__name__)

# what allocators print when they give up
OOM_MARKERS = (
    b"std::bad_alloc",
    b"MemoryError",
    b"OutOfMemoryError",
    b"Cannot allocate memory",
    b"out of memory",
    b"memory allocation of",
    b"JavaScript heap out of memory",
)


class CancelToken:
    """Caller-side cancellation. Callbacks run once, on the cancelling thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
        for fn in callbacks:
            try:
                fn()
            except Exception:
                log.exception("cancel.callback_failed")

    def register(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Run `fn` on cancel (immediately if already cancelled). Returns an unregister function."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(fn)

                def _unregister() -> None:
                    with self._lock:
                        if fn in self._callbacks:
                            self._callbacks.remove(fn)

                return _unregister
        fn()
        return lambda: None


class _Reaper(threading.Thread):
    """Blocks in wait4() for the leader, then sweeps its process group."""

    def __init__(self, proc: subprocess.Popen):
        super().__init__(name=f"reaper-{proc.pid}", daemon=True)
        self.proc = proc
        self.done = threading.Event()
        self.status: Optional[int] = None
        self.rusage = None

    def run(self) -> None:
        try:
            _, self.status, self.rusage = os.wait4(self.proc.pid, 0)
            self.proc.returncode = os.waitstatus_to_exitcode(self.status)
        except ChildProcessError:
            self.proc.returncode = -1
        finally:
            # nothing started by the submission outlives its leader
            _killpg(self.proc.pid)
            self.done.set()


def _killpg(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class ResourceLimiter:
    """
    Runs one command under its limits and reports what happened.

    Wall clock is enforced here; CPU, memory, process count and file size are
    enforced by the executor's launch plan (rlimits, cgroup, container flags)
    and classified here after the fact.
    """

    def __init__(self, executor: Executor, max_output_bytes: int, kill_grace_s: float = 2.0):
        self.executor = executor
        self.max_output_bytes = max_output_bytes
        self.kill_grace_s = kill_grace_s

    def run(
        self,
        handle: SandboxHandle,
        spec: ExecSpec,
        cancel: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> RunOutcome:
        plan = self.executor.launch(handle, spec)
        try:
            return self._run(plan, spec, cancel, on_chunk)
        finally:
            self.executor.release(spec, plan)

    def _run(
        self,
        plan: LaunchPlan,
        spec: ExecSpec,
        cancel: Optional[CancelToken],
        on_chunk: Optional[ChunkCallback],
    ) -> RunOutcome:
        limits = spec.limits
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                plan.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(plan.cwd),
                env=plan.env,
                preexec_fn=plan.preexec,
                start_new_session=True,
                close_fds=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            # command missing or not executable: exit like a shell would, but the code never ran
            log.warning("limiter.launch_failed", name=spec.name, argv0=plan.argv[0], error=str(e))
            return RunOutcome(
                exit_code=127 if isinstance(e, FileNotFoundError) else 126,
                signal=None,
                stdout=b"",
                stderr=f"{e}\n".encode(),
                stdout_truncated=False,
                stderr_truncated=False,
                elapsed_s=time.monotonic() - start,
                launch_error=f"cannot start {plan.argv[0]}: {e}",
            )

        collector = OutputCollector(self.max_output_bytes, on_chunk=on_chunk)
        collector.attach(proc.stdout, proc.stderr)
        self._feed_stdin(proc, spec.stdin)

        reaper = _Reaper(proc)
        reaper.start()

        kill_lock = threading.Lock()
        killed: List[str] = []

        def _kill(reason: str) -> None:
            with kill_lock:
                if killed or reaper.done.is_set():
                    return
                killed.append(reason)
            log.info("limiter.kill", name=spec.name, reason=reason, pid=proc.pid)
            _killpg(proc.pid)
            self.executor.terminate(spec, plan)

        unregister = cancel.register(lambda: _kill("cancelled")) if cancel is not None else None
        try:
            if not reaper.done.wait(limits.wall_timeout_seconds):
                _kill("timeout")
            if not reaper.done.wait(self.kill_grace_s + 5.0):
                log.error("limiter.unreaped", name=spec.name, pid=proc.pid)
        finally:
            if unregister is not None:
                unregister()

        elapsed = time.monotonic() - start
        if not collector.join(self.kill_grace_s):
            # a process that escaped the group still holds the pipe
            self.executor.terminate(spec, plan)
            collector.join(self.kill_grace_s)
        collector.close()

        return self._classify(proc, reaper, killed[0] if killed else None, elapsed, collector, plan, spec)

    @staticmethod
    def _feed_stdin(proc: subprocess.Popen, data: Optional[bytes]) -> None:
        if not data:
            proc.stdin.close()
            return

        def _write() -> None:
            try:
                proc.stdin.write(data)
            except (BrokenPipeError, OSError, ValueError):
                pass
            finally:
                try:
                    proc.stdin.close()
                except (BrokenPipeError, OSError):
                    pass

        threading.Thread(target=_write, name=f"stdin-{proc.pid}", daemon=True).start()

    def _classify(
        self,
        proc: subprocess.Popen,
        reaper: _Reaper,
        killed: Optional[str],
        elapsed: float,
        collector: OutputCollector,
        plan: LaunchPlan,
        spec: ExecSpec,
    ) -> RunOutcome:
        limits = spec.limits
        stdout, out_trunc = collector.result("stdout")
        stderr, err_trunc = collector.result("stderr")

        exit_code: Optional[int] = None
        sig: Optional[int] = None
        if reaper.status is not None and os.WIFSIGNALED(reaper.status):
            sig = os.WTERMSIG(reaper.status)
        else:
            exit_code = proc.returncode
            if not self.executor.process_is_payload and exit_code is not None and exit_code > 128:
                # the client relays the payload's death as 128 + signal
                sig, exit_code = exit_code - 128, None

        stats = self.executor.stats(spec, plan)
        cpu_s = stats.cpu_s
        peak = stats.peak_memory_bytes
        if self.executor.process_is_payload and reaper.rusage is not None:
            ru = reaper.rusage
            if cpu_s is None:
                cpu_s = ru.ru_utime + ru.ru_stime
            if peak is None:
                peak = ru.ru_maxrss * 1024      # KiB on Linux

        launch_error = None
        if killed is None and sig is None:
            launch_error = self.executor.launch_failure(exit_code, stdout, stderr)
            if launch_error is not None:
                log.warning("limiter.launch_failed", name=spec.name, exit_code=exit_code, error=launch_error)

        cpu_exceeded = killed is None and launch_error is None and (
            sig == signal.SIGXCPU
            or (sig == signal.SIGKILL and cpu_s is not None and cpu_s >= limits.cpu_seconds)
        )
        failed = sig is not None or (exit_code not in (None, 0))
        # cgroup memory.peak counts page cache, so with a cgroup only its oom events count
        peak_hit = plan.cgroup_leaf is None and peak is not None and peak >= limits.memory_bytes
        memory_exceeded = killed is None and launch_error is None and not cpu_exceeded and (
            stats.oom_killed
            or (failed and peak_hit)
            or (failed and any(m in stderr for m in OOM_MARKERS))
        )

        return RunOutcome(
            exit_code=exit_code,
            signal=sig,
            stdout=stdout,
            stderr=stderr,
            stdout_truncated=out_trunc,
            stderr_truncated=err_trunc,
            elapsed_s=elapsed,
            cpu_s=cpu_s,
            peak_memory_bytes=peak,
            timed_out=killed == "timeout",
            cpu_exceeded=cpu_exceeded,
            memory_exceeded=memory_exceeded,
            cancelled=killed == "cancelled",
            launch_error=launch_error,
        )
