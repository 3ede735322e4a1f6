from __future__ import annotations

import os
import shutil
import stat
import threading
from pathlib import Path
from typing import List, Optional

import structlog

from ..core.errors import InternalError
from ..core.models import (
    ExecutionResult,
    LanguageSpec,
    Limits,
    ResultKind,
    RunOutcome,
    SandboxHandle,
    SessionState,
    render_argv,
)
from ..core.utils import decode_output, sha256_text
from ..executor.base import ExecSpec, Executor
from ..runner.limiter import CancelToken, ResourceLimiter
from ..runner.output import ChunkCallback

log = structlog.get_logger(__name__)

BINARY = "main"

_ALLOWED = {
    SessionState.CREATED: {SessionState.STAGED, SessionState.FAILED},
    SessionState.STAGED: {SessionState.BUILDING, SessionState.RUNNING, SessionState.FAILED},
    SessionState.BUILDING: {SessionState.RUNNING, SessionState.FAILED},
    SessionState.RUNNING: {SessionState.COLLECTING, SessionState.FAILED},
    SessionState.COLLECTING: {SessionState.DONE, SessionState.FAILED},
    SessionState.DONE: set(),
    SessionState.FAILED: set(),
}

# limiter verdicts that end a session in FAILED even though a result is produced
_FAILED_KINDS = {
    ResultKind.TIMEOUT,
    ResultKind.MEMORY_EXCEEDED,
    ResultKind.COMPILE_ERROR,
    ResultKind.BUILD_FAILED,
    ResultKind.CANCELLED,
    ResultKind.INTERNAL_ERROR,
}


def remove_tree(path: Path) -> None:
    """rmtree that also copes with read-only dirs left behind by the submission."""

    def _onerror(func, p, _exc):
        try:
            os.chmod(p, stat.S_IRWXU)
            parent = os.path.dirname(p)
            os.chmod(parent, stat.S_IRWXU)
            func(p)
        except FileNotFoundError:
            pass

    shutil.rmtree(path, onerror=_onerror)


class ExecutionSession:
    """One submission's lifecycle: staged -> [building] -> running -> collecting -> done.

    `execute()` always returns an ExecutionResult and always removes the
    scratch directory, whichever path is taken out.
    """

    def __init__(
        self,
        session_id: str,
        spec: LanguageSpec,
        handle: SandboxHandle,
        executor: Executor,
        limiter: ResourceLimiter,
        source: str,
        limits: Limits,
        stdin: Optional[str] = None,
        runner_id: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ):
        self.id = session_id
        self.spec = spec
        self.handle = handle
        self.executor = executor
        self.limiter = limiter
        self.source = source
        self.stdin = stdin.encode("utf-8") if stdin is not None else None
        self.limits = limits
        self.runner_id = runner_id
        self.on_chunk = on_chunk
        self.scratch = handle.root / session_id
        self._owns_scratch = False
        self.cancel_token = CancelToken()
        self.state = SessionState.CREATED
        self.history: List[SessionState] = [SessionState.CREATED]
        self.result: Optional[ExecutionResult] = None
        self._lock = threading.Lock()
        self.log = log.bind(session_id=session_id, language=spec.id)

    # ---------- state ----------

    def _enter(self, new: SessionState) -> None:
        with self._lock:
            if new not in _ALLOWED[self.state]:
                raise InternalError(f"illegal transition {self.state.value} -> {new.value}", self.id)
            self.state = new
            self.history.append(new)

    def cancel(self) -> None:
        self.log.info("session.cancel_requested", state=self.state.value)
        self.cancel_token.cancel()

    # ---------- lifecycle ----------

    def execute(self) -> ExecutionResult:
        try:
            self.result = self._execute()
        except Exception as e:
            self.log.exception("session.internal_error", state=self.state.value)
            self.result = self._result(ResultKind.INTERNAL_ERROR, reason=f"{type(e).__name__}: {e}")
            self._finish(self.result)
        finally:
            self._cleanup()
        return self.result

    def _execute(self) -> ExecutionResult:
        self._stage()
        if self.cancel_token.cancelled:
            return self._finish(self._result(ResultKind.CANCELLED, reason="cancelled before start"))

        if self.spec.build_cmd:
            self._enter(SessionState.BUILDING)
            outcome = self._invoke(self.spec.build_cmd, self.spec.build_limits, stdin=None, suffix="build")
            if not self._build_ok(outcome):
                return self._finish(self._from_outcome(outcome, phase="build"))
            if self.cancel_token.cancelled:
                return self._finish(self._result(ResultKind.CANCELLED, phase="build", reason="cancelled"))

        self._enter(SessionState.RUNNING)
        outcome = self._invoke(self.spec.run_cmd, self.limits, stdin=self.stdin, suffix="run", stream=True)
        self._enter(SessionState.COLLECTING)
        return self._finish(self._from_outcome(outcome, phase="run"))

    def _stage(self) -> None:
        self._owns_scratch = True
        try:
            self.executor.prepare_scratch(self.handle, self.scratch, {self.spec.entry: self.source})
        except FileExistsError as e:
            # someone else's directory: leave it alone
            self._owns_scratch = False
            raise InternalError(f"scratch dir {self.scratch} already exists", self.id) from e
        self._enter(SessionState.STAGED)
        self.log.debug("session.staged", scratch=str(self.scratch))

    def _invoke(self, template, limits: Limits, stdin: Optional[bytes], suffix: str, stream: bool = False) -> RunOutcome:
        argv = render_argv(
            template,
            source=self.spec.entry,
            binary=BINARY,
            workdir=self.executor.sandbox_workdir(self.scratch),
        )
        spec = ExecSpec(
            cmd=argv,
            workdir=self.scratch,
            limits=limits,
            name=f"cr-{self.id}-{suffix}",
            stdin=stdin,
        )
        outcome = self.limiter.run(
            self.handle, spec, cancel=self.cancel_token, on_chunk=self.on_chunk if stream else None
        )
        self.log.info(
            "session.step",
            step=suffix,
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            elapsed_s=round(outcome.elapsed_s, 3),
            timed_out=outcome.timed_out,
        )
        return outcome

    @staticmethod
    def _build_ok(o: RunOutcome) -> bool:
        return o.exit_code == 0 and not (
            o.timed_out or o.cancelled or o.memory_exceeded or o.cpu_exceeded or o.launch_error
        )

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        terminal = SessionState.FAILED if result.kind in _FAILED_KINDS else SessionState.DONE
        if self.state not in (SessionState.DONE, SessionState.FAILED):
            if terminal is SessionState.DONE and self.state is not SessionState.COLLECTING:
                terminal = SessionState.FAILED
            self._enter(terminal)
        self.log.info("session.finished", kind=result.kind.value, state=self.state.value)
        return result

    def _cleanup(self) -> None:
        try:
            if self._owns_scratch and self.scratch.exists():
                remove_tree(self.scratch)
        except OSError:
            self.log.exception("session.cleanup_failed", scratch=str(self.scratch))

    # ---------- results ----------

    def _kind(self, o: RunOutcome, phase: str) -> ResultKind:
        if o.cancelled:
            return ResultKind.CANCELLED
        if o.launch_error:
            # the sandbox could not run the command at all
            return ResultKind.BUILD_FAILED if phase == "build" else ResultKind.INTERNAL_ERROR
        if o.timed_out or o.cpu_exceeded:
            return ResultKind.TIMEOUT
        if o.memory_exceeded:
            return ResultKind.MEMORY_EXCEEDED
        if phase == "build":
            return ResultKind.COMPILE_ERROR
        if o.signal is not None:
            return ResultKind.CRASHED
        if o.exit_code == 0:
            return ResultKind.SUCCESS
        return ResultKind.RUNTIME_ERROR

    def _from_outcome(self, o: RunOutcome, phase: str) -> ExecutionResult:
        kind = self._kind(o, phase)
        reason = None
        if kind in (ResultKind.BUILD_FAILED, ResultKind.INTERNAL_ERROR):
            reason = o.launch_error
        elif o.cpu_exceeded:
            reason = "cpu_time_exceeded"
        elif o.timed_out:
            limit = self.limits.wall_timeout_seconds if phase == "run" else self.spec.build_limits.wall_timeout_seconds
            reason = f"wall_timeout_{limit:g}s"
        elif kind is ResultKind.CRASHED:
            reason = f"signal_{int(o.signal)}"
        elif kind is ResultKind.RUNTIME_ERROR:
            reason = f"exit_{o.exit_code}"
        elif kind is ResultKind.COMPILE_ERROR:
            reason = "compilation failed"
        return self._result(
            kind,
            phase=phase,
            reason=reason,
            exit_code=o.exit_code,
            signal=o.signal,
            stdout=decode_output(o.stdout),
            stderr=decode_output(o.stderr),
            stdout_truncated=o.stdout_truncated,
            stderr_truncated=o.stderr_truncated,
            elapsed_s=o.elapsed_s,
            cpu_s=o.cpu_s,
            peak_memory_bytes=o.peak_memory_bytes,
        )

    def _result(self, kind: ResultKind, phase: str = "run", reason: Optional[str] = None, **kw) -> ExecutionResult:
        return ExecutionResult(
            session_id=self.id,
            language=self.spec.id,
            kind=kind,
            phase=phase,
            reason=reason,
            source_sha256=sha256_text(self.source),
            runner_id=self.runner_id,
            **kw,
        )
