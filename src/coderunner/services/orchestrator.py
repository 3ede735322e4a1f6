from __future__ import annotations

import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional, Tuple

import structlog

from ..core.errors import BuildFailed, InvalidInput, Overloaded
from ..core.models import ExecutionResult, LanguageSpec, Limits, ResultKind, Submission
from ..core.utils import new_session_id, sha256_text
from ..executor.base import Executor
from ..executor.factory import make_executor
from ..runner.limiter import ResourceLimiter
from ..runner.output import ChunkCallback, OutputSubscription
from ..settings import Settings
from .builder import SandboxBuilder
from .registry import LanguageRegistry, effective_limits
from .session import ExecutionSession

log = structlog.get_logger(__name__)


class _Ticket:
    """An admitted submission, from admission until its result exists."""

    def __init__(self, session_id: str, spec: LanguageSpec, limits: Limits):
        self.session_id = session_id
        self.spec = spec
        self.limits = limits
        self.admitted_at = time.monotonic()
        self.cancelled = False
        self.session: Optional[ExecutionSession] = None
        self.lock = threading.Lock()

    def cancel(self) -> None:
        with self.lock:
            self.cancelled = True
            session = self.session
        if session is not None:
            session.cancel()

    def attach(self, session: ExecutionSession) -> None:
        with self.lock:
            self.session = session
            cancelled = self.cancelled
        if cancelled:
            session.cancel()


class Orchestrator:
    """
    Entry point for submissions.

    Admission is a BoundedSemaphore of pool_size + queue_capacity slots taken
    without waiting: a submission either gets a slot (runs now or waits in the
    pool's queue) or is rejected with Overloaded. Rejections are raised; every
    admitted submission ends with exactly one ExecutionResult.
    """

    def __init__(
        self,
        settings: Settings,
        registry: LanguageRegistry,
        executor: Executor,
        builder: Optional[SandboxBuilder] = None,
        limiter: Optional[ResourceLimiter] = None,
    ):
        self.s = settings
        self.registry = registry
        self.executor = executor
        self.builder = builder or SandboxBuilder(executor)
        self.limiter = limiter or ResourceLimiter(
            executor, max_output_bytes=settings.max_output_bytes, kill_grace_s=settings.kill_grace_s
        )
        self.capacity = settings.pool_size + settings.queue_capacity
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._pool = ThreadPoolExecutor(max_workers=settings.pool_size, thread_name_prefix="runner")
        self._lock = threading.Lock()
        self._tickets: Dict[str, _Ticket] = {}
        self._closed = False
        self.counters: Counter = Counter()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        registry = LanguageRegistry.from_yaml(settings.languages_file)
        log.info(
            "orchestrator.start",
            runner_id=settings.runner_id,
            backend=settings.backend,
            languages=registry.languages(),
            pool_size=settings.pool_size,
            queue_capacity=settings.queue_capacity,
        )
        return cls(settings, registry, make_executor(settings))

    # ---------- ingress ----------

    def submit(self, submission: Submission, on_chunk: Optional[ChunkCallback] = None) -> ExecutionResult:
        return self.submit_async(submission, on_chunk=on_chunk).result()

    def submit_async(self, submission: Submission, on_chunk: Optional[ChunkCallback] = None) -> "Future[ExecutionResult]":
        spec, limits = self._validate(submission)

        if self._closed or not self._slots.acquire(blocking=False):
            with self._lock:
                self.counters["overloaded"] += 1
            log.warning("orchestrator.overloaded", language=spec.id, capacity=self.capacity)
            raise Overloaded(self.capacity)

        ticket = _Ticket(new_session_id(), spec, limits)
        with self._lock:
            self._tickets[ticket.session_id] = ticket
            self.counters["admitted"] += 1
        log.info("orchestrator.admitted", session_id=ticket.session_id, language=spec.id)

        try:
            fut = self._pool.submit(self._work, ticket, submission, on_chunk)
        except RuntimeError:
            # pool shut down between the closed check and here
            self._release(ticket)
            raise Overloaded(self.capacity) from None
        fut.session_id = ticket.session_id  # type: ignore[attr-defined]
        return fut

    def stream(self, submission: Submission, maxsize: int = 256) -> Tuple["Future[ExecutionResult]", OutputSubscription]:
        """Submit and get a bounded queue of output chunks; ends with None once the result exists."""
        sub = OutputSubscription(maxsize)
        fut = self.submit_async(submission, on_chunk=sub)
        fut.add_done_callback(lambda _f: sub.close())
        return fut, sub

    def _validate(self, submission: Submission):
        if not isinstance(submission.source, str) or not submission.source.strip():
            raise InvalidInput("source is empty")
        if len(submission.source.encode("utf-8")) > self.s.max_source_bytes:
            raise InvalidInput(f"source exceeds {self.s.max_source_bytes} bytes")
        if submission.stdin is not None and len(submission.stdin.encode("utf-8")) > self.s.max_stdin_bytes:
            raise InvalidInput(f"stdin exceeds {self.s.max_stdin_bytes} bytes")
        # UnknownLanguage propagates from here, before any sandbox work
        spec = self.registry.resolve(submission.language)
        return spec, effective_limits(spec, submission.limits)

    def _release(self, ticket: _Ticket) -> None:
        with self._lock:
            if self._tickets.pop(ticket.session_id, None) is None:
                return
        self._slots.release()

    # ---------- worker ----------

    def _work(self, ticket: _Ticket, submission: Submission, on_chunk: Optional[ChunkCallback]) -> ExecutionResult:
        blog = log.bind(session_id=ticket.session_id, language=ticket.spec.id)
        try:
            result = self._drive(ticket, submission, on_chunk)
        except BuildFailed as e:
            blog.error("orchestrator.build_failed", reason=e.reason)
            result = self._bare_result(ticket, submission, ResultKind.BUILD_FAILED, e.reason, phase="build")
        except Exception as e:
            blog.exception("orchestrator.internal_error")
            result = self._bare_result(ticket, submission, ResultKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        with self._lock:
            self.counters[f"kind.{result.kind.value}"] += 1
        # before the future resolves
        self._release(ticket)
        blog.info(
            "orchestrator.result",
            kind=result.kind.value,
            elapsed_s=round(result.elapsed_s, 3),
            total_s=round(time.monotonic() - ticket.admitted_at, 3),
        )
        return result

    def _drive(self, ticket: _Ticket, submission: Submission, on_chunk: Optional[ChunkCallback]) -> ExecutionResult:
        if ticket.cancelled:
            return self._bare_result(ticket, submission, ResultKind.CANCELLED, "cancelled while queued")
        handle = self.builder.ensure_ready(ticket.spec)
        session = ExecutionSession(
            ticket.session_id,
            ticket.spec,
            handle,
            self.executor,
            self.limiter,
            source=submission.source,
            limits=ticket.limits,
            stdin=submission.stdin,
            runner_id=self.s.runner_id,
            on_chunk=on_chunk,
        )
        ticket.attach(session)
        return session.execute()

    def _bare_result(
        self, ticket: _Ticket, submission: Submission, kind: ResultKind, reason: str, phase: str = "run"
    ) -> ExecutionResult:
        return ExecutionResult(
            session_id=ticket.session_id,
            language=ticket.spec.id,
            kind=kind,
            phase=phase,
            reason=reason,
            source_sha256=sha256_text(submission.source),
            runner_id=self.s.runner_id,
        )

    # ---------- control ----------

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            ticket = self._tickets.get(session_id)
        if ticket is None:
            return False
        log.info("orchestrator.cancel", session_id=session_id)
        ticket.cancel()
        return True

    def shutdown(self, cancel_running: bool = True) -> None:
        """Stop admitting; optionally cancel everything admitted; wait for results."""
        with self._lock:
            self._closed = True
            tickets = list(self._tickets.values())
        log.info("orchestrator.shutdown", pending=len(tickets), cancel_running=cancel_running)
        if cancel_running:
            for t in tickets:
                t.cancel()
        self._pool.shutdown(wait=True)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            active = [t for t in self._tickets.values() if t.session is not None]
            pending = len(self._tickets) - len(active)
            counters = dict(self.counters)
        return {
            "runner_id": self.s.runner_id,
            "backend": self.executor.name,
            "pool_size": self.s.pool_size,
            "queue_capacity": self.s.queue_capacity,
            "in_flight": len(active),
            "queued": pending,
            "closed": self._closed,
            "counters": counters,
            "builds": dict(self.builder.builds),
        }
