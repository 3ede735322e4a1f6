from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import asdict
from typing import Dict, Optional, Tuple

import structlog

from ..core.errors import BuildFailed
from ..core.models import LanguageSpec, SandboxHandle
from ..core.utils import fingerprint
from ..executor.base import Executor

log = structlog.get_logger(__name__)


class _Flight:
    """One in-progress build; waiters block on `done`."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.handle: Optional[SandboxHandle] = None
        self.error: Optional[BaseException] = None


class SandboxBuilder:
    """
    Keeps exactly one current SandboxHandle per language.

    Builds are single-flight per (language, fingerprint): the first caller
    builds, concurrent callers wait on its flight and get the same handle or
    the same BuildFailed. A handle is only published after a successful build,
    and only if no newer spec for that language was requested meanwhile.
    """

    def __init__(self, executor: Executor):
        self.executor = executor
        self._lock = threading.Lock()
        self._handles: Dict[str, SandboxHandle] = {}
        self._flights: Dict[Tuple[str, str], _Flight] = {}
        # newest fingerprint asked for per language; only that one is published
        self._wanted: Dict[str, str] = {}
        self.builds: Counter = Counter()

    def fingerprint(self, spec: LanguageSpec) -> str:
        return fingerprint(asdict(spec), extra=self.executor.fingerprint_extra(spec))

    def current(self, language: str) -> Optional[SandboxHandle]:
        with self._lock:
            return self._handles.get(language)

    def invalidate(self, language: str) -> bool:
        with self._lock:
            return self._handles.pop(language, None) is not None

    def ensure_ready(self, spec: LanguageSpec) -> SandboxHandle:
        fp = self.fingerprint(spec)
        key = (spec.id, fp)
        with self._lock:
            self._wanted[spec.id] = fp
            cur = self._handles.get(spec.id)
            if cur is not None and cur.fingerprint == fp:
                return cur
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.handle  # type: ignore[return-value]

        self._lead(spec, fp, flight)
        if flight.error is not None:
            raise flight.error
        return flight.handle  # type: ignore[return-value]

    def _lead(self, spec: LanguageSpec, fp: str, flight: _Flight) -> None:
        start = time.monotonic()
        log.info("builder.build_start", language=spec.id, fingerprint=fp[:12], backend=self.executor.name)
        try:
            with self._lock:
                self.builds[spec.id] += 1
            handle = self.executor.build(spec, fp)
        except BuildFailed as e:
            log.error("builder.build_failed", language=spec.id, reason=e.reason)
            flight.error = e
        except Exception as e:
            log.exception("builder.build_crashed", language=spec.id)
            flight.error = BuildFailed(spec.id, f"{type(e).__name__}: {e}")
        else:
            flight.handle = handle
            log.info(
                "builder.build_done",
                language=spec.id,
                image=handle.image,
                duration_s=round(time.monotonic() - start, 3),
            )
        finally:
            with self._lock:
                if flight.handle is not None and self._wanted.get(spec.id) == fp:
                    self._handles[spec.id] = flight.handle
                self._flights.pop((spec.id, fp), None)
            flight.done.set()
