from __future__ import annotations

import threading
from collections import OrderedDict
from concurrent.futures import Future
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .core.errors import InvalidInput, Overloaded, SubmissionRejected, UnknownLanguage
from .core.models import ExecutionResult, Submission
from .logging import setup_logging
from .services.orchestrator import Orchestrator
from .settings import get_settings

# finished background runs kept until fetched once
MAX_PARKED_RESULTS = 256


# --------- Schemas ---------

class RunReq(BaseModel):
    language: str
    source: str
    stdin: Optional[str] = None
    limits: Optional[Dict[str, float]] = None
    wait: bool = True


class RunRes(BaseModel):
    session_id: str
    language: str
    kind: str
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    truncated: bool = False
    elapsed_s: float = 0.0
    cpu_s: Optional[float] = None
    peak_memory_bytes: Optional[int] = None
    phase: str = "run"
    reason: Optional[str] = None
    source_sha256: Optional[str] = None
    runner_id: Optional[str] = None

    @classmethod
    def of(cls, result: ExecutionResult) -> "RunRes":
        return cls(**result.to_dict())


class AcceptedRes(BaseModel):
    session_id: str
    state: str = "accepted"


class CancelRes(BaseModel):
    session_id: str
    cancelled: bool


class LanguageRes(BaseModel):
    id: str
    compiled: bool
    extension: str
    default_limits: Dict[str, float]
    max_limits: Dict[str, float]


class LanguagesRes(BaseModel):
    languages: List[LanguageRes] = Field(default_factory=list)


class _Parking:
    """Results of wait=false runs, bounded, popped on first read."""

    def __init__(self, cap: int = MAX_PARKED_RESULTS):
        self.cap = cap
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._done: "OrderedDict[str, ExecutionResult]" = OrderedDict()

    def park(self, session_id: str, fut: Future) -> None:
        with self._lock:
            self._pending[session_id] = fut
        fut.add_done_callback(lambda f: self._settle(session_id, f))

    def _settle(self, session_id: str, fut: Future) -> None:
        with self._lock:
            self._pending.pop(session_id, None)
            self._done[session_id] = fut.result()
            while len(self._done) > self.cap:
                self._done.popitem(last=False)

    def take(self, session_id: str) -> Optional[Any]:
        """ExecutionResult if finished, True if still running, None if unknown."""
        with self._lock:
            if session_id in self._done:
                return self._done.pop(session_id)
            return True if session_id in self._pending else None


def _error(status: int, exc: SubmissionRejected, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": {"code": exc.code, "message": str(exc)}},
        headers=headers,
    )


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        orch = app.state.orchestrator
        if orch is not None:
            orch.shutdown(cancel_running=True)

    app = FastAPI(title="coderunner", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.parking = _Parking()
    app.state.lock = threading.Lock()

    @app.exception_handler(UnknownLanguage)
    async def _unknown(_req: Request, exc: UnknownLanguage):
        return _error(404, exc)

    @app.exception_handler(InvalidInput)
    async def _invalid(_req: Request, exc: InvalidInput):
        return _error(422, exc)

    @app.exception_handler(Overloaded)
    async def _overloaded(_req: Request, exc: Overloaded):
        return _error(429, exc, headers={"Retry-After": str(exc.retry_after)})

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/languages", response_model=LanguagesRes)
    def languages(orch: Orchestrator = Depends(get_orchestrator)):
        out = []
        for lang in orch.registry.languages():
            spec = orch.registry.resolve(lang)
            out.append(LanguageRes(
                id=spec.id,
                compiled=spec.compiled,
                extension=spec.extension,
                default_limits=spec.default_limits.as_dict(),
                max_limits=spec.max_limits.as_dict(),
            ))
        return LanguagesRes(languages=out)

    @app.get("/stats")
    def stats(orch: Orchestrator = Depends(get_orchestrator)):
        return orch.stats()

    @app.post("/runs", response_model=RunRes, responses={202: {"model": AcceptedRes}})
    def create_run(req: RunReq, orch: Orchestrator = Depends(get_orchestrator)):
        sub = Submission(language=req.language, source=req.source, stdin=req.stdin, limits=req.limits)
        fut = orch.submit_async(sub)
        if not req.wait:
            app.state.parking.park(fut.session_id, fut)
            return JSONResponse(status_code=202, content=AcceptedRes(session_id=fut.session_id).model_dump())
        return RunRes.of(fut.result())

    @app.get("/runs/{session_id}", response_model=RunRes, responses={202: {"model": AcceptedRes}})
    def get_run(session_id: str):
        got = app.state.parking.take(session_id)
        if got is None:
            raise HTTPException(status_code=404, detail="run_not_found")
        if got is True:
            return JSONResponse(status_code=202, content=AcceptedRes(session_id=session_id, state="running").model_dump())
        return RunRes.of(got)

    @app.post("/runs/{session_id}/cancel", response_model=CancelRes)
    def cancel_run(session_id: str, orch: Orchestrator = Depends(get_orchestrator)):
        return CancelRes(session_id=session_id, cancelled=orch.cancel(session_id))

    return app


def get_orchestrator(request: Request) -> Orchestrator:
    app = request.app
    with app.state.lock:
        if app.state.orchestrator is None:
            s = get_settings()
            setup_logging(s.log_level, s.log_json)
            app.state.orchestrator = Orchestrator.from_settings(s)
        return app.state.orchestrator


app = create_app()
