from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from coderunner.core.errors import BuildFailed
from coderunner.core.models import LanguageSpec, RunOutcome, SandboxHandle
from coderunner.executor.base import ExecSpec, Executor, LaunchPlan, Stats
from coderunner.services.registry import LanguageRegistry
from coderunner.settings import Settings

REPO = Path(__file__).resolve().parents[1]
LANGUAGES_FILE = REPO / "conf" / "languages.yaml"
DOCKERFILES = REPO / "runner" / "languages"
SECCOMP_PROFILE = REPO / "conf" / "seccomp.json"
WORKLOADS = Path(__file__).resolve().parent / "workloads"

LIMITS = {
    "default": {
        "cpu_seconds": 2,
        "memory_bytes": 256 * 1024 * 1024,
        "wall_timeout_seconds": 5,
        "max_processes": 32,
        "max_file_bytes": 16 * 1024 * 1024,
        "nofile": 64,
    },
    "max": {
        "cpu_seconds": 10,
        "memory_bytes": 512 * 1024 * 1024,
        "wall_timeout_seconds": 15,
        "max_processes": 64,
        "max_file_bytes": 50 * 1024 * 1024,
        "nofile": 256,
    },
}

TABLE: Dict[str, Any] = {
    "limits": LIMITS,
    "languages": {
        "python": {"extension": ".py", "run": ["python3", "-I", "{source}"]},
        "cpp": {
            "extension": ".cpp",
            "build": ["g++", "-O2", "-o", "{binary}", "{source}"],
            "run": ["./{binary}"],
        },
        "sh": {"extension": ".sh", "run": ["sh", "{source}"]},
    },
}


def ok_outcome(**kw) -> RunOutcome:
    base = dict(
        exit_code=0,
        signal=None,
        stdout=b"",
        stderr=b"",
        stdout_truncated=False,
        stderr_truncated=False,
        elapsed_s=0.01,
    )
    base.update(kw)
    return RunOutcome(**base)


class FakeExecutor(Executor):
    """Executor that touches only the filesystem; builds are counted."""

    name = "fake"

    def __init__(self, root: Path, build_delay: float = 0.0, fail_with: Optional[BaseException] = None):
        self.root = root
        self.build_delay = build_delay
        self.fail_with = fail_with
        self.build_calls: List[str] = []
        self.scratch_fail: Optional[BaseException] = None
        self._lock = threading.Lock()

    def build(self, spec: LanguageSpec, fingerprint: str) -> SandboxHandle:
        with self._lock:
            self.build_calls.append(spec.id)
        if self.build_delay:
            time.sleep(self.build_delay)
        if self.fail_with is not None:
            raise self.fail_with
        root = self.root / spec.id
        root.mkdir(parents=True, exist_ok=True)
        return SandboxHandle(
            language=spec.id,
            fingerprint=fingerprint,
            backend=self.name,
            root=root,
            env=(("PATH", "/usr/bin:/bin"),),
            created_at=time.time(),
        )

    def sandbox_workdir(self, workdir: Path) -> str:
        return str(workdir)

    def prepare_scratch(self, handle: SandboxHandle, workdir: Path, files: Dict[str, str]) -> None:
        if self.scratch_fail is not None:
            raise self.scratch_fail
        workdir.mkdir(mode=0o700)
        for rel, content in files.items():
            (workdir / rel).write_text(content, encoding="utf-8")

    def launch(self, handle: SandboxHandle, spec: ExecSpec) -> LaunchPlan:
        return LaunchPlan(argv=list(spec.cmd), cwd=spec.workdir, env=dict(handle.env))

    def stats(self, spec: ExecSpec, plan: LaunchPlan) -> Stats:
        return Stats()

    def terminate(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        pass

    def release(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        pass


class FakeLimiter:
    """Stands in for ResourceLimiter: records every ExecSpec and replays outcomes."""

    def __init__(self, outcomes: Optional[List[RunOutcome]] = None, hook: Optional[Callable] = None):
        self.outcomes = list(outcomes or [])
        self.hook = hook
        self.calls: List[ExecSpec] = []
        self.scratch_seen: List[bool] = []
        self._lock = threading.Lock()

    def run(self, handle, spec: ExecSpec, cancel=None, on_chunk=None) -> RunOutcome:
        with self._lock:
            self.calls.append(spec)
            self.scratch_seen.append(spec.workdir.is_dir())
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.hook is not None:
            got = self.hook(spec, cancel)
            if got is not None:
                return got
        if outcome is None:
            outcome = ok_outcome(stdout=b"ok\n")
        if on_chunk is not None and outcome.stdout:
            on_chunk("stdout", outcome.stdout)
        return outcome


@pytest.fixture
def scratch_root():
    # pytest's tmp_path is 0700, which the unprivileged run uid cannot traverse
    root = Path(tempfile.mkdtemp(prefix="coderunner-test-", dir="/tmp"))
    os.chmod(root, 0o711)
    yield root
    shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def settings(scratch_root) -> Settings:
    return Settings(
        runner_id="runner-test",
        scratch_dir=scratch_root / "scratch",
        seccomp_profile=SECCOMP_PROFILE,
        languages_file=LANGUAGES_FILE,
        dockerfiles_dir=DOCKERFILES,
        pool_size=2,
        queue_capacity=2,
        max_output_bytes=4096,
        max_source_bytes=1024,
        max_stdin_bytes=1024,
        kill_grace_s=0.5,
        log_json=False,
    )


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry.from_mapping(TABLE)


@pytest.fixture
def fake_executor(tmp_path) -> FakeExecutor:
    return FakeExecutor(tmp_path / "scratch")


@pytest.fixture
def build_failure() -> BuildFailed:
    return BuildFailed("python", "toolchain not installed: python3")
