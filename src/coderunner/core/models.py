from __future__ import annotations
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ResultKind(str, Enum):
    SUCCESS = "success"
    RUNTIME_ERROR = "runtime_error"      # exited with a non-zero code
    TIMEOUT = "timeout"
    MEMORY_EXCEEDED = "memory_exceeded"
    CRASHED = "crashed"                  # killed by a signal we did not send
    COMPILE_ERROR = "compile_error"
    BUILD_FAILED = "build_failed"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class SessionState(str, Enum):
    CREATED = "created"
    STAGED = "staged"
    BUILDING = "building"
    RUNNING = "running"
    COLLECTING = "collecting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Limits:
    cpu_seconds: int
    memory_bytes: int
    wall_timeout_seconds: float
    max_processes: int
    max_file_bytes: int
    nofile: int

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["Limits"] = None) -> "Limits":
        """Build limits from a mapping; missing keys fall back to `base`."""
        values: Dict[str, Any] = asdict(base) if base else {}
        for name in cls.field_names():
            if name in data and data[name] is not None:
                values[name] = data[name]
        missing = [n for n in cls.field_names() if n not in values]
        if missing:
            raise ValueError(f"missing limits: {', '.join(missing)}")
        values["wall_timeout_seconds"] = float(values["wall_timeout_seconds"])
        for name in cls.field_names():
            if name != "wall_timeout_seconds":
                values[name] = int(values[name])
        return cls(**values)

    def clamp(self, ceiling: "Limits") -> "Limits":
        return Limits(**{n: min(getattr(self, n), getattr(ceiling, n)) for n in self.field_names()})

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LanguageSpec:
    id: str
    run_cmd: Tuple[str, ...]
    extension: str
    default_limits: Limits
    max_limits: Limits
    build_limits: Limits
    build_cmd: Optional[Tuple[str, ...]] = None
    source_file: str = ""
    image: str = ""
    version_cmd: Optional[Tuple[str, ...]] = None
    env: Tuple[Tuple[str, str], ...] = ()
    version: str = "1"

    @property
    def compiled(self) -> bool:
        return self.build_cmd is not None

    @property
    def entry(self) -> str:
        return self.source_file or f"main{self.extension}"


@dataclass
class Submission:
    language: str
    source: str
    stdin: Optional[str] = None
    limits: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SandboxHandle:
    language: str
    fingerprint: str
    backend: str
    root: Path                    # per-language parent of session scratch dirs
    env: Tuple[Tuple[str, str], ...]
    image: Optional[str] = None
    created_at: float = 0.0


@dataclass
class RunOutcome:
    """What the limiter observed about one command invocation."""
    exit_code: Optional[int]
    signal: Optional[int]
    stdout: bytes
    stderr: bytes
    stdout_truncated: bool
    stderr_truncated: bool
    elapsed_s: float
    cpu_s: Optional[float] = None
    peak_memory_bytes: Optional[int] = None
    timed_out: bool = False
    cpu_exceeded: bool = False
    memory_exceeded: bool = False
    cancelled: bool = False
    launch_error: Optional[str] = None     # the launcher failed, the code never ran


@dataclass(frozen=True)
class ExecutionResult:
    session_id: str
    language: str
    kind: ResultKind
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    elapsed_s: float = 0.0
    cpu_s: Optional[float] = None
    peak_memory_bytes: Optional[int] = None
    phase: str = "run"
    reason: Optional[str] = None
    source_sha256: Optional[str] = None
    runner_id: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["truncated"] = self.truncated
        return d


def as_argv(value: Any) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        raise ValueError(f"command must be a list of arguments, got string {value!r}")
    return tuple(str(v) for v in value)


def render_argv(template: Tuple[str, ...], **subs: str) -> List[str]:
    return [arg.format(**subs) for arg in template]
