from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..core.models import LanguageSpec, Limits, SandboxHandle

# environment every sandboxed command gets on top of PATH/HOME
BASE_ENV = {"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8", "TZ": "UTC"}


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    limits: Limits
    name: str                      # unique per invocation: cgroup leaf / container name
    stdin: Optional[bytes] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class LaunchPlan:
    argv: List[str]
    cwd: Path
    env: Dict[str, str]
    preexec: Optional[Callable[[], None]] = None
    cgroup_leaf: Optional[Path] = None


@dataclass
class Stats:
    oom_killed: bool = False
    peak_memory_bytes: Optional[int] = None
    cpu_s: Optional[float] = None


class Executor:
    """Isolation primitive the core drives. One instance serves every session."""

    name = "base"
    # rusage of the launched process describes the submitted code
    # (false when the launched process is only a client, e.g. `docker run`)
    process_is_payload = True

    def fingerprint_extra(self, spec: LanguageSpec) -> str:
        return ""

    def build(self, spec: LanguageSpec, fingerprint: str) -> SandboxHandle: ...
    def sandbox_workdir(self, workdir: Path) -> str: ...
    def prepare_scratch(self, handle: SandboxHandle, workdir: Path, files: Dict[str, str]) -> None: ...
    def launch(self, handle: SandboxHandle, spec: ExecSpec) -> LaunchPlan: ...
    def stats(self, spec: ExecSpec, plan: LaunchPlan) -> Stats: ...
    def terminate(self, spec: ExecSpec, plan: LaunchPlan) -> None: ...
    def release(self, spec: ExecSpec, plan: LaunchPlan) -> None: ...

    def launch_failure(self, exit_code: Optional[int], stdout: bytes, stderr: bytes) -> Optional[str]:
        """Reason when the exit status came from the launcher rather than the submitted code."""
        return None
