# src/coderunner/executor/host.py
from __future__ import annotations
import os, shutil, subprocess, time
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog

from ..core.errors import BuildFailed, ConfigError
from ..core.models import LanguageSpec, SandboxHandle
from ..runner.rlimits import make_preexec, nproc_ceiling
from ..runner.seccomp import build_filter
from ..settings import Settings
from . import cgroups
from .base import BASE_ENV, ExecSpec, Executor, LaunchPlan, Stats

log = structlog.get_logger(__name__)

CHECK_TIMEOUT_S = 30


class HostExecutor(Executor):
    """
    Runs commands directly on the host:
      - new session/process group per command, rlimits applied in the child
      - drops to `run_uid`/`run_gid` when the service runs as root (refuses to run code as root)
      - optional seccomp deny-list loaded last in the child
      - env wiped down to a minimal PATH, HOME = the session scratch dir
      - optional cgroup v2 leaf per command (memory.max, pids.max, cpu.max)
    """

    name = "host"

    def __init__(self, settings: Settings):
        self.s = settings
        self.scratch_dir = settings.scratch_dir.resolve()
        self.uid, self.gid = self._identity(settings)
        self.syscall_filter = None
        if settings.seccomp_enabled:
            try:
                self.syscall_filter = build_filter(settings.seccomp_profile)
            except (ImportError, OSError, AttributeError) as e:
                raise ConfigError(f"seccomp_enabled needs pyseccomp and libseccomp: {e}") from e
        self.cgroup_base: Optional[Path] = None
        if settings.use_cgroup:
            if cgroups.available():
                self.cgroup_base = cgroups.get_base(settings.cgroup_base)
            else:
                log.warning("host.cgroup_unavailable", hint="falling back to rlimits only")

    @staticmethod
    def _identity(s: Settings) -> Tuple[Optional[int], Optional[int]]:
        euid = os.geteuid()
        if euid != 0:
            # no way to switch users: submissions run as the service's own uid
            log.warning("host.shared_uid", uid=euid, hint="run as root with run_uid set to isolate submissions")
            return None, None
        gid = s.run_gid if s.run_gid is not None else s.run_uid
        if not s.run_uid or not gid:
            raise ConfigError("refusing to run submissions as root: set run_uid/run_gid to an unprivileged identity")
        return s.run_uid, gid

    # ------------ build ------------

    def build(self, spec: LanguageSpec, fingerprint: str) -> SandboxHandle:
        self._check_toolchain(spec)
        root = self.scratch_dir / spec.id
        try:
            root.mkdir(parents=True, exist_ok=True)
            # traversable, not listable: sessions cannot enumerate each other
            os.chmod(root, 0o711)
        except OSError as e:
            raise BuildFailed(spec.id, f"cannot create scratch root {root}: {e}") from e

        env = dict(BASE_ENV)
        env["PATH"] = self.s.sandbox_path
        env.update(dict(spec.env))
        return SandboxHandle(
            language=spec.id,
            fingerprint=fingerprint,
            backend=self.name,
            root=root,
            env=tuple(sorted(env.items())),
            image=None,
            created_at=time.time(),
        )

    def _check_toolchain(self, spec: LanguageSpec) -> None:
        if spec.version_cmd:
            try:
                p = subprocess.run(
                    list(spec.version_cmd),
                    capture_output=True,
                    timeout=CHECK_TIMEOUT_S,
                    env={"PATH": self.s.sandbox_path, **BASE_ENV},
                )
            except FileNotFoundError as e:
                raise BuildFailed(spec.id, f"toolchain not installed: {spec.version_cmd[0]}") from e
            except subprocess.TimeoutExpired as e:
                raise BuildFailed(spec.id, f"toolchain check timed out: {' '.join(spec.version_cmd)}") from e
            if p.returncode != 0:
                tail = p.stderr.decode("utf-8", errors="replace").strip()[-500:]
                raise BuildFailed(spec.id, f"toolchain check exited {p.returncode}: {tail}")
            return
        for cmd in (spec.build_cmd, spec.run_cmd):
            if not cmd:
                continue
            prog = cmd[0]
            if "{" in prog or prog.startswith("./"):
                continue
            if shutil.which(prog, path=self.s.sandbox_path) is None:
                raise BuildFailed(spec.id, f"toolchain not installed: {prog}")

    # ------------ sessions ------------

    def sandbox_workdir(self, workdir: Path) -> str:
        return str(workdir)

    def prepare_scratch(self, handle: SandboxHandle, workdir: Path, files: Dict[str, str]) -> None:
        workdir.mkdir(mode=0o700, parents=False, exist_ok=False)
        for rel, content in files.items():
            (workdir / rel).write_text(content, encoding="utf-8")
        if self.uid is not None:
            gid = self.gid if self.gid is not None else -1
            os.chown(workdir, self.uid, gid)
            for p in workdir.iterdir():
                os.chown(p, self.uid, gid)

    def launch(self, handle: SandboxHandle, spec: ExecSpec) -> LaunchPlan:
        leaf: Optional[Path] = None
        if self.cgroup_base is not None:
            leaf = cgroups.create_leaf(self.cgroup_base, spec.name)
            cgroups.set_limits(leaf, spec.limits)

        env = dict(handle.env)
        env.update(spec.env)
        env["HOME"] = str(spec.workdir)
        env["TMPDIR"] = str(spec.workdir)

        # pids.max covers the process cap when the cgroup is there
        nproc = None if leaf is not None else nproc_ceiling(
            spec.limits.max_processes, self.uid if self.uid is not None else os.getuid()
        )
        limits_fn = make_preexec(
            spec.limits,
            nproc=nproc,
            address_space=leaf is None,
            uid=self.uid,
            gid=self.gid,
            syscall_filter=self.syscall_filter,
        )

        def _preexec():
            if leaf is not None:
                cgroups.attach_self(leaf)
            limits_fn()

        return LaunchPlan(argv=list(spec.cmd), cwd=spec.workdir, env=env, preexec=_preexec, cgroup_leaf=leaf)

    def stats(self, spec: ExecSpec, plan: LaunchPlan) -> Stats:
        if plan.cgroup_leaf is None:
            return Stats()
        m = cgroups.read_metrics(plan.cgroup_leaf)
        return Stats(oom_killed=cgroups.oom_killed(m), peak_memory_bytes=cgroups.peak_memory(m), cpu_s=cgroups.cpu_seconds(m))

    def terminate(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        if plan.cgroup_leaf is not None:
            cgroups.kill_all(plan.cgroup_leaf)

    def release(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        if plan.cgroup_leaf is not None:
            cgroups.kill_all(plan.cgroup_leaf)
            cgroups.teardown(plan.cgroup_leaf)
