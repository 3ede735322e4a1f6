# src/coderunner/executor/docker.py
from __future__ import annotations
import os, subprocess, time
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..core.errors import BuildFailed
from ..core.models import LanguageSpec, SandboxHandle
from ..settings import Settings
from .base import BASE_ENV, ExecSpec, Executor, LaunchPlan, Stats

log = structlog.get_logger(__name__)

WORKSPACE = "/workspace"
RUN_USER = "1000:1000"
TMPFS = "/tmp:rw,noexec,nosuid,size=50m"
DOCKER_CMD_TIMEOUT_S = 30

# `docker run` exits with these when the container never ran the command
CLIENT_EXIT_CODES = (125, 126, 127)
CLIENT_ERROR_MARKERS = ("docker:", "Error response from daemon", "OCI runtime", "executable file not found")


class DockerExecutor(Executor):
    """
    One image per language, built from runner/languages/Dockerfile.<image>.
    Each command runs in its own throwaway container:
      - network off, read-only rootfs, all capabilities dropped, no-new-privileges
      - seccomp deny-list from conf/seccomp.json
      - non-root `runner` user, scratch dir bind-mounted at /workspace
      - memory / pids / cpu caps enforced by the container runtime
    """

    name = "docker"
    process_is_payload = False

    def __init__(self, settings: Settings, docker_bin: str = "docker"):
        self.s = settings
        self.docker = docker_bin
        self.scratch_dir = settings.scratch_dir.resolve()
        self.dockerfiles = settings.dockerfiles_dir
        self.seccomp_profile = settings.seccomp_profile.resolve()

    def _dockerfile(self, spec: LanguageSpec) -> Path:
        return self.dockerfiles / f"Dockerfile.{spec.image}"

    def fingerprint_extra(self, spec: LanguageSpec) -> str:
        p = self._dockerfile(spec)
        return p.read_text(encoding="utf-8") if p.exists() else ""

    def image_tag(self, spec: LanguageSpec, fingerprint: str) -> str:
        return f"{self.s.image_prefix}/{spec.image}:{fingerprint[:12]}"

    def _docker(self, args: List[str], timeout: float = DOCKER_CMD_TIMEOUT_S) -> subprocess.CompletedProcess:
        return subprocess.run([self.docker, *args], capture_output=True, text=True, timeout=timeout)

    # ------------ build ------------

    def image_exists(self, tag: str) -> bool:
        try:
            return self._docker(["image", "inspect", tag]).returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def build(self, spec: LanguageSpec, fingerprint: str) -> SandboxHandle:
        if not self.seccomp_profile.is_file():
            raise BuildFailed(spec.id, f"missing seccomp profile {self.seccomp_profile}")
        tag = self.image_tag(spec, fingerprint)
        if self.image_exists(tag):
            log.info("docker.image_cached", language=spec.id, image=tag)
        else:
            dockerfile = self._dockerfile(spec)
            if not dockerfile.exists():
                raise BuildFailed(spec.id, f"missing {dockerfile}")
            log.info("docker.image_build", language=spec.id, image=tag)
            try:
                p = self._docker(
                    ["build", "-t", tag, "-f", str(dockerfile), str(self.dockerfiles)],
                    timeout=self.s.build_timeout_s,
                )
            except FileNotFoundError as e:
                raise BuildFailed(spec.id, f"docker CLI not found: {self.docker}") from e
            except subprocess.TimeoutExpired as e:
                raise BuildFailed(spec.id, f"docker build timed out after {self.s.build_timeout_s}s") from e
            if p.returncode != 0:
                raise BuildFailed(spec.id, (p.stderr or p.stdout).strip()[-1000:])

        root = self.scratch_dir / spec.id
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o711)
        except OSError as e:
            raise BuildFailed(spec.id, f"cannot create scratch root {root}: {e}") from e

        env = dict(BASE_ENV)
        env["HOME"] = "/tmp"
        env.update(dict(spec.env))
        return SandboxHandle(
            language=spec.id,
            fingerprint=fingerprint,
            backend=self.name,
            root=root,
            env=tuple(sorted(env.items())),
            image=tag,
            created_at=time.time(),
        )

    # ------------ sessions ------------

    def sandbox_workdir(self, workdir: Path) -> str:
        return WORKSPACE

    def prepare_scratch(self, handle: SandboxHandle, workdir: Path, files: Dict[str, str]) -> None:
        workdir.mkdir(parents=False, exist_ok=False)
        # the container user (uid 1000) writes build output here
        os.chmod(workdir, 0o777)
        for rel, content in files.items():
            p = workdir / rel
            p.write_text(content, encoding="utf-8")
            os.chmod(p, 0o644)

    def run_argv(self, handle: SandboxHandle, spec: ExecSpec) -> List[str]:
        lim = spec.limits
        argv = [
            self.docker, "run", "-i",
            "--name", spec.name,
            "--user", RUN_USER,
            "--memory", f"{lim.memory_bytes}b",
            "--memory-swap", f"{lim.memory_bytes}b",
            "--pids-limit", str(lim.max_processes),
            "--cpus", "1",
            "--ulimit", f"cpu={lim.cpu_seconds}:{lim.cpu_seconds + 1}",
            "--ulimit", f"fsize={lim.max_file_bytes}:{lim.max_file_bytes}",
            "--ulimit", f"nofile={lim.nofile}:{lim.nofile}",
            "--ulimit", "core=0:0",
            "--read-only",
            "--tmpfs", TMPFS,
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges:true",
            "--security-opt", f"seccomp={self.seccomp_profile}",
            "--network", "none" if self.s.network_disabled else "bridge",
            "-v", f"{spec.workdir}:{WORKSPACE}",
            "-w", WORKSPACE,
        ]
        env = dict(handle.env)
        env.update(spec.env)
        for k, v in sorted(env.items()):
            argv += ["-e", f"{k}={v}"]
        argv.append(handle.image or "")
        argv += spec.cmd
        return argv

    def launch(self, handle: SandboxHandle, spec: ExecSpec) -> LaunchPlan:
        # the CLI itself runs with our environment (DOCKER_HOST etc.), unrestricted
        return LaunchPlan(argv=self.run_argv(handle, spec), cwd=spec.workdir, env=dict(os.environ))

    def stats(self, spec: ExecSpec, plan: LaunchPlan) -> Stats:
        try:
            p = self._docker(["inspect", "--format", "{{.State.OOMKilled}}", spec.name])
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return Stats()
        return Stats(oom_killed=p.returncode == 0 and p.stdout.strip() == "true")

    def terminate(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        try:
            self._docker(["kill", spec.name])
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            log.warning("docker.kill_failed", container=spec.name, error=str(e))

    def release(self, spec: ExecSpec, plan: LaunchPlan) -> None:
        try:
            p = self._docker(["rm", "-f", spec.name])
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            log.warning("docker.rm_failed", container=spec.name, error=str(e))
            return
        if p.returncode != 0 and "No such container" not in (p.stderr or ""):
            log.warning("docker.rm_failed", container=spec.name, error=p.stderr.strip())

    def launch_failure(self, exit_code: Optional[int], stdout: bytes, stderr: bytes) -> Optional[str]:
        if exit_code not in CLIENT_EXIT_CODES or stdout:
            return None
        text = stderr.decode("utf-8", errors="replace").strip()
        # 125 is the CLI's own; 126/127 only when the CLI says so
        if exit_code == 125 or any(m in text for m in CLIENT_ERROR_MARKERS):
            return f"docker run exited {exit_code}: {text[-500:] or 'no output'}"
        return None
