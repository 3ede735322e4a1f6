# src/coderunner/executor/cgroups.py
from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional
import os, signal, time

import structlog

from ..core.models import Limits

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")
CPU_PERIOD_US = 100000


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise RuntimeError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def available(root: Path = CGROOT) -> bool:
    """cgroup v2 unified hierarchy mounted and writable by us."""
    return (root / "cgroup.controllers").exists() and os.access(root, os.W_OK)


def _self_cgroup_base(root: Path = CGROOT) -> Path:
    # unified v2: '0::/<relative>'
    rel = ""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (root / rel.lstrip("/")).resolve()


def get_base(configured: Optional[Path] = None, root: Path = CGROOT) -> Path:
    if configured:
        if not str(configured).startswith(str(root)):
            raise ValueError(f"cgroup base must live under {root}, got {configured}")
        return configured
    # sibling of our own cgroup: a process-holding node cannot have child controllers
    return _self_cgroup_base(root).parent / "coderunner"


def _enable_controllers(node: Path):
    """Enable memory/pids/cpu for children of `node` (node must hold no pids)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    procs = node / "cgroup.procs"
    if procs.exists() and procs.read_text().strip():
        raise PermissionError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(base: Path, name: str) -> Path:
    base.mkdir(parents=True, exist_ok=True)
    _enable_controllers(base)
    leaf = base / name
    leaf.mkdir(parents=True, exist_ok=True)
    return leaf


def set_limits(leaf: Path, limits: Limits):
    """memory.max (no swap, whole-group OOM kill), pids.max, cpu.max = one CPU."""
    _write_then_check(leaf / "memory.max", limits.memory_bytes)
    try:
        _write_then_check(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # swap accounting disabled on this host
        pass
    if (leaf / "memory.oom.group").exists():
        _write_then_check(leaf / "memory.oom.group", 1)
    _write_then_check(leaf / "pids.max", limits.max_processes)
    (leaf / "cpu.max").write_text(f"{CPU_PERIOD_US} {CPU_PERIOD_US}")


def attach_self(leaf: Path):
    """Move the calling process into `leaf`; used from the child before exec."""
    with open(leaf / "cgroup.procs", "w") as f:
        f.write("0")


def read_metrics(leaf: Path) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for name in ("memory.peak", "memory.current", "memory.events", "cpu.stat", "pids.current"):
        p = leaf / name
        if p.exists():
            out[name] = p.read_text().strip()
    return out


def _events(text: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].isdigit():
            out[parts[0]] = int(parts[1])
    return out


def oom_killed(metrics: Dict[str, str]) -> bool:
    ev = _events(metrics.get("memory.events", ""))
    return ev.get("oom_kill", 0) > 0 or ev.get("oom_group_kill", 0) > 0


def peak_memory(metrics: Dict[str, str]) -> Optional[int]:
    val = metrics.get("memory.peak") or metrics.get("memory.current")
    return int(val) if val and val.isdigit() else None


def cpu_seconds(metrics: Dict[str, str]) -> Optional[float]:
    usage = _events(metrics.get("cpu.stat", "")).get("usage_usec")
    return usage / 1e6 if usage is not None else None


def kill_all(leaf: Path):
    """SIGKILL everything in the leaf, including processes that left our process group."""
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        kill_file.write_text("1")
        return
    procs = leaf / "cgroup.procs"
    if not procs.exists():
        return
    for line in procs.read_text().split():
        try:
            os.kill(int(line), signal.SIGKILL)
        except (ProcessLookupError, ValueError):
            continue


def teardown(leaf: Path):
    # leaf must be empty; the kernel reaps killed members asynchronously
    for _ in range(20):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            time.sleep(0.05)
    log.warning("cgroup.teardown_failed", leaf=str(leaf))
