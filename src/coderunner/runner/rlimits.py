from __future__ import annotations
import os
import resource
from pathlib import Path
from typing import Any, Callable, Optional

from ..core.models import Limits

# stack for deep recursion in submitted code
STACK_BYTES = 64 * 1024 * 1024


def count_user_tasks(uid: int, proc: Path = Path("/proc")) -> int:
    """Live tasks (threads included) whose real uid is `uid`; RLIMIT_NPROC counts those."""
    n = 0
    try:
        entries = list(proc.iterdir())
    except OSError:
        return 0
    for entry in entries:
        if not entry.name.isdigit():
            continue
        try:
            fields = dict(
                line.split(":", 1) for line in (entry / "status").read_text().splitlines() if ":" in line
            )
            if int(fields["Uid"].split()[0]) == uid:
                n += int(fields.get("Threads", "1").strip())
        except (OSError, ValueError, IndexError, KeyError):
            continue
    return n


def nproc_ceiling(max_processes: int, uid: Optional[int] = None) -> int:
    """RLIMIT_NPROC is per real uid, and the uid is shared with the service or
    with other sessions, so the cap is stacked on top of what already runs."""
    return count_user_tasks(os.getuid() if uid is None else uid) + max_processes


def apply_rlimits(limits: Limits, nproc: Optional[int] = None, address_space: bool = True) -> None:
    """
    Process-level caps: CPU time, address space, file size, fds, process count.
    Runs in the child between fork and exec, so it must not log or allocate much.
    A limit the kernel refuses (e.g. raising above the hard limit) is left as is.
    """
    cpu = int(limits.cpu_seconds)
    _set(resource.RLIMIT_CPU, cpu, cpu + 1)      # SIGXCPU at soft, SIGKILL at hard
    if address_space:
        _set(resource.RLIMIT_AS, limits.memory_bytes, limits.memory_bytes)
    _set(resource.RLIMIT_FSIZE, limits.max_file_bytes, limits.max_file_bytes)
    _set(resource.RLIMIT_NOFILE, limits.nofile, limits.nofile)
    _set(resource.RLIMIT_CORE, 0, 0)
    _set(resource.RLIMIT_STACK, STACK_BYTES, STACK_BYTES)
    if nproc is not None:
        _set(resource.RLIMIT_NPROC, nproc, nproc)


def _set(which: int, soft: int, hard: int) -> None:
    try:
        cur_soft, cur_hard = resource.getrlimit(which)
        if cur_hard != resource.RLIM_INFINITY:
            hard = min(hard, cur_hard)
            soft = min(soft, hard)
        resource.setrlimit(which, (soft, hard))
    except (ValueError, OSError):
        pass


def make_preexec(
    limits: Limits,
    *,
    nproc: Optional[int] = None,
    address_space: bool = True,
    uid: Optional[int] = None,
    gid: Optional[int] = None,
    syscall_filter: Optional[Any] = None,
) -> Callable[[], None]:
    """Child-side setup: rlimits, drop to the restricted identity, then seccomp."""

    def _fn() -> None:
        apply_rlimits(limits, nproc=nproc, address_space=address_space)
        if gid is not None:
            os.setgroups([])
            os.setgid(gid)
        if uid is not None:
            os.setuid(uid)
        if syscall_filter is not None:
            syscall_filter.load()

    return _fn
