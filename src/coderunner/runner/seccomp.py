from __future__ import annotations
import errno
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog

from ..core.errors import ConfigError

log = structlog.get_logger(__name__)

DENY_ACTIONS = ("SCMP_ACT_ERRNO", "SCMP_ACT_KILL", "SCMP_ACT_KILL_PROCESS")


def load_denied(profile: Path) -> List[Tuple[str, int]]:
    """
    Read a docker-format seccomp profile (defaultAction ALLOW) and return the
    (syscall, errno) pairs it refuses. The same file is handed to `docker run`.
    """
    try:
        data = json.loads(Path(profile).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read seccomp profile {profile}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid seccomp profile {profile}: {e}") from e
    if not isinstance(data, dict) or data.get("defaultAction") != "SCMP_ACT_ALLOW":
        raise ConfigError(f"{profile}: only deny-list profiles (defaultAction SCMP_ACT_ALLOW) are supported")

    denied: Dict[str, int] = {}
    for rule in data.get("syscalls") or []:
        if rule.get("action") not in DENY_ACTIONS:
            continue
        code = int(rule.get("errnoRet", errno.EPERM))
        for name in rule.get("names") or []:
            # first rule for a syscall wins
            denied.setdefault(str(name), code)
    return list(denied.items())


def build_filter(profile: Path) -> Any:
    """
    pyseccomp filter for the host backend: allow everything, deny what the
    profile lists. Built once in the service; each child only calls load().
    """
    denied = load_denied(profile)
    import pyseccomp as sc

    filt = sc.SyscallFilter(sc.ALLOW)
    skipped = []
    for name, code in denied:
        try:
            filt.add_rule(sc.ERRNO(code), name)
        except (ValueError, RuntimeError, OSError):
            # not a syscall on this architecture
            skipped.append(name)
    log.info("seccomp.filter_ready", profile=str(profile), denied=len(denied) - len(skipped), skipped=skipped)
    return filt
