from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigError
from .core.utils import new_runner_id


class Settings(BaseSettings):
    # ---- identity ----
    runner_id: str = ""

    # ---- core paths / backend ----
    backend: str = "host"                      # host | docker
    scratch_dir: Path = Path("/tmp/coderunner/scratch")
    languages_file: Path = Path("conf/languages.yaml")
    dockerfiles_dir: Path = Path("runner/languages")
    image_prefix: str = "coderunner"

    # ---- worker pool ----
    pool_size: int = 4
    queue_capacity: int = 16

    # ---- input / output caps ----
    max_output_bytes: int = 64 * 1024
    max_source_bytes: int = 256 * 1024
    max_stdin_bytes: int = 1024 * 1024

    # ---- restricted identity / isolation ----
    run_uid: Optional[int] = 65534             # nobody; used when the service runs as root
    run_gid: Optional[int] = 65534
    use_cgroup: bool = False
    cgroup_base: Optional[Path] = None
    network_disabled: bool = True
    sandbox_path: str = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

    # ---- seccomp ----
    seccomp_enabled: bool = False              # host backend; docker always applies the profile
    seccomp_profile: Path = Path("conf/seccomp.json")

    # ---- timing ----
    build_timeout_s: int = 600
    kill_grace_s: float = 2.0

    # ---- logging ----
    log_level: str = "INFO"
    log_json: bool = True

    # env prefix RUNNER_*
    model_config = SettingsConfigDict(env_prefix="RUNNER_", extra="ignore")


# keys a YAML `defaults:` block may set, with the type they are coerced to
_YAML_KEYS: Dict[str, Any] = {
    "runner_id": str,
    "backend": str,
    "scratch_dir": Path,
    "languages_file": Path,
    "dockerfiles_dir": Path,
    "image_prefix": str,
    "pool_size": int,
    "queue_capacity": int,
    "max_output_bytes": int,
    "max_source_bytes": int,
    "max_stdin_bytes": int,
    "run_uid": int,
    "run_gid": int,
    "use_cgroup": bool,
    "cgroup_base": Path,
    "network_disabled": bool,
    "sandbox_path": str,
    "build_timeout_s": int,
    "kill_grace_s": float,
    "log_level": str,
    "log_json": bool,
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_settings(conf_path: Optional[Path] = None) -> Settings:
    # 0) base from env RUNNER_*
    s = Settings()

    # 1) conf/runner.yaml (or RUNNER_CONF)
    path = conf_path or Path(os.environ.get("RUNNER_CONF", "conf/runner.yaml"))
    data = _read_yaml(path)
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigError(f"{path}: 'defaults' must be a mapping")

    # 2) YAML fills in only what the environment did not set
    update: Dict[str, Any] = {}
    for key, typ in _YAML_KEYS.items():
        if key not in defaults or f"RUNNER_{key.upper()}" in os.environ:
            continue
        val = defaults[key]
        update[key] = None if val is None else typ(val)

    # seccomp block in defaults
    sec = defaults.get("seccomp") or {}
    if not isinstance(sec, dict):
        raise ConfigError(f"{path}: 'seccomp' must be a mapping")
    if "enabled" in sec and "RUNNER_SECCOMP_ENABLED" not in os.environ:
        update["seccomp_enabled"] = bool(sec["enabled"])
    if "profile" in sec and "RUNNER_SECCOMP_PROFILE" not in os.environ:
        update["seccomp_profile"] = Path(str(sec["profile"]))
    s = s.model_copy(update=update)

    if not s.runner_id:
        s = s.model_copy(update={"runner_id": new_runner_id()})
    if s.backend not in ("host", "docker"):
        raise ConfigError(f"unknown backend {s.backend!r} (expected host or docker)")
    if s.pool_size < 1 or s.queue_capacity < 0:
        raise ConfigError("pool_size must be >= 1 and queue_capacity >= 0")
    return s


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
