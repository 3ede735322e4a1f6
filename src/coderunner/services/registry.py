from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
import yaml

from ..core.errors import ConfigError, InvalidInput, UnknownLanguage
from ..core.models import LanguageSpec, Limits, as_argv

log = structlog.get_logger(__name__)


def _parse_limits(raw: Any, where: str, base: Optional[Limits] = None) -> Limits:
    if raw is None and base is not None:
        return base
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: limits must be a mapping")
    try:
        lim = Limits.from_mapping(raw, base=base)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: {e}") from e
    for name, val in lim.as_dict().items():
        if val <= 0:
            raise ConfigError(f"{where}: {name} must be > 0")
    return lim


def parse_language(lang_id: str, raw: Mapping[str, Any], global_limits: Mapping[str, Any]) -> LanguageSpec:
    """Turn one `languages:` entry into a LanguageSpec.

    Limits are layered: the file-level `limits.default` / `limits.max` /
    `limits.build` blocks, then the language's own blocks on top.
    """
    where = f"language {lang_id!r}"
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: entry must be a mapping")
    try:
        run_cmd = as_argv(raw.get("run"))
        build_cmd = as_argv(raw.get("build"))
        version_cmd = as_argv(raw.get("version_cmd"))
    except ValueError as e:
        raise ConfigError(f"{where}: {e}") from e
    if not run_cmd:
        raise ConfigError(f"{where}: 'run' command is required")

    ext = str(raw.get("extension") or "")
    if not ext.startswith("."):
        raise ConfigError(f"{where}: 'extension' must start with '.'")

    g_default = global_limits.get("default")
    g_max = global_limits.get("max")
    g_build = global_limits.get("build")
    base_default = _parse_limits(g_default, "limits.default") if g_default else None
    base_max = _parse_limits(g_max, "limits.max") if g_max else None
    base_build = _parse_limits(g_build, "limits.build") if g_build else None

    lim = raw.get("limits") or {}
    default_limits = _parse_limits(lim.get("default", {}), f"{where} default limits", base_default)
    max_limits = _parse_limits(lim.get("max", {}), f"{where} max limits", base_max or default_limits)
    build_limits = _parse_limits(lim.get("build", {}), f"{where} build limits", base_build or default_limits)

    for name in Limits.field_names():
        if getattr(default_limits, name) > getattr(max_limits, name):
            raise ConfigError(f"{where}: default {name} exceeds administrative maximum")

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{where}: 'env' must be a mapping")

    return LanguageSpec(
        id=lang_id,
        run_cmd=run_cmd,
        build_cmd=build_cmd,
        extension=ext,
        source_file=str(raw.get("source_file") or ""),
        image=str(raw.get("image") or lang_id),
        version_cmd=version_cmd,
        env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
        version=str(raw.get("version", "1")),
        default_limits=default_limits,
        max_limits=max_limits,
        build_limits=build_limits,
    )


class LanguageRegistry:
    """Language id -> LanguageSpec. Read-only between reloads."""

    def __init__(self, specs: Iterable[LanguageSpec] = ()):
        self._lock = threading.Lock()
        self._specs: Dict[str, LanguageSpec] = self._index(specs)

    @staticmethod
    def _index(specs: Iterable[LanguageSpec]) -> Dict[str, LanguageSpec]:
        out: Dict[str, LanguageSpec] = {}
        for spec in specs:
            if spec.id in out:
                raise ConfigError(f"duplicate language id {spec.id!r}")
            out[spec.id] = spec
        return out

    @staticmethod
    def parse(data: Mapping[str, Any]) -> List[LanguageSpec]:
        langs = data.get("languages")
        if not isinstance(langs, dict) or not langs:
            raise ConfigError("'languages' must be a non-empty mapping")
        global_limits = data.get("limits") or {}
        return [parse_language(str(k), v, global_limits) for k, v in langs.items()]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LanguageRegistry":
        return cls(cls.parse(data))

    @classmethod
    def from_yaml(cls, path: Path) -> "LanguageRegistry":
        return cls.from_mapping(_load_yaml(path))

    def reload(self, path: Path) -> List[str]:
        """Swap in a freshly parsed table; returns ids whose spec changed."""
        fresh = self._index(self.parse(_load_yaml(path)))
        with self._lock:
            old = self._specs
            self._specs = fresh
        changed = sorted(k for k, v in fresh.items() if old.get(k) != v)
        log.info("registry.reloaded", languages=len(fresh), changed=changed)
        return changed

    def resolve(self, identifier: str) -> LanguageSpec:
        spec = self._specs.get(identifier)
        if spec is None:
            raise UnknownLanguage(identifier)
        return spec

    def languages(self) -> List[str]:
        return sorted(self._specs)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def effective_limits(spec: LanguageSpec, overrides: Optional[Mapping[str, Any]]) -> Limits:
    """Defaults + caller overrides, clamped to the language maxima.

    Overrides can tighten or loosen up to the maximum but never disable a
    limit: zero, negative or non-numeric values are rejected.
    """
    if not overrides:
        return spec.default_limits.clamp(spec.max_limits)
    unknown = set(overrides) - set(Limits.field_names())
    if unknown:
        raise InvalidInput(f"unknown limit(s): {', '.join(sorted(unknown))}")
    for name, val in overrides.items():
        if val is None:
            continue
        if isinstance(val, bool) or not isinstance(val, (int, float)) or val <= 0:
            raise InvalidInput(f"limit {name} must be a positive number")
    try:
        lim = Limits.from_mapping(overrides, base=spec.default_limits)
    except (TypeError, ValueError) as e:
        raise InvalidInput(str(e)) from e
    if any(v <= 0 for v in lim.as_dict().values()):
        raise InvalidInput("limits must stay positive")
    return lim.clamp(spec.max_limits)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"languages file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data
