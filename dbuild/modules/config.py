# dbuild/modules/config.py
# -*- coding: utf-8 -*-
"""
dbuild central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and coerce types
- Environment overrides (DBUILD_ROOT, DBUILD_NO_CHECK, DBUILD_*_DIR ...) are read here and only here
- Validate structure and types, warn or raise (fatal optional)
- Config dataclass for dotted access, Settings dataclass as the explicit struct
  handed to every component constructor
"""

from __future__ import annotations

import os
import json
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger("dbuild.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "paths": {
        "base": ".",
        "root": "/",
        "sources": "src",
        "patches": "patches",
        "build": "build",
        "logs": "logs",
        "db": "db",
        "repo": "repo",
        "pkg": "pkg",
    },
    "build": {
        "no_check": False,
        "shell": "sh",
        "make": "make",
    },
    "fetch": {
        "retries": 3,
        "timeout": 60,
        "parallel": 4,
    },
    "package": {
        "compression": "xz",
        "strip_tool": "strip",
        "file_tool": "file",
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 3,
        "jsonl": {"enabled": False, "path": None},
    },
    "ui": {
        "color": "auto",
        "spinner": True,
    },
}

# per-directory environment overrides, relative to paths.base unless absolute
_ENV_DIRS = {
    "DBUILD_CACHE_SOURCES": "sources",
    "DBUILD_CACHE_PATCHES": "patches",
    "DBUILD_BUILD_DIR": "build",
    "DBUILD_LOG_DIR": "logs",
    "DBUILD_DB_DIR": "db",
    "DBUILD_REPO_DIR": "repo",
    "DBUILD_PKG_DIR": "pkg",
}

_WORKSPACE_DIRS = ("sources", "patches", "build", "logs", "db", "repo", "pkg")

_COMPRESSIONS = ("xz", "gz", "zst")


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur


@dataclass
class Settings:
    """Explicit, typed view of the configuration.

    Every component receives one of these in its constructor; nothing below
    the CLI reads the process environment.
    """
    sources_dir: Path
    patches_dir: Path
    build_dir: Path
    log_dir: Path
    db_dir: Path
    repo_dir: Path
    pkg_dir: Path
    root: Path = Path("/")
    no_check: bool = False
    shell: str = "sh"
    make: str = "make"
    retries: int = 3
    timeout: int = 60
    parallel: int = 4
    compression: str = "xz"
    strip_tool: str = "strip"
    file_tool: str = "file"

    @classmethod
    def from_config(cls, cfg: Config) -> "Settings":
        p = cfg.get("paths", {})
        base = Path(p.get("base") or ".")

        def _dir(key: str) -> Path:
            val = Path(p.get(key) or DEFAULTS["paths"][key])
            return val if val.is_absolute() else base / val

        return cls(
            sources_dir=_dir("sources"),
            patches_dir=_dir("patches"),
            build_dir=_dir("build"),
            log_dir=_dir("logs"),
            db_dir=_dir("db"),
            repo_dir=_dir("repo"),
            pkg_dir=_dir("pkg"),
            root=Path(p.get("root") or "/"),
            no_check=bool(cfg.get("build.no_check", False)),
            shell=str(cfg.get("build.shell", "sh")),
            make=str(cfg.get("build.make", "make")),
            retries=int(cfg.get("fetch.retries", 3)),
            timeout=int(cfg.get("fetch.timeout", 60)),
            parallel=int(cfg.get("fetch.parallel", 4)),
            compression=str(cfg.get("package.compression", "xz")),
            strip_tool=str(cfg.get("package.strip_tool", "strip")),
            file_tool=str(cfg.get("package.file_tool", "file")),
        )

    @classmethod
    def for_workspace(cls, base: Path, root: Optional[Path] = None, **overrides: Any) -> "Settings":
        """Settings with every workspace directory under `base` (default layout)."""
        base = Path(base)
        kw: Dict[str, Any] = {
            "sources_dir": base / "src",
            "patches_dir": base / "patches",
            "build_dir": base / "build",
            "log_dir": base / "logs",
            "db_dir": base / "db",
            "repo_dir": base / "repo",
            "pkg_dir": base / "pkg",
            "root": Path(root) if root else Path("/"),
        }
        kw.update(overrides)
        return cls(**kw)

    def ensure_dirs(self) -> None:
        for d in (self.sources_dir, self.patches_dir, self.build_dir, self.log_dir,
                  self.db_dir, self.repo_dir, self.pkg_dir):
            d.mkdir(parents=True, exist_ok=True)


# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str], base: Optional[str] = None) -> Optional[str]:
    if val is None:
        return None
    s = os.path.expanduser(os.path.expandvars(str(val)))
    if base and not os.path.isabs(s):
        s = os.path.join(base, s)
    return os.path.abspath(s)


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _truthy(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ("1", "yes", "true", "on")


def _find_candidates(explicit: Optional[str], env: Mapping[str, str]) -> List[Path]:
    candidates: List[Path] = []
    if explicit:
        candidates.append(Path(explicit))
    if env.get("DBUILD_CONFIG"):
        candidates.append(Path(env["DBUILD_CONFIG"]))
    candidates.extend([
        Path.cwd() / "dbuild.yaml",
        Path.cwd() / "dbuild.yml",
        Path.cwd() / "dbuild.json",
        Path.home() / ".config" / "dbuild" / "config.yaml",
        Path("/etc") / "dbuild" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    txt = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
        except yaml.YAMLError as e:
            raise ValueError(f"config: cannot parse {path}: {e}") from e
    else:
        try:
            data = json.loads(txt)
        except json.JSONDecodeError as e:
            raise ValueError(f"config: cannot parse {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config: top-level of {path} must be a mapping")
    return data


def _apply_env(cfg: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    out = deepcopy(cfg)
    paths = out.setdefault("paths", {})
    if env.get("DBUILD_ROOT"):
        paths["base"] = env["DBUILD_ROOT"]
    for var, key in _ENV_DIRS.items():
        if env.get(var):
            paths[key] = env[var]
    if env.get("DBUILD_NO_CHECK"):
        out.setdefault("build", {})["no_check"] = _truthy(env["DBUILD_NO_CHECK"])
    if env.get("DBUILD_COLOR"):
        out.setdefault("ui", {})["color"] = env["DBUILD_COLOR"]
    if env.get("DBUILD_SPINNER"):
        out.setdefault("ui", {})["spinner"] = env["DBUILD_SPINNER"] not in ("none", "no", "0")
    return out


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    paths = out.get("paths", {})
    base = _expand_path(paths.get("base") or ".")
    paths["base"] = base
    for key in _WORKSPACE_DIRS:
        if paths.get(key):
            paths[key] = _expand_path(paths[key], base)
    if paths.get("root"):
        paths["root"] = _expand_path(paths["root"])

    log_cfg = out.get("logging", {})
    if log_cfg.get("file"):
        log_cfg["file"] = _expand_path(log_cfg["file"], base)

    fetch = out.get("fetch", {})
    for key in ("retries", "timeout", "parallel"):
        try:
            fetch[key] = int(fetch.get(key, DEFAULTS["fetch"][key]))
        except (TypeError, ValueError):
            logger.warning("config: fetch.%s is not an integer, using default", key)
            fetch[key] = DEFAULTS["fetch"][key]
    out.get("build", {})["no_check"] = _truthy(out.get("build", {}).get("no_check", False))
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    fetch = cfg.get("fetch", {})
    if fetch.get("retries", 1) < 1:
        issues.append("fetch.retries must be integer >= 1")
    if fetch.get("parallel", 1) < 1:
        issues.append("fetch.parallel must be integer >= 1")
    comp = cfg.get("package", {}).get("compression")
    if comp not in _COMPRESSIONS:
        issues.append(f"package.compression must be one of {', '.join(_COMPRESSIONS)}")
    color = cfg.get("ui", {}).get("color")
    if color not in ("auto", "always", "never"):
        issues.append("ui.color must be auto, always or never")
    return (len(issues) == 0, issues)


# ----------------------------
# Loading
# ----------------------------
def load(explicit_path: Optional[str] = None, fatal: bool = False,
         env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and merge config. If fatal=True then validation issues raise ValueError.
    `env` defaults to os.environ; tests pass an explicit mapping.
    """
    env = os.environ if env is None else env
    cfg_path: Optional[Path] = None
    raw: Dict[str, Any] = {}
    for cand in _find_candidates(explicit_path, env):
        if cand.exists():
            cfg_path = cand
            break
    if explicit_path and cfg_path != Path(explicit_path):
        raise ValueError(f"config: file not found: {explicit_path}")
    if cfg_path:
        raw = _load_file(cfg_path)
    merged = _deep_merge(DEFAULTS, raw)
    merged = _apply_env(merged, env)
    normalized = _normalize_and_coerce(merged)
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            logger.error(msg)
            raise ValueError(msg)
        logger.warning(msg)
    cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
    logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
    return cfg_obj
