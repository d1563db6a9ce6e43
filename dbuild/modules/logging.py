# dbuild/modules/logging.py
# -*- coding: utf-8 -*-
"""
dbuild logging

Features:
 - Console color formatter
 - Rotating file handler (human readable max size)
 - JSONL log handler for machine consumption
 - LoggerAdapter per module injecting 'dbuild_module'
 - BuildLog: the per-package build log that stage scripts append to
 - Thread-safe reconfiguration from dbuild.modules.config
"""

from __future__ import annotations

import os
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, IO, List, Optional

_logger = logging.getLogger("dbuild.logging")


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg


# ----------------------
# JSONL formatter
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "dbuild_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


class _ModuleDefaultFilter(logging.Filter):
    """Records emitted through plain child loggers get a module name too."""

    def filter(self, record):
        if not hasattr(record, "dbuild_module"):
            name = record.name
            record.dbuild_module = name.split(".", 1)[1] if "." in name else name
        return True


# ----------------------
# DBuildLogger (singleton)
# ----------------------
class DBuildLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("dbuild")
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._apply_config({})
        self._inited = True

    def _apply_config(self, cfg: Dict[str, Any], stream: Optional[IO[str]] = None):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            default_filter = _ModuleDefaultFilter()
            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(dbuild_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            # console handler
            ch = logging.StreamHandler(stream or sys.stderr)
            ch.setLevel(level)
            ch.addFilter(default_filter)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
            self._root.addHandler(ch)
            self._handlers.append(ch)

            # rotating file handler
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = _parse_size(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes,
                                                          backupCount=int(cfg.get("backups", 3)), encoding="utf-8")
                fh.setLevel(logging.DEBUG)
                fh.addFilter(default_filter)
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(dbuild_module)s] %(message)s"))
                self._root.addHandler(fh)
                self._handlers.append(fh)

            # jsonl log
            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled") and jsonl_cfg.get("path"):
                path = Path(jsonl_cfg["path"]).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(logging.DEBUG)
                jh.addFilter(default_filter)
                jh.setFormatter(JSONLineFormatter())
                self._root.addHandler(jh)
                self._handlers.append(jh)

            # root captures everything the handlers may want
            self._root.setLevel(min([level] + [h.level for h in self._handlers[1:]]))

    def configure(self, cfg: Dict[str, Any], stream: Optional[IO[str]] = None):
        """Re-apply logging config (the 'logging' section of the merged config)."""
        self._apply_config(cfg or {}, stream=stream)
        _logger.debug("logging: configuration applied")

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'dbuild_module' into records."""
        return logging.LoggerAdapter(logging.getLogger("dbuild"), {"dbuild_module": module_name})


# ----------------------
# Per-package build log
# ----------------------
class BuildLog:
    """
    Append-only log file shared by every stage of one invocation.

    `reset()` truncates it once at the start of a top-level build/install;
    `open()` hands an append-mode binary handle to a child process so its
    output is streamed to disk rather than buffered.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def reset(self) -> "BuildLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "wb"):
            pass
        return self

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path, "ab")

    def write(self, text: str) -> None:
        with self.open() as fh:
            fh.write(text.encode("utf-8"))
            if not text.endswith("\n"):
                fh.write(b"\n")
            fh.flush()
            os.fsync(fh.fileno())

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8", errors="replace")

    def __str__(self) -> str:
        return str(self.path)


# ----------------------
# Helper parse size
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = DBuildLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def configure(cfg: Dict[str, Any], stream: Optional[IO[str]] = None):
    return _GLOBAL_LOGGER.configure(cfg, stream=stream)
