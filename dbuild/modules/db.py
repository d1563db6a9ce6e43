# dbuild/modules/db.py
"""
File-backed installed-package database.

Layout, per installed package <name>, inside the db directory:
  <name>.manifest   one relative path per line, deepest first
  <name>.meta       key=value lines: name, version, release, pkgfile, recipe
  <name>.recipe     snapshot of the recipe used for the install
  locks/<name>.lock advisory lock held during install/remove/upgrade
"""

from __future__ import annotations

import os
import fcntl
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from dbuild.modules.errors import LockError, ManifestMissingError
from dbuild.modules.logging import get_logger

logger = get_logger("db")

_META_KEYS = ("name", "version", "release", "pkgfile", "recipe")


@dataclass
class InstalledPackageRecord:
    name: str
    version: str
    release: str = "1"
    package_file: Optional[Path] = None
    recipe_snapshot: Optional[Path] = None

    def to_meta(self) -> str:
        vals = {
            "name": self.name,
            "version": self.version,
            "release": self.release,
            "pkgfile": str(self.package_file) if self.package_file else "",
            "recipe": str(self.recipe_snapshot) if self.recipe_snapshot else "",
        }
        return "".join(f"{k}={vals[k]}\n" for k in _META_KEYS)

    @classmethod
    def from_meta(cls, text: str) -> "InstalledPackageRecord":
        vals: Dict[str, str] = {}
        for line in text.splitlines():
            if "=" in line:
                k, v = line.split("=", 1)
                vals[k.strip()] = v.strip()
        return cls(
            name=vals.get("name", ""),
            version=vals.get("version", "0"),
            release=vals.get("release") or "1",
            package_file=Path(vals["pkgfile"]) if vals.get("pkgfile") else None,
            recipe_snapshot=Path(vals["recipe"]) if vals.get("recipe") else None,
        )


def _atomic_write_text(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


# -------------------------
# per-package lock
# -------------------------
class PackageLock:
    """
    Exclusive advisory lock for one package name. Re-entrant within a thread
    so that upgrade can hold it across the install it triggers.
    """
    _local = threading.local()

    def __init__(self, lock_dir: Path, name: str):
        self.path = Path(lock_dir) / f"{name}.lock"
        self.name = name
        self._fh = None

    def _held(self) -> Dict[str, int]:
        if not hasattr(self._local, "held"):
            self._local.held = {}
        return self._local.held

    def __enter__(self) -> "PackageLock":
        held = self._held()
        key = str(self.path)
        if held.get(key):
            held[key] += 1
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            fh.close()
            raise LockError(f"another dbuild operation holds the lock for {self.name} ({self.path})") from e
        self._fh = fh
        held[key] = 1
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        held = self._held()
        key = str(self.path)
        held[key] -= 1
        if held[key] == 0:
            del held[key]
            if self._fh is not None:
                fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
                self._fh.close()
                self._fh = None
        return False


# -------------------------
# PackageDB
# -------------------------
class PackageDB:
    def __init__(self, db_dir: Path):
        self.db_dir = Path(db_dir)

    def manifest_path(self, name: str) -> Path:
        return self.db_dir / f"{name}.manifest"

    def meta_path(self, name: str) -> Path:
        return self.db_dir / f"{name}.meta"

    def recipe_path(self, name: str) -> Path:
        return self.db_dir / f"{name}.recipe"

    def lock(self, name: str) -> PackageLock:
        return PackageLock(self.db_dir / "locks", name)

    def is_installed(self, name: str) -> bool:
        return self.meta_path(name).exists()

    def get_record(self, name: str) -> Optional[InstalledPackageRecord]:
        meta = self.meta_path(name)
        if not meta.exists():
            return None
        return InstalledPackageRecord.from_meta(meta.read_text(encoding="utf-8"))

    def read_manifest(self, name: str) -> List[str]:
        path = self.manifest_path(name)
        if not path.exists():
            raise ManifestMissingError(f"manifest not found: {path}")
        return [l for l in path.read_text(encoding="utf-8").splitlines() if l.strip()]

    def save(self, record: InstalledPackageRecord, manifest: Sequence[str], recipe_file: Optional[Path]) -> InstalledPackageRecord:
        """Persist manifest, recipe snapshot and metadata (metadata last)."""
        self.db_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write_text(self.manifest_path(record.name), "".join(f"{p}\n" for p in manifest))
        snapshot = self.recipe_path(record.name)
        if recipe_file is not None:
            if Path(recipe_file).resolve() != snapshot.resolve():
                tmp = snapshot.with_name(f".{snapshot.name}.tmp")
                shutil.copyfile(recipe_file, tmp)
                os.replace(tmp, snapshot)
            record.recipe_snapshot = snapshot
        _atomic_write_text(self.meta_path(record.name), record.to_meta())
        logger.debug("saved db entry for %s (%d manifest entries)", record.name, len(manifest))
        return record

    def save_recipe_text(self, name: str, text: str) -> Path:
        self.db_dir.mkdir(parents=True, exist_ok=True)
        path = self.recipe_path(name)
        _atomic_write_text(path, text)
        return path

    def delete(self, name: str) -> None:
        for p in (self.manifest_path(name), self.meta_path(name), self.recipe_path(name)):
            p.unlink(missing_ok=True)

    def list_installed(self) -> List[InstalledPackageRecord]:
        return [r for r in self._iter_records()]

    def _iter_records(self) -> Iterator[InstalledPackageRecord]:
        if not self.db_dir.is_dir():
            return
        for meta in sorted(self.db_dir.glob("*.meta")):
            yield InstalledPackageRecord.from_meta(meta.read_text(encoding="utf-8"))
