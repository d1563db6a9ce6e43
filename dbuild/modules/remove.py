# dbuild/modules/remove.py
"""
remove.py - manifest-driven package removal for dbuild

remove(name):
  - the manifest must exist (ManifestMissingError otherwise)
  - entries are deleted in manifest order, which is deepest first, so a
    directory is only attempted after everything below it
  - files and symlinks are unlinked; directories are removed only when empty,
    a non-empty directory is kept (another package may own its contents)
  - postremove from the recipe snapshot runs with cwd=root; its failure is
    logged and does not stop the metadata cleanup
  - manifest, metadata and recipe snapshot are deleted last
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from dbuild.modules.config import Settings
from dbuild.modules.db import PackageDB
from dbuild.modules.errors import ParseError, StageError
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog, get_logger
from dbuild.modules.recipe import load_recipe
from dbuild.modules.steps import StepRunner

logger = get_logger("remove")


class RemoveManager:
    def __init__(self, settings: Settings, db: Optional[PackageDB] = None,
                 runner: Optional[StepRunner] = None, hooks: Optional[HookManager] = None):
        self.settings = settings
        self.hooks = hooks or HookManager()
        self.db = db or PackageDB(settings.db_dir)
        self.runner = runner or StepRunner(settings, hooks=self.hooks)

    def log_path(self, name: str) -> Path:
        return self.settings.log_dir / f"{name}-remove.log"

    def remove(self, name: str) -> Dict[str, Any]:
        with self.db.lock(name):
            return self._remove(name)

    def _remove(self, name: str) -> Dict[str, Any]:
        manifest = self.db.read_manifest(name)
        record = self.db.get_record(name)
        root = Path(self.settings.root)
        self.hooks.run("remove", {"package": name, "entries": len(manifest)})
        removed: List[str] = []
        kept: List[str] = []
        missing: List[str] = []

        for rel in manifest:
            path = root / rel
            if path.is_symlink() or path.is_file():
                path.unlink()
                removed.append(rel)
            elif path.is_dir():
                try:
                    path.rmdir()
                    removed.append(rel)
                except OSError as e:
                    logger.warning("keeping directory %s: %s", path, e.strerror or e)
                    kept.append(rel)
            elif path.exists():
                path.unlink()
                removed.append(rel)
            else:
                missing.append(rel)
        if missing:
            logger.debug("%d manifest entries of %s were already gone", len(missing), name)

        postremove_ok = self._run_postremove(name, record.recipe_snapshot if record else None, root)

        self.db.delete(name)
        logger.info("removed %s: %d entries deleted, %d directories kept", name, len(removed), len(kept))
        return {
            "name": name,
            "version": record.version if record else None,
            "removed": removed,
            "kept": kept,
            "missing": missing,
            "postremove_ok": postremove_ok,
        }

    def _run_postremove(self, name: str, snapshot: Optional[Path], root: Path) -> bool:
        snapshot = snapshot or self.db.recipe_path(name)
        if not Path(snapshot).is_file():
            logger.debug("no recipe snapshot for %s, skipping postremove", name)
            return True
        try:
            recipe = load_recipe(snapshot)
        except (ParseError, OSError) as e:
            logger.warning("cannot read recipe snapshot for %s: %s", name, e)
            return False
        if recipe.step("postremove") is None:
            return True
        log = BuildLog(self.log_path(name)).reset()
        try:
            self.runner.run_stage("postremove", recipe, root, log)
        except StageError as e:
            logger.warning("postremove of %s failed, continuing: %s", name, e)
            return False
        return True

