# dbuild/modules/pkgtool.py
"""
pkgtool.py - install / package manager for dbuild

install(recipe, options):
  1. build (reused when the last build of this recipe is still valid)
  2. fresh staging tree under the build dir
  3. preinstall, then install with DESTDIR=<staging>
  4. optional strip of ELF executables and shared objects
  5. manifest of the staging tree, deepest first
  6. package archive (unless no_package)
  7. manifest, metadata and recipe snapshot into the db
  8. pack_only stops here
  9. copy staging into the live root, then postinstall with cwd=root

Steps 1-7 only write inside the workspace.
"""

from __future__ import annotations

import os
import glob
import shutil
import tempfile
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dbuild.modules.buildsystem import BuildSystem
from dbuild.modules.config import Settings
from dbuild.modules.db import InstalledPackageRecord, PackageDB
from dbuild.modules.errors import InstallError
from dbuild.modules.fakeroot import Archiver, FakerootArchiver, archive_suffix
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog, get_logger
from dbuild.modules.recipe import Recipe, serialize

logger = get_logger("pkgtool")


@dataclass
class InstallOptions:
    pack_only: bool = False
    no_package: bool = False
    strip: bool = False
    force: bool = False


# -----------------------------
# Manifest helpers
# -----------------------------
def _depth_key(rel: str):
    return (-rel.count("/"), rel)


def compute_manifest(staging_dir: Path) -> List[str]:
    """Every path under staging_dir, relative and POSIX, deepest first."""
    staging_dir = Path(staging_dir)
    paths: List[str] = []
    for dirpath, dirnames, filenames in os.walk(staging_dir):
        rel_dir = os.path.relpath(dirpath, staging_dir)
        for name in dirnames + filenames:
            rel = name if rel_dir == "." else os.path.join(rel_dir, name)
            paths.append(rel.replace(os.sep, "/"))
    return sorted(paths, key=_depth_key)


def materialize(staging_dir: Path, root: Path) -> int:
    """Copy the staging tree onto root keeping modes; returns entries written."""
    staging_dir = Path(staging_dir)
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    count = 0
    for dirpath, dirnames, filenames in os.walk(staging_dir):
        rel_dir = os.path.relpath(dirpath, staging_dir)
        target_dir = root if rel_dir == "." else root / rel_dir
        for name in sorted(dirnames):
            src = Path(dirpath) / name
            dst = target_dir / name
            if src.is_symlink():
                _replace_symlink(src, dst)
            elif not dst.is_dir():
                dst.mkdir()
                shutil.copymode(src, dst)
            count += 1
        for name in sorted(filenames):
            src = Path(dirpath) / name
            dst = target_dir / name
            if src.is_symlink():
                _replace_symlink(src, dst)
            else:
                if dst.is_symlink() or dst.exists():
                    dst.unlink()
                shutil.copy2(src, dst)
            count += 1
    return count


def _replace_symlink(src: Path, dst: Path) -> None:
    if dst.is_symlink() or dst.is_file():
        dst.unlink()
    elif dst.is_dir():
        raise InstallError(f"cannot replace directory {dst} with a symlink")
    os.symlink(os.readlink(src), dst)


# -----------------------------
# Stripper capability
# -----------------------------
class Stripper:
    def strip_tree(self, staging_dir: Path) -> int:
        raise NotImplementedError


class BinutilsStripper(Stripper):
    """Detects binaries with `file -bi` and runs `strip --strip-unneeded` on them."""

    STRIPPABLE = ("application/x-executable", "application/x-sharedlib",
                  "application/x-pie-executable", "application/x-object")

    def __init__(self, strip_tool: str = "strip", file_tool: str = "file"):
        self.strip_tool = strip_tool
        self.file_tool = file_tool

    def _mime(self, path: Path) -> str:
        proc = subprocess.run([self.file_tool, "-bi", str(path)], stdout=subprocess.PIPE,
                              stderr=subprocess.DEVNULL, text=True)
        return proc.stdout.strip()

    def strip_tree(self, staging_dir: Path) -> int:
        if not shutil.which(self.strip_tool) or not shutil.which(self.file_tool):
            logger.warning("strip requested but %s/%s not available; skipping", self.strip_tool, self.file_tool)
            return 0
        stripped = 0
        for dirpath, _, filenames in os.walk(staging_dir):
            for name in filenames:
                path = Path(dirpath) / name
                if path.is_symlink():
                    continue
                if not self._mime(path).startswith(self.STRIPPABLE):
                    continue
                rc = subprocess.run([self.strip_tool, "--strip-unneeded", str(path)],
                                    stdout=subprocess.DEVNULL, stderr=subprocess.PIPE).returncode
                if rc != 0:
                    logger.warning("strip failed for %s (exit %d)", path, rc)
                    continue
                stripped += 1
        logger.info("stripped %d file(s)", stripped)
        return stripped


# -----------------------------
# InstallManager
# -----------------------------
class InstallManager:
    def __init__(self, settings: Settings, buildsystem: Optional[BuildSystem] = None,
                 archiver: Optional[Archiver] = None, stripper: Optional[Stripper] = None,
                 db: Optional[PackageDB] = None, hooks: Optional[HookManager] = None):
        self.settings = settings
        self.hooks = hooks or HookManager()
        self.buildsystem = buildsystem or BuildSystem(settings, hooks=self.hooks)
        self.archiver = archiver or FakerootArchiver(settings.compression)
        self.stripper = stripper or BinutilsStripper(settings.strip_tool, settings.file_tool)
        self.db = db or PackageDB(settings.db_dir)

    def package_path(self, recipe: Recipe) -> Path:
        compression = getattr(self.archiver, "compression", self.settings.compression)
        return self.settings.pkg_dir / f"{recipe.name}-{recipe.version}-{recipe.release}{archive_suffix(compression)}"

    def _new_staging(self, recipe: Recipe) -> Path:
        prefix = f"{recipe.pkgname}-destdir-"
        for old in glob.glob(str(self.settings.build_dir / f"{glob.escape(prefix)}*")):
            shutil.rmtree(old, ignore_errors=True)
        self.settings.build_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=str(self.settings.build_dir)))

    def install(self, recipe: Recipe, options: Optional[InstallOptions] = None) -> InstalledPackageRecord:
        with self.db.lock(recipe.name):
            return self._install(recipe, options or InstallOptions())

    def _install(self, recipe: Recipe, options: InstallOptions) -> InstalledPackageRecord:
        log = BuildLog(self.buildsystem.log_path(recipe)).reset()
        build = self.buildsystem.build(recipe, force=options.force, log=log)
        runner = self.buildsystem.runner
        try:
            staging = self._new_staging(recipe)
            logger.info("staging %s in %s", recipe.pkgname, staging)
            runner.run_stage("preinstall", recipe, build.work_dir, log)
            runner.run_stage("install", recipe, build.work_dir, log, destdir=staging)

            if options.strip:
                self.hooks.run("strip", {"package": recipe.pkgname, "staging": str(staging)})
                self.stripper.strip_tree(staging)

            manifest = compute_manifest(staging)
            if not manifest:
                logger.warning("install stage of %s produced an empty staging tree", recipe.pkgname)

            pkgfile: Optional[Path] = None
            if not options.no_package:
                pkgfile = self.package_path(recipe)
                self.hooks.run("package", {"package": recipe.pkgname, "file": str(pkgfile)})
                self.archiver.pack(staging, pkgfile)

            record = InstalledPackageRecord(name=recipe.name, version=recipe.version,
                                            release=recipe.release, package_file=pkgfile)
            if recipe.path is not None and Path(recipe.path).is_file():
                record = self.db.save(record, manifest, Path(recipe.path))
            else:
                record.recipe_snapshot = self.db.save_recipe_text(recipe.name, serialize(recipe))
                record = self.db.save(record, manifest, None)

            if options.pack_only:
                logger.info("pack-only: %s not copied to %s", recipe.pkgname, self.settings.root)
                return record

            self.hooks.run("materialize", {"package": recipe.pkgname, "root": str(self.settings.root)})
            written = materialize(staging, self.settings.root)
            logger.info("installed %d entries of %s into %s", written, recipe.pkgname, self.settings.root)
            runner.run_stage("postinstall", recipe, self.settings.root, log)
        except OSError as e:
            raise InstallError(f"install of {recipe.pkgname} failed: {e}") from e
        return record
