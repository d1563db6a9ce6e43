# dbuild/modules/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build engine for dbuild

API:
  bs = BuildSystem(settings)
  result = bs.build(recipe, force=False)

Pipeline (each step completes or aborts the build):
  fetch+verify sources -> resolve+verify patches -> extract -> locate root
  -> apply patches -> preconfig -> configure -> build -> check

Nothing is extracted or patched until every source and patch has been
verified. A stamp file next to the work tree records the recipe digest of the
last successful build so `install` can reuse it.
"""

from __future__ import annotations

import hashlib
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dbuild.modules.config import Settings
from dbuild.modules.extractor import ArchiveExtractor, Extractor, locate_root
from dbuild.modules.fetcher import FetcherManager
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog, get_logger
from dbuild.modules.patches import PatchManager
from dbuild.modules.recipe import BUILD_STAGES, Recipe, serialize
from dbuild.modules.steps import StepRunner

logger = get_logger("buildsystem")


@dataclass
class BuildResult:
    recipe: Recipe
    work_dir: Path
    log_path: Path
    skipped: bool = False
    sources: List[Path] = field(default_factory=list)
    patches: List[Path] = field(default_factory=list)


def recipe_digest(recipe: Recipe) -> str:
    return hashlib.sha256(serialize(recipe).encode("utf-8")).hexdigest()


class BuildSystem:
    def __init__(self, settings: Settings, fetcher: Optional[FetcherManager] = None,
                 extractor: Optional[Extractor] = None, patcher: Optional[PatchManager] = None,
                 runner: Optional[StepRunner] = None, hooks: Optional[HookManager] = None):
        self.settings = settings
        self.hooks = hooks or HookManager()
        self.fetcher = fetcher or FetcherManager(settings, hooks=self.hooks)
        self.extractor = extractor or ArchiveExtractor()
        self.patcher = patcher or PatchManager(settings, fetcher=self.fetcher, hooks=self.hooks)
        self.runner = runner or StepRunner(settings, hooks=self.hooks)

    # --- paths ---
    def work_dir(self, recipe: Recipe) -> Path:
        return self.settings.build_dir / recipe.pkgname

    def log_path(self, recipe: Recipe) -> Path:
        return self.settings.log_dir / f"{recipe.pkgname}.build.log"

    def _stamp(self, recipe: Recipe) -> Path:
        return self.settings.build_dir / f"{recipe.pkgname}.built"

    def is_built(self, recipe: Recipe) -> bool:
        stamp = self._stamp(recipe)
        if not stamp.exists() or not self.work_dir(recipe).is_dir():
            return False
        return stamp.read_text(encoding="utf-8").strip() == recipe_digest(recipe)

    # --- pipeline ---
    def prepare(self, recipe: Recipe, log: BuildLog) -> BuildResult:
        """Fetch, verify, extract and patch; returns the result with the work tree ready."""
        sources = self.fetcher.fetch_and_verify(recipe.sources, self.settings.sources_dir,
                                                base_dir=recipe.base_dir, kind="source")
        patch_files = self.patcher.resolve_all(recipe.patches, recipe.base_dir)

        work_dir = self.work_dir(recipe)
        src_dir = self.settings.build_dir / f"{recipe.pkgname}.src"
        self._stamp(recipe).unlink(missing_ok=True)
        for d in (work_dir, src_dir):
            if d.exists():
                shutil.rmtree(d)
        src_dir.mkdir(parents=True)

        self.hooks.run("extract", {"package": recipe.pkgname, "files": [str(s) for s in sources]})
        log.write(f"==> dbuild: extracting {len(sources)} archive(s) into {src_dir}")
        self.extractor.extract(sources, src_dir)
        root = locate_root(src_dir, recipe.srcdir)
        root.rename(work_dir)
        if src_dir.exists():
            shutil.rmtree(src_dir)
        logger.info("source tree ready: %s", work_dir)

        if patch_files:
            self.patcher.apply(patch_files, work_dir, log)
        return BuildResult(recipe=recipe, work_dir=work_dir, log_path=log.path,
                           sources=sources, patches=patch_files)

    def build(self, recipe: Recipe, force: bool = False, log: Optional[BuildLog] = None) -> BuildResult:
        """
        Run the build pipeline through `check`. With `force=False` an existing
        build of the same recipe is reused.
        """
        log = log or BuildLog(self.log_path(recipe)).reset()
        if not force and self.is_built(recipe):
            logger.info("build of %s is up to date", recipe.pkgname)
            return BuildResult(recipe=recipe, work_dir=self.work_dir(recipe), log_path=log.path, skipped=True)

        logger.info("building %s", recipe.pkgname)
        result = self.prepare(recipe, log)
        for stage in BUILD_STAGES:
            self.runner.run_stage(stage, recipe, result.work_dir, log)
        self._stamp(recipe).write_text(recipe_digest(recipe) + "\n", encoding="utf-8")
        logger.info("build finished: %s (log: %s)", recipe.pkgname, log.path)
        return result
