# dbuild/modules/upgrade.py
"""
upgrade.py - version-gated reinstall for dbuild

upgrade(name_or_path):
  - an existing file path is loaded as a recipe; anything else is a package
    name looked up in the recipe repository
  - not installed -> fresh install (status "installed")
  - recipe version strictly greater than installed -> install ("upgraded")
  - otherwise nothing runs and a warning is logged ("noop")

The package lock is held from the version check through the install.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dbuild.modules.config import Settings
from dbuild.modules.db import InstalledPackageRecord, PackageDB
from dbuild.modules.errors import RecipeNotFoundError
from dbuild.modules.logging import get_logger
from dbuild.modules.pkgtool import InstallManager, InstallOptions
from dbuild.modules.recipe import Recipe, load_recipe
from dbuild.modules.repo_sync import RecipeRepository
from dbuild.modules.version import VersionOrder, compare

logger = get_logger("upgrade")

INSTALLED = "installed"
UPGRADED = "upgraded"
NOOP = "noop"


@dataclass
class UpgradeResult:
    status: str
    name: str
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    record: Optional[InstalledPackageRecord] = None


class UpgradeManager:
    def __init__(self, settings: Settings, installer: Optional[InstallManager] = None,
                 repository: Optional[RecipeRepository] = None, db: Optional[PackageDB] = None):
        self.settings = settings
        self.db = db or PackageDB(settings.db_dir)
        self.installer = installer or InstallManager(settings, db=self.db)
        self.repository = repository or RecipeRepository(settings)

    def resolve(self, name_or_path: str) -> Recipe:
        path = Path(name_or_path)
        if path.is_file():
            return load_recipe(path)
        recipe = self.repository.find(name_or_path)
        if recipe is None:
            raise RecipeNotFoundError(f"no recipe named '{name_or_path}' in {self.settings.repo_dir}")
        return recipe

    def upgrade(self, name_or_path: str, options: Optional[InstallOptions] = None) -> UpgradeResult:
        recipe = self.resolve(name_or_path)
        options = options or InstallOptions()
        with self.db.lock(recipe.name):
            current = self.db.get_record(recipe.name)
            if current is None:
                logger.info("%s is not installed, installing %s", recipe.name, recipe.version)
                record = self.installer.install(recipe, options)
                return UpgradeResult(INSTALLED, recipe.name, None, recipe.version, record)

            order = compare(recipe.version, current.version)
            if order != VersionOrder.GREATER:
                logger.warning("%s: recipe version %s is not newer than installed %s, nothing to do",
                               recipe.name, recipe.version, current.version)
                return UpgradeResult(NOOP, recipe.name, current.version, recipe.version, current)

            logger.info("upgrading %s %s -> %s", recipe.name, current.version, recipe.version)
            record = self.installer.install(recipe, options)
            return UpgradeResult(UPGRADED, recipe.name, current.version, recipe.version, record)
