# dbuild/modules/query_tools.py
"""
query_tools.py - read-only queries for dbuild
- info(name): installed metadata plus manifest size and recipe extras
- list_installed(): installed packages, sorted by name
- search(term): recipes in the local repository
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from dbuild.modules.config import Settings
from dbuild.modules.db import PackageDB
from dbuild.modules.errors import ManifestMissingError, ParseError
from dbuild.modules.logging import get_logger
from dbuild.modules.recipe import load_recipe
from dbuild.modules.repo_sync import RecipeRepository

logger = get_logger("query_tools")


class QueryTools:
    def __init__(self, settings: Settings, db: Optional[PackageDB] = None,
                 repository: Optional[RecipeRepository] = None):
        self.settings = settings
        self.db = db or PackageDB(settings.db_dir)
        self.repository = repository or RecipeRepository(settings)

    # -------------------------
    # info
    # -------------------------
    def info(self, name: str) -> Optional[Dict[str, Any]]:
        record = self.db.get_record(name)
        if record is None:
            return None
        try:
            files = len(self.db.read_manifest(name))
        except ManifestMissingError:
            logger.warning("%s has metadata but no manifest", name)
            files = 0
        out: Dict[str, Any] = {
            "name": record.name,
            "version": record.version,
            "release": record.release,
            "files": files,
            "package": str(record.package_file) if record.package_file else "",
            "recipe": str(record.recipe_snapshot) if record.recipe_snapshot else "",
        }
        if record.recipe_snapshot and record.recipe_snapshot.is_file():
            try:
                recipe = load_recipe(record.recipe_snapshot)
                out["extra"] = dict(recipe.extra)
            except ParseError as e:
                logger.debug("recipe snapshot of %s unreadable: %s", name, e)
        return out

    # -------------------------
    # list
    # -------------------------
    def list_installed(self) -> List[Dict[str, str]]:
        rows = [{"name": r.name, "version": r.version, "release": r.release}
                for r in self.db.list_installed()]
        return sorted(rows, key=lambda r: r["name"])

    # -------------------------
    # search
    # -------------------------
    def search(self, term: str) -> List[Dict[str, str]]:
        rows: List[Dict[str, str]] = []
        for path in self.repository.search(term):
            row = {"path": str(path), "name": path.stem, "version": ""}
            try:
                recipe = load_recipe(path)
                row["name"] = recipe.name
                row["version"] = recipe.version
            except (ParseError, OSError):
                pass
            rows.append(row)
        return rows
