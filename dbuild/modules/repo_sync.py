# dbuild/modules/repo_sync.py
"""
repo_sync.py - local recipe repository for dbuild

- RecipeRepository.iter_recipes(): every *.recipe file under the repo dir
- RecipeRepository.find(name): recipe whose parsed `name` matches; when several
  versions exist the greatest version wins
- RecipeRepository.search(term): file name or text match, case-insensitive
- sync(): `git -C <repo> pull --rebase`
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from dbuild.modules.config import Settings
from dbuild.modules.errors import ParseError, SyncError
from dbuild.modules.logging import get_logger
from dbuild.modules.recipe import Recipe, load_recipe
from dbuild.modules.version import VersionOrder, compare

logger = get_logger("repo_sync")

RECIPE_SUFFIX = ".recipe"


def _run(cmd: List[str], cwd: Optional[Path] = None, timeout: Optional[int] = None) -> Tuple[int, str, str]:
    try:
        proc = subprocess.Popen(cmd, cwd=(str(cwd) if cwd else None), stdout=subprocess.PIPE,
                                stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as e:
        return 127, "", str(e)
    try:
        out, err = proc.communicate(timeout=timeout)
        return proc.returncode, out or "", err or ""
    except subprocess.TimeoutExpired:
        proc.kill()
        out, err = proc.communicate()
        return 124, out or "", err or ""


class RecipeRepository:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def root(self) -> Path:
        return self.settings.repo_dir

    def iter_recipes(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for fn in sorted(filenames):
                if fn.endswith(RECIPE_SUFFIX):
                    yield Path(dirpath) / fn

    def find(self, name: str) -> Optional[Recipe]:
        best: Optional[Recipe] = None
        for path in self.iter_recipes():
            try:
                recipe = load_recipe(path)
            except (ParseError, OSError) as e:
                logger.debug("skipping unreadable recipe %s: %s", path, e)
                continue
            if recipe.name != name:
                continue
            if best is None or compare(recipe.version, best.version) == VersionOrder.GREATER:
                best = recipe
        return best

    def search(self, term: str) -> List[Path]:
        needle = term.lower()
        hits: List[Path] = []
        for path in self.iter_recipes():
            if needle in path.name.lower():
                hits.append(path)
                continue
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.debug("cannot read %s: %s", path, e)
                continue
            if needle in text.lower():
                hits.append(path)
        return hits


def sync(settings: Settings, git: str = "git", timeout: Optional[int] = None) -> str:
    repo = settings.repo_dir
    if not (repo / ".git").exists():
        raise SyncError(f"recipe repository {repo} is not a git checkout")
    logger.info("syncing recipe repository %s", repo)
    rc, out, err = _run([git, "-C", str(repo), "pull", "--rebase"], timeout=timeout)
    if rc != 0:
        raise SyncError(f"git pull failed in {repo} (exit {rc}): {err.strip() or out.strip()}")
    return out.strip()
