#!/usr/bin/env python3
# dbuild/cli.py
"""
dbuild CLI - thin front end over the dbuild modules

Subcommands:
  build <recipe>
  install [--pack-only] [--no-package] [--strip] <recipe>
  remove <name>
  info <name>
  list
  search <term>
  sync
  upgrade <name|recipe>

A <recipe> argument is a path to a recipe file, a file under the repository
dir, or a package name looked up in the repository. Every DBuildError maps to
its own exit code.
"""

from __future__ import annotations

import sys
import argparse
import dataclasses
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from dbuild import __version__
from dbuild.modules import config as config_mod
from dbuild.modules import logging as logging_mod
from dbuild.modules.buildsystem import BuildSystem
from dbuild.modules.config import Settings
from dbuild.modules.db import PackageDB
from dbuild.modules.errors import DBuildError, RecipeNotFoundError
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import get_logger
from dbuild.modules.pkgtool import InstallManager, InstallOptions
from dbuild.modules.query_tools import QueryTools
from dbuild.modules.recipe import Recipe, load_recipe
from dbuild.modules.remove import RemoveManager
from dbuild.modules.repo_sync import RECIPE_SUFFIX, RecipeRepository, sync
from dbuild.modules.upgrade import NOOP, UpgradeManager

logger = get_logger("cli")


# -----------------------
# Small pretty helpers
# -----------------------
class _Printer:
    def __init__(self, console: Console):
        self.console = console

    def ok(self, msg: str):
        self.console.print(f"[bold green]✔[/] {msg}", highlight=False)

    def warn(self, msg: str):
        self.console.print(f"[bold yellow]![/] {msg}", highlight=False)

    def err(self, msg: str):
        self.console.print(f"[bold red]✖[/] {msg}", highlight=False)

    def info(self, msg: str):
        self.console.print(f"[cyan]{msg}[/cyan]", highlight=False)


def _make_console(color: str) -> Console:
    if color == "always":
        return Console(force_terminal=True)
    if color == "never":
        return Console(no_color=True, highlight=False)
    return Console()


# -----------------------
# Progress spinner fed by hooks
# -----------------------
class _Progress:
    """Keeps a rich status line updated from HookManager events."""

    def __init__(self, console: Console, enabled: bool = True):
        self.console = console
        self.enabled = enabled and console.is_terminal
        self._status = None

    def __call__(self, event: str, ctx: Dict[str, Any]) -> None:
        if self._status is None:
            return
        if event == "stage":
            detail = f"{ctx.get('package', '')} {ctx.get('stage', '')}"
        else:
            detail = Path(str(ctx.get("file") or ctx.get("url") or ctx.get("package") or "")).name
        self._status.update(f"[bold]{event}[/] {detail}")

    def run(self, text: str, func, *args, **kwargs):
        if not self.enabled:
            return func(*args, **kwargs)
        with self.console.status(text) as status:
            self._status = status
            try:
                return func(*args, **kwargs)
            finally:
                self._status = None


# -----------------------
# CLI Implementation
# -----------------------
class DBuildCLI:
    def __init__(self, settings: Settings, console: Console, spinner: bool = True):
        self.settings = settings
        self.out = _Printer(console)
        self.console = console
        self.hooks = HookManager()
        self.progress = _Progress(console, enabled=spinner)
        self.hooks.register("*", self.progress, name="cli-progress", priority=100)
        self.db = PackageDB(settings.db_dir)
        self.repository = RecipeRepository(settings)
        self.buildsystem = BuildSystem(settings, hooks=self.hooks)
        self.installer = InstallManager(settings, buildsystem=self.buildsystem, db=self.db, hooks=self.hooks)
        self.remover = RemoveManager(settings, db=self.db, runner=self.buildsystem.runner, hooks=self.hooks)
        self.upgrader = UpgradeManager(settings, installer=self.installer, repository=self.repository, db=self.db)
        self.query = QueryTools(settings, db=self.db, repository=self.repository)

    # -------------------------
    # recipe argument
    # -------------------------
    def resolve_recipe(self, arg: str) -> Recipe:
        candidates = [Path(arg), self.settings.repo_dir / arg, self.settings.repo_dir / f"{arg}{RECIPE_SUFFIX}"]
        for cand in candidates:
            if cand.is_file():
                return load_recipe(cand)
        recipe = self.repository.find(arg)
        if recipe is None:
            raise RecipeNotFoundError(f"recipe not found: {arg}")
        return recipe

    # -------------------------
    # commands
    # -------------------------
    def build(self, arg: str) -> int:
        recipe = self.resolve_recipe(arg)
        result = self.progress.run(f"building {recipe.pkgname}", self.buildsystem.build, recipe, force=True)
        self.out.ok(f"built {recipe.pkgname} in {result.work_dir} (log: {result.log_path})")
        return 0

    def install(self, arg: str, options: InstallOptions) -> int:
        recipe = self.resolve_recipe(arg)
        record = self.progress.run(f"installing {recipe.pkgname}", self.installer.install, recipe, options)
        if options.pack_only:
            where = record.package_file or self.settings.db_dir
            self.out.ok(f"packed {recipe.pkgname}-{recipe.release} ({where}); live root untouched")
        else:
            self.out.ok(f"installed {recipe.pkgname}-{recipe.release} into {self.settings.root}")
        return 0

    def remove(self, name: str) -> int:
        summary = self.progress.run(f"removing {name}", self.remover.remove, name)
        self.out.ok(f"removed {name}: {len(summary['removed'])} entries")
        for rel in summary["kept"]:
            self.out.warn(f"kept non-empty directory {rel}")
        if not summary["postremove_ok"]:
            self.out.warn("postremove failed, see log")
        return 0

    def info(self, name: str) -> int:
        data = self.query.info(name)
        if data is None:
            self.out.err(f"{name} is not installed")
            return 1
        table = Table(title=f"{name}", show_header=False)
        table.add_column("key", style="bold")
        table.add_column("value")
        for key in ("name", "version", "release", "files", "package", "recipe"):
            table.add_row(key, str(data.get(key, "")))
        for key, val in sorted((data.get("extra") or {}).items()):
            table.add_row(key, str(val))
        self.console.print(table)
        return 0

    def list(self) -> int:
        rows = self.query.list_installed()
        if not rows:
            self.out.info("no packages installed")
            return 0
        table = Table(title="Installed packages")
        table.add_column("name")
        table.add_column("version")
        for r in rows:
            table.add_row(r["name"], f"{r['version']}-{r['release']}")
        self.console.print(table)
        return 0

    def search(self, term: str) -> int:
        rows = self.query.search(term)
        if not rows:
            self.out.warn(f"no recipes match '{term}'")
            return 1
        for r in rows:
            self.console.print(f"{r['name']} {r['version']}  [dim]{r['path']}[/dim]", highlight=False)
        return 0

    def sync(self) -> int:
        out = self.progress.run("syncing recipes", sync, self.settings)
        self.out.ok(out or "recipe repository up to date")
        return 0

    def upgrade(self, arg: str) -> int:
        result = self.progress.run(f"upgrading {arg}", self.upgrader.upgrade, arg)
        if result.status == NOOP:
            self.out.warn(f"{result.name}: {result.new_version} is not newer than installed {result.old_version}")
        elif result.old_version:
            self.out.ok(f"upgraded {result.name} {result.old_version} -> {result.new_version}")
        else:
            self.out.ok(f"installed {result.name} {result.new_version}")
        return 0


# -----------------------
# Argparse wiring
# -----------------------
def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="dbuild", description="dbuild source package builder")
    ap.add_argument("--version", action="version", version=f"dbuild {__version__}")
    ap.add_argument("--config", help="path to a YAML/JSON config file")
    ap.add_argument("--root", help="live filesystem root to install into (default /)")
    ap.add_argument("--no-check", action="store_true", help="skip the check stage")
    ap.add_argument("--color", choices=("auto", "always", "never"), help="console colors")
    ap.add_argument("--no-spinner", action="store_true", help="Disable spinner animations")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="cmd")

    p_build = sub.add_parser("build", help="build a recipe up to the check stage")
    p_build.add_argument("recipe")

    p_install = sub.add_parser("install", help="build, package and install a recipe")
    p_install.add_argument("recipe")
    p_install.add_argument("--pack-only", action="store_true", help="package and record, do not touch the live root")
    p_install.add_argument("--no-package", action="store_true", help="skip the package archive")
    p_install.add_argument("--strip", action="store_true", help="strip binaries in the staging tree")
    p_install.add_argument("--force", action="store_true", help="rebuild even if the build is current")

    p_remove = sub.add_parser("remove", help="remove an installed package")
    p_remove.add_argument("name")

    p_info = sub.add_parser("info", help="show an installed package")
    p_info.add_argument("name")

    sub.add_parser("list", help="list installed packages")

    p_search = sub.add_parser("search", help="search the recipe repository")
    p_search.add_argument("term")

    sub.add_parser("sync", help="git pull the recipe repository")

    p_upgrade = sub.add_parser("upgrade", help="install a newer version of a package")
    p_upgrade.add_argument("target", metavar="name|recipe")
    return ap


def _settings_from_args(cfg: config_mod.Config, args: argparse.Namespace) -> Settings:
    settings = Settings.from_config(cfg)
    changes: Dict[str, Any] = {}
    if args.root:
        changes["root"] = Path(args.root).resolve()
    if args.no_check:
        changes["no_check"] = True
    if changes:
        settings = dataclasses.replace(settings, **changes)
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1

    try:
        cfg = config_mod.load(args.config)
    except ValueError as e:
        _Printer(_make_console(args.color or "auto")).err(str(e))
        return 1
    color = args.color or cfg.get("ui.color", "auto")
    console = _make_console(color)
    out = _Printer(console)

    log_cfg = dict(cfg.get("logging", {}) or {})
    if args.verbose:
        log_cfg["level"] = "DEBUG"
    if color == "never":
        log_cfg["color"] = False
    logging_mod.configure(log_cfg)

    settings = _settings_from_args(cfg, args)
    spinner = bool(cfg.get("ui.spinner", True)) and not args.no_spinner

    try:
        settings.ensure_dirs()
        cli = DBuildCLI(settings, console, spinner=spinner)
        if args.cmd == "build":
            return cli.build(args.recipe)
        if args.cmd == "install":
            options = InstallOptions(pack_only=args.pack_only, no_package=args.no_package,
                                     strip=args.strip, force=args.force)
            return cli.install(args.recipe, options)
        if args.cmd == "remove":
            return cli.remove(args.name)
        if args.cmd == "info":
            return cli.info(args.name)
        if args.cmd == "list":
            return cli.list()
        if args.cmd == "search":
            return cli.search(args.term)
        if args.cmd == "sync":
            return cli.sync()
        if args.cmd == "upgrade":
            return cli.upgrade(args.target)
        parser.print_help()
        return 1
    except DBuildError as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        out.err(str(e))
        return e.exit_code
    except OSError as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        out.err(f"Command failed: {e}")
        return 1
    except KeyboardInterrupt:
        out.err("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
