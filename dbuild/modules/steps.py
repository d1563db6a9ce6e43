# dbuild/modules/steps.py
"""
steps.py - lifecycle stage runner for dbuild

A stage body is opaque shell text taken from the recipe. It is written to an
executable script, run with the requested working directory, and its
stdout/stderr are appended to the package build log. A non-zero exit aborts
the pipeline with StageError naming the stage and the log file.

The `install` stage gets DESTDIR bound to the staging tree; when the recipe
has no install body the conventional `make install DESTDIR=...` is used.
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Dict, Optional

from dbuild.modules.config import Settings
from dbuild.modules.errors import StageError
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog, get_logger
from dbuild.modules.recipe import STAGES, Recipe

logger = get_logger("steps")


# -------------------------
# Script runner capability
# -------------------------
class ScriptRunner:
    def run(self, script: Path, cwd: Path, env: Dict[str, str], log: BuildLog) -> int:
        raise NotImplementedError


class ShellScriptRunner(ScriptRunner):
    """Run a script file with `sh`, streaming output into the build log."""

    def __init__(self, shell: str = "sh"):
        self.shell = shell

    def run(self, script: Path, cwd: Path, env: Dict[str, str], log: BuildLog) -> int:
        with log.open() as fh:
            proc = subprocess.run([self.shell, str(script)], cwd=str(cwd), env=env,
                                  stdin=subprocess.DEVNULL, stdout=fh, stderr=subprocess.STDOUT)
        return proc.returncode


# -------------------------
# StepRunner
# -------------------------
class StepRunner:
    def __init__(self, settings: Settings, runner: Optional[ScriptRunner] = None,
                 hooks: Optional[HookManager] = None):
        self.settings = settings
        self.runner = runner or ShellScriptRunner(settings.shell)
        self.hooks = hooks or HookManager()

    @property
    def script_dir(self) -> Path:
        return self.settings.build_dir / ".scripts"

    def _fallback_install(self) -> str:
        return f'{self.settings.make} install DESTDIR="$DESTDIR"\n'

    def _write_script(self, recipe: Recipe, stage: str, body: str) -> Path:
        self.script_dir.mkdir(parents=True, exist_ok=True)
        script = self.script_dir / f"{recipe.pkgname}-{stage}.sh"
        script.write_text(body if body.endswith("\n") else body + "\n", encoding="utf-8")
        os.chmod(script, 0o755)
        return script

    def run_stage(self, stage: str, recipe: Recipe, work_dir: Path, log: BuildLog,
                  destdir: Optional[Path] = None) -> bool:
        """
        Run one stage. Returns False when the stage was a no-op (no body, or
        `check` disabled), True when a script ran successfully.
        """
        if stage not in STAGES:
            raise ValueError(f"unknown stage: {stage}")
        if stage == "check" and self.settings.no_check:
            logger.warning("check skipped (disabled by configuration)")
            return False
        body = recipe.step(stage)
        env = dict(os.environ)
        if stage == "install":
            if destdir is None:
                raise ValueError("install stage needs a destination root")
            env["DESTDIR"] = str(destdir)
            if body is None:
                logger.info("no install stage, running %s install DESTDIR=%s", self.settings.make, destdir)
                body = self._fallback_install()
        if body is None:
            logger.debug("stage %s: nothing to do", stage)
            return False

        script = self._write_script(recipe, stage, body)
        logger.info("stage: %s", stage)
        self.hooks.run("stage", {"stage": stage, "package": recipe.pkgname, "cwd": str(work_dir)})
        log.write(f"==> dbuild: {recipe.pkgname} stage {stage} ({time.strftime('%Y-%m-%d %H:%M:%S')})")
        try:
            rc = self.runner.run(script, Path(work_dir), env, log)
        except OSError as e:
            log.write(f"==> dbuild: cannot start stage {stage}: {e}")
            raise StageError(stage, str(log.path)) from e
        if rc != 0:
            logger.error("stage %s failed with exit %d (log: %s)", stage, rc, log.path)
            raise StageError(stage, str(log.path), rc)
        logger.info("%s ok", stage)
        return True
