# dbuild/modules/patches.py
"""
patches.py - PatchManager for dbuild

Responsibilities:
- Resolve patch specs to local files:
    http  -> downloaded into the patch cache (same cache rules as sources)
    vcs   -> shallow clone of REPO pinned to REF (kept as a ref-named mirror in
             the patch cache), file at PATH materialized as a standalone patch
    local -> existing file on disk (relative paths are relative to the recipe)
- Verify every resolved patch (sha256 / skip / absent) exactly like sources.
- Apply patches strictly in recipe order with `patch -p1 --forward --batch`;
  the first failure stops the build.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence, Tuple

from dbuild.modules.config import Settings
from dbuild.modules.errors import ApplyError, ResolveError
from dbuild.modules.fetcher import FetcherManager, verify_checksum
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog, get_logger
from dbuild.modules.recipe import PatchSpec

logger = get_logger("patches")

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _run(cmd: List[str], cwd: Optional[Path] = None) -> Tuple[int, str, str]:
    try:
        proc = subprocess.run(cmd, cwd=str(cwd) if cwd else None, stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as e:
        return 127, "", str(e)
    return proc.returncode, proc.stdout or "", proc.stderr or ""


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


# -------------------------
# VCS client capability
# -------------------------
class VcsClient:
    def clone(self, repo_url: str, ref: str, dest: Path) -> None:
        raise NotImplementedError

    def show(self, mirror: Path, path: str) -> bytes:
        raise NotImplementedError


class GitClient(VcsClient):
    def __init__(self, git: str = "git"):
        self.git = git

    def clone(self, repo_url: str, ref: str, dest: Path) -> None:
        """Shallow clone pinned to `ref` (branch/tag, or commit id via fetch)."""
        if dest.exists():
            shutil.rmtree(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        cmd = [self.git, "clone", "--depth", "1"]
        if ref:
            cmd += ["--branch", ref]
        rc, _, err = _run(cmd + [repo_url, str(dest)])
        if rc == 0:
            return
        if not ref:
            raise ResolveError(f"git clone failed for {repo_url}: {err.strip()}")
        # commit ids cannot be passed to --branch
        logger.debug("clone --branch %s failed (%s), trying fetch by ref", ref, err.strip())
        if dest.exists():
            shutil.rmtree(dest)
        dest.mkdir(parents=True)
        for step in (["init", "-q"], ["remote", "add", "origin", repo_url],
                     ["fetch", "--depth", "1", "origin", ref], ["checkout", "-q", "--detach", "FETCH_HEAD"]):
            rc, _, err = _run([self.git, "-C", str(dest)] + step)
            if rc != 0:
                shutil.rmtree(dest, ignore_errors=True)
                raise ResolveError(f"git {step[0]} failed for {repo_url}@{ref}: {err.strip()}")

    def show(self, mirror: Path, path: str) -> bytes:
        proc = subprocess.run([self.git, "-C", str(mirror), "show", f"HEAD:{path}"],
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        if proc.returncode != 0:
            raise ResolveError(f"{path} not found in {mirror.name}: {proc.stderr.decode(errors='replace').strip()}")
        return proc.stdout


# -------------------------
# Patch tool capability
# -------------------------
class PatchTool:
    def apply(self, patch_file: Path, work_dir: Path, log: Optional[BuildLog] = None) -> None:
        raise NotImplementedError


class GnuPatch(PatchTool):
    def __init__(self, patch: str = "patch"):
        self.patch = patch

    def apply(self, patch_file: Path, work_dir: Path, log: Optional[BuildLog] = None) -> None:
        cmd = [self.patch, "-p1", "--forward", "--batch", "-i", str(patch_file)]
        try:
            if log is not None:
                with log.open() as fh:
                    rc = subprocess.run(cmd, cwd=str(work_dir), stdout=fh, stderr=subprocess.STDOUT).returncode
                detail = f"see log: {log}"
            else:
                rc, out, err = _run(cmd, cwd=work_dir)
                detail = (out + err).strip()
        except FileNotFoundError as e:
            raise ApplyError(f"patch tool not available: {e}") from e
        if rc != 0:
            raise ApplyError(f"patch {patch_file.name} failed (exit {rc}): {detail}")


# -------------------------
# PatchManager
# -------------------------
class PatchManager:
    def __init__(self, settings: Settings, fetcher: Optional[FetcherManager] = None,
                 vcs: Optional[VcsClient] = None, patch_tool: Optional[PatchTool] = None,
                 hooks: Optional[HookManager] = None):
        self.settings = settings
        self.hooks = hooks or HookManager()
        self.fetcher = fetcher or FetcherManager(settings, hooks=self.hooks)
        self.vcs = vcs or GitClient()
        self.patch_tool = patch_tool or GnuPatch()

    @property
    def cache_dir(self) -> Path:
        return self.settings.patches_dir

    def mirror_dir(self, spec: PatchSpec) -> Path:
        repo = (spec.repo_url or "").rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        if repo.endswith(".git"):
            repo = repo[:-4]
        ref = spec.ref or "HEAD"
        return self.cache_dir / f"git-{_UNSAFE_RE.sub('_', repo)}-{_UNSAFE_RE.sub('_', ref)}"

    # -------------------------
    # resolution
    # -------------------------
    def resolve(self, spec: PatchSpec, base_dir: Optional[Path] = None) -> Path:
        """Return a local file for `spec` (not yet verified)."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        if spec.kind == "http":
            target = self.cache_dir / spec.file_name
            if target.exists():
                return target
            self.hooks.run("fetch", {"kind": "patch", "url": spec.url, "target": str(target)})
            logger.info("downloading patch %s", spec.url)
            self.fetcher.downloader.fetch(spec.url, target)
            return target
        if spec.kind == "vcs":
            rel = PurePosixPath((spec.path or "").strip("/"))
            if not rel.parts or ".." in rel.parts:
                raise ResolveError(f"invalid patch path in {spec.raw}")
            mirror = self.mirror_dir(spec)
            if not (mirror / ".git").is_dir():
                logger.info("cloning patch repo %s@%s", spec.repo_url, spec.ref or "HEAD")
                self.hooks.run("fetch", {"kind": "patch", "url": spec.repo_url, "target": str(mirror)})
                self.vcs.clone(spec.repo_url or "", spec.ref or "", mirror)
            # base name kept, directories mirror the in-repo path
            out = self.cache_dir / f"{mirror.name}-files" / Path(*rel.parts)
            out.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write_bytes(out, self.vcs.show(mirror, spec.path or ""))
            return out
        if spec.kind == "local":
            p = Path(spec.path or "")
            if not p.is_absolute() and base_dir is not None:
                p = base_dir / p
            if not p.is_file():
                raise ResolveError(f"patch not found: {spec.path}")
            return p
        raise ResolveError(f"unknown patch kind: {spec.kind}")

    def resolve_all(self, specs: Sequence[PatchSpec], base_dir: Optional[Path] = None) -> List[Path]:
        """Resolve and verify every patch, in recipe order."""
        files: List[Path] = []
        for i, spec in enumerate(specs, 1):
            path = self.resolve(spec, base_dir)
            self.hooks.run("verify", {"kind": "patch", "file": str(path)})
            verify_checksum(path, spec.checksum, label=f"patch[{i}] {path.name}")
            files.append(path)
        return files

    # -------------------------
    # application
    # -------------------------
    def apply(self, files: Sequence[Path], work_dir: Path, log: Optional[BuildLog] = None) -> None:
        for i, f in enumerate(files, 1):
            logger.info("applying patch[%d] %s", i, f.name)
            self.hooks.run("patch", {"index": i, "file": str(f)})
            try:
                self.patch_tool.apply(Path(f), Path(work_dir), log)
            except ApplyError as e:
                raise ApplyError(f"patch[{i}] {f.name}: {e}") from e
            logger.info("patch[%d] applied", i)
