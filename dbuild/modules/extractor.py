# dbuild/modules/extractor.py
"""
extractor.py - multi-format archive extraction for dbuild

Dispatch is by file name suffix:
  .tar.gz .tgz | .tar.bz2 .tbz2 .tbz | .tar.xz .txz | .tar.zst .tzst | .tar | .zip | .gz (single file)

Every archive of a recipe is extracted into the same directory, so multiple
sources merge into one tree. locate_root() then picks the source root.
"""

from __future__ import annotations

import os
import gzip
import lzma
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import zstandard as zstd

from dbuild.modules.errors import ExtractError
from dbuild.modules.logging import get_logger

logger = get_logger("extractor")


# -----------------------------
# Format handlers
# -----------------------------
def _extract_tar(path: Path, dest: Path, mode: str) -> None:
    with tarfile.open(path, mode) as tar:
        tar.extractall(dest, filter="tar")


def _extract_tar_zst(path: Path, dest: Path) -> None:
    dctx = zstd.ZstdDecompressor()
    with open(path, "rb") as fh, dctx.stream_reader(fh) as reader:
        with tarfile.open(fileobj=reader, mode="r|") as tar:
            tar.extractall(dest, filter="tar")


def _extract_zip(path: Path, dest: Path) -> None:
    with zipfile.ZipFile(path) as zf:
        for info in zf.infolist():
            out = zf.extract(info, dest)
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                os.chmod(out, mode)


def _extract_gz(path: Path, dest: Path) -> None:
    out = dest / path.name[: -len(".gz")]
    with gzip.open(path, "rb") as src, open(out, "wb") as dst:
        shutil.copyfileobj(src, dst)


# ordered longest-suffix first; ".gz" must come after the tar variants
FORMATS: List[Tuple[Tuple[str, ...], Callable[[Path, Path], None]]] = [
    ((".tar.gz", ".tgz"), lambda p, d: _extract_tar(p, d, "r:gz")),
    ((".tar.bz2", ".tbz2", ".tbz"), lambda p, d: _extract_tar(p, d, "r:bz2")),
    ((".tar.xz", ".txz"), lambda p, d: _extract_tar(p, d, "r:xz")),
    ((".tar.zst", ".tzst"), _extract_tar_zst),
    ((".tar",), lambda p, d: _extract_tar(p, d, "r:")),
    ((".zip",), _extract_zip),
    ((".gz",), _extract_gz),
]


def handler_for(path: Path) -> Optional[Callable[[Path, Path], None]]:
    name = path.name.lower()
    for suffixes, fn in FORMATS:
        if name.endswith(suffixes):
            return fn
    return None


def supported_suffixes() -> List[str]:
    return [s for suffixes, _ in FORMATS for s in suffixes]


# -----------------------------
# Extractor capability
# -----------------------------
class Extractor:
    def extract(self, files: Sequence[Path], dest_dir: Path) -> None:
        raise NotImplementedError


class ArchiveExtractor(Extractor):
    def extract(self, files: Sequence[Path], dest_dir: Path) -> None:
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        # refuse the whole batch before touching anything
        plan: Dict[Path, Callable[[Path, Path], None]] = {}
        for f in files:
            fn = handler_for(Path(f))
            if fn is None:
                raise ExtractError(f"unsupported archive format: {f}")
            plan[Path(f)] = fn
        for f, fn in plan.items():
            logger.info("extracting %s", f.name)
            try:
                fn(f, dest_dir)
            except (tarfile.TarError, zipfile.BadZipFile, zstd.ZstdError, lzma.LZMAError, zlib.error,
                    EOFError, OSError) as e:
                raise ExtractError(f"cannot extract {f}: {e}") from e


def locate_root(dest_dir: Path, override: Optional[str] = None) -> Path:
    """
    Pick the source root inside `dest_dir`:
      - an explicit override (relative to dest_dir) must exist
      - a single top-level directory is the root
      - no top-level directory at all means dest_dir itself
      - several top-level directories are ambiguous and raise ExtractError
    """
    dest_dir = Path(dest_dir)
    if override:
        base = dest_dir.resolve()
        root = (dest_dir / override).resolve()
        if not root.is_dir() or (root != base and base not in root.parents):
            raise ExtractError(f"srcdir '{override}' is not a directory inside {dest_dir}")
        return root
    entries = sorted(os.listdir(dest_dir))
    dirs = [e for e in entries if (dest_dir / e).is_dir() and not (dest_dir / e).is_symlink()]
    if not dirs:
        return dest_dir
    if len(dirs) > 1:
        raise ExtractError(
            f"ambiguous source root in {dest_dir}: {', '.join(dirs)}; set srcdir=\"...\" in the recipe"
        )
    if len(entries) > 1:
        logger.warning("loose top-level files next to %s are outside the source root", dirs[0])
    return dest_dir / dirs[0]
