# dbuild/modules/fakeroot.py
"""
fakeroot.py - ownership-neutral package archives for dbuild

The staging tree is packed as if by root: every member gets uid/gid 0 and
uname/gname "root", entries are added in sorted order and the compressor is
fed a stream with no embedded timestamps, so two packs of the same staging
tree by different users produce the same bytes.

Compression:
  xz  -> lzma (default)
  gz  -> gzip with mtime=0
  zst -> zstandard
"""

from __future__ import annotations

import os
import gzip
import lzma
import tarfile
from pathlib import Path
from typing import IO, Iterator, List

import zstandard as zstd

from dbuild.modules.errors import InstallError
from dbuild.modules.logging import get_logger

logger = get_logger("fakeroot")

COMPRESSIONS = ("xz", "gz", "zst")


def archive_suffix(compression: str) -> str:
    if compression not in COMPRESSIONS:
        raise ValueError(f"unsupported compression: {compression}")
    return f".tar.{compression}"


def _walk_sorted(staging_dir: Path) -> Iterator[str]:
    """Relative POSIX paths under staging_dir, parents before children, sorted."""
    for dirpath, dirnames, filenames in os.walk(staging_dir):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, staging_dir)
        entries: List[str] = sorted(dirnames + filenames)
        for name in entries:
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            yield rel.replace(os.sep, "/")


def _as_root(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = "root"
    info.gname = "root"
    return info


# -------------------------
# Archiver capability
# -------------------------
class Archiver:
    def pack(self, staging_dir: Path, out_path: Path) -> Path:
        raise NotImplementedError


class FakerootArchiver(Archiver):
    def __init__(self, compression: str = "xz", level: int = 6):
        if compression not in COMPRESSIONS:
            raise ValueError(f"unsupported compression: {compression}")
        self.compression = compression
        self.level = level

    def _compressed(self, raw: IO[bytes]):
        if self.compression == "gz":
            return gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0, compresslevel=self.level)
        if self.compression == "xz":
            return lzma.LZMAFile(raw, mode="wb", preset=self.level)
        return zstd.ZstdCompressor(level=self.level).stream_writer(raw, closefd=False)

    def pack(self, staging_dir: Path, out_path: Path) -> Path:
        staging_dir = Path(staging_dir)
        out_path = Path(out_path)
        if not staging_dir.is_dir():
            raise InstallError(f"staging directory does not exist: {staging_dir}")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        part = out_path.with_name(f".{out_path.name}.part")
        count = 0
        try:
            with open(part, "wb") as raw:
                with self._compressed(raw) as comp:
                    with tarfile.open(fileobj=comp, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                        for rel in _walk_sorted(staging_dir):
                            tar.add(staging_dir / rel, arcname=rel, recursive=False, filter=_as_root)
                            count += 1
            os.replace(part, out_path)
        except (OSError, tarfile.TarError, zstd.ZstdError) as e:
            raise InstallError(f"cannot create package {out_path.name}: {e}") from e
        finally:
            if part.exists():
                part.unlink()
        logger.info("packaged %d entries into %s", count, out_path)
        return out_path
