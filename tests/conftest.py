# tests/conftest.py
import hashlib
import io
import logging
import shutil
import sys
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from dbuild.modules import logging as logging_mod
from dbuild.modules.config import Settings
from dbuild.modules.errors import FetchError
from dbuild.modules.fetcher import Downloader


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    return sha256_bytes(Path(path).read_bytes())


@pytest.fixture(autouse=True)
def _logging_to_current_stderr():
    logging_mod.configure({"level": "DEBUG", "color": False}, stream=sys.stderr)
    yield


@pytest.fixture
def dbuild_caplog(caplog):
    """caplog wired to the non-propagating 'dbuild' logger."""
    lg = logging.getLogger("dbuild")
    lg.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG)
    try:
        yield caplog
    finally:
        lg.removeHandler(caplog.handler)


@pytest.fixture
def live_root(tmp_path) -> Path:
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def settings(tmp_path, live_root) -> Settings:
    s = Settings.for_workspace(tmp_path / "ws", root=live_root)
    s.ensure_dirs()
    return s


@pytest.fixture
def make_tarball(tmp_path):
    """Build pkg-<ver>.tar.gz style archives from a {relpath: content} mapping."""

    def _make(name: str, files: Dict[str, str], topdir: Optional[str] = None,
              dest: Optional[Path] = None, mode: str = "w:gz", executable: List[str] = ()) -> Path:
        out_dir = Path(dest or tmp_path / "archives")
        out_dir.mkdir(parents=True, exist_ok=True)
        out = out_dir / name
        with tarfile.open(out, mode) as tar:
            for rel, content in sorted(files.items()):
                arc = f"{topdir}/{rel}" if topdir else rel
                data = content.encode("utf-8")
                info = tarfile.TarInfo(arc)
                info.size = len(data)
                info.mode = 0o755 if rel in executable else 0o644
                tar.addfile(info, io.BytesIO(data))
        return out

    return _make


@pytest.fixture
def write_recipe(tmp_path):
    def _write(text: str, name: str = "pkg.recipe", where: Optional[Path] = None) -> Path:
        d = Path(where or tmp_path / "recipes")
        d.mkdir(parents=True, exist_ok=True)
        p = d / name
        p.write_text(text, encoding="utf-8")
        return p

    return _write


def recipe_text(name: str = "pkg", version: str = "1.0", sources: str = "", sums: str = "",
                stages: Optional[Dict[str, str]] = None, extra: str = "") -> str:
    lines = [f'name="{name}"', f'version="{version}"']
    if extra:
        lines.append(extra)
    if sources:
        lines += ["sources<<EOF", sources, "EOF"]
    if sums:
        lines += ["sha256sums<<EOF", sums, "EOF"]
    for stage, body in (stages or {}).items():
        lines += [f"{stage}<<SH", body, "SH"]
    return "\n".join(lines) + "\n"


class FakeDownloader(Downloader):
    """Serves canned bytes per URL and records every fetch."""

    def __init__(self, payloads: Optional[Dict[str, bytes]] = None):
        self.payloads = dict(payloads or {})
        self.calls: List[str] = []

    def fetch(self, url: str, dest: Path) -> None:
        self.calls.append(url)
        if url in self.payloads:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(self.payloads[url])
            return
        if Path(url).is_file():
            shutil.copyfile(url, dest)
            return
        raise FetchError(f"no payload for {url}")


@pytest.fixture
def fake_downloader():
    return FakeDownloader()


def tree(root: Path) -> List[str]:
    """Sorted relative listing of everything under root."""
    return sorted(p.relative_to(root).as_posix() for p in Path(root).rglob("*"))
