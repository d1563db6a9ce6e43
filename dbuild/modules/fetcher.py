# dbuild/modules/fetcher.py
"""
fetcher.py - FetcherManager for dbuild

Features:
- FetcherManager: unified download/cache/verify layer for sources and patches
- Protocol support: http(s)/ftp via requests, local paths and file:// via copy
- Cache: flat directory keyed by the last path segment of the URL; a cached
  file is never downloaded again but is re-verified on every use
- Downloads land in a hidden temp file and are renamed into place, so an
  interrupted fetch never leaves a partial file under the final name
- Verification: SHA-256, case-insensitive; mismatch is fatal and the bad file
  is left in the cache for inspection
- Parallel fetch of distinct entries with a thread pool; results keep list order
"""

from __future__ import annotations

import os
import time
import uuid
import shutil
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import requests

from dbuild.modules.config import Settings
from dbuild.modules.errors import ChecksumError, FetchError
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import get_logger
from dbuild.modules.recipe import SKIP, Source

logger = get_logger("fetcher")

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _sha256_of_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _part_path(dest: Path) -> Path:
    return dest.with_name(f".{dest.name}.part-{uuid.uuid4().hex[:8]}")


def verify_checksum(path: Path, expected: Optional[str], label: str = "") -> Optional[str]:
    """
    Verify `path` against `expected` (hex or 'skip' or None).
    Returns the computed digest, or None when verification was skipped.
    """
    label = label or path.name
    if expected is None:
        logger.warning("%s: no checksum supplied, integrity not verified", label)
        return None
    if expected.lower() == SKIP:
        logger.info("%s: checksum verification skipped", label)
        return None
    got = _sha256_of_file(path)
    if got.lower() != expected.lower():
        logger.error("%s: SHA256 mismatch expected=%s got=%s (file kept at %s)", label, expected, got, path)
        raise ChecksumError(str(path), expected, got)
    logger.debug("%s: sha256 ok", label)
    return got


# -----------------------------------------------------------------------
# Downloader capability
# -----------------------------------------------------------------------
class Downloader:
    """Fetch `url` into `dest`. Implementations must leave `dest` absent on failure."""

    def fetch(self, url: str, dest: Path) -> None:
        raise NotImplementedError


class HttpDownloader(Downloader):
    """requests-backed downloader with bounded retry; local paths are copied."""

    def __init__(self, retries: int = 3, timeout: int = 60, backoff: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.retries = max(1, int(retries))
        self.timeout = timeout
        self.backoff = backoff
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "dbuild/1.0")

    def fetch(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if url.startswith(("http://", "https://", "ftp://")):
            self._fetch_remote(url, dest)
        else:
            self._fetch_local(url[len("file://"):] if url.startswith("file://") else url, dest)

    def _fetch_local(self, src: str, dest: Path) -> None:
        if not os.path.isfile(src):
            raise FetchError(f"local source not found: {src}")
        part = _part_path(dest)
        try:
            shutil.copyfile(src, part)
            os.replace(part, dest)
        finally:
            if part.exists():
                part.unlink()

    def _fetch_remote(self, url: str, dest: Path) -> None:
        last_err: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            part = _part_path(dest)
            try:
                with self.session.get(url, stream=True, timeout=self.timeout, allow_redirects=True) as resp:
                    resp.raise_for_status()
                    with open(part, "wb") as f:
                        for chunk in resp.iter_content(chunk_size=64 * 1024):
                            if chunk:
                                f.write(chunk)
                os.replace(part, dest)
                return
            except (requests.RequestException, OSError) as e:
                last_err = e
                logger.warning("download attempt %d/%d failed for %s: %s", attempt, self.retries, url, e)
                if attempt < self.retries:
                    time.sleep(self.backoff * attempt)
            finally:
                if part.exists():
                    part.unlink()
        raise FetchError(f"download failed after {self.retries} attempts: {url}: {last_err}")


# -----------------------------------------------------------------------
# FetcherManager
# -----------------------------------------------------------------------
class FetcherManager:
    def __init__(self, settings: Settings, downloader: Optional[Downloader] = None,
                 hooks: Optional[HookManager] = None):
        self.settings = settings
        self.downloader = downloader or HttpDownloader(retries=settings.retries, timeout=settings.timeout)
        self.hooks = hooks or HookManager()
        self._target_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._metrics = {"fetch.total": 0, "fetch.downloaded": 0, "cache.hits": 0}

    def _lock_for(self, target: Path) -> threading.Lock:
        with self._locks_guard:
            return self._target_locks.setdefault(str(target), threading.Lock())

    def _resolve_local(self, url: str, base_dir: Optional[Path]) -> str:
        if url.startswith(("http://", "https://", "ftp://", "file://")) or base_dir is None:
            return url
        if os.path.isabs(url):
            return url
        return str(base_dir / url)

    # -------------------------
    # core fetch flow
    # -------------------------
    def fetch_one(self, url: str, checksum: Optional[str], cache_dir: Path, file_name: Optional[str] = None,
                  base_dir: Optional[Path] = None, kind: str = "source") -> Path:
        """
        Ensure `cache_dir/<file_name>` exists (downloading on miss), then verify it.
        Returns the cached path.
        """
        name = file_name or url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        if not name:
            raise FetchError(f"cannot derive a cache file name from {url}")
        target = Path(cache_dir) / name
        with self._lock_for(target):
            self._metrics["fetch.total"] += 1
            if target.exists():
                self._metrics["cache.hits"] += 1
                logger.info("%s %s: cached (%s)", kind, name, target)
            else:
                self.hooks.run("fetch", {"kind": kind, "url": url, "target": str(target)})
                logger.info("%s %s: downloading %s", kind, name, url)
                self.downloader.fetch(self._resolve_local(url, base_dir), target)
                if not target.exists():
                    raise FetchError(f"downloader produced no file for {url}")
                self._metrics["fetch.downloaded"] += 1
            self.hooks.run("verify", {"kind": kind, "file": str(target)})
            verify_checksum(target, checksum, label=f"{kind} {name}")
        return target

    def fetch_and_verify(self, items: Sequence[Source], cache_dir: Optional[Path] = None,
                         base_dir: Optional[Path] = None, kind: str = "source") -> List[Path]:
        """
        Fetch and verify every item. Distinct files may download concurrently;
        each file is verified before its path is returned. The first failure
        in list order is raised once all workers have finished.
        """
        cache_dir = Path(cache_dir or self.settings.sources_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        if not items:
            return []
        workers = max(1, min(self.settings.parallel, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dbuild-fetch") as pool:
            futures = [
                pool.submit(self.fetch_one, it.url, it.checksum, cache_dir, it.cache_file_name, base_dir, kind)
                for it in items
            ]
        results: List[Path] = []
        for it, fut in zip(items, futures):
            exc = fut.exception()
            if exc is not None:
                raise exc
            results.append(fut.result())
        return results

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)
