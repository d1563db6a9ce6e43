# dbuild/modules/recipe.py
"""
recipe.py - recipe model and parser for dbuild

Recipe format (UTF-8 text):

    name="pkg"
    version="1.0"
    release="1"
    sources<<EOF
    https://example.org/pkg-1.0.tar.xz [sha256|skip]
    EOF
    sha256sums<<EOF
    <one line per source, positional>
    EOF
    patches<<EOF
    https://example.org/fix.patch [sha256]
    vcs+https://example.org/repo.git@<ref>:path/to/fix.diff [sha256]
    EOF
    configure<<SH
    ./configure --prefix=/usr
    SH

Features:
- Single-line key="value" assignments; unknown keys kept in Recipe.extra
- Heredoc-style blocks label<<TAG ... TAG for sources/sha256sums/patches and every stage
- Sources and their checksums are paired at parse time (no later index alignment)
- Patch specs parsed into http | vcs | local kinds, order preserved
- serialize() renders a Recipe back to text
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from dbuild.modules.errors import ParseError
from dbuild.modules.logging import get_logger

logger = get_logger("recipe")

# lifecycle stages, in pipeline order
STAGES = ("preconfig", "configure", "build", "check", "preinstall", "install", "postinstall", "postremove")
BUILD_STAGES = ("preconfig", "configure", "build", "check")

LIST_BLOCKS = ("sources", "sha256sums", "patches")
SKIP = "skip"

_ASSIGN_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_BLOCK_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*<<\s*(['\"]?)([A-Za-z_][A-Za-z0-9_]*)\2\s*$")
_HEX64_RE = re.compile(r"^[0-9A-Fa-f]{64}$")
_REMOTE_SCHEMES = ("http", "https", "ftp")


# -------------------------
# helpers
# -------------------------
def normalize_checksum(value: Optional[str], line: Optional[int] = None) -> Optional[str]:
    """Strip an optional 'SHA256:' prefix; keep 'skip'; reject anything that is not 64 hex chars."""
    if value is None:
        return None
    v = value.strip()
    if not v:
        return None
    if v.lower().startswith("sha256:"):
        v = v[len("sha256:"):]
    if v.lower() == SKIP:
        return SKIP
    if not _HEX64_RE.match(v):
        raise ParseError(f"invalid sha256 checksum: {value!r}", line=line)
    return v


def _unquote(value: str) -> str:
    v = value.strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        return v[1:-1]
    return v


def _list_entries(lines: List[Tuple[int, str]]) -> List[Tuple[int, str]]:
    out = []
    for lineno, raw in lines:
        s = raw.strip()
        if not s or s.startswith("#"):
            continue
        out.append((lineno, s))
    return out


def _is_remote(url: str) -> bool:
    return urlparse(url).scheme.lower() in _REMOTE_SCHEMES


# -------------------------
# model
# -------------------------
@dataclass
class Source:
    url: str
    checksum: Optional[str] = None   # hex, SKIP, or None (not supplied)

    @property
    def cache_file_name(self) -> str:
        path = urlparse(self.url).path if _is_remote(self.url) else self.url
        return path.rstrip("/").rsplit("/", 1)[-1]

    @property
    def is_remote(self) -> bool:
        return _is_remote(self.url)


@dataclass
class PatchSpec:
    kind: str                        # "http" | "vcs" | "local"
    checksum: Optional[str] = None
    url: Optional[str] = None        # http
    repo_url: Optional[str] = None   # vcs
    ref: Optional[str] = None        # vcs, "" means HEAD
    path: Optional[str] = None       # vcs path inside the repo, or local file path
    raw: str = ""

    @property
    def file_name(self) -> str:
        if self.kind == "http":
            return urlparse(self.url or "").path.rstrip("/").rsplit("/", 1)[-1]
        return (self.path or "").rstrip("/").rsplit("/", 1)[-1]

    def to_line(self) -> str:
        return f"{self.raw} {self.checksum}" if self.checksum else self.raw


def parse_patch_spec(token: str, checksum: Optional[str] = None, line: Optional[int] = None) -> PatchSpec:
    """
    Forms:
      https://host/fix.patch
      vcs+REPO@REF:PATH   (legacy prefix git+ accepted)
      file:///abs/fix.patch | relative/or/absolute/path.patch
    """
    if token.startswith(("vcs+", "git+")):
        rest = token[4:]
        at = rest.rfind("@")
        colon = rest.find(":", at + 1) if at >= 0 else -1
        if at <= 0 or colon < 0:
            raise ParseError(f"vcs patch must look like vcs+REPO@REF:PATH: {token}", line=line)
        repo, ref, path = rest[:at], rest[at + 1:colon], rest[colon + 1:]
        if not path:
            raise ParseError(f"vcs patch has no path: {token}", line=line)
        return PatchSpec(kind="vcs", checksum=checksum, repo_url=repo, ref=ref, path=path, raw=token)
    if _is_remote(token):
        return PatchSpec(kind="http", checksum=checksum, url=token, raw=token)
    path = token[len("file://"):] if token.startswith("file://") else token
    return PatchSpec(kind="local", checksum=checksum, path=path, raw=token)


@dataclass
class Recipe:
    name: str
    version: str
    release: str = "1"
    sources: List[Source] = field(default_factory=list)
    patches: List[PatchSpec] = field(default_factory=list)
    steps: Dict[str, str] = field(default_factory=dict)
    srcdir: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)
    path: Optional[Path] = None

    @property
    def pkgname(self) -> str:
        return f"{self.name}-{self.version}"

    def step(self, stage: str) -> Optional[str]:
        """Stage body, or None when the recipe has none (blank bodies count as none)."""
        if stage not in STAGES:
            raise ValueError(f"unknown stage: {stage}")
        body = self.steps.get(stage)
        if body is None or not body.strip():
            return None
        return body

    @property
    def base_dir(self) -> Optional[Path]:
        return self.path.parent if self.path else None


# -------------------------
# parser
# -------------------------
def _split_lines(text: str) -> List[str]:
    """Split on "\\n" only (dropping one trailing "\\r"); other separators stay in the line."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [l[:-1] if l.endswith("\r") else l for l in lines]


def parse(text: str, path: Optional[Union[str, Path]] = None) -> Recipe:
    """Parse recipe text. Missing name/version, malformed blocks raise ParseError."""
    where = str(path) if path else None
    lines = _split_lines(text)
    fields: Dict[str, str] = {}
    blocks: Dict[str, List[Tuple[int, str]]] = {}
    block_lines: Dict[str, int] = {}

    i = 0
    while i < len(lines):
        lineno = i + 1
        line = lines[i]
        stripped = line.strip()
        i += 1
        if not stripped or stripped.startswith("#"):
            continue
        m = _BLOCK_RE.match(stripped)
        if m:
            label, tag = m.group(1), m.group(3)
            if label not in LIST_BLOCKS and label not in STAGES:
                raise ParseError(f"unknown block '{label}'", path=where, line=lineno)
            if label in blocks:
                raise ParseError(f"duplicate block '{label}'", path=where, line=lineno)
            body: List[Tuple[int, str]] = []
            while i < len(lines) and lines[i] != tag:
                body.append((i + 1, lines[i]))
                i += 1
            if i >= len(lines):
                raise ParseError(f"block '{label}' not terminated by '{tag}'", path=where, line=lineno)
            i += 1  # terminator
            blocks[label] = body
            block_lines[label] = lineno
            continue
        m = _ASSIGN_RE.match(stripped)
        if m:
            fields[m.group(1)] = _unquote(m.group(2))
            continue
        logger.warning("%s:%d: ignoring unrecognized line: %s", where or "<recipe>", lineno, stripped)

    name = fields.pop("name", "").strip()
    version = fields.pop("version", "").strip()
    if not name:
        raise ParseError("recipe has no name", path=where)
    if not version:
        raise ParseError("recipe has no version", path=where)
    release = fields.pop("release", "").strip() or "1"
    srcdir = fields.pop("srcdir", "").strip() or None

    try:
        sources = _pair_sources(blocks.get("sources", []), blocks.get("sha256sums", []))
        patches = [
            parse_patch_spec(tokens[0], normalize_checksum(tokens[1], lineno) if len(tokens) > 1 else None, lineno)
            for lineno, tokens in ((n, s.split()) for n, s in _list_entries(blocks.get("patches", [])))
        ]
    except ParseError as e:
        if where and not e.path:
            raise ParseError(e.message, path=where, line=e.line) from e
        raise

    steps: Dict[str, str] = {}
    for stage in STAGES:
        if stage in blocks:
            body_text = "\n".join(l for _, l in blocks[stage])
            steps[stage] = body_text.rstrip("\n") + "\n" if body_text.strip() else ""

    return Recipe(
        name=name,
        version=version,
        release=release,
        sources=sources,
        patches=patches,
        steps=steps,
        srcdir=srcdir,
        extra=fields,
        path=Path(path) if path else None,
    )


def _pair_sources(src_lines: List[Tuple[int, str]], sum_lines: List[Tuple[int, str]]) -> List[Source]:
    entries = _list_entries(src_lines)
    sums = _list_entries(sum_lines)
    if len(sums) > len(entries):
        logger.warning("sha256sums has %d entries but only %d sources; extra ignored", len(sums), len(entries))
    out: List[Source] = []
    for idx, (lineno, s) in enumerate(entries):
        tokens = s.split()
        inline = normalize_checksum(tokens[1], lineno) if len(tokens) > 1 else None
        positional = normalize_checksum(sums[idx][1], sums[idx][0]) if idx < len(sums) else None
        out.append(Source(url=tokens[0], checksum=inline if inline is not None else positional))
    return out


def load_recipe(path: Union[str, Path]) -> Recipe:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read recipe: {e}", path=str(p)) from e
    return parse(text, path=p)


# -------------------------
# serializer
# -------------------------
def _terminator(body: str, base: str) -> str:
    taken = set(_split_lines(body))
    tag, n = base, 0
    while tag in taken:
        n += 1
        tag = f"{base}_{n}"
    return tag


def serialize(recipe: Recipe) -> str:
    out: List[str] = [
        f'name="{recipe.name}"',
        f'version="{recipe.version}"',
        f'release="{recipe.release}"',
    ]
    if recipe.srcdir:
        out.append(f'srcdir="{recipe.srcdir}"')
    for k, v in recipe.extra.items():
        out.append(f'{k}="{v}"')
    if recipe.sources:
        body = "\n".join(f"{s.url} {s.checksum}" if s.checksum else s.url for s in recipe.sources)
        tag = _terminator(body, "EOF")
        out += [f"sources<<{tag}", body, tag]
    if recipe.patches:
        body = "\n".join(p.to_line() for p in recipe.patches)
        tag = _terminator(body, "EOF")
        out += [f"patches<<{tag}", body, tag]
    for stage in STAGES:
        if stage in recipe.steps:
            body = recipe.steps[stage].rstrip("\n")
            tag = _terminator(body, "SH")
            out.append(f"{stage}<<{tag}")
            if body:
                out.append(body)
            out.append(tag)
    return "\n".join(out) + "\n"
