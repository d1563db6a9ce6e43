# tests/test_pkgtool.py
import os
import tarfile
import threading

import pytest

from conftest import recipe_text, sha256_file, tree
from dbuild.modules.buildsystem import BuildSystem
from dbuild.modules.db import PackageDB
from dbuild.modules.errors import InstallError, LockError, StageError
from dbuild.modules.fakeroot import FakerootArchiver
from dbuild.modules.pkgtool import (
    BinutilsStripper,
    InstallManager,
    InstallOptions,
    compute_manifest,
    materialize,
)
from dbuild.modules.recipe import load_recipe

INSTALL = """\
mkdir -p "$DESTDIR/usr/bin" "$DESTDIR/usr/share/doc/hello"
printf '#!/bin/sh\\necho hello\\n' > "$DESTDIR/usr/bin/hello"
chmod 755 "$DESTDIR/usr/bin/hello"
echo docs > "$DESTDIR/usr/share/doc/hello/README"
ln -s hello "$DESTDIR/usr/bin/hi"
"""


@pytest.fixture
def hello(make_tarball, write_recipe, tmp_path):
    def _make(version="1.0", stages=None):
        recipes = tmp_path / "recipes"
        arc = make_tarball(f"hello-{version}.tar.gz", {"Makefile": "all:\n"}, topdir=f"hello-{version}",
                           dest=recipes)
        st = {"build": "echo building", "install": INSTALL}
        st.update(stages or {})
        text = recipe_text(name="hello", version=version, sources=f"hello-{version}.tar.gz",
                           sums=sha256_file(arc), stages=st)
        return load_recipe(write_recipe(text, name=f"hello-{version}.recipe"))

    return _make


def test_compute_manifest_is_deepest_first(tmp_path):
    (tmp_path / "usr" / "bin").mkdir(parents=True)
    (tmp_path / "usr" / "bin" / "foo").write_text("x")
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "foo.conf").write_text("x")
    m = compute_manifest(tmp_path)
    assert m == ["usr/bin/foo", "etc/foo.conf", "usr/bin", "etc", "usr"]
    for i, path in enumerate(m):
        # every directory comes after everything below it
        assert not any(other.startswith(path + "/") for other in m[i + 1:])


def test_install_copies_into_live_root(settings, hello):
    record = InstallManager(settings).install(hello())
    root = settings.root
    assert (root / "usr" / "bin" / "hello").read_text().startswith("#!/bin/sh")
    assert os.access(root / "usr" / "bin" / "hello", os.X_OK)
    assert os.readlink(root / "usr" / "bin" / "hi") == "hello"
    assert record.version == "1.0"
    assert record.package_file == settings.pkg_dir / "hello-1.0-1.tar.xz"


def test_install_persists_manifest_meta_and_snapshot(settings, hello):
    recipe = hello()
    InstallManager(settings).install(recipe)
    db = PackageDB(settings.db_dir)
    manifest = db.read_manifest("hello")
    assert manifest[0].count("/") >= manifest[-1].count("/")
    assert "usr/share/doc/hello/README" in manifest
    assert manifest[-1] == "usr"
    meta = (settings.db_dir / "hello.meta").read_text()
    assert "name=hello\n" in meta
    assert "version=1.0\n" in meta
    assert "release=1\n" in meta
    assert f"pkgfile={settings.pkg_dir / 'hello-1.0-1.tar.xz'}\n" in meta
    assert f"recipe={settings.db_dir / 'hello.recipe'}\n" in meta
    assert (settings.db_dir / "hello.recipe").read_text() == recipe.path.read_text()


def test_package_archive_is_ownership_neutral(settings, hello):
    InstallManager(settings).install(hello(), InstallOptions(pack_only=True))
    with tarfile.open(settings.pkg_dir / "hello-1.0-1.tar.xz") as tar:
        members = tar.getmembers()
    assert members
    assert {(m.uid, m.gid, m.uname, m.gname) for m in members} == {(0, 0, "root", "root")}
    names = [m.name for m in members]
    assert "usr/bin/hello" in names
    assert names.index("usr") < names.index("usr/bin") < names.index("usr/bin/hello")


def test_pack_only_never_touches_live_root(settings, hello, tmp_path):
    before = tree(settings.root)
    stages = {"postinstall": "touch postinstall-ran"}
    record = InstallManager(settings).install(hello(stages=stages), InstallOptions(pack_only=True))
    assert tree(settings.root) == before == []
    assert record.package_file.exists()
    assert (settings.db_dir / "hello.manifest").exists()
    # everything written lives under the workspace
    outside = [p for p in tree(tmp_path) if not p.startswith(("ws", "recipes", "archives", "root"))]
    assert outside == []


def test_no_package_skips_archive(settings, hello):
    record = InstallManager(settings).install(hello(), InstallOptions(no_package=True))
    assert record.package_file is None
    assert list(settings.pkg_dir.iterdir()) == []
    assert (settings.root / "usr" / "bin" / "hello").exists()


def test_postinstall_runs_in_live_root(settings, hello):
    InstallManager(settings).install(hello(stages={"postinstall": "touch postinstall-ran"}))
    assert (settings.root / "postinstall-ran").exists()


def test_failing_install_stage_leaves_root_and_db_alone(settings, hello):
    with pytest.raises(StageError) as ei:
        InstallManager(settings).install(hello(stages={"install": "exit 2"}))
    assert ei.value.stage == "install"
    assert tree(settings.root) == []
    assert not (settings.db_dir / "hello.meta").exists()


def test_staging_is_fresh_for_each_install(settings, hello):
    recipe = hello(stages={"install": 'ls "$DESTDIR" > "$DESTDIR/../listing-$$"; touch "$DESTDIR/marker"'})
    im = InstallManager(settings)
    im.install(recipe)
    im.install(recipe)
    listings = sorted(settings.build_dir.glob("listing-*"))
    assert len(listings) == 2
    assert all(p.read_text() == "" for p in listings)
    assert len(list(settings.build_dir.glob("hello-1.0-destdir-*"))) == 1


def test_install_reuses_satisfied_build(settings, hello):
    recipe = hello(stages={"build": "echo b >> ../builds"})
    bs = BuildSystem(settings)
    bs.build(recipe)
    InstallManager(settings, buildsystem=bs).install(recipe)
    assert (settings.build_dir / "builds").read_text() == "b\n"


def test_install_log_has_build_and_install_output(settings, hello):
    im = InstallManager(settings)
    recipe = hello(stages={"preinstall": "echo PRE", "postinstall": "echo POST"})
    im.install(recipe)
    log = im.buildsystem.log_path(recipe).read_text()
    assert log.index("building") < log.index("PRE") < log.index("POST")


def test_strip_without_tools_only_warns(settings, hello, dbuild_caplog):
    stripper = BinutilsStripper(strip_tool="no-such-strip-tool", file_tool="no-such-file-tool")
    im = InstallManager(settings, stripper=stripper)
    im.install(hello(), InstallOptions(strip=True, no_package=True))
    assert "strip requested but" in dbuild_caplog.text
    assert (settings.root / "usr" / "bin" / "hello").exists()


def test_lock_contention_is_lock_error(settings, hello):
    db = PackageDB(settings.db_dir)
    im = InstallManager(settings, db=db)
    recipe = hello()
    errors = []

    with db.lock("hello"):
        def other():
            try:
                im.install(recipe)
            except LockError as e:
                errors.append(e)

        t = threading.Thread(target=other)
        t.start()
        t.join()
    assert len(errors) == 1
    assert tree(settings.root) == []


@pytest.mark.parametrize("compression", ["gz", "zst"])
def test_archives_are_reproducible(tmp_path, compression):
    staging = tmp_path / "staging"
    (staging / "usr" / "lib").mkdir(parents=True)
    (staging / "usr" / "lib" / "libx.so").write_bytes(b"\x7fELF")
    (staging / "usr" / "README").write_text("r")
    arch = FakerootArchiver(compression)
    a = arch.pack(staging, tmp_path / f"a.tar.{compression}")
    b = arch.pack(staging, tmp_path / f"b.tar.{compression}")
    assert a.read_bytes() == b.read_bytes()


def test_archiver_rejects_unknown_compression():
    with pytest.raises(ValueError):
        FakerootArchiver("lz4")


def test_archiver_missing_staging_is_install_error(tmp_path):
    with pytest.raises(InstallError):
        FakerootArchiver("gz").pack(tmp_path / "missing", tmp_path / "out.tar.gz")


def test_materialize_replaces_existing_files(tmp_path):
    staging = tmp_path / "staging"
    (staging / "etc").mkdir(parents=True)
    (staging / "etc" / "app.conf").write_text("new")
    root = tmp_path / "root"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "app.conf").write_text("old")
    (root / "etc" / "other.conf").write_text("keep")
    assert materialize(staging, root) == 2
    assert (root / "etc" / "app.conf").read_text() == "new"
    assert (root / "etc" / "other.conf").read_text() == "keep"
