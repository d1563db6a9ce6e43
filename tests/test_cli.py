# tests/test_cli.py
import pytest

from conftest import recipe_text, sha256_file
from dbuild import cli


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("DBUILD_ROOT", str(tmp_path / "ws"))
    for var in ("DBUILD_CONFIG", "DBUILD_NO_CHECK", "DBUILD_COLOR", "DBUILD_SPINNER"):
        monkeypatch.delenv(var, raising=False)
    root = tmp_path / "live"
    root.mkdir()
    return tmp_path, root


@pytest.fixture
def hello_recipe(workspace, make_tarball):
    tmp_path, _ = workspace
    repo = tmp_path / "ws" / "repo"
    arc = make_tarball("hello-1.0.tar.gz", {"Makefile": "all:\n"}, topdir="hello-1.0", dest=repo)

    def _make(check="echo checked"):
        install = 'mkdir -p "$DESTDIR/usr/bin" && echo hi > "$DESTDIR/usr/bin/hello"'
        text = recipe_text(name="hello", version="1.0", sources="hello-1.0.tar.gz", sums=sha256_file(arc),
                           stages={"build": "echo built", "check": check, "install": install})
        path = repo / "hello.recipe"
        path.write_text(text, encoding="utf-8")
        return path

    return _make


def run(root, *args):
    return cli.main(["--color", "never", "--no-spinner", "--root", str(root), *args])


def test_build_command(workspace, hello_recipe, capsys):
    tmp_path, root = workspace
    rc = run(root, "build", str(hello_recipe()))
    out = capsys.readouterr().out
    assert rc == 0
    assert "built hello-1.0" in out
    assert (tmp_path / "ws" / "build" / "hello-1.0" / "Makefile").exists()


def test_failing_check_exit_code(workspace, hello_recipe, capsys):
    _, root = workspace
    rc = run(root, "build", str(hello_recipe(check="exit 1")))
    assert rc == 7
    assert "check" in capsys.readouterr().out


def test_no_check_flag(workspace, hello_recipe):
    _, root = workspace
    path = hello_recipe(check="exit 1")
    assert cli.main(["--color", "never", "--no-spinner", "--no-check", "--root", str(root), "build", str(path)]) == 0


def test_unknown_recipe_exit_code(workspace, capsys):
    _, root = workspace
    assert run(root, "build", "does-not-exist") == 11
    assert "recipe not found" in capsys.readouterr().out


def test_install_list_info_remove_by_name(workspace, hello_recipe, capsys):
    tmp_path, root = workspace
    hello_recipe()
    assert run(root, "install", "--no-package", "hello") == 0
    assert (root / "usr" / "bin" / "hello").read_text() == "hi\n"

    capsys.readouterr()
    assert run(root, "list") == 0
    out = capsys.readouterr().out
    assert "hello" in out and "1.0-1" in out

    assert run(root, "info", "hello") == 0
    out = capsys.readouterr().out
    assert "version" in out and "1.0" in out

    assert run(root, "upgrade", "hello") == 0
    assert "not newer" in capsys.readouterr().out

    assert run(root, "remove", "hello") == 0
    assert not (root / "usr" / "bin" / "hello").exists()
    assert run(root, "info", "hello") == 1


def test_pack_only_leaves_live_root_empty(workspace, hello_recipe, capsys):
    tmp_path, root = workspace
    assert run(root, "install", "--pack-only", str(hello_recipe())) == 0
    assert list(root.iterdir()) == []
    assert (tmp_path / "ws" / "pkg" / "hello-1.0-1.tar.xz").exists()


def test_remove_unknown_package(workspace, capsys):
    _, root = workspace
    assert run(root, "remove", "ghost") == 9


def test_search(workspace, hello_recipe, capsys):
    _, root = workspace
    hello_recipe()
    assert run(root, "search", "HELLO") == 0
    assert "hello 1.0" in capsys.readouterr().out
    assert run(root, "search", "zzz-nothing") == 1


def test_sync_requires_git_checkout(workspace, capsys):
    _, root = workspace
    assert run(root, "sync") == 12


def test_no_command_prints_help(workspace, capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out
