# tests/test_config.py
import json
from pathlib import Path

import pytest

from dbuild.modules import config


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


def test_defaults_without_any_file(tmp_path):
    cfg = config.load(env={})
    assert cfg.path is None
    s = config.Settings.from_config(cfg)
    assert s.sources_dir == tmp_path / "src"
    assert s.db_dir == tmp_path / "db"
    assert s.root == Path("/")
    assert s.compression == "xz"
    assert s.no_check is False
    assert s.retries == 3


def test_yaml_file_is_merged_over_defaults(tmp_path):
    (tmp_path / "dbuild.yaml").write_text(
        "paths:\n  base: /srv/dbuild\n  logs: /var/log/dbuild\nbuild:\n  no_check: true\n"
        "package:\n  compression: zst\n",
        encoding="utf-8",
    )
    cfg = config.load(env={})
    s = config.Settings.from_config(cfg)
    assert cfg.path == tmp_path / "dbuild.yaml"
    assert s.build_dir == Path("/srv/dbuild/build")
    assert s.log_dir == Path("/var/log/dbuild")
    assert s.no_check is True
    assert s.compression == "zst"
    assert cfg.get("fetch.parallel") == 4


def test_json_config_via_explicit_path(tmp_path):
    p = tmp_path / "conf.json"
    p.write_text(json.dumps({"fetch": {"retries": "5"}}), encoding="utf-8")
    cfg = config.load(str(p), env={})
    assert cfg.get("fetch.retries") == 5


def test_explicit_missing_path_is_error(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        config.load(str(tmp_path / "missing.yaml"), env={})


def test_environment_overrides(tmp_path):
    env = {
        "DBUILD_ROOT": str(tmp_path / "ws"),
        "DBUILD_NO_CHECK": "yes",
        "DBUILD_CACHE_SOURCES": "/cache/src",
        "DBUILD_DB_DIR": "state/db",
    }
    s = config.Settings.from_config(config.load(env=env))
    assert s.no_check is True
    assert s.sources_dir == Path("/cache/src")
    assert s.db_dir == tmp_path / "ws" / "state" / "db"
    assert s.pkg_dir == tmp_path / "ws" / "pkg"


def test_validation_issues_raise_when_fatal(tmp_path):
    (tmp_path / "dbuild.yaml").write_text("package:\n  compression: lz4\n", encoding="utf-8")
    with pytest.raises(ValueError, match="compression"):
        config.load(env={}, fatal=True)
    cfg = config.load(env={})
    assert cfg.get("package.compression") == "lz4"


def test_for_workspace_layout(tmp_path):
    s = config.Settings.for_workspace(tmp_path, root=tmp_path / "r", parallel=1)
    assert s.patches_dir == tmp_path / "patches"
    assert s.repo_dir == tmp_path / "repo"
    assert s.root == tmp_path / "r"
    assert s.parallel == 1
    s.ensure_dirs()
    assert all((tmp_path / d).is_dir() for d in ("src", "patches", "build", "logs", "db", "repo", "pkg"))
