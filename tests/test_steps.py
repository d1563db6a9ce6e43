# tests/test_steps.py
import dataclasses

import pytest

from dbuild.modules.errors import StageError
from dbuild.modules.hooks import HookManager
from dbuild.modules.logging import BuildLog
from dbuild.modules.recipe import parse
from dbuild.modules.steps import StepRunner


def _recipe(**stages):
    text = 'name="s"\nversion="1"\n'
    for stage, body in stages.items():
        text += f"{stage}<<SH\n{body}\nSH\n"
    return parse(text)


@pytest.fixture
def work(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


def test_stage_runs_in_work_dir_and_appends_to_log(settings, work, tmp_path):
    log = BuildLog(tmp_path / "s.log").reset()
    r = _recipe(configure="echo configure-ran; pwd", build="echo build-ran")
    runner = StepRunner(settings)
    assert runner.run_stage("configure", r, work, log) is True
    assert runner.run_stage("build", r, work, log) is True
    text = log.read_text()
    assert text.index("configure-ran") < text.index("build-ran")
    assert str(work) in text
    assert "stage configure" in text


def test_missing_stage_is_noop(settings, work, tmp_path):
    log = BuildLog(tmp_path / "s.log").reset()
    assert StepRunner(settings).run_stage("preconfig", _recipe(), work, log) is False
    assert log.read_text() == ""


def test_nonzero_exit_is_stage_error_with_log_path(settings, work, tmp_path):
    log = BuildLog(tmp_path / "s.log").reset()
    r = _recipe(check="echo checking; exit 3")
    with pytest.raises(StageError) as ei:
        StepRunner(settings).run_stage("check", r, work, log)
    assert ei.value.stage == "check"
    assert ei.value.returncode == 3
    assert str(log.path) in str(ei.value)
    assert "checking" in log.read_text()


def test_check_disabled_by_configuration(settings, work, tmp_path, dbuild_caplog):
    log = BuildLog(tmp_path / "s.log").reset()
    r = _recipe(check="exit 1")
    runner = StepRunner(dataclasses.replace(settings, no_check=True))
    assert runner.run_stage("check", r, work, log) is False
    assert "check skipped" in dbuild_caplog.text


def test_install_binds_destdir(settings, work, tmp_path):
    log = BuildLog(tmp_path / "s.log").reset()
    dest = tmp_path / "dest"
    dest.mkdir()
    r = _recipe(install='mkdir -p "$DESTDIR/usr/bin" && echo x > "$DESTDIR/usr/bin/tool"')
    StepRunner(settings).run_stage("install", r, work, log, destdir=dest)
    assert (dest / "usr" / "bin" / "tool").read_text() == "x\n"


def test_install_without_body_falls_back_to_make_install(settings, work, tmp_path):
    log = BuildLog(tmp_path / "s.log").reset()
    dest = tmp_path / "dest"
    runner = StepRunner(dataclasses.replace(settings, make="echo"))
    assert runner.run_stage("install", _recipe(), work, log, destdir=dest) is True
    assert f"install DESTDIR={dest}" in log.read_text()


def test_install_requires_destdir(settings, work, tmp_path):
    with pytest.raises(ValueError):
        StepRunner(settings).run_stage("install", _recipe(install="true"), work, BuildLog(tmp_path / "l"))


def test_stage_hook_fired(settings, work, tmp_path):
    seen = []
    hooks = HookManager()
    hooks.register("stage", lambda ev, ctx: seen.append(ctx["stage"]))
    StepRunner(settings, hooks=hooks).run_stage("build", _recipe(build="true"), work, BuildLog(tmp_path / "l"))
    assert seen == ["build"]


def test_failing_hook_is_not_fatal(settings, work, tmp_path):
    hooks = HookManager()

    def boom(ev, ctx):
        raise RuntimeError("progress display broke")

    hooks.register("*", boom)
    assert StepRunner(settings, hooks=hooks).run_stage("build", _recipe(build="true"), work,
                                                      BuildLog(tmp_path / "l")) is True
