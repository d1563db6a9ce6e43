# tests/test_hooks.py
import pytest

from dbuild.modules.hooks import HookManager


def test_callbacks_run_by_priority_then_wildcard():
    hooks = HookManager()
    seen = []
    hooks.register("*", lambda ev, ctx: seen.append(("any", ev)), name="any", priority=1)
    hooks.register("fetch", lambda ev, ctx: seen.append(("late", ctx["url"])), name="late", priority=50)
    hooks.register("fetch", lambda ev, ctx: seen.append(("early", ctx["url"])), name="early", priority=5)
    hooks.run("fetch", {"url": "u"})
    assert seen == [("early", "u"), ("late", "u"), ("any", "fetch")]


def test_unregister_by_name():
    hooks = HookManager()
    seen = []
    hooks.register("stage", lambda ev, ctx: seen.append("a"), name="a")
    hooks.register("stage", lambda ev, ctx: seen.append("b"), name="b")
    hooks.unregister("stage", "a")
    hooks.unregister("remove", "nothing-registered")
    hooks.run("stage")
    assert seen == ["b"]


def test_failing_callback_is_logged(dbuild_caplog):
    hooks = HookManager()

    def broken(ev, ctx):
        raise RuntimeError("display gone")

    hooks.register("package", broken)
    hooks.run("package", {})
    assert "hook broken failed for event 'package'" in dbuild_caplog.text


def test_unknown_event_rejected():
    with pytest.raises(ValueError, match="unknown hook event"):
        HookManager().register("deploy", lambda ev, ctx: None)
