# dbuild/modules/hooks.py

from typing import Any, Callable, Dict, List, Optional

from dbuild.modules.logging import get_logger

logger = get_logger("hooks")

# events emitted by the pipeline
EVENTS = ("fetch", "verify", "extract", "patch", "stage", "strip", "package", "materialize", "remove")


class HookManager:
    """Progress-reporting hooks: callbacks keyed by pipeline event."""

    def __init__(self):
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}

    # -----------------------------
    # Registration
    # -----------------------------
    def register(self, event: str, callback: Callable[[str, Dict[str, Any]], None],
                 name: Optional[str] = None, priority: int = 10):
        if event != "*" and event not in EVENTS:
            raise ValueError(f"unknown hook event: {event}")
        self.hooks.setdefault(event, []).append({
            "name": name or getattr(callback, "__name__", repr(callback)),
            "callback": callback,
            "priority": priority,
        })
        self.hooks[event].sort(key=lambda h: h["priority"])

    def unregister(self, event: str, name: str):
        if event in self.hooks:
            self.hooks[event] = [h for h in self.hooks[event] if h["name"] != name]

    # -----------------------------
    # Dispatch
    # -----------------------------
    def run(self, event: str, context: Optional[Dict[str, Any]] = None) -> None:
        context = context or {}
        for hook in self.hooks.get(event, []) + self.hooks.get("*", []):
            try:
                hook["callback"](event, context)
            except Exception:
                # progress reporting must never break the pipeline
                logger.exception("hook %s failed for event '%s'", hook["name"], event)
