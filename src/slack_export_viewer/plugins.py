from __future__ import annotations

import importlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

# A hook returns the (possibly rewritten) origin object, or None to drop it.
ImportHook = Callable[[dict[str, Any]], dict[str, Any] | None]


@dataclass
class PluginRegistry:
    """Hooks run on raw export objects before normalization."""

    user_hooks: list[ImportHook] = field(default_factory=list)
    channel_hooks: list[ImportHook] = field(default_factory=list)
    message_hooks: list[ImportHook] = field(default_factory=list)

    @staticmethod
    def _run(hooks: Iterable[ImportHook], payload: dict[str, Any]) -> dict[str, Any] | None:
        current: dict[str, Any] | None = payload
        for hook in hooks:
            if current is None:
                break
            current = hook(current)
        return current

    def on_user(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return self._run(self.user_hooks, payload)

    def on_channel(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return self._run(self.channel_hooks, payload)

    def on_message(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return self._run(self.message_hooks, payload)


def load_plugins(module_paths: Iterable[str]) -> PluginRegistry:
    registry = PluginRegistry()
    for path in module_paths:
        module = importlib.import_module(path)
        register = getattr(module, "register", None)
        if not callable(register):
            raise ValueError(f"Plugin {path} missing register(registry) function")
        register(registry)
    return registry
