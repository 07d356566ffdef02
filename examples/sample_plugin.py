from __future__ import annotations

from slack_export_viewer.plugins import PluginRegistry


def register(registry: PluginRegistry) -> None:
    def drop_join_messages(message: dict) -> dict | None:
        if message.get("subtype") in {"channel_join", "channel_leave"}:
            return None
        return message

    def strip_emails(user: dict) -> dict:
        profile = user.get("profile")
        if isinstance(profile, dict):
            profile.pop("email", None)
        return user

    registry.message_hooks.append(drop_join_messages)
    registry.user_hooks.append(strip_emails)
