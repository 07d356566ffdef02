from __future__ import annotations

import hashlib
import json
import random
import zipfile
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from faker import Faker

from .archive import CHANNELS_FILE, USERS_FILE


@dataclass
class SampleArchiveConfig:
    workspace_name: str
    users: int
    channels: int
    messages: int
    files: int
    seed: int
    days: int = 30
    wrap_folder: str | None = None


_FILE_KINDS = [
    ("image/png", "png"),
    ("image/jpeg", "jpg"),
    ("video/mp4", "mp4"),
    ("application/pdf", "pdf"),
    ("text/plain", "txt"),
    ("application/zip", "zip"),
]


def _slack_id(prefix: str, seed: int, value: str) -> str:
    digest = hashlib.sha1(f"{seed}:{value}".encode()).hexdigest()[:10].upper()
    return f"{prefix}{digest}"


def _base_ts(seed: int) -> int:
    return 1_700_000_000 + (seed % 10_000) * 100


def _slug(text: str) -> str:
    return "".join(c for c in text.lower().replace(" ", "-") if c.isalnum() or c == "-")


def generate_users(config: SampleArchiveConfig, rng: random.Random, faker: Faker) -> list[dict]:
    users: list[dict[str, Any]] = []
    for idx in range(config.users):
        real_name = faker.name()
        user_id = _slack_id("U", config.seed, f"user:{idx}")
        users.append(
            {
                "id": user_id,
                "name": f"{_slug(real_name)}{idx}",
                "real_name": real_name,
                "profile": {
                    "real_name": real_name,
                    "display_name": real_name.split(" ")[0],
                    "title": faker.job(),
                    "image_48": f"https://avatars.example.com/{user_id}_48.png",
                    "image_192": f"https://avatars.example.com/{user_id}_192.png",
                },
                "is_admin": idx == 0,
                "is_owner": idx == 0,
                "is_bot": rng.random() < 0.02,
                "deleted": rng.random() < 0.05,
            }
        )
    return users


def generate_channels(
    config: SampleArchiveConfig, user_ids: list[str], rng: random.Random, faker: Faker
) -> list[dict]:
    created = _base_ts(config.seed) - config.days * 86_400
    channels: list[dict[str, Any]] = []
    for idx in range(config.channels):
        name = "general" if idx == 0 else f"{faker.word().replace('_', '-')}-{idx}"
        members = rng.sample(user_ids, k=rng.randint(1, len(user_ids))) if user_ids else []
        creator = members[0] if members else ""
        topic = faker.sentence(nb_words=6)
        channels.append(
            {
                "id": _slack_id("C", config.seed, f"channel:{idx}"),
                "name": name,
                "created": created,
                "creator": creator,
                "is_archived": idx > 0 and rng.random() < 0.1,
                "is_general": idx == 0,
                "members": members,
                "topic": {"value": topic, "creator": creator, "last_set": created},
                "purpose": {"value": topic, "creator": creator, "last_set": created},
            }
        )
    return channels


def generate_message_days(
    config: SampleArchiveConfig,
    user_ids: list[str],
    channel_names: list[str],
    rng: random.Random,
    faker: Faker,
) -> dict[str, dict[str, list[dict]]]:
    """Messages grouped as ``{channel_name: {YYYY-MM-DD: [message, ...]}}``."""
    days: dict[str, dict[str, list[dict[str, Any]]]] = defaultdict(lambda: defaultdict(list))
    if not user_ids or not channel_names:
        return {}
    base_ts = _base_ts(config.seed)
    file_slots = set(rng.sample(range(config.messages), k=min(config.files, config.messages)))
    for idx in range(config.messages):
        seconds = base_ts - rng.randint(0, config.days * 86_400)
        message: dict[str, Any] = {
            "type": "message",
            "user": rng.choice(user_ids),
            "text": faker.sentence(nb_words=rng.randint(4, 20)),
            "ts": f"{seconds}.{rng.randint(0, 999_999):06d}",
        }
        if idx in file_slots:
            mimetype, ext = rng.choice(_FILE_KINDS)
            file_id = _slack_id("F", config.seed, f"file:{idx}")
            message["files"] = [
                {
                    "id": file_id,
                    "name": f"{faker.word()}.{ext}",
                    "mimetype": mimetype,
                    "url_private": f"https://files.slack.com/files-pri/T0-{file_id}/file.{ext}",
                }
            ]
        if rng.random() < 0.1:
            message["reactions"] = [
                {"name": "thumbsup", "count": 1, "users": [rng.choice(user_ids)]}
            ]
        day = datetime.fromtimestamp(seconds, tz=UTC).strftime("%Y-%m-%d")
        days[rng.choice(channel_names)][day].append(message)
    for channel_days in days.values():
        for messages in channel_days.values():
            messages.sort(key=lambda m: m["ts"])
    return days


def write_sample_archive(path: str | Path, config: SampleArchiveConfig) -> dict[str, int]:
    """Write a Slack export-style zip and return what it contains."""
    rng = random.Random(config.seed)
    faker = Faker()
    faker.seed_instance(config.seed)

    users = generate_users(config, rng, faker)
    user_ids = [str(u["id"]) for u in users]
    channels = generate_channels(config, user_ids, rng, faker)
    days = generate_message_days(config, user_ids, [str(c["name"]) for c in channels], rng, faker)

    prefix = f"{config.wrap_folder.strip('/')}/" if config.wrap_folder else ""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    day_files = 0
    with zipfile.ZipFile(out, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(prefix + USERS_FILE, json.dumps(users, indent=2))
        archive.writestr(prefix + CHANNELS_FILE, json.dumps(channels, indent=2))
        for channel_name in sorted(days):
            for day in sorted(days[channel_name]):
                archive.writestr(
                    f"{prefix}{channel_name}/{day}.json",
                    json.dumps(days[channel_name][day], indent=2),
                )
                day_files += 1

    return {
        "users": len(users),
        "channels": len(channels),
        "messages": config.messages if users and channels else 0,
        "day_files": day_files,
    }
