import pytest

from slack_export_viewer.archive import ExportArchive
from slack_export_viewer.models import AssetRef, Channel, Message, parse_ts
from slack_export_viewer.parser import MessageBatcher, MessageStreamParser, collect_assets
from slack_export_viewer.plugins import PluginRegistry


def _message(ts: str) -> Message:
    return Message(workspace_id="w", channel_id="C1", ts=ts, type="message", text="")


def _channel(slack_id: str, name: str) -> Channel:
    return Channel(
        workspace_id="w",
        slack_id=slack_id,
        name=name,
        created=0,
        creator="",
        is_archived=False,
        is_general=False,
        members=[],
        topic={},
        purpose={},
    )


def test_batcher_cuts_full_batches_and_keeps_remainder():
    batcher = MessageBatcher(max_size=10)
    batcher.extend(_message(str(i)) for i in range(25))
    batches = batcher.finish()
    assert [len(b) for b in batches] == [10, 10, 5]


def test_batcher_emits_no_empty_trailing_batch():
    batcher = MessageBatcher(max_size=5)
    batcher.extend(_message(str(i)) for i in range(10))
    assert [len(b) for b in batcher.finish()] == [5, 5]
    assert MessageBatcher(max_size=5).finish() == []


def test_batcher_rejects_zero_size():
    with pytest.raises(ValueError):
        MessageBatcher(max_size=0)


def test_collect_assets_filters_by_mimetype():
    assets: dict[str, AssetRef] = {}
    collect_assets(
        [
            {"id": "F1", "url_private": "https://x/a.png", "mimetype": "image/png"},
            {"id": "F2", "url_private": "https://x/b.mp4", "mimetype": "video/mp4"},
            {"id": "F3", "url_private": "https://x/c.pdf", "mimetype": "application/pdf"},
            {"id": "F4", "url_private": "https://x/d.txt", "mimetype": "text/plain"},
            {"id": "F5", "url_private": "https://x/e.zip", "mimetype": "application/zip"},
            {"id": "F6", "mimetype": "image/png"},
            {"id": "", "url_private": "https://x/g.png", "mimetype": "image/png"},
            {"id": "F8", "url_private": "https://x/h.png", "mimetype": ""},
            "not-a-file",
        ],
        assets,
    )
    assert sorted(assets) == ["F1", "F2", "F3"]
    assert assets["F3"] == AssetRef(url="https://x/c.pdf", mimetype="application/pdf")


def test_collect_assets_deduplicates_by_id():
    assets: dict[str, AssetRef] = {}
    file = {"id": "F1", "url_private": "https://x/a.png", "mimetype": "image/png"}
    collect_assets([file], assets)
    collect_assets([file, dict(file)], assets)
    collect_assets(None, assets)
    assert list(assets) == ["F1"]


def test_parse_ts_orders_numerically():
    assert parse_ts("1700000000.000100") == (1700000000, 100)
    assert parse_ts("1700000000") == (1700000000, 0)
    assert parse_ts("garbage") == (0, 0)
    assert parse_ts(None) == (0, 0)
    assert parse_ts("99.000001") < parse_ts("100.000000")


@pytest.mark.asyncio
async def test_parser_resolves_channels_by_name_and_tags_origin_id(make_export):
    path = make_export(
        days={
            "general/2024-01-01.json": [
                {"type": "message", "user": "U1", "text": "a", "ts": "1.000001", "id": 99},
                {"type": "message", "user": "U1", "text": "b", "ts": "2.000001"},
            ],
            "random/2024-01-01.json": [{"type": "message", "text": "c", "ts": "3.000000"}],
            "unknown/2024-01-01.json": [{"type": "message", "text": "d", "ts": "4.000000"}],
        }
    )
    parser = MessageStreamParser("ws", [_channel("C1", "general"), _channel("C2", "random")])

    with ExportArchive.open(path) as archive:
        outcome = await parser.run(archive)

    messages = [m for batch in outcome.batches for m in batch]
    assert outcome.entries_parsed == 2
    assert outcome.skipped_entries == []
    assert sorted((m.channel_id, m.text) for m in messages) == [
        ("C1", "a"),
        ("C1", "b"),
        ("C2", "c"),
    ]
    assert all(m.workspace_id == "ws" for m in messages)
    assert all("id" not in m.data for m in messages)


@pytest.mark.asyncio
async def test_parser_skips_bad_entry_without_partial_contribution(make_export):
    path = make_export(
        days={"general/2024-01-01.json": [{"type": "message", "text": "ok", "ts": "1.0"}]},
        raw={"general/2024-01-02.json": '[{"type": "message", "text": "lost", "ts": "2.0"},'},
    )
    parser = MessageStreamParser("ws", [_channel("C1", "general")])

    with ExportArchive.open(path) as archive:
        outcome = await parser.run(archive)

    assert outcome.message_count == 1
    assert outcome.skipped_entries == ["general/2024-01-02.json"]


@pytest.mark.asyncio
async def test_parser_collects_assets_and_applies_message_hooks(make_export):
    path = make_export(
        days={
            "general/2024-01-01.json": [
                {
                    "type": "message",
                    "text": "pic",
                    "ts": "1.0",
                    "files": [
                        {"id": "F1", "url_private": "https://x/1.png", "mimetype": "image/png"}
                    ],
                },
                {"type": "message", "subtype": "channel_join", "text": "joined", "ts": "2.0"},
                "stray string",
            ]
        }
    )
    plugins = PluginRegistry()
    plugins.message_hooks.append(lambda m: None if m.get("subtype") == "channel_join" else m)
    parser = MessageStreamParser("ws", [_channel("C1", "general")], plugins=plugins)

    with ExportArchive.open(path) as archive:
        outcome = await parser.run(archive)

    assert [m.text for batch in outcome.batches for m in batch] == ["pic"]
    assert list(outcome.assets) == ["F1"]


def test_parse_ts_rejects_values_sqlite_cannot_hold():
    assert parse_ts("99999999999999999999.000100") == (0, 0)
    assert parse_ts("9" * 5000) == (0, 0)
    assert parse_ts("9223372036854775807.5") == (9223372036854775807, 500000)
    assert parse_ts("²") == (0, 0)
    assert parse_ts("1700000000.00０1") == (0, 0)
