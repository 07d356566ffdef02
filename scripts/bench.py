#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import platform
import sys
import time
from pathlib import Path

from slack_export_viewer.fetcher import AssetFetchConfig
from slack_export_viewer.generator import SampleArchiveConfig, write_sample_archive
from slack_export_viewer.importer import import_archive
from slack_export_viewer.parser import MAX_BATCH_SIZE
from slack_export_viewer.storage import SQLiteStore


def _profiles() -> dict[str, dict[str, int]]:
    return {
        "quick": {"users": 200, "channels": 20, "messages": 5_000, "days": 30},
        "default": {"users": 2_000, "channels": 80, "messages": 60_000, "days": 180},
        "enterprise": {"users": 2_500, "channels": 300, "messages": 180_000, "days": 365},
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Benchmark Slack export archive import.")
    parser.add_argument("--out", default="./bench_out", help="Output directory")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--profile",
        choices=sorted(_profiles().keys()),
        default="quick",
        help="Benchmark profile preset",
    )
    parser.add_argument("--users", type=int, default=None)
    parser.add_argument("--channels", type=int, default=None)
    parser.add_argument("--messages", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=MAX_BATCH_SIZE)
    parser.add_argument("--report", default=None, help="Write report JSON to this path")
    args = parser.parse_args(argv)

    preset = _profiles()[args.profile]
    config = SampleArchiveConfig(
        workspace_name="Bench Workspace",
        users=int(args.users if args.users is not None else preset["users"]),
        channels=int(args.channels if args.channels is not None else preset["channels"]),
        messages=int(args.messages if args.messages is not None else preset["messages"]),
        # No attachments: the benchmark measures parsing and bulk writes only.
        files=0,
        seed=int(args.seed),
        days=preset["days"],
    )

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    archive_path = out_dir / "export.zip"
    db_path = out_dir / "viewer.db"
    if db_path.exists():
        db_path.unlink()
    report_path = Path(args.report) if args.report else (out_dir / "report.json")

    t0 = time.perf_counter()
    contents = write_sample_archive(archive_path, config)
    write_seconds = time.perf_counter() - t0

    t1 = time.perf_counter()
    store = SQLiteStore(str(db_path))
    try:
        result = asyncio.run(
            import_archive(
                store,
                archive_path,
                fetch_config=AssetFetchConfig(enabled=False),
                batch_size=int(args.batch_size),
            )
        )
    finally:
        store.close()
    import_seconds = time.perf_counter() - t1

    report = {
        "ok": result.messages == contents["messages"],
        "profile": args.profile,
        "archive": contents,
        "import": result.to_dict(),
        "timings_seconds": {"write_archive": write_seconds, "import": import_seconds},
        "messages_per_second": result.messages / import_seconds if import_seconds else None,
        "sizes_bytes": {
            "archive": archive_path.stat().st_size,
            "db": db_path.stat().st_size if db_path.exists() else None,
        },
        "env": {
            "python": sys.version.split()[0],
            "platform": platform.platform(),
        },
    }
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    print(report_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
