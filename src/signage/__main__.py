"""Command line entry point: python -m signage <command>."""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime

from loguru import logger


def _parse_when(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signage", description="External media publish pipeline")
    parser.add_argument("--log-level", default="INFO", help="loguru level for stderr output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Classify an uploaded asset and normalize it if needed")
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("normalize", help="Retry normalization for a rejected or unnormalized asset")
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("diagnose", help="Show media diagnostics for an asset")
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("upload", help="Upload an asset's playable file to the device platform")
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("verify-media", help="Re-check an asset's external media, clearing it if gone")
    p.add_argument("asset_id", type=int)

    p = sub.add_parser("enqueue", help="Queue an asset for publishing")
    p.add_argument("asset_id", type=int)
    p.add_argument("--priority", type=int, default=0)
    p.add_argument("--at", type=_parse_when, help="ISO timestamp to schedule for")

    p = sub.add_parser("publish", help="Publish an advertiser's canonical media right now")
    p.add_argument("advertiser_id", type=int)
    p.add_argument("--player", type=int, action="append", dest="players", help="Restrict to player id (repeatable)")

    p = sub.add_parser("health", help="Playback health of a screen")
    p.add_argument("screen_id", type=int)

    p = sub.add_parser("repair", help="Self-heal a screen")
    p.add_argument("screen_id", type=int)

    p = sub.add_parser("seed", help="Make sure a playlist is not empty")
    p.add_argument("playlist_id", type=int)

    p = sub.add_parser("bind-layout", help="Bind a legacy layout's ads region to a playlist")
    p.add_argument("layout_id", type=int)
    p.add_argument("playlist_id", type=int)
    p.add_argument("--region", type=int, help="Region index (auto-detected if omitted)")

    sub.add_parser("queue-stats", help="Publish queue counters")

    p = sub.add_parser("queue-list", help="List publish queue items")
    p.add_argument("--status")
    p.add_argument("--advertiser", type=int)
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)

    p = sub.add_parser("queue-retry", help="Reset a FAILED or RETRYING item to PENDING")
    p.add_argument("item_id", type=int)

    p = sub.add_parser("queue-cancel", help="Delete a queue item that has not completed")
    p.add_argument("item_id", type=int)

    p = sub.add_parser("worker", help="Worker health, or run one cycle with --run")
    p.add_argument("--run", action="store_true", help="Process one cycle now")
    return parser


def dispatch(ops, args) -> dict:
    command = args.command
    if command == "validate":
        return ops.validate_asset(args.asset_id)
    if command == "normalize":
        return ops.retry_normalization(args.asset_id)
    if command == "diagnose":
        return ops.media_diagnostics(args.asset_id)
    if command == "upload":
        return ops.upload_asset(args.asset_id)
    if command == "verify-media":
        return ops.verify_asset_media(args.asset_id)
    if command == "enqueue":
        return ops.enqueue_for_publish(args.asset_id, priority=args.priority, scheduled_for=args.at)
    if command == "publish":
        return ops.trigger_immediate_publish(args.advertiser_id, args.players)
    if command == "health":
        return ops.get_playback_health(args.screen_id)
    if command == "repair":
        return ops.repair_screen(args.screen_id)
    if command == "seed":
        return ops.ensure_playlist_non_empty(args.playlist_id)
    if command == "bind-layout":
        return ops.bind_legacy_layout(args.layout_id, args.playlist_id, args.region)
    if command == "queue-stats":
        return ops.get_queue_stats()
    if command == "queue-list":
        return ops.list_queue_items(args.status, args.advertiser, args.limit, args.offset)
    if command == "queue-retry":
        return ops.retry_failed_queue_item(args.item_id)
    if command == "queue-cancel":
        return ops.cancel_queue_item(args.item_id)
    if command == "worker":
        return ops.process_queue_now() if args.run else ops.worker_health()
    raise ValueError(f"Unknown command {command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level)

    # Imported late so --help works without a database or settings
    from signage.operations import PipelineOperations

    try:
        ops = PipelineOperations()
    except RuntimeError as e:
        logger.error(str(e))
        return 2

    result = dispatch(ops, args)
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok", True) else 1


if __name__ == "__main__":
    raise SystemExit(main())
