#!/usr/bin/env python3
"""
Control panel: main entry point.

Usage:
  python run.py --check-config                     # check configuration
  python run.py --web [--host 0.0.0.0 --port 8000] # start the API
  python run.py --preview chat.txt                 # transcript metrics, no AI call
  python run.py --generate <broadcast_id> chat.txt # generate and store a summary
  python run.py --show <broadcast_id>              # print a stored summary
  python run.py --delete <broadcast_id>            # delete a stored summary
  python run.py --list-broadcasts                  # recent own broadcasts
  python run.py --start-broadcast                  # record a broadcast starting now
  python run.py --end-broadcast <broadcast_id>     # end it
  python run.py --set-friend <username> 1          # friend tier (none clears)
  python run.py --record-viewers <username> 42     # viewer snapshot
"""
import argparse
import json
import sys
from pathlib import Path


def _bootstrap():
    """Check the Python version."""
    if sys.version_info < (3, 11):
        print(f"Error: Python 3.11+ is required, found {sys.version}")
        sys.exit(1)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python run.py",
        description="Control panel: broadcast tracking and AI stream summaries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--check-config",
        action="store_true",
        help="Check the configuration and exit",
    )
    group.add_argument(
        "--web",
        action="store_true",
        help="Start the web API",
    )
    group.add_argument(
        "--preview",
        metavar="FILE",
        help="Parse a transcript and print the collected metrics as JSON",
    )
    group.add_argument(
        "--generate",
        nargs=2,
        metavar=("BROADCAST_ID", "FILE"),
        help="Generate and store the AI summary of a broadcast",
    )
    group.add_argument(
        "--show",
        metavar="BROADCAST_ID",
        help="Print the stored summary of a broadcast",
    )
    group.add_argument(
        "--delete",
        metavar="BROADCAST_ID",
        help="Delete the stored summary of a broadcast",
    )

    group.add_argument(
        "--list-broadcasts",
        action="store_true",
        help="List recent own broadcasts",
    )
    group.add_argument(
        "--start-broadcast",
        action="store_true",
        help="Record a broadcast starting now and print its id",
    )
    group.add_argument(
        "--end-broadcast",
        metavar="BROADCAST_ID",
        help="Mark a broadcast as ended now",
    )
    group.add_argument(
        "--set-friend",
        nargs=2,
        metavar=("USERNAME", "TIER"),
        help="Set a friend tier (1 = closest, 'none' clears it)",
    )
    group.add_argument(
        "--record-viewers",
        nargs=2,
        metavar=("USERNAME", "COUNT"),
        help="Record a concurrent viewer snapshot for a room",
    )

    # Shared flags
    parser.add_argument("--config", metavar="PATH", help="Path to config.yaml")
    parser.add_argument("--host", default=None, help="Address for --web (LAN: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port for --web")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    return parser


def _load_app(args):
    """Load config, set up logging and open the database."""
    from app.logger import setup_logger
    from app.config import load_config
    from app.db.database import Database

    overrides = {}
    if args.log_level:
        overrides["log_level"] = args.log_level

    cfg = load_config(config_file=args.config, overrides=overrides)
    setup_logger(cfg.log_level, cfg.log_dir)

    db = Database(cfg.db_path)
    db.connect()
    db.migrate()

    return cfg, db


def _read_transcript(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def cmd_check_config(args):
    from app.config import load_config, validate_config
    from app.logger import setup_logger

    cfg = load_config(config_file=args.config)
    setup_logger("INFO", cfg.log_dir)

    print("\n  Control panel configuration\n  " + "─" * 40)

    checks = [
        ("Database", True, cfg.db_path),
        ("Instructions", Path(cfg.instructions_path).is_file(), cfg.instructions_path),
        ("Broadcaster", bool(cfg.broadcaster_username), cfg.broadcaster_username or "not set"),
        ("ANTHROPIC_KEY", True, "sk-ant-***" if cfg.anthropic_api_key else "(optional, AI disabled)"),
        ("LLM model", True, cfg.llm_model),
    ]
    for name, ok, value in checks:
        status = "✓" if ok else "✗"
        print(f"  [{status}] {name:<20} {value}")

    errors = validate_config(cfg)
    if errors:
        print(f"\n  Problems found: {len(errors)}")
        for e in errors:
            print(f"  ✗ {e}")
        sys.exit(1)
    print("\n  ✓ Configuration OK.")


def cmd_preview(path: str, cfg, db):
    from app.web import build_collector

    collector = build_collector(cfg, db)
    data = collector.collect_for_preview(_read_transcript(path))
    report = data.to_dict()
    # The instructions document is long and not a metric
    report.pop("instructions", None)
    print(json.dumps(report, ensure_ascii=False, indent=2))


def cmd_generate(broadcast_id: str, path: str, cfg, db) -> bool:
    from app.web import build_collector
    from app.pipeline.summarizer import SummaryGenerator, SummarizerUnavailableError
    from app.pipeline.summary_collector import BroadcastNotFoundError

    generator = SummaryGenerator(cfg, build_collector(cfg, db))
    try:
        summary = generator.generate_summary(broadcast_id, _read_transcript(path))
    except (BroadcastNotFoundError, SummarizerUnavailableError, RuntimeError) as e:
        print(f"\n  ✗ {e}")
        return False

    print(f"\n  ✓ Summary saved for {broadcast_id}: {summary.get('theme') or '(no theme)'}")
    print(f"    tokens={summary['tokens_received']}  tokens/h={summary['tokens_per_hour']}"
          f"  viewers={summary['unique_viewers']}  net followers={summary['net_followers']}")
    return True


def cmd_show(broadcast_id: str, cfg, db) -> bool:
    from app.web import build_collector

    summary = build_collector(cfg, db).get_summary_by_broadcast_id(broadcast_id)
    if not summary:
        print(f"\n  ✗ Summary not found: {broadcast_id}")
        return False
    print(summary.get("full_markdown") or json.dumps(summary, ensure_ascii=False, indent=2, default=str))
    return True


def cmd_delete(broadcast_id: str, cfg, db) -> bool:
    from app.web import build_collector

    if build_collector(cfg, db).delete_summary(broadcast_id):
        print(f"\n  ✓ Summary deleted: {broadcast_id}")
        return True
    print(f"\n  ✗ Summary not found: {broadcast_id}")
    return False


def cmd_list_broadcasts(db, limit: int = 20):
    from app.db.broadcasts import BroadcastRepository

    broadcasts = BroadcastRepository(db).list_recent(limit=limit)
    if not broadcasts:
        print("\n  No broadcasts recorded.")
        return
    print()
    for b in broadcasts:
        duration = f"{b.duration_minutes}m" if b.duration_minutes is not None else "live"
        print(f"  {b.id}  {b.started_at:%Y-%m-%d %H:%M}  {duration:>6}  "
              f"tokens={b.total_tokens}  peak={b.peak_viewers}")


def cmd_start_broadcast(db) -> str:
    from app.db.broadcasts import BroadcastRepository
    from app.db.database import utcnow

    broadcast = BroadcastRepository(db).create(started_at=utcnow())
    print(f"\n  ✓ Broadcast started: {broadcast.id}")
    return broadcast.id


def cmd_end_broadcast(broadcast_id: str, db) -> bool:
    from app.db.broadcasts import BroadcastRepository

    broadcast = BroadcastRepository(db).end_broadcast(broadcast_id)
    if broadcast is None:
        print(f"\n  ✗ Broadcast not found (or auto-detected): {broadcast_id}")
        return False
    print(f"\n  ✓ Broadcast ended: {broadcast_id} ({broadcast.duration_minutes}m)")
    return True


def cmd_set_friend(username: str, tier: str, db) -> bool:
    if tier.lower() == "none":
        value = None
    elif tier.isdigit() and int(tier) > 0:
        value = int(tier)
    else:
        print(f"\n  ✗ Tier must be a positive number or 'none': {tier}")
        return False

    db.set_friend_tier(username, value)
    print(f"\n  ✓ {username}: friend tier {value if value is not None else 'cleared'}")
    return True


def cmd_record_viewers(username: str, count: str, db) -> bool:
    if not count.isdigit():
        print(f"\n  ✗ Viewer count must be a non-negative number: {count}")
        return False
    db.record_snapshot(username, int(count))
    print(f"\n  ✓ Snapshot recorded: {username} = {count} viewers")
    return True


def main():
    _bootstrap()
    parser = _make_parser()
    args = parser.parse_args()

    if args.check_config:
        cmd_check_config(args)
        return

    try:
        cfg, db = _load_app(args)
    except Exception as e:
        print(f"\n  ✗ Failed to load configuration: {e}")
        sys.exit(1)

    ok = True
    try:
        if args.web:
            from app.web.server import start_server
            start_server(cfg, db, host=args.host or cfg.web_host, port=args.port or cfg.web_port)
        elif args.preview:
            cmd_preview(args.preview, cfg, db)
        elif args.generate:
            ok = cmd_generate(args.generate[0], args.generate[1], cfg, db)
        elif args.show:
            ok = cmd_show(args.show, cfg, db)
        elif args.delete:
            ok = cmd_delete(args.delete, cfg, db)
        elif args.list_broadcasts:
            cmd_list_broadcasts(db)
        elif args.start_broadcast:
            cmd_start_broadcast(db)
        elif args.end_broadcast:
            ok = cmd_end_broadcast(args.end_broadcast, db)
        elif args.set_friend:
            ok = cmd_set_friend(args.set_friend[0], args.set_friend[1], db)
        elif args.record_viewers:
            ok = cmd_record_viewers(args.record_viewers[0], args.record_viewers[1], db)
    finally:
        db.close()

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
