"""Command-line interface for Presence.

Commands:
    submit    - Submit an audio file or a feature vector for matching
    leave     - Record a listener leaving a context
    contexts  - List the most recent contexts
    stats     - Show context/fingerprint statistics
    clear     - Delete all contexts and fingerprints
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from presence.core.config import PresenceConfig, load_config
from presence.core.database import Database
from presence.core.errors import PresenceError
from presence.matching.coordinator import MatchingCoordinator, build_coordinator
from presence.utils.logger import setup_logging


def _load_settings(args: argparse.Namespace) -> PresenceConfig:
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        if args.config is not None:
            raise
        config = PresenceConfig()

    # Only the SQLite backend keeps state between CLI runs
    config.storage.backend = "sqlite"
    if args.db is not None:
        config.storage.db_path = args.db
    return config


def _open_database(config: PresenceConfig) -> Database:
    db = Database(config.storage.db_path.expanduser())
    db.connect()
    db.initialize_schema()
    return db


def _coordinator(args: argparse.Namespace, db: Database, config: PresenceConfig) -> MatchingCoordinator:
    setup_logging(config.logging, verbose=args.verbose)
    return build_coordinator(config, database=db)


def cmd_submit(args: argparse.Namespace) -> int:
    """Submit one sample."""
    config = _load_settings(args)
    db = _open_database(config)
    try:
        return _submit(args, _coordinator(args, db, config))
    finally:
        db.close()


def _submit(args: argparse.Namespace, coordinator: MatchingCoordinator) -> int:
    kwargs = {"quality_hint": args.quality, "device_id": args.device_id}
    start = time.time()
    try:
        if args.features is not None:
            result = coordinator.submit(json.loads(args.features), **kwargs)
        else:
            if not os.path.exists(args.file):
                print(f"Error: File not found: {args.file}", file=sys.stderr)
                return 1
            result = coordinator.submit_audio(args.file, **kwargs)
    except (PresenceError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    elapsed = time.time() - start

    if args.json:
        print(json.dumps(result.to_dict()))
        return 0

    if result.matched:
        print(f"Matched context {result.context_id}")
        print(f"   Confidence: {result.confidence:.1f}")
    elif result.is_new:
        print(f"No match found, created new context {result.context_id}")
    else:
        print("No matching context found.")
    print(f"   Quality: {result.quality:.2f}")
    print(f"   Decided in {elapsed * 1000:.0f} ms")
    return 0


def cmd_leave(args: argparse.Namespace) -> int:
    """Record a listener leaving a context."""
    config = _load_settings(args)
    db = _open_database(config)
    try:
        context = _coordinator(args, db, config).leave(args.context_id)
    finally:
        db.close()

    if context is None:
        print(f"Error: Context not found: {args.context_id}", file=sys.stderr)
        return 1
    print(f"Listeners on {context.id}: {context.listener_count}")
    return 0


def cmd_contexts(args: argparse.Namespace) -> int:
    """List recent contexts."""
    config = _load_settings(args)
    db = _open_database(config)
    try:
        contexts = db.contexts.recent(args.limit)
    finally:
        db.close()

    if args.json:
        print(json.dumps([c.to_dict() for c in contexts]))
        return 0

    if not contexts:
        print("No contexts yet.")
        return 0

    for i, ctx in enumerate(contexts, 1):
        print(f"{i}. {ctx.name} [{ctx.type.value}]")
        print(f"   ID: {ctx.id}")
        print(f"   Listeners: {ctx.listener_count}")
        print(f"   Created: {ctx.created_at:%Y-%m-%d %H:%M:%S}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show database statistics."""
    config = _load_settings(args)
    db = _open_database(config)
    try:
        contexts = db.contexts.count()
        fingerprints = db.fingerprints.count()
    finally:
        db.close()

    print("Presence Database Statistics")
    print("=" * 40)
    print(f"Contexts:                   {contexts:,}")
    print(f"Reference fingerprints:     {fingerprints:,}")
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    """Clear all contexts and fingerprints."""
    if not args.force:
        confirm = input("This will delete ALL contexts and fingerprints. Are you sure? [y/N] ")
        if confirm.lower() != "y":
            print("Aborted.")
            return 1

    config = _load_settings(args)
    db = _open_database(config)
    try:
        with db.transaction():
            db.fingerprints.clear()
            db.contexts.clear()
    finally:
        db.close()
    print("All contexts and fingerprints cleared.")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="presence",
        description="Ambient audio context matching",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to config file (default: first config.yaml found)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Path to database (overrides storage.db_path)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a sample for matching")
    submit_parser.add_argument("file", nargs="?", help="Audio file to submit")
    submit_parser.add_argument(
        "--features", "-f",
        help="Feature vector as a JSON array instead of an audio file",
    )
    submit_parser.add_argument(
        "--quality", "-q",
        type=float,
        help="Quality hint overriding the computed quality",
    )
    submit_parser.add_argument("--device-id", help="Submitting device ID")
    submit_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    submit_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    submit_parser.set_defaults(func=cmd_submit)

    # leave command
    leave_parser = subparsers.add_parser("leave", help="Record a listener leaving a context")
    leave_parser.add_argument("context_id", help="Context ID")
    leave_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    leave_parser.set_defaults(func=cmd_leave)

    # contexts command
    contexts_parser = subparsers.add_parser("contexts", help="List recent contexts")
    contexts_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=20,
        help="Show N most recent contexts (default: 20)",
    )
    contexts_parser.add_argument("--json", action="store_true", help="Print as JSON")
    contexts_parser.set_defaults(func=cmd_contexts)

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # clear command
    clear_parser = subparsers.add_parser("clear", help="Delete all contexts and fingerprints")
    clear_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation",
    )
    clear_parser.set_defaults(func=cmd_clear)

    args = parser.parse_args(argv)
    if args.command == "submit" and (args.file is None) == (args.features is None):
        parser.error("submit needs exactly one of FILE or --features")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
