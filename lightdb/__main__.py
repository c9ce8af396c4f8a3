from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from PySide6 import QtCore

from lightdb.catalog import LightModel, collect_capability_counts, encode_catalog
from lightdb.database import LightDatabase
from lightdb.errors import ConfigError, LightDbError
from lightdb.events import UpdateOutcome
from lightdb.settings import FetchMode

APP_NAME = "LightDb"
ORG_NAME = "LightDb"


def _format_duration(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


def _describe(model: LightModel) -> str:
    caps = model.capabilities
    features = []
    if caps.supports_rgb:
        features.append("RGB")
    if caps.supports_cct_gm:
        features.append("CCT/GM")
    if caps.supports_music:
        features.append("music")
    if caps.fx_channel_count:
        features.append(f"{caps.fx_channel_count} FX")
    cct = ""
    if not model.cct_range.device_reported:
        cct = f"  {model.cct_range.min or '?'}K-{model.cct_range.max or '?'}K"
    return f"{model.model_id:>6}  {', '.join(features) or '-'}{cct}"


def _run_sync(db: LightDatabase, app: QtCore.QCoreApplication, force: bool) -> int:
    outcome: List[UpdateOutcome] = []

    def finished(result: UpdateOutcome) -> None:
        outcome.append(result)
        app.quit()

    db.events.updated.connect(finished)
    db.events.unsupported_version.connect(lambda message: print(message, file=sys.stderr))
    db.load_from_disk()
    if force:
        try:
            db.force_sync()
        except ConfigError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2
    else:
        db.scheduler.start()
        if not db.scheduler.in_flight:
            db.scheduler.stop()
            print(f"Database is up to date. Next check in {_format_duration(db.remaining_ttl())}.")
            return 0

    app.exec()
    db.stop()
    if outcome and outcome[0].success:
        catalog = db.catalog()
        count = len(catalog) if catalog is not None else 0
        print(f"The database is up to date ({count} lights).")
        return 0
    reason = outcome[0].reason if outcome else None
    print(f"Sync failed: {reason}", file=sys.stderr)
    return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lightdb", description="Manage the local light model database.")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override the application data directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Download the database if the refresh interval has elapsed")
    sync.add_argument("--force", action="store_true", help="Ignore the refresh interval")

    show = sub.add_parser("show", help="List the lights in the local database")
    show.add_argument("--json", action="store_true", help="Print the database as JSON")

    lookup = sub.add_parser("lookup", help="Show one light type")
    lookup.add_argument("model_id")

    mode = sub.add_parser("mode", help="Select where the database is fetched from")
    mode.add_argument("mode", choices=[m.value for m in FetchMode])
    mode.add_argument("--url", help="Database URL for customURL mode")

    sub.add_parser("status", help="Show sync configuration and countdown")
    sub.add_parser("clear-images", help="Delete cached light images")

    image = sub.add_parser("image", help="Fetch the image of a light type")
    image.add_argument("model_id")
    image.add_argument("--output", type=Path, help="Copy the image to this path")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv[:1])
    app.setApplicationName(APP_NAME)
    app.setOrganizationName(ORG_NAME)
    db = LightDatabase(args.data_dir)

    if args.command == "sync":
        return _run_sync(db, app, args.force)

    if args.command == "mode":
        if args.url:
            db.set_custom_url(args.url)
        db.set_fetch_mode(args.mode)
        print(f"Fetch mode set to {args.mode}.")
        return 0

    if args.command == "clear-images":
        removed = db.store.clear_images()
        print(f"Removed {removed} cached images.")
        return 0

    catalog = db.load_from_disk()
    if args.command == "status":
        state = db.sync_state()
        print(f"Database file: {db.local_database_path}")
        print(f"Fetch mode:    {state.fetch_mode.value}")
        if state.fetch_mode is FetchMode.CUSTOM_REMOTE:
            print(f"Custom URL:    {state.custom_url}")
        print(f"Last attempt:  {state.last_attempt.isoformat() if state.last_attempt else 'never'}")
        if state.fetch_mode is not FetchMode.DISABLED:
            print(f"Next check in: {_format_duration(db.remaining_ttl())}")
        if catalog is not None:
            counts = collect_capability_counts(catalog.entries)
            print(f"Version:       {catalog.version:g} ({len(catalog)} lights, {counts['rgb']} RGB)")
        return 0

    if catalog is None:
        print("No local database. Run `lightdb sync --force` first.", file=sys.stderr)
        return 1

    if args.command == "show":
        if args.json:
            print(json.dumps(encode_catalog(catalog), indent=2))
        else:
            for model in catalog.entries:
                print(_describe(model))
        return 0

    if args.command == "lookup":
        model = catalog.lookup(args.model_id)
        if model is None:
            print(f"Unknown light type {args.model_id}", file=sys.stderr)
            return 1
        print(_describe(model))
        print(f"  image: {model.image_url}")
        if model.link:
            print(f"  link:  {model.link}")
        for key, value in model.command_hints.items():
            print(f"  {key}: {value}")
        return 0

    if args.command == "image":
        try:
            db.images.load(args.model_id)
        except LightDbError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        path = db.store.image_path(args.model_id)
        if args.output:
            args.output.write_bytes(path.read_bytes())
            path = args.output
        print(path)
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
