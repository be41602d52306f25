"""
Command-line entry points.

    firestore-to-mongo [--plan PATH] [--only NAME ...] [--batch-size N]
    rekey-users-by-email [--apply] [--delete-old] [--store mongo|firestore]

Env required (directly or via .env):
    MONGODB_URI, MONGODB_DB
    One of the Firebase service-account options (see credentials.py)
"""

import argparse
import logging
import sys
from contextlib import ExitStack
from typing import List, Optional

from . import __version__
from .config import MigrationSettings, MongoSettings, RetrySettings, firestore_database_id, load_environment
from .credentials import build_credentials, open_firestore, resolve_service_account
from .exceptions import ConfigurationError, SourceUnavailableError, TargetUnavailableError, TransientIOError
from .models import MigrationSummary, RekeySummary
from .orchestrator import GracefulShutdown, Migrator
from .plan import load_plan, select_entries
from .rekey import FirestoreKeyedCollection, MongoKeyedCollection, rekey_collection
from .retry import RetryPolicy
from .source import FirestoreSource
from .writer import MongoWriter, open_mongo, ping_mongo

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the migration tools."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    # google-auth and urllib3 are chatty at DEBUG
    for noisy in ("urllib3", "google.auth", "grpc"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------- firestore-to-mongo ----------

def build_migrate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="firestore-to-mongo",
        description="Copy Firestore collections (and their sub-collections) into MongoDB.",
    )
    parser.add_argument("--plan", help="Migration plan YAML (default: MIGRATION_PLAN_FILE or the bundled plan).")
    parser.add_argument("--only", action="append", metavar="COLLECTION",
                        help="Only migrate this source collection (repeatable).")
    parser.add_argument("--batch-size", type=int, help="Documents per bulk write (default: MIGRATION_BATCH_SIZE or 500).")
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def migrate_main(argv: Optional[List[str]] = None) -> int:
    args = build_migrate_parser().parse_args(argv)
    setup_logging(args.verbose)
    load_environment()

    try:
        settings = MigrationSettings.from_env()
        if args.batch_size is not None and args.batch_size < 1:
            raise ConfigurationError("--batch-size must be at least 1")
        plan = select_entries(load_plan(args.plan or settings.plan_file), args.only)
        _, sa_info = resolve_service_account()
        build_credentials(sa_info)
    except ConfigurationError as e:
        logger.error(f"[FATAL] {e}")
        return EXIT_FATAL

    retry = RetryPolicy(settings.retry)
    try:
        with ExitStack() as stack:
            fs_client = stack.enter_context(open_firestore(sa_info, firestore_database_id()))
            mongo_db = stack.enter_context(open_mongo(settings.mongo))
            source = FirestoreSource(fs_client, retry)
            writer = MongoWriter(mongo_db)
            if plan:
                source.preflight(plan[0].source_collection)
            writer.ping()
            shutdown = stack.enter_context(GracefulShutdown())
            migrator = Migrator(
                source,
                writer,
                retry=retry,
                batch_size=args.batch_size or settings.batch_size,
                show_progress=not args.no_progress,
                shutdown=shutdown,
            )
            summary = migrator.run(plan)
    except (ConfigurationError, SourceUnavailableError, TargetUnavailableError) as e:
        logger.error(f"[FATAL] {e}")
        return EXIT_FATAL

    print_migration_summary(summary)
    return EXIT_INTERRUPTED if summary.cancelled else EXIT_OK


def print_migration_summary(summary: MigrationSummary) -> None:
    print("\n" + "=" * 60)
    print("Migration Summary")
    print("=" * 60)
    for name, stats in summary.stats.items():
        counts = stats.as_dict()
        print(
            f"  {name}: migrated={counts['migrated']} unchanged={counts['unchanged']} "
            f"skipped={counts['skipped'] + counts['duplicates']} failed={counts['failed']}"
        )
    print(f"\nMigration {'cancelled' if summary.cancelled else 'complete'}. "
          f"Documents upserted/updated: {summary.total_migrated}")
    print(f"[DONE] {summary.as_dict()}")


# ---------- rekey-users-by-email ----------

def build_rekey_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rekey-users-by-email",
        description="Copy user records keyed by uid to records keyed by email. Dry run unless --apply.",
    )
    parser.add_argument("--apply", action="store_true", help="Write the re-keyed copies.")
    parser.add_argument("--delete-old", action="store_true", help="With --apply, delete the uid-keyed originals.")
    parser.add_argument("--store", choices=["mongo", "firestore"], default="mongo",
                        help="Where the collection lives (default: mongo).")
    parser.add_argument("--collection", default="users", help="Collection to re-key (default: users).")
    parser.add_argument("--key-field", default="id", help="MongoDB field holding the record key (default: id).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    return parser


def rekey_main(argv: Optional[List[str]] = None) -> int:
    args = build_rekey_parser().parse_args(argv)
    setup_logging(args.verbose)
    load_environment()

    if args.delete_old and not args.apply:
        logger.warning("--delete-old has no effect without --apply")

    try:
        retry = RetryPolicy(RetrySettings.from_env())
        if args.store == "mongo":
            mongo_settings = MongoSettings.from_env()
        else:
            _, sa_info = resolve_service_account()
            build_credentials(sa_info)
    except ConfigurationError as e:
        logger.error(f"[FATAL] {e}")
        return EXIT_FATAL

    try:
        with ExitStack() as stack:
            if args.store == "mongo":
                db = stack.enter_context(open_mongo(mongo_settings))
                ping_mongo(db)
                store = MongoKeyedCollection(db, args.collection, args.key_field)
            else:
                client = stack.enter_context(open_firestore(sa_info, firestore_database_id()))
                store = FirestoreKeyedCollection(client, args.collection)
            summary, _ = rekey_collection(store, apply=args.apply, delete_old=args.delete_old, retry=retry)
    except (ConfigurationError, SourceUnavailableError, TargetUnavailableError, TransientIOError) as e:
        logger.error(f"[FATAL] {e}")
        return EXIT_FATAL

    print_rekey_summary(summary, args.apply)
    return EXIT_OK


def print_rekey_summary(summary: RekeySummary, applied: bool) -> None:
    counts = summary.as_dict()
    print(
        f"[rekey] considered={counts['considered']} migrated={counts['migrated']} "
        f"skipped={counts['skipped']} deleted={counts['deleted']}"
    )
    if summary.failed:
        print(f"[rekey] {summary.failed} record(s) failed, see the log above")
    if not applied:
        print("Dry run only. Re-run with --apply to write changes. Add --delete-old to remove old uid records.")


def main() -> None:
    sys.exit(migrate_main())


def rekey() -> None:
    sys.exit(rekey_main())
