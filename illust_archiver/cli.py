# cli.py
# Description: Command line entry point for the archiver.
#
# Imports
import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence
#
# 3rd-party imports
from loguru import logger
#
# Local Imports
from illust_archiver.app.core.Artifacts import (ArtifactError, CanonicalizeMode, ConsistencyChecker,
                                                DownloadReconciler, ExistingPolicy, FsckMode, PathCanonicalizer,
                                                PathLayout, ReconcileAction)
from illust_archiver.app.core.config import ArchiverConfig, ConfigurationError, DatabasePathFormat, load_config
from illust_archiver.app.core.DB_Management.Archive_DB import (ArchiveDB, ArchiveDBError, EntityKind, EntityState,
                                                                InputError)
from illust_archiver.app.core.Fetchers.fanbox import FanboxClient
from illust_archiver.app.core.Fetchers.fetch_types import FetchError
from illust_archiver.app.core.Fetchers.pixiv import PixivClient
from illust_archiver.app.core.Fetchers.transport import HttpTransport
from illust_archiver.app.core.Query import DownloadState, EntityQuery, QueryOrder, SyncState, read_id_list
from illust_archiver.app.core.Sync import EntityReconciler, SyncDriver, SyncError, SyncReport, TerminationPolicy
from illust_archiver.app.core.Utils.Utils import setup_logging
#
#######################################################################################################################
#
# Functions:

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

_KIND_CHOICES = {"illust": EntityKind.ILLUST, "fanbox": EntityKind.FANBOX_POST}


# --- shared helpers ---
def _open_db(config: ArchiverConfig, migrate: bool = True) -> ArchiveDB:
    return ArchiveDB(config.database_path, migrate=migrate)


def _pixiv_client(config: ArchiverConfig) -> PixivClient:
    session = config.pixiv_session
    if session is None:
        raise ConfigurationError("A pixiv cookie is required (PIXIV_COOKIE or [Auth] pixiv_cookie)")
    return PixivClient(session, HttpTransport.from_config(config))


def _fanbox_client(config: ArchiverConfig) -> FanboxClient:
    session = config.fanbox_session
    if session is None:
        raise ConfigurationError("A FANBOX cookie is required (FANBOX_COOKIE or [Auth] fanbox_cookie)")
    return FanboxClient(session, HttpTransport.from_config(config))


def _driver(config: ArchiverConfig, db: ArchiveDB, fetch_detail) -> SyncDriver:
    return SyncDriver(EntityReconciler(db), fetch_detail, max_retries=config.max_retries,
                      retry_backoff_seconds=config.retry_backoff_seconds)


def _collect_ids(ids: Sequence[str], from_file: Optional[str]) -> List[int]:
    collected = read_id_list(ids)
    if from_file:
        with open(from_file, "r", encoding="utf-8") as f:
            collected.extend(read_id_list(f))
    return collected


def _finish_sync(report: SyncReport) -> int:
    print(json.dumps(report.to_dict(), indent=2))
    if report.failed or report.aborted:
        return EXIT_FAILURE
    return EXIT_OK


# --- commands ---
def cmd_db(args, config: ArchiverConfig) -> int:
    db = _open_db(config, migrate=False)
    try:
        if args.db_command == "setup":
            version = db.migrate()
        elif args.db_command == "downgrade":
            version = db.migrate(args.to)
        else:
            version = db.get_db_version()
        print(f"Schema version: {version}")
    finally:
        db.close_connection()
    return EXIT_OK


def cmd_bookmarks(args, config: ArchiverConfig) -> int:
    client = _pixiv_client(config)
    db = _open_db(config)
    try:
        summaries = client.iter_bookmarks(tag=args.tag, offset=args.offset, private=args.private)
        report = _driver(config, db, client.fetch_detail).run(summaries, TerminationPolicy(args.termination),
                                                                max_count=args.max_count)
    finally:
        db.close_connection()
    return _finish_sync(report)


def cmd_illust(args, config: ArchiverConfig) -> int:
    ids = _collect_ids(args.ids, args.from_file)
    if not ids:
        raise InputError("No illust ids given")
    client = _pixiv_client(config)
    if args.dry_run:
        for illust_id in ids:
            print(json.dumps(client.get_illust(illust_id).to_snapshot().to_dict(), ensure_ascii=False, indent=2))
        return EXIT_OK
    db = _open_db(config)
    try:
        report = _driver(config, db, client.fetch_detail).run_ids(EntityKind.ILLUST, ids)
    finally:
        db.close_connection()
    return _finish_sync(report)


def cmd_fanbox(args, config: ArchiverConfig) -> int:
    client = _fanbox_client(config)
    db = _open_db(config)
    try:
        summaries = client.iter_creator_posts(args.creator)
        report = _driver(config, db, client.fetch_detail).run(summaries, TerminationPolicy(args.termination),
                                                                max_count=args.max_count)
    finally:
        db.close_connection()
    return _finish_sync(report)


def cmd_fanbox_post(args, config: ArchiverConfig) -> int:
    ids = _collect_ids(args.ids, args.from_file)
    if not ids:
        raise InputError("No post ids given")
    client = _fanbox_client(config)
    db = _open_db(config)
    try:
        report = _driver(config, db, client.fetch_detail).run_ids(EntityKind.FANBOX_POST, ids)
    finally:
        db.close_connection()
    return _finish_sync(report)


def _build_query(args) -> EntityQuery:
    return EntityQuery(
        kind=_KIND_CHOICES[args.kind],
        ids=read_id_list(args.id or []),
        states=[EntityState[s.upper()] for s in args.state or []],
        download_state=args.download_state,
        tags=args.tag or [],
        bookmark_tags=args.bookmark_tag or [],
        author_id=args.author,
        sync_state=args.sync_state,
        order=args.order,
        limit=args.limit,
    )


def cmd_query(args, config: ArchiverConfig) -> int:
    query = _build_query(args)
    shape = {"count": "count", "id": "id", "json": "row"}[args.format]
    if args.print_sql:
        sql, params = query.build_sql(shape)
        print(sql)
        print(f"-- params: {params}")
    if args.dry_run:
        return EXIT_OK
    db = _open_db(config)
    try:
        if args.format == "count":
            print(query.count(db))
        elif args.format == "id":
            for entity_id in query.iter_ids(db):
                print(entity_id)
        else:
            print(json.dumps(list(query.iter_rows(db)), ensure_ascii=False, indent=2))
    finally:
        db.close_connection()
    return EXIT_OK


def cmd_download(args, config: ArchiverConfig) -> int:
    kind = _KIND_CHOICES[args.kind]
    client = _pixiv_client(config) if kind is EntityKind.ILLUST else _fanbox_client(config)
    db = _open_db(config)
    try:
        ids = _collect_ids(args.ids or [], args.from_file)
        if args.missing:
            missing = EntityQuery(kind=kind, states=[EntityState.NORMAL], download_state=DownloadState.NOT_FULLY)
            ids.extend(i for i in missing.iter_ids(db) if i not in ids)
        if not ids:
            logger.info("Nothing to download.")
            return EXIT_OK

        descriptors = []
        failed_entities = 0
        for entity_id in ids:
            try:
                if kind is EntityKind.ILLUST:
                    row = db.get_entity_row(kind, entity_id)
                    descriptors.extend(client.attachments(entity_id, row["illust_type"] if row else None))
                else:
                    descriptors.extend(client.attachments(entity_id))
            except FetchError as e:
                failed_entities += 1
                logger.error(f"Could not list attachments of {kind.value} {entity_id}: {e}")

        reconciler = DownloadReconciler(db, PathLayout.from_config(config), client.download,
                                        reverify_after_days=config.reverify_after_days)
        workers = args.workers or config.download_workers
        results = reconciler.reconcile_many(descriptors, ExistingPolicy(args.on_existing), workers=workers,
                                            progress=config.show_progress)
    finally:
        db.close_connection()

    summary = {}
    for result in results:
        summary[result.action.value] = summary.get(result.action.value, 0) + 1
    summary["entities_failed"] = failed_entities
    print(json.dumps(summary, indent=2))
    failed = [r for r in results if r.action is ReconcileAction.FAILED]
    for result in failed:
        print(f"FAILED {result.key}: {result.error}", file=sys.stderr)
    return EXIT_FAILURE if failed or failed_entities else EXIT_OK


def cmd_fsck(args, config: ArchiverConfig) -> int:
    db = _open_db(config)
    try:
        mode = FsckMode.REPORT_AND_CLEAR if args.clear else FsckMode.REPORT_ONLY
        findings = ConsistencyChecker(db, PathLayout.from_config(config)).fsck(mode, progress=config.show_progress)
    finally:
        db.close_connection()
    for finding in findings:
        status = "cleared" if finding.cleared else "missing"
        print(f"{status}\t{finding.key}\t{finding.path}")
    return EXIT_FAILURE if findings and not args.clear else EXIT_OK


def cmd_canonicalize(args, config: ArchiverConfig) -> int:
    previous = None
    if args.from_base_dir or args.from_path_format:
        previous = PathLayout(Path(args.from_base_dir) if args.from_base_dir else config.base_dir,
                              args.from_path_format or config.path_format, config.path_templates)
    db = _open_db(config)
    try:
        mode = CanonicalizeMode.SKIP_FILE if args.skip_file else CanonicalizeMode.MOVE
        report = PathCanonicalizer(db, PathLayout.from_config(config), previous_layout=previous).canonicalize(mode)
    finally:
        db.close_connection()
    print(json.dumps({
        "moved": report.moved,
        "updated": report.updated,
        "unchanged": report.unchanged,
        "skipped": [{"rowid": r, "reason": why} for r, why in report.skipped],
        "failed": [{"rowid": r, "reason": why} for r, why in report.failed],
    }, indent=2))
    return EXIT_FAILURE if report.failed else EXIT_OK


# --- parser ---
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="illust-archiver",
                                     description="Archive pixiv bookmarks and FANBOX posts into SQLite.")
    parser.add_argument("--config", help="Path to the INI config file")
    parser.add_argument("--database", help="SQLite database path (overrides config)")
    parser.add_argument("--base-dir", help="Root directory for downloaded files (overrides config)")
    parser.add_argument("--path-format", choices=[f.value for f in DatabasePathFormat],
                        help="How file paths are written to the database")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    sub = parser.add_subparsers(dest="command", required=True)

    db = sub.add_parser("db", help="Set up or migrate the database")
    db_sub = db.add_subparsers(dest="db_command", required=True)
    db_sub.add_parser("setup", help="Create or upgrade the schema to the latest version")
    db_sub.add_parser("version", help="Print the schema version")
    downgrade = db_sub.add_parser("downgrade", help="Migrate the schema down to a given version")
    downgrade.add_argument("--to", type=int, required=True)
    db.set_defaults(func=cmd_db)

    termination = [p.value for p in TerminationPolicy]

    bookmarks = sub.add_parser("bookmarks", help="Sync pixiv bookmarks")
    bookmarks.add_argument("--tag", help="Only bookmarks with this bookmark tag")
    bookmarks.add_argument("--offset", type=int, default=0)
    bookmarks.add_argument("--private", action="store_true", help="Sync private bookmarks instead of public")
    bookmarks.add_argument("--termination", choices=termination, default=TerminationPolicy.ON_HIT.value)
    bookmarks.add_argument("--max-count", type=int)
    bookmarks.set_defaults(func=cmd_bookmarks)

    illust = sub.add_parser("illust", help="Fetch (or re-fetch) illusts by id")
    illust.add_argument("ids", nargs="*")
    illust.add_argument("--from-file", help="File with one id per line")
    illust.add_argument("--dry-run", action="store_true", help="Fetch and print, do not store")
    illust.set_defaults(func=cmd_illust)

    fanbox = sub.add_parser("fanbox", help="Sync the posts of a FANBOX creator")
    fanbox.add_argument("creator")
    fanbox.add_argument("--termination", choices=termination, default=TerminationPolicy.ON_HIT.value)
    fanbox.add_argument("--max-count", type=int)
    fanbox.set_defaults(func=cmd_fanbox)

    fanbox_post = sub.add_parser("fanbox-post", help="Fetch (or re-fetch) FANBOX posts by id")
    fanbox_post.add_argument("ids", nargs="*")
    fanbox_post.add_argument("--from-file")
    fanbox_post.set_defaults(func=cmd_fanbox_post)

    query = sub.add_parser("query", help="Query stored entities")
    query.add_argument("--kind", choices=list(_KIND_CHOICES), default="illust")
    query.add_argument("-i", "--id", action="append")
    query.add_argument("-s", "--state", action="append", choices=[s.name.lower() for s in EntityState])
    query.add_argument("-d", "--download-state", choices=[s.value for s in DownloadState])
    query.add_argument("-t", "--tag", action="append", help="Repeat for AND")
    query.add_argument("-b", "--bookmark-tag", action="append", help="Repeat for AND")
    query.add_argument("-a", "--author")
    query.add_argument("--sync-state", choices=[s.value for s in SyncState])
    query.add_argument("-o", "--order", choices=[o.value for o in QueryOrder], default=QueryOrder.ID_ASC.value)
    query.add_argument("-l", "--limit", type=int)
    query.add_argument("-f", "--format", choices=["count", "id", "json"], default="id")
    query.add_argument("--print-sql", action="store_true")
    query.add_argument("--dry-run", action="store_true")
    query.set_defaults(func=cmd_query)

    download = sub.add_parser("download", help="Download or re-verify attachments")
    download.add_argument("--kind", choices=list(_KIND_CHOICES), default="illust")
    download.add_argument("--ids", nargs="+")
    download.add_argument("--from-file")
    download.add_argument("--missing", action="store_true", help="Add every stored entity not fully downloaded")
    download.add_argument("--on-existing", choices=[p.value for p in ExistingPolicy],
                          default=ExistingPolicy.REVERIFY.value)
    download.add_argument("--workers", type=int)
    download.set_defaults(func=cmd_download)

    fsck = sub.add_parser("fsck", help="Report stored files missing on disk")
    fsck.add_argument("--clear", action="store_true", help="Also clear the paths of missing files")
    fsck.set_defaults(func=cmd_fsck)

    canonicalize = sub.add_parser("canonicalize", help="Move stored files to their canonical paths")
    canonicalize.add_argument("--skip-file", action="store_true",
                              help="Files were already moved; only update the database")
    canonicalize.add_argument("--from-base-dir", help="Base directory the stored paths were written under")
    canonicalize.add_argument("--from-path-format", choices=[f.value for f in DatabasePathFormat])
    canonicalize.set_defaults(func=cmd_canonicalize)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config).with_overrides(
            database_path=args.database,
            base_dir=args.base_dir,
            path_format=args.path_format,
            log_level=args.log_level,
            show_progress=False if args.no_progress else None,
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    setup_logging(config.log_level, config.log_file)

    try:
        return args.func(args, config)
    except KeyboardInterrupt:
        logger.warning("Interrupted.")
        return EXIT_INTERRUPTED
    except (ConfigurationError, InputError) as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except (ArchiveDBError, SyncError, ArtifactError, FetchError) as e:
        logger.exception(f"{args.command} failed: {e}")
        return EXIT_FAILURE
    except OSError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())

#
# End of cli.py
#######################################################################################################################
