"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from ..asc_client import AscClient, AscError, AuthError, TokenProvider
from ..config import (
    CONFIG_FILENAME,
    DB_FILENAME,
    LOGS_DIRNAME,
    SCREENSHOTS_DIRNAME,
    Config,
    ConfigValidationError,
    create_default_config,
    init_data_dir,
    load_config,
    resolve_data_dir,
)
from ..review import ReviewError, ReviewWorkflow
from ..schemas import OPEN_STATUSES, ReviewStatus, SubmissionKind, normalize_timestamp
from ..services import SubmissionSyncService, SyncResult
from ..state_store import StateStore, SubmissionFilters, SubmissionRecord

logger = logging.getLogger(__name__)

FORMATS = ("text", "json")

ARTIFACT_COMMANDS = {
    SubmissionKind.CRASH: "log",
    SubmissionKind.FEEDBACK: "screenshot",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging (stderr, so JSON on stdout stays clean)."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def _add_review_commands(subparsers: Any, kind: SubmissionKind) -> None:
    """Register list/show/status commands for one submission kind."""
    noun = "crash" if kind is SubmissionKind.CRASH else "feedback"
    plural = "crashes" if kind is SubmissionKind.CRASH else "feedback"

    list_parser = subparsers.add_parser("list", help=f"List {plural}")
    list_parser.add_argument(
        "--status",
        type=str,
        help="Filter by status (comma-separated: new,investigating,fixed,wontfix,duplicate)",
    )
    list_parser.add_argument(
        "--since",
        type=str,
        help=f"Only {plural} created at or after this date (ISO 8601)",
    )
    list_parser.add_argument("--app", type=str, help="Filter by app bundle ID")
    list_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum results (default: 50)",
    )

    show_parser = subparsers.add_parser("show", help=f"Show full details of a {noun}")
    show_parser.add_argument("id", type=int)

    artifact = ARTIFACT_COMMANDS[kind]
    artifact_parser = subparsers.add_parser(
        artifact, help=f"Print the absolute path to a {noun}'s {kind.artifact_label} file"
    )
    artifact_parser.add_argument("id", type=int)

    fix_parser = subparsers.add_parser("fix", help=f"Mark a {noun} as fixed")
    fix_parser.add_argument("id", type=int)
    fix_parser.add_argument("--notes", type=str, help="Fix notes")

    investigate_parser = subparsers.add_parser(
        "investigate", help=f"Mark a {noun} as under investigation"
    )
    investigate_parser.add_argument("id", type=int)

    wontfix_parser = subparsers.add_parser("wontfix", help=f"Mark a {noun} as won't fix")
    wontfix_parser.add_argument("id", type=int)
    wontfix_parser.add_argument("--notes", type=str, help="Reason")

    duplicate_parser = subparsers.add_parser(
        "duplicate", help=f"Mark a {noun} as a duplicate of another"
    )
    duplicate_parser.add_argument("id", type=int)
    duplicate_parser.add_argument(
        "--of",
        dest="of_id",
        type=int,
        required=True,
        help=f"ID of the original {noun}",
    )

    reopen_parser = subparsers.add_parser("reopen", help=f'Reset a {noun} status to "new"')
    reopen_parser.add_argument("id", type=int)

    stats_parser = subparsers.add_parser("stats", help=f"Show {noun} statistics")
    stats_parser.add_argument("--app", type=str, help="Restrict to one app bundle ID")


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="testflight-sync",
        description="Manage TestFlight crash reports and screenshot feedback",
    )

    parser.add_argument(
        "-d",
        "--data-dir",
        type=Path,
        default=None,
        help="Data directory (default: ./testflight-data or ~/.testflight-sync)",
    )
    parser.add_argument(
        "--format",
        choices=FORMATS,
        default="text",
        help="Output format (default: text)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser(
        "init", help="Create a data directory with template config and database"
    )
    init_parser.add_argument(
        "--global",
        dest="global_",
        action="store_true",
        help="Create in ~/.testflight-sync instead of ./testflight-data",
    )

    # apps command
    subparsers.add_parser("apps", help="Verify API credentials and list visible apps")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Pull new crashes and feedback")
    sync_parser.add_argument(
        "--app",
        type=str,
        help="Sync only this app (bundle ID). Default: all configured apps",
    )
    sync_parser.add_argument(
        "--no-crashes",
        action="store_true",
        help="Skip crash sync (feedback only)",
    )
    sync_parser.add_argument(
        "--no-feedback",
        action="store_true",
        help="Skip feedback sync (crashes only)",
    )

    # crash commands live at the top level
    _add_review_commands(subparsers, SubmissionKind.CRASH)

    # feedback commands
    feedback_parser = subparsers.add_parser(
        "feedback", help="Manage screenshot feedback submissions"
    )
    feedback_subparsers = feedback_parser.add_subparsers(
        dest="feedback_command", help="Feedback command to run"
    )
    _add_review_commands(feedback_subparsers, SubmissionKind.FEEDBACK)

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _error(message: str) -> int:
    print(f"❌ {message}", file=sys.stderr)
    return 1


def _short_date(value: str) -> str:
    return value[:19] if value else "-"


def make_client(config: Config) -> AscClient:
    """Build an API client; fails with AuthError on bad key material."""
    token_provider = TokenProvider(
        issuer_id=config.api.issuer_id,
        key_id=config.api.key_id,
        private_key=config.api.private_key,
    )
    return AscClient(
        token_provider,
        base_url=config.api.base_url,
        timeout=config.api.timeout_seconds,
    )


def cmd_init(global_: bool) -> int:
    """Create the data directory, template config, database and artifact dirs."""
    data_dir = init_data_dir(global_)
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / LOGS_DIRNAME).mkdir(exist_ok=True)
    (data_dir / SCREENSHOTS_DIRNAME).mkdir(exist_ok=True)

    config_path = data_dir / CONFIG_FILENAME
    if create_default_config(config_path):
        print(f"✓ Created {config_path}")
    else:
        print(f"  Config already exists: {config_path}")

    # Opening the store creates the schema
    StateStore(data_dir / DB_FILENAME)

    print(f"✓ Initialized in {data_dir}")
    print()
    print("Next steps:")
    print(f"  1. Edit {config_path} with your API credentials")
    print("  2. Run `testflight-sync apps` to verify")
    print("  3. Run `testflight-sync sync` to pull crashes and feedback")
    return 0


def cmd_apps(config: Config, fmt: str) -> int:
    """List apps visible to the API key."""
    client = make_client(config)
    apps = client.list_apps()

    if fmt == "json":
        _print_json([{"id": a.id, "bundle_id": a.bundle_id, "name": a.name} for a in apps])
        return 0

    if not apps:
        print("No apps found for this API key.")
        return 0

    print(f"{'APP ID':<40} {'BUNDLE ID':<30} NAME")
    print("-" * 90)
    for a in apps:
        print(f"{a.id:<40} {a.bundle_id or '-':<30} {a.name or '-'}")
    return 0


def _print_sync_text(result: SyncResult) -> None:
    for source in result.sources:
        print(f"🔄 {source.bundle_id} ({source.app_name or 'unknown'})")
        if source.error:
            print(f"  ❌ {source.error}")
            continue

        for kind, stream in source.streams.items():
            tag = "CRASH" if kind is SubmissionKind.CRASH else "FEEDBACK"
            artifact_tag = "LOG" if kind is SubmissionKind.CRASH else "SCREENSHOT"

            for r in stream.new_records:
                print(
                    f"  [{tag}] #{r.id:<4} {r.device_model or '?'} / {r.os_version or '?'}  "
                    f"{_short_date(r.created_at)}"
                )
                if r.artifact_path:
                    print(f"          → {r.artifact_path}")
                else:
                    print(f"          → ({kind.artifact_label} not available yet)")
            for r in stream.recovered:
                print(f"  [{artifact_tag}] #{r.id:<4} → {r.artifact_path}")

            if stream.new_records or stream.recovered:
                print(
                    f"  {len(stream.new_records)} new {kind.value}(s), "
                    f"{stream.artifacts_downloaded} {kind.artifact_label}(s) downloaded"
                )
            if stream.error:
                print(f"  ❌ {stream.error}")
            for warning in stream.warnings:
                print(f"  ⚠ {warning}")

    parts = []
    for kind, totals in result.totals.items():
        noun = "crashes" if kind is SubmissionKind.CRASH else "feedbacks"
        parts.append(f"{totals['total']} {noun} ({totals['unfixed']} unfixed)")
    if parts:
        print(f"\nTotal: {', '.join(parts)}")


def _sync_json(result: SyncResult) -> dict[str, Any]:
    crash_totals = result.totals.get(SubmissionKind.CRASH, {})
    feedback_totals = result.totals.get(SubmissionKind.FEEDBACK, {})
    return {
        "new_crashes": [r.to_dict() for r in result.new_records(SubmissionKind.CRASH)],
        "recovered_logs": [
            {"id": r.id, "log_path": r.artifact_path}
            for r in result.recovered(SubmissionKind.CRASH)
        ],
        "new_feedbacks": [r.to_dict() for r in result.new_records(SubmissionKind.FEEDBACK)],
        "recovered_screenshots": [
            {"id": r.id, "screenshot_path": r.artifact_path}
            for r in result.recovered(SubmissionKind.FEEDBACK)
        ],
        "crash_total": crash_totals.get("total"),
        "crash_unfixed": crash_totals.get("unfixed"),
        "feedback_total": feedback_totals.get("total"),
        "feedback_unfixed": feedback_totals.get("unfixed"),
        "errors": result.errors,
        "warnings": result.warnings,
    }


def cmd_sync(
    config: Config,
    store: StateStore,
    app: str | None,
    no_crashes: bool,
    no_feedback: bool,
    fmt: str,
) -> int:
    """Pull new submissions and backfill missing artifacts."""
    kinds = tuple(
        k
        for k, skip in ((SubmissionKind.CRASH, no_crashes), (SubmissionKind.FEEDBACK, no_feedback))
        if not skip
    )
    if not kinds:
        print("⚠️  Nothing to do (both --no-crashes and --no-feedback specified)")
        return 0

    service = SubmissionSyncService(
        client=make_client(config),
        store=store,
        artifact_dirs={
            SubmissionKind.CRASH: config.logs_dir,
            SubmissionKind.FEEDBACK: config.screenshots_dir,
        },
    )
    result = service.sync(config.apps, bundle_id=app, kinds=kinds)

    if fmt == "json":
        _print_json(_sync_json(result))
    else:
        _print_sync_text(result)

    if not result.success:
        for error in result.errors:
            logger.error("Sync failed for %s", error)
        return 1
    return 0


def cmd_list(
    store: StateStore,
    kind: SubmissionKind,
    status: str | None,
    since: str | None,
    app: str | None,
    limit: int,
    fmt: str,
) -> int:
    """List stored submissions, newest first."""
    try:
        statuses = ReviewStatus.parse_list(status) if status else None
    except ValueError as e:
        return _error(f"invalid status filter: {e}")

    filters = SubmissionFilters(
        statuses=statuses,
        since=normalize_timestamp(since) if since else None,
        bundle_id=app,
        limit=limit,
    )
    records = store.list_submissions(kind, filters)

    if fmt == "json":
        _print_json({kind.table: [r.to_dict() for r in records], "count": len(records)})
        return 0

    if not records:
        print("No crashes found." if kind is SubmissionKind.CRASH else "No feedback found.")
        return 0

    print(f" {'ID':<5} {'STATUS':<14} {'DATE':<20} {'DEVICE':<14} {'OS':<10} APP")
    print("-" * 90)
    for r in records:
        print(
            f" {r.id:<5} {r.status.value:<14} {_short_date(r.created_at):<20} "
            f"{r.device_model or '-':<14} {r.os_version or '-':<10} {r.app_bundle_id or '-'}"
        )
    unfixed = sum(1 for r in records if r.status in OPEN_STATUSES)
    print()
    print(f"{len(records)} {kind.value}(s) shown ({unfixed} unfixed)")
    return 0


def _print_record(record: SubmissionRecord) -> None:
    print(f"{record.kind.label} #{record.id}")
    print("─" * 40)
    print(f"Status:     {record.status.value}")
    print(f"Created:    {record.created_at}")
    print(f"Synced:     {record.synced_at}")
    print(f"App:        {record.app_bundle_id or '-'} ({record.app_name or '-'})")

    optional = [
        ("Device", record.device_model),
        ("OS", record.os_version),
        ("Platform", record.app_platform),
        ("Arch", record.architecture),
        ("Build", record.build_bundle_id),
        ("Build ID", record.build_id),
        ("Tester", record.tester_email),
        ("Comment", record.tester_comment),
        ("Connection", record.connection_type),
        ("Battery", f"{record.battery_pct}%" if record.battery_pct is not None else None),
        ("Uptime", f"{record.app_uptime_ms} ms" if record.app_uptime_ms is not None else None),
        ("Fixed at", record.fixed_at),
        ("Notes", record.notes),
        ("Dup of", f"#{record.duplicate_of}" if record.duplicate_of is not None else None),
        ("MIME Type", record.artifact_mime_type),
    ]
    for label, value in optional:
        if value:
            print(f"{label + ':':<12}{value}")

    label = record.kind.artifact_label.capitalize()
    print(f"{label + ':':<12}{record.artifact_path or '(not available yet)'}")


def cmd_show(store: StateStore, kind: SubmissionKind, submission_id: int, fmt: str) -> int:
    """Show one submission."""
    record = store.get_submission(kind, submission_id)
    if record is None:
        return _error(f"{kind.value} #{submission_id} not found")

    if fmt == "json":
        _print_json(record.to_dict())
    else:
        _print_record(record)
    return 0


def cmd_artifact_path(store: StateStore, kind: SubmissionKind, submission_id: int) -> int:
    """Print the absolute path of a downloaded crash log or screenshot."""
    record = store.get_submission(kind, submission_id)
    if record is None:
        return _error(f"{kind.value} #{submission_id} not found")
    if not record.artifact_path:
        return _error(
            f"{kind.artifact_label} for {kind.value} #{submission_id} not available yet "
            "(run `testflight-sync sync` to retry)"
        )

    print(record.artifact_path)
    return 0


def cmd_review(
    store: StateStore,
    kind: SubmissionKind,
    action: str,
    submission_id: int,
    fmt: str,
    notes: str | None = None,
    of_id: int | None = None,
) -> int:
    """Apply a review command (fix, investigate, wontfix, duplicate, reopen)."""
    workflow = ReviewWorkflow(store)

    try:
        if action == "fix":
            record = workflow.fix(kind, submission_id, notes)
            message = f"marked as {ReviewStatus.FIXED.value}"
        elif action == "investigate":
            record = workflow.investigate(kind, submission_id)
            message = f"marked as {ReviewStatus.INVESTIGATING.value}"
        elif action == "wontfix":
            record = workflow.wontfix(kind, submission_id, notes)
            message = f"marked as {ReviewStatus.WONTFIX.value}"
        elif action == "duplicate":
            record = workflow.mark_duplicate(kind, submission_id, of_id)
            message = f"marked as duplicate of #{of_id}"
        elif action == "reopen":
            record = workflow.reopen(kind, submission_id)
            message = "reopened"
        else:
            return _error(f"unknown review action: {action}")
    except ReviewError as e:
        return _error(str(e))

    if fmt == "json":
        _print_json(record.to_dict())
    else:
        print(f"✓ {kind.label} #{submission_id} {message}")
    return 0


def cmd_stats(store: StateStore, kind: SubmissionKind, app: str | None, fmt: str) -> int:
    """Show statistics for one submission kind."""
    if app and store.get_source(app) is None:
        return _error(f"app '{app}' has not been synced yet")

    stats = store.stats(kind, app)

    if fmt == "json":
        _print_json(stats.to_dict())
        return 0

    print(f"\n📊 {kind.label} Statistics")
    print("=" * 30)
    print(f"  {'Total:':<16}{stats.total}")
    for status in ReviewStatus:
        count = stats.by_status.get(status.value, 0)
        if count:
            print(f"  {status.value + ':':<16}{count}")
    print(f"  {'Unfixed:':<16}{stats.unfixed}")

    if stats.by_device:
        print("\n  By Device:")
        for device, count in stats.by_device:
            print(f"    {device:<20} {count}")

    if stats.by_os:
        print("\n  By OS:")
        for os_version, count in stats.by_os:
            print(f"    {os_version:<20} {count}")
    print()
    return 0


def run_review_command(store: StateStore, kind: SubmissionKind, parsed: argparse.Namespace, command: str) -> int:
    """Dispatch list/show/artifact/status/stats commands for one kind."""
    fmt = parsed.format
    if command == "list":
        return cmd_list(store, kind, parsed.status, parsed.since, parsed.app, parsed.limit, fmt)
    elif command == "show":
        return cmd_show(store, kind, parsed.id, fmt)
    elif command == ARTIFACT_COMMANDS[kind]:
        return cmd_artifact_path(store, kind, parsed.id)
    elif command in ("fix", "wontfix"):
        return cmd_review(store, kind, command, parsed.id, fmt, notes=parsed.notes)
    elif command in ("investigate", "reopen"):
        return cmd_review(store, kind, command, parsed.id, fmt)
    elif command == "duplicate":
        return cmd_review(store, kind, command, parsed.id, fmt, of_id=parsed.of_id)
    elif command == "stats":
        return cmd_stats(store, kind, parsed.app, fmt)
    return _error(f"unknown command: {command}")


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init":
        return cmd_init(parsed.global_)

    if parsed.command == "feedback" and not parsed.feedback_command:
        return _error("missing feedback command (see `testflight-sync feedback --help`)")

    # Load config
    try:
        config = load_config(resolve_data_dir(parsed.data_dir))
    except ConfigValidationError as e:
        return _error(f"Failed to load config: {e}")

    try:
        if parsed.command == "apps":
            return cmd_apps(config, parsed.format)

        store = StateStore(config.db_path)

        if parsed.command == "sync":
            return cmd_sync(
                config,
                store,
                app=parsed.app,
                no_crashes=parsed.no_crashes,
                no_feedback=parsed.no_feedback,
                fmt=parsed.format,
            )
        elif parsed.command == "feedback":
            return run_review_command(store, SubmissionKind.FEEDBACK, parsed, parsed.feedback_command)
        else:
            return run_review_command(store, SubmissionKind.CRASH, parsed, parsed.command)
    except AuthError as e:
        return _error(f"Credential error: {e}")
    except ConfigValidationError as e:
        return _error(str(e))
    except AscError as e:
        return _error(str(e))


if __name__ == "__main__":
    sys.exit(main())
