"""
SQLite-based state store implementation.

Tables:
- apps: Monitored apps (sources), unique by bundle id
- crashes: Crash submissions, unique by remote submission id
- feedbacks: Screenshot feedback submissions, unique by remote submission id
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ..schemas import (
    CLOSED_STATUSES,
    OPEN_STATUSES,
    ReviewStatus,
    SubmissionKind,
    utc_now,
)

STATUS_VALUES = ", ".join(f"'{s.value}'" for s in ReviewStatus)

TOP_N = 15

# Columns copied verbatim from the remote payload on insert
METADATA_COLUMNS = (
    "device_model",
    "os_version",
    "locale",
    "time_zone",
    "app_platform",
    "device_platform",
    "device_family",
    "architecture",
    "connection_type",
    "app_uptime_ms",
    "battery_pct",
    "tester_email",
    "tester_comment",
    "build_bundle_id",
    "build_id",
)


@dataclass
class SourceRecord:
    """A monitored app."""

    id: int
    bundle_id: str
    remote_id: str | None
    name: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SourceRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            bundle_id=row["bundle_id"],
            remote_id=row["remote_id"],
            name=row["name"],
        )


@dataclass
class NewSubmission:
    """Insert payload for a crash or feedback submission."""

    app_id: int
    submission_id: str
    created_at: str
    device_model: str | None = None
    os_version: str | None = None
    locale: str | None = None
    time_zone: str | None = None
    app_platform: str | None = None
    device_platform: str | None = None
    device_family: str | None = None
    architecture: str | None = None
    connection_type: str | None = None
    app_uptime_ms: int | None = None
    battery_pct: int | None = None
    tester_email: str | None = None
    tester_comment: str | None = None
    build_bundle_id: str | None = None
    build_id: str | None = None


@dataclass
class SubmissionRecord:
    """A stored submission joined with its app."""

    kind: SubmissionKind
    id: int
    app_id: int
    submission_id: str
    created_at: str
    synced_at: str
    device_model: str | None
    os_version: str | None
    locale: str | None
    time_zone: str | None
    app_platform: str | None
    device_platform: str | None
    device_family: str | None
    architecture: str | None
    connection_type: str | None
    app_uptime_ms: int | None
    battery_pct: int | None
    tester_email: str | None
    tester_comment: str | None
    build_bundle_id: str | None
    build_id: str | None
    has_artifact: bool
    artifact_path: str | None
    artifact_mime_type: str | None
    status: ReviewStatus
    fixed_at: str | None
    notes: str | None
    duplicate_of: int | None
    app_bundle_id: str | None = None
    app_name: str | None = None

    @classmethod
    def from_row(cls, kind: SubmissionKind, row: sqlite3.Row) -> "SubmissionRecord":
        """Create from database row."""
        values = {name: row[name] for name in METADATA_COLUMNS}
        return cls(
            kind=kind,
            id=row["id"],
            app_id=row["app_id"],
            submission_id=row["submission_id"],
            created_at=row["created_at"],
            synced_at=row["synced_at"],
            has_artifact=bool(row["has_artifact"]),
            artifact_path=row["artifact_path"],
            artifact_mime_type=row["artifact_mime_type"],
            status=ReviewStatus(row["status"]),
            fixed_at=row["fixed_at"],
            notes=row["notes"],
            duplicate_of=row["duplicate_of"],
            app_bundle_id=row["app_bundle_id"],
            app_name=row["app_name"],
            **values,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data


@dataclass
class SubmissionFilters:
    """Filters for listing submissions. The limit is always applied last."""

    statuses: list[ReviewStatus] | None = None
    since: str | None = None
    bundle_id: str | None = None
    limit: int = 50


@dataclass
class SubmissionStats:
    """Aggregate counts for one kind of submission."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_device: list[tuple[str, int]] = field(default_factory=list)
    by_os: list[tuple[str, int]] = field(default_factory=list)
    unfixed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_device": [[name, count] for name, count in self.by_device],
            "by_os": [[name, count] for name, count in self.by_os],
            "unfixed": self.unfixed,
        }


def submission_select(kind: SubmissionKind) -> str:
    """SELECT prefix joining a submission table with its app."""
    return f"""
        SELECT c.*, a.bundle_id AS app_bundle_id, a.name AS app_name
        FROM {kind.table} c
        JOIN apps a ON a.id = c.app_id
    """


class StateStore:
    """
    SQLite-based state store for TestFlight submissions.

    Provides persistent tracking of:
    - Monitored apps and their App Store Connect ids
    - Crash and feedback submissions (insert-or-ignore by remote id)
    - Downloaded artifacts (crash logs, screenshots)
    - Review status of each submission

    Every public method commits on its own. Safe for single-writer use.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS apps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bundle_id TEXT NOT NULL UNIQUE,
                    remote_id TEXT UNIQUE,
                    name TEXT
                )
            """
            )

            # Crashes and feedbacks share one layout; only the artifact differs
            for kind in SubmissionKind:
                self._create_submission_table(conn, kind.table)

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    @staticmethod
    def _create_submission_table(conn: sqlite3.Connection, table: str) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                app_id INTEGER NOT NULL REFERENCES apps(id),
                submission_id TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                synced_at TEXT NOT NULL,
                device_model TEXT,
                os_version TEXT,
                locale TEXT,
                time_zone TEXT,
                app_platform TEXT,
                device_platform TEXT,
                device_family TEXT,
                architecture TEXT,
                connection_type TEXT,
                app_uptime_ms INTEGER,
                battery_pct INTEGER,
                tester_email TEXT,
                tester_comment TEXT,
                build_bundle_id TEXT,
                build_id TEXT,
                has_artifact INTEGER NOT NULL DEFAULT 0,
                artifact_path TEXT,
                artifact_mime_type TEXT,
                status TEXT NOT NULL DEFAULT 'new' CHECK (status IN ({STATUS_VALUES})),
                fixed_at TEXT,
                notes TEXT,
                duplicate_of INTEGER REFERENCES {table}(id),
                CHECK ((has_artifact = 1) = (artifact_path IS NOT NULL)),
                CHECK ((status = 'fixed') = (fixed_at IS NOT NULL)),
                CHECK ((status = 'duplicate') = (duplicate_of IS NOT NULL))
            )
        """
        )

        # list filters, newest-first ordering and the missing-artifact scan
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table}(status)")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created ON {table}(created_at DESC)")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_app ON {table}(app_id)")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_missing_artifact ON {table}(has_artifact)")

    # App (source) methods

    def upsert_source(
        self,
        bundle_id: str,
        remote_id: str | None = None,
        name: str | None = None,
    ) -> int:
        """
        Insert or update an app, returning its stable local id.

        Known remote_id/name values are only replaced by new non-null values.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO apps (bundle_id, remote_id, name) VALUES (?, ?, ?)
                ON CONFLICT(bundle_id) DO UPDATE SET
                    remote_id = COALESCE(excluded.remote_id, apps.remote_id),
                    name = COALESCE(excluded.name, apps.name)
            """,
                (bundle_id, remote_id, name),
            )
            row = conn.execute("SELECT id FROM apps WHERE bundle_id = ?", (bundle_id,)).fetchone()
            return row["id"]

    def get_source(self, bundle_id: str) -> SourceRecord | None:
        """Get an app by bundle id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM apps WHERE bundle_id = ?", (bundle_id,)).fetchone()
            return SourceRecord.from_row(row) if row else None

    # Submission methods

    def insert_submission(self, kind: SubmissionKind, submission: NewSubmission) -> int | None:
        """
        Insert a submission unless its remote id is already stored.

        Returns:
            The new local id, or None if the submission already existed
            (the existing row is left untouched).
        """
        columns = ["app_id", "submission_id", "created_at", "synced_at", *METADATA_COLUMNS]
        values = [
            submission.app_id,
            submission.submission_id,
            submission.created_at,
            utc_now(),
            *(getattr(submission, name) for name in METADATA_COLUMNS),
        ]
        placeholders = ", ".join("?" for _ in columns)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {kind.table} ({", ".join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(submission_id) DO NOTHING
            """,
                values,
            )
            if cursor.rowcount == 0:
                return None
            return cursor.lastrowid

    def get_submission(self, kind: SubmissionKind, submission_id: int) -> SubmissionRecord | None:
        """Get a submission by local id."""
        with self._transaction() as conn:
            row = conn.execute(
                f"{submission_select(kind)} WHERE c.id = ?", (submission_id,)
            ).fetchone()
            return SubmissionRecord.from_row(kind, row) if row else None

    def list_submissions(
        self, kind: SubmissionKind, filters: SubmissionFilters | None = None
    ) -> list[SubmissionRecord]:
        """List submissions, newest first."""
        filters = filters or SubmissionFilters()
        conditions: list[str] = []
        params: list[Any] = []

        if filters.statuses:
            placeholders = ", ".join("?" for _ in filters.statuses)
            conditions.append(f"c.status IN ({placeholders})")
            params.extend(ReviewStatus(s).value for s in filters.statuses)

        if filters.since:
            conditions.append("c.created_at >= ?")
            params.append(filters.since)

        if filters.bundle_id:
            conditions.append("a.bundle_id = ?")
            params.append(filters.bundle_id)

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(filters.limit)

        with self._transaction() as conn:
            rows = conn.execute(
                f"{submission_select(kind)}{where} ORDER BY c.created_at DESC, c.id DESC LIMIT ?",
                params,
            ).fetchall()
            return [SubmissionRecord.from_row(kind, r) for r in rows]

    def submissions_missing_artifact(
        self, kind: SubmissionKind, app_id: int | None = None
    ) -> list[SubmissionRecord]:
        """Submissions without a downloaded artifact, newest first."""
        sql = f"{submission_select(kind)} WHERE c.has_artifact = 0"
        params: list[Any] = []
        if app_id is not None:
            sql += " AND c.app_id = ?"
            params.append(app_id)
        sql += " ORDER BY c.created_at DESC, c.id DESC"

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [SubmissionRecord.from_row(kind, r) for r in rows]

    def set_artifact(
        self,
        kind: SubmissionKind,
        submission_id: int,
        path: str,
        mime_type: str | None = None,
    ) -> bool:
        """Record a downloaded artifact. Returns False if the id is unknown."""
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {kind.table}
                SET has_artifact = 1,
                    artifact_path = ?,
                    artifact_mime_type = COALESCE(?, artifact_mime_type)
                WHERE id = ?
            """,
                (path, mime_type, submission_id),
            )
            return cursor.rowcount > 0

    # Review status methods

    def set_status(
        self,
        kind: SubmissionKind,
        submission_id: int,
        status: ReviewStatus,
        notes: str | None = None,
    ) -> bool:
        """
        Set a review status other than duplicate.

        Sets fixed_at to now for FIXED and clears it otherwise; clears
        duplicate_of. Existing notes are kept unless new notes are given.

        Returns:
            True if a row was updated
        """
        status = ReviewStatus(status)
        if status is ReviewStatus.DUPLICATE:
            raise ValueError("use mark_duplicate() to mark a submission as duplicate")

        fixed_at = utc_now() if status is ReviewStatus.FIXED else None

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {kind.table}
                SET status = ?,
                    notes = COALESCE(?, notes),
                    fixed_at = ?,
                    duplicate_of = NULL
                WHERE id = ?
            """,
                (status.value, notes, fixed_at, submission_id),
            )
            return cursor.rowcount > 0

    def mark_duplicate(self, kind: SubmissionKind, submission_id: int, of_id: int) -> bool:
        """
        Mark a submission as duplicate of another one of the same kind.

        The target is not looked up here; a dangling target is rejected by the
        foreign key (sqlite3.IntegrityError).
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {kind.table}
                SET status = ?, duplicate_of = ?, fixed_at = NULL
                WHERE id = ?
            """,
                (ReviewStatus.DUPLICATE.value, of_id, submission_id),
            )
            return cursor.rowcount > 0

    def reopen(self, kind: SubmissionKind, submission_id: int) -> bool:
        """Reset to NEW, clearing fixed_at, notes and duplicate_of."""
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {kind.table}
                SET status = ?, fixed_at = NULL, notes = NULL, duplicate_of = NULL
                WHERE id = ?
            """,
                (ReviewStatus.NEW.value, submission_id),
            )
            return cursor.rowcount > 0

    # Statistics

    def stats(self, kind: SubmissionKind, bundle_id: str | None = None) -> SubmissionStats:
        """Totals, per-status counts and top devices/OS versions."""
        base = f"FROM {kind.table} c JOIN apps a ON a.id = c.app_id"
        conditions: list[str] = []
        params: list[Any] = []
        if bundle_id:
            conditions.append("a.bundle_id = ?")
            params.append(bundle_id)

        def where(*extra: str) -> str:
            clauses = [*conditions, *extra]
            return f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS count {base}{where()}", params).fetchone()

            by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    f"SELECT c.status, COUNT(*) AS count {base}{where()} GROUP BY c.status",
                    params,
                ).fetchall()
            }

            def top(column: str) -> list[tuple[str, int]]:
                rows = conn.execute(
                    f"""
                    SELECT c.{column} AS value, COUNT(*) AS count {base}
                    {where(f"c.{column} IS NOT NULL")}
                    GROUP BY c.{column} ORDER BY count DESC LIMIT {TOP_N}
                """,
                    params,
                ).fetchall()
                return [(r["value"], r["count"]) for r in rows]

            by_device = top("device_model")
            by_os = top("os_version")

        total_count = total["count"] if total else 0
        closed = sum(by_status.get(s.value, 0) for s in CLOSED_STATUSES)

        return SubmissionStats(
            total=total_count,
            by_status=by_status,
            by_device=by_device,
            by_os=by_os,
            unfixed=total_count - closed,
        )

    def count_total(self, kind: SubmissionKind) -> int:
        with self._transaction() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM {kind.table}").fetchone()
            return row["count"] if row else 0

    def count_unfixed(self, kind: SubmissionKind) -> int:
        """Submissions still new or under investigation."""
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS count FROM {kind.table} WHERE status IN ({placeholders})",
                [s.value for s in OPEN_STATUSES],
            ).fetchone()
            return row["count"] if row else 0
