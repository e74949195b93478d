from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    return inspect(conn).has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    return any(col["name"] == column_name for col in inspect(conn).get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    return any(index.get("name") == index_name for index in inspect(conn).get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


# Edit queue store.


def _edit_queue_0002_upload_retry_columns(conn: Connection) -> None:
    if not _table_exists(conn, "queued_photo_uploads"):
        return

    if not _column_exists(conn, "queued_photo_uploads", "retry_count"):
        conn.execute(text("ALTER TABLE queued_photo_uploads ADD COLUMN retry_count INTEGER NOT NULL DEFAULT 0"))

    if not _column_exists(conn, "queued_photo_uploads", "max_retries"):
        conn.execute(text("ALTER TABLE queued_photo_uploads ADD COLUMN max_retries INTEGER NOT NULL DEFAULT 3"))

    if not _column_exists(conn, "queued_photo_uploads", "last_error"):
        conn.execute(text("ALTER TABLE queued_photo_uploads ADD COLUMN last_error TEXT"))

    if not _column_exists(conn, "queued_photo_uploads", "last_attempt_at"):
        conn.execute(text("ALTER TABLE queued_photo_uploads ADD COLUMN last_attempt_at DATETIME"))


def _edit_queue_0003_job_order_indexes(conn: Connection) -> None:
    if _table_exists(conn, "queued_edits") and not _index_exists(conn, "queued_edits", "ix_queued_edits_job_created"):
        conn.execute(text("CREATE INDEX ix_queued_edits_job_created ON queued_edits (job_id, created_at_ns)"))

    if _table_exists(conn, "queued_photo_uploads") and not _index_exists(
        conn, "queued_photo_uploads", "ix_queued_photo_uploads_job_created"
    ):
        conn.execute(
            text(
                "CREATE INDEX ix_queued_photo_uploads_job_created ON queued_photo_uploads (job_id, created_at_ns)"
            )
        )


# Job cache store.


def _job_cache_0002_editable_flag(conn: Connection) -> None:
    if not _table_exists(conn, "cached_jobs"):
        return

    if not _column_exists(conn, "cached_jobs", "is_editable"):
        conn.execute(text("ALTER TABLE cached_jobs ADD COLUMN is_editable BOOLEAN NOT NULL DEFAULT 1"))

    if not _index_exists(conn, "cached_jobs", "ix_cached_jobs_technician_due"):
        conn.execute(text("CREATE INDEX ix_cached_jobs_technician_due ON cached_jobs (technician_id, due_date)"))


def _job_cache_0003_offline_update_marker(conn: Connection) -> None:
    if _table_exists(conn, "technician_cache_status") and not _column_exists(
        conn, "technician_cache_status", "last_offline_update_at"
    ):
        conn.execute(text("ALTER TABLE technician_cache_status ADD COLUMN last_offline_update_at DATETIME"))


# Page cache store.


def _page_cache_0002_page_content(conn: Connection) -> None:
    if not _table_exists(conn, "cached_pages"):
        return

    if not _column_exists(conn, "cached_pages", "content"):
        conn.execute(text("ALTER TABLE cached_pages ADD COLUMN content BLOB"))

    if not _column_exists(conn, "cached_pages", "content_type"):
        conn.execute(text("ALTER TABLE cached_pages ADD COLUMN content_type VARCHAR(255)"))

    if not _index_exists(conn, "cached_pages", "ix_cached_pages_cached_at"):
        conn.execute(text("CREATE INDEX ix_cached_pages_cached_at ON cached_pages (cached_at)"))


EDIT_QUEUE_MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="upload_retry_columns", apply=_edit_queue_0002_upload_retry_columns),
    MigrationStep(version=3, name="job_order_indexes", apply=_edit_queue_0003_job_order_indexes),
)

JOB_CACHE_MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="editable_flag", apply=_job_cache_0002_editable_flag),
    MigrationStep(version=3, name="offline_update_marker", apply=_job_cache_0003_offline_update_marker),
)

PAGE_CACHE_MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="page_content", apply=_page_cache_0002_page_content),
)


def apply_migrations(conn: Connection, migrations: tuple[MigrationStep, ...]) -> list[int]:
    """Apply missing steps inside the caller's transaction. Returns the versions applied."""
    _ensure_schema_migrations_table(conn)

    existing_versions = {
        int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
    }

    applied: list[int] = []
    for step in migrations:
        if step.version in existing_versions:
            continue

        step.apply(conn)
        conn.execute(
            text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
            {"version": step.version, "name": step.name},
        )
        applied.append(step.version)
    return applied
