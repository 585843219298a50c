from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, insert, select, text

from chronojob.db.models import JobRun, SchemaMigration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _columns(conn: Connection, table_name: str) -> set[str]:
    # a fresh inspector per call; reflection is cached per instance and ALTERs would go unseen
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return set()
    return {column["name"] for column in inspector.get_columns(table_name)}


def _indexes(conn: Connection, table_name: str) -> set[str]:
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return set()
    return {index["name"] for index in inspector.get_indexes(table_name) if index.get("name")}


def _add_missing_columns(conn: Connection, table_name: str, columns: dict[str, str]) -> None:
    existing = _columns(conn, table_name)
    for column_name, ddl in columns.items():
        if column_name not in existing:
            conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl}"))


def _create_missing_indexes(conn: Connection, table_name: str, indexes: dict[str, str]) -> None:
    existing = _indexes(conn, table_name)
    for index_name, columns in indexes.items():
        if index_name not in existing:
            conn.execute(text(f"CREATE INDEX {index_name} ON {table_name} {columns}"))


def _baseline(_conn: Connection) -> None:
    return


def _scheduled_job_claim_columns(conn: Connection) -> None:
    if not inspect(conn).has_table("scheduled_jobs"):
        return

    _add_missing_columns(
        conn,
        "scheduled_jobs",
        {
            "organisation_id": "VARCHAR(36)",
            "last_result_ok": "BOOLEAN",
            "last_result_message": "TEXT",
            "last_result": "JSON",
            "last_error_code": "VARCHAR(64)",
            "retry_count": "INTEGER NOT NULL DEFAULT 0",
            "max_retries": "INTEGER NOT NULL DEFAULT 3",
            "claimed_at": "DATETIME",
            "claimed_by": "VARCHAR(128)",
            "claim_token": "VARCHAR(36)",
        },
    )


def _normalize_job_statuses(conn: Connection) -> None:
    if not inspect(conn).has_table("scheduled_jobs"):
        return

    # older rows: upper-case values, SCHEDULED for pending, COMPLETED for succeeded
    statements = (
        "UPDATE scheduled_jobs SET status = LOWER(status) WHERE status <> LOWER(status)",
        "UPDATE scheduled_jobs SET status = 'pending' WHERE status = 'scheduled'",
        "UPDATE scheduled_jobs SET status = 'succeeded' WHERE status = 'completed'",
        """
        UPDATE scheduled_jobs
        SET status = 'pending', claimed_at = NULL, claimed_by = NULL
        WHERE status = 'running' AND claim_token IS NULL
        """,
        "UPDATE scheduled_jobs SET retry_count = max_retries WHERE retry_count > max_retries",
    )
    for statement in statements:
        conn.execute(text(statement))


def _job_runs_table(conn: Connection) -> None:
    JobRun.__table__.create(conn, checkfirst=True)


def _scheduled_job_indexes(conn: Connection) -> None:
    if not inspect(conn).has_table("scheduled_jobs"):
        return

    _create_missing_indexes(
        conn,
        "scheduled_jobs",
        {
            "ix_scheduled_jobs_status_next_run": "(status, next_run_at, id)",
            "ix_scheduled_jobs_running_claim": "(status, claimed_at)",
            "ix_scheduled_jobs_created_id": "(created_at, id)",
            "ix_scheduled_jobs_org_status": "(organisation_id, status)",
        },
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(1, "baseline", _baseline),
    MigrationStep(2, "scheduled_job_claim_columns", _scheduled_job_claim_columns),
    MigrationStep(3, "normalize_job_statuses", _normalize_job_statuses),
    MigrationStep(4, "job_runs_table", _job_runs_table),
    MigrationStep(5, "scheduled_job_indexes", _scheduled_job_indexes),
)


def apply_migrations(engine: Engine) -> list[int]:
    """Apply every pending step in one transaction and return the versions applied."""
    applied: list[int] = []
    with engine.begin() as conn:
        SchemaMigration.__table__.create(conn, checkfirst=True)
        recorded = set(conn.scalars(select(SchemaMigration.version)).all())

        for step in MIGRATIONS:
            if step.version in recorded:
                continue
            step.apply(conn)
            conn.execute(insert(SchemaMigration).values(version=step.version, name=step.name))
            applied.append(step.version)

    if applied:
        logger.info("Applied schema migrations %s", applied)
    return applied
