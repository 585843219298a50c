from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from chronojob.db.migrations import MIGRATIONS, apply_migrations
from chronojob.db.session import build_engine


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_upgrades_legacy_scheduled_jobs(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE scheduled_jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    type VARCHAR(64) NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    description TEXT,
                    created_by VARCHAR(36),
                    payload JSON NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    next_run_at DATETIME,
                    recurrence_rule VARCHAR(128),
                    last_run_at DATETIME,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        conn.execute(
            text(
                """
                INSERT INTO scheduled_jobs (id, type, name, payload, status, next_run_at)
                VALUES
                    ('job-scheduled', 'noop', 'scheduled', '{}', 'SCHEDULED', '2026-01-01 00:00:00'),
                    ('job-completed', 'noop', 'completed', '{}', 'COMPLETED', NULL),
                    ('job-running', 'noop', 'running', '{}', 'RUNNING', '2026-01-01 00:00:00'),
                    ('job-failed', 'noop', 'failed', '{}', 'FAILED', NULL)
                """
            )
        )

    assert apply_migrations(engine) == [step.version for step in MIGRATIONS]
    assert apply_migrations(engine) == []

    with engine.begin() as conn:
        job_columns = _column_names(conn, "scheduled_jobs")
        job_indexes = _index_names(conn, "scheduled_jobs")
        run_columns = _column_names(conn, "job_runs")
        statuses = dict(conn.execute(text("SELECT id, status FROM scheduled_jobs")).all())
        retry_defaults = {
            int(row[0]) for row in conn.execute(text("SELECT max_retries FROM scheduled_jobs")).all()
        }
        migration_versions = [
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        ]

    assert {
        "claimed_at",
        "claimed_by",
        "claim_token",
        "last_result",
        "last_result_ok",
        "last_error_code",
        "organisation_id",
        "retry_count",
        "max_retries",
    }.issubset(job_columns)
    assert {
        "ix_scheduled_jobs_status_next_run",
        "ix_scheduled_jobs_running_claim",
        "ix_scheduled_jobs_created_id",
        "ix_scheduled_jobs_org_status",
    }.issubset(job_indexes)
    assert {"claim_token", "origin", "status_after", "retry_count"}.issubset(run_columns)
    assert statuses == {
        "job-scheduled": "pending",
        "job-completed": "succeeded",
        "job-running": "pending",
        "job-failed": "failed",
    }
    assert retry_defaults == {3}
    assert migration_versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_on_empty_database_creates_run_history(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    assert len(apply_migrations(engine)) == len(MIGRATIONS)

    with engine.begin() as conn:
        run_indexes = _index_names(conn, "job_runs")
        migration_count = conn.execute(text("SELECT COUNT(*) FROM schema_migrations")).scalar_one()

    assert "ix_job_runs_job_finished" in run_indexes
    assert migration_count == len(MIGRATIONS)


def test_build_engine_applies_sqlite_pragmas(tmp_path: Path) -> None:
    engine = build_engine(f"sqlite:///{(tmp_path / 'pragmas.sqlite3').as_posix()}", busy_timeout_ms=2500)
    try:
        with engine.connect() as conn:
            journal_mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
            busy_timeout = conn.execute(text("PRAGMA busy_timeout")).scalar_one()
            foreign_keys = conn.execute(text("PRAGMA foreign_keys")).scalar_one()
    finally:
        engine.dispose()

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) == 2500
    assert int(foreign_keys) == 1
