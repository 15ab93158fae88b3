"""
Watermark, lease and run bookkeeping for the hourly and daily stages.

Per stage: Idle -> Running(period) -> Committed(period) | Failed(period).
The watermark only moves inside the stage's own write transaction, so a crash
before commit leaves it where it was and the same period is retried. A lease
row keeps two schedulers from running the same stage at once.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import duckdb

from pipeline_errors import LeaseHeldError

HOURLY_STAGE = "hourly"
DAILY_STAGE = "daily"
STAGES = (HOURLY_STAGE, DAILY_STAGE)


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


def _check_stage(stage: str):
    if stage not in STAGES:
        raise ValueError(f"Unknown pipeline stage '{stage}', expected one of {STAGES}")


# --- Watermarks -----------------------------------------------------------------


def get_watermark(con: duckdb.DuckDBPyConnection, stage: str) -> Optional[datetime]:
    """Last committed period for the stage, or None if it never ran."""
    _check_stage(stage)
    row = con.execute(
        "SELECT last_completed_period FROM pipeline_watermarks WHERE stage = ?",
        [stage],
    ).fetchone()
    return row[0] if row else None


def advance_watermark(
    con: duckdb.DuckDBPyConnection, stage: str, period: datetime
) -> datetime:
    """
    Move the stage watermark forward to period (never backwards).
    Runs inside the caller's transaction; returns the stored value.
    """
    _check_stage(stage)
    con.execute(
        """
        INSERT INTO pipeline_watermarks (stage, last_completed_period, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT (stage) DO UPDATE SET
            last_completed_period = GREATEST(pipeline_watermarks.last_completed_period, excluded.last_completed_period),
            updated_at = excluded.updated_at
        """,
        [stage, period],
    )
    return get_watermark(con, stage)


# --- Leases ---------------------------------------------------------------------


def acquire_lease(
    con: duckdb.DuckDBPyConnection,
    stage: str,
    owner: str,
    ttl_seconds: int,
    now: datetime,
) -> bool:
    """
    Take (or renew) exclusive ownership of a stage.
    Succeeds when no lease exists, the current one expired, or owner already holds it.
    """
    _check_stage(stage)
    expires_at = now + timedelta(seconds=ttl_seconds)
    con.execute(
        """
        INSERT INTO pipeline_leases (stage, owner, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT (stage) DO UPDATE SET
            owner = excluded.owner,
            acquired_at = excluded.acquired_at,
            expires_at = excluded.expires_at
        WHERE pipeline_leases.expires_at <= excluded.acquired_at
           OR pipeline_leases.owner = excluded.owner
        """,
        [stage, owner, now, expires_at],
    )
    holder = con.execute(
        "SELECT owner FROM pipeline_leases WHERE stage = ?", [stage]
    ).fetchone()
    return holder is not None and holder[0] == owner


def current_lease(con: duckdb.DuckDBPyConnection, stage: str):
    return con.execute(
        "SELECT owner, acquired_at, expires_at FROM pipeline_leases WHERE stage = ?",
        [stage],
    ).fetchone()


def release_lease(con: duckdb.DuckDBPyConnection, stage: str, owner: str) -> None:
    con.execute(
        "DELETE FROM pipeline_leases WHERE stage = ? AND owner = ?", [stage, owner]
    )


@contextmanager
def stage_lease(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    stage: str,
    owner: str,
    ttl_seconds: int,
    now: datetime,
):
    """Hold the stage lease for the duration of the block; raise LeaseHeldError if taken."""
    if not acquire_lease(con, stage, owner, ttl_seconds, now):
        holder = current_lease(con, stage)
        raise LeaseHeldError(stage, holder[0], holder[2])
    logger.info(f"Lease acquired on stage '{stage}' by {owner} (ttl={ttl_seconds}s)")
    try:
        yield owner
    finally:
        release_lease(con, stage, owner)
        logger.info(f"Lease released on stage '{stage}' by {owner}")


def new_owner_id(stage: str) -> str:
    return f"{stage}-{uuid.uuid4().hex[:12]}"


# --- Run log --------------------------------------------------------------------


def start_run(
    con: duckdb.DuckDBPyConnection,
    stage: str,
    period: Optional[datetime],
    owner: str = None,
    is_backfill: bool = False,
    status: RunStatus = RunStatus.RUNNING,
) -> str:
    _check_stage(stage)
    run_id = uuid.uuid4().hex
    con.execute(
        """
        INSERT INTO pipeline_runs (run_id, stage, period, status, is_backfill, owner, started_at)
        VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        """,
        [run_id, stage, period, status.value, is_backfill, owner],
    )
    return run_id


def finish_run(
    con: duckdb.DuckDBPyConnection,
    run_id: str,
    status: RunStatus,
    rows_written: int = None,
    attempts: int = None,
    error: str = None,
) -> None:
    con.execute(
        """
        UPDATE pipeline_runs
        SET status = ?,
            rows_written = COALESCE(?, rows_written),
            attempts = COALESCE(?, attempts),
            error = ?,
            finished_at = CURRENT_TIMESTAMP
        WHERE run_id = ?
        """,
        [status.value, rows_written, attempts, error, run_id],
    )


def record_data_quality(
    con: duckdb.DuckDBPyConnection,
    run_id: Optional[str],
    stage: str,
    period: datetime,
    issue: str,
    affected_rows: int,
) -> None:
    """Degraded-but-emitted output: logged for operators, never fatal."""
    con.execute(
        """
        INSERT INTO data_quality_events (run_id, stage, period, issue, affected_rows)
        VALUES (?, ?, ?, ?, ?)
        """,
        [run_id, stage, period, issue, affected_rows],
    )


def clear_data_quality(con: duckdb.DuckDBPyConnection, stage: str, period: datetime) -> None:
    """A re-run of a period replaces its data quality rows rather than adding to them."""
    _check_stage(stage)
    con.execute(
        "DELETE FROM data_quality_events WHERE stage = ? AND period = ?",
        [stage, period],
    )
