import logging
from datetime import date, datetime, timedelta
from typing import Optional

import duckdb

from pipeline_errors import InvariantViolation
from setup_database import (
    DAILY_TABLE,
    HOURLY_TABLE,
    REPORT_KEY_COLUMNS,
    dimension_column_names,
)
from watermark import (
    DAILY_STAGE,
    HOURLY_STAGE,
    advance_watermark,
    get_watermark,
)


def day_start(day: date) -> datetime:
    return datetime(day.year, day.month, day.day)


def last_hour_of(day: date) -> datetime:
    return day_start(day) + timedelta(hours=23)


def hourly_covers_day(con: duckdb.DuckDBPyConnection, day: date) -> bool:
    hourly_mark = get_watermark(con, HOURLY_STAGE)
    return hourly_mark is not None and hourly_mark >= last_hour_of(day)


def check_daily_preconditions(
    con: duckdb.DuckDBPyConnection, stat_date: date, as_of: datetime
) -> None:
    """Reject a roll-up of an open day or of a day the hourly stage hasn't finished."""
    if stat_date >= as_of.date():
        raise InvariantViolation(
            f"Daily roll-up requested for open day {stat_date} (as of {as_of})"
        )
    if not hourly_covers_day(con, stat_date):
        raise InvariantViolation(
            f"Hourly watermark {get_watermark(con, HOURLY_STAGE)} has not reached "
            f"{last_hour_of(stat_date)}; refusing to roll up {stat_date}"
        )


def next_daily_period(
    con: duckdb.DuckDBPyConnection, as_of: datetime
) -> Optional[date]:
    """
    Next closed day due for roll-up, or None.
    A day is due once it is over (before as_of's date) and every hour of it is committed.
    """
    last = get_watermark(con, DAILY_STAGE)
    if last is not None:
        candidate = last.date() + timedelta(days=1)
    else:
        candidate = con.execute(f"SELECT MIN(stat_date) FROM {HOURLY_TABLE}").fetchone()[0]
        if candidate is None:
            return None

    if candidate >= as_of.date() or not hourly_covers_day(con, candidate):
        return None
    return candidate


def _log_dimension_drift(
    con: duckdb.DuckDBPyConnection, logger: logging.Logger, stat_date: date
) -> int:
    # Dimensions changing mid-day are expected now and then; MAX picks one value
    keys = ", ".join(REPORT_KEY_COLUMNS)
    drift = " OR ".join(
        f"COUNT(DISTINCT {name}) > 1" for name in dimension_column_names()
    )
    drifted = con.execute(
        f"""
        SELECT COUNT(*) FROM (
            SELECT {keys}
            FROM {HOURLY_TABLE}
            WHERE stat_date = ?
            GROUP BY {keys}
            HAVING {drift}
        )
        """,
        [stat_date],
    ).fetchone()[0]
    if drifted:
        logger.info(f"{drifted} keys on {stat_date} saw dimension changes during the day")
    return drifted


def run_daily_rollup(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    stat_date: date,
    as_of: datetime,
    advance: bool = True,
    cost_micro_scale: int = 1_000_000,
    running_status: str = "RUNNING",
) -> int:
    """
    Re-aggregate one closed day of dooh_report_hourly into dooh_report_daily.

    No raw events are read: sums for volume metrics, MAX for uptime and every
    dimension column, cost = MAX(cost_micro_amount) / scale (a flat per-entity rate),
    active_campaigns = distinct campaigns whose status is the running flag.
    Overwrites the day's rows by key and advances the daily watermark when advance is set.
    The caller owns the transaction.
    """
    check_daily_preconditions(con, stat_date, as_of)
    logger.info(f"--- Daily roll-up for {stat_date} ---")

    keys = ", ".join(REPORT_KEY_COLUMNS)
    dimensions = ",\n            ".join(
        f"MAX({name}) AS {name}" for name in dimension_column_names()
    )

    con.execute(f"CREATE OR REPLACE TEMP TABLE daily_batch AS SELECT * FROM {DAILY_TABLE} LIMIT 0;")
    con.execute(
        f"""
        INSERT INTO daily_batch BY NAME
        SELECT
            stat_date,
            {keys},
            SUM(impressions) AS impressions,
            SUM(completes) AS completes,
            SUM(play_seconds) AS play_seconds,
            MAX(uptime_pct) AS uptime_pct,
            MAX(cost_micro_amount) / CAST($cost_scale AS DOUBLE) AS cost,
            COUNT(DISTINCT CASE WHEN campaign_status = $running_status THEN campaign_id END) AS active_campaigns,
            {dimensions}
        FROM {HOURLY_TABLE}
        WHERE stat_date = CAST($stat_date AS DATE)
        GROUP BY stat_date, {keys};
        """,
        {
            "stat_date": stat_date,
            "cost_scale": cost_micro_scale,
            "running_status": running_status,
        },
    )
    rows = con.execute("SELECT COUNT(*) FROM daily_batch").fetchone()[0]
    _log_dimension_drift(con, logger, stat_date)

    key_match = " AND ".join(f"b.{k} = d.{k}" for k in REPORT_KEY_COLUMNS)
    deleted = con.execute(
        f"""
        DELETE FROM {DAILY_TABLE} d
        WHERE d.stat_date = ?
          AND NOT EXISTS (
              SELECT 1 FROM daily_batch b WHERE {key_match}
          )
        """,
        [stat_date],
    ).fetchone()[0]
    con.execute(f"INSERT OR REPLACE INTO {DAILY_TABLE} SELECT * FROM daily_batch;")
    logger.info(
        f"Daily rows for {stat_date}: rows_written={rows}, stale_rows_deleted={deleted}"
    )

    if advance:
        stored = advance_watermark(con, DAILY_STAGE, day_start(stat_date))
        logger.info(f"Daily watermark now at {stored}")

    con.execute("DROP TABLE IF EXISTS daily_batch;")
    return rows
