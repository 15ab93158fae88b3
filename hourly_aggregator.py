import logging
from datetime import datetime, timedelta
from typing import Optional

import duckdb

from session_matcher import (
    DEFAULT_FALLBACK_DURATION_SECONDS,
    DEFAULT_TOLERANCE_SECONDS,
    match_horizon_seconds,
    match_sessions,
    resolve_creative_durations,
)
from setup_database import (
    HOURLY_TABLE,
    REPORT_KEY_COLUMNS,
    dimension_column_names,
)
from uptime_calculator import build_device_uptime
from watermark import (
    HOURLY_STAGE,
    advance_watermark,
    clear_data_quality,
    get_watermark,
    record_data_quality,
)

ONE_HOUR = timedelta(hours=1)

# Where each denormalized column comes from at aggregation time
DIMENSION_SOURCES = {
    "device_name": "d.device_name",
    "venue_name": "d.venue_name",
    "campaign_name": "c.campaign_name",
    "advertiser_name": "c.advertiser_name",
    "campaign_status": "c.status",
    "cost_micro_amount": "c.cost_micro_amount",
    "creative_name": "ca.creative_name",
    "creative_format": "ca.creative_format",
    "creative_duration_seconds": "s.configured_seconds",
}


def truncate_to_hour(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def next_hourly_period(
    con: duckdb.DuckDBPyConnection,
    as_of: datetime,
    initial_period: Optional[datetime] = None,
    fallback_duration_seconds: int = DEFAULT_FALLBACK_DURATION_SECONDS,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> Optional[datetime]:
    """
    Next hour the scheduler should aggregate, or None when nothing is due.

    Resumes one hour after the watermark. On first run starts at initial_period,
    else at the hour of the earliest raw event. An hour is due once it is over and
    the match horizon past its end has elapsed too, so completes for the hour's
    last anchors have had time to land.
    """
    last = get_watermark(con, HOURLY_STAGE)
    if last is not None:
        candidate = last + ONE_HOUR
    elif initial_period is not None:
        candidate = truncate_to_hour(initial_period)
    else:
        earliest = con.execute("SELECT MIN(event_ts) FROM pop_events").fetchone()[0]
        if earliest is None:
            return None
        candidate = truncate_to_hour(earliest)

    resolve_creative_durations(con)
    horizon = timedelta(
        seconds=match_horizon_seconds(con, fallback_duration_seconds, tolerance_seconds)
    )
    if candidate + ONE_HOUR + horizon > as_of:
        return None
    return candidate


def _dimension_select_list() -> str:
    # KeyError here means the report schema grew a column nobody sources
    return ",\n            ".join(
        f"MAX({DIMENSION_SOURCES[name]}) AS {name}" for name in dimension_column_names()
    )


def _record_degradations(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    run_id: Optional[str],
    stat_hour: datetime,
) -> dict:
    """Count sessions that will carry NULL labels or a fallback duration."""
    missing_device, missing_campaign, missing_creative, unresolved = con.execute(
        """
        SELECT
            COUNT(*) FILTER (WHERE d.device_id IS NULL),
            COUNT(*) FILTER (WHERE c.campaign_id IS NULL),
            COUNT(*) FILTER (WHERE ca.creative_id IS NULL),
            COUNT(*) FILTER (WHERE s.configured_seconds IS NULL)
        FROM matched_sessions s
        LEFT JOIN devices d ON d.device_id = s.device_id
        LEFT JOIN campaigns c ON c.campaign_id = s.campaign_id
        LEFT JOIN creative_assets ca ON ca.creative_id = s.creative_id
        """
    ).fetchone()
    issues = {
        "missing_device_dimension": missing_device,
        "missing_campaign_dimension": missing_campaign,
        "missing_creative_dimension": missing_creative,
        "unresolved_creative_duration": unresolved,
    }
    clear_data_quality(con, HOURLY_STAGE, stat_hour)
    for issue, count in issues.items():
        if count:
            logger.warning(f"Data quality: {issue} affects {count} sessions in {stat_hour}")
            record_data_quality(con, run_id, HOURLY_STAGE, stat_hour, issue, count)
    return issues


def run_hourly_aggregation(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    stat_hour: datetime,
    run_id: Optional[str] = None,
    advance: bool = True,
    fallback_duration_seconds: int = DEFAULT_FALLBACK_DURATION_SECONDS,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    cost_micro_scale: int = 1_000_000,
    running_status: str = "RUNNING",
) -> int:
    """
    Aggregate exactly one hour [stat_hour, stat_hour + 1h) into dooh_report_hourly.

    - Sessions from the matcher, day-level uptime broadcast to every hour of the day,
      dimensions left-joined so a missing lookup yields NULL labels, never a lost session.
    - Rows for the hour are overwritten by key (stale keys deleted, others replaced),
      so a re-run never duplicates.
    - Advances the hourly watermark when advance is set (scheduled runs; backfills don't).
    The caller owns the transaction: rows and watermark commit together or not at all.
    Returns the number of rows written for the hour.
    """
    if stat_hour != truncate_to_hour(stat_hour):
        raise ValueError(f"stat_hour must be truncated to the hour, got {stat_hour}")

    logger.info(f"--- Hourly aggregation for {stat_hour} ---")

    sessions = match_sessions(
        con,
        logger,
        stat_hour,
        stat_hour + ONE_HOUR,
        fallback_duration_seconds=fallback_duration_seconds,
        tolerance_seconds=tolerance_seconds,
    )
    build_device_uptime(con, logger, stat_hour.date())
    _record_degradations(con, logger, run_id, stat_hour)

    key_columns = ", ".join(f"s.{k}" for k in REPORT_KEY_COLUMNS)
    con.execute(f"CREATE OR REPLACE TEMP TABLE hourly_batch AS SELECT * FROM {HOURLY_TABLE} LIMIT 0;")
    con.execute(
        f"""
        INSERT INTO hourly_batch BY NAME
        SELECT
            CAST($stat_hour AS TIMESTAMP) AS stat_hour,
            CAST(CAST($stat_hour AS TIMESTAMP) AS DATE) AS stat_date,
            {key_columns},
            COUNT(*) AS impressions,
            COUNT(s.completed_at) AS completes,
            COALESCE(SUM(s.play_seconds), 0.0) AS play_seconds,
            MAX(COALESCE(u.uptime_pct, 0.0)) AS uptime_pct,
            MAX(c.cost_micro_amount) / CAST($cost_scale AS DOUBLE) AS cost,
            COUNT(DISTINCT CASE WHEN c.status = $running_status THEN s.campaign_id END) AS active_campaigns,
            {_dimension_select_list()}
        FROM matched_sessions s
        LEFT JOIN devices d ON d.device_id = s.device_id
        LEFT JOIN campaigns c ON c.campaign_id = s.campaign_id
        LEFT JOIN creative_assets ca ON ca.creative_id = s.creative_id
        LEFT JOIN device_uptime u ON u.device_id = s.device_id
        GROUP BY {key_columns};
        """,
        {
            "stat_hour": stat_hour,
            "cost_scale": cost_micro_scale,
            "running_status": running_status,
        },
    )
    rows = con.execute("SELECT COUNT(*) FROM hourly_batch").fetchone()[0]

    # Keys from an earlier run of this hour that no longer exist
    key_match = " AND ".join(f"b.{k} = h.{k}" for k in REPORT_KEY_COLUMNS)
    deleted = con.execute(
        f"""
        DELETE FROM {HOURLY_TABLE} h
        WHERE h.stat_hour = ?
          AND NOT EXISTS (
              SELECT 1 FROM hourly_batch b WHERE {key_match}
          )
        """,
        [stat_hour],
    ).fetchone()[0]
    con.execute(f"INSERT OR REPLACE INTO {HOURLY_TABLE} SELECT * FROM hourly_batch;")
    logger.info(
        f"Hourly rows for {stat_hour}: sessions={sessions}, rows_written={rows}, stale_rows_deleted={deleted}"
    )

    if advance:
        stored = advance_watermark(con, HOURLY_STAGE, stat_hour)
        logger.info(f"Hourly watermark now at {stored}")

    con.execute("DROP TABLE IF EXISTS hourly_batch;")
    return rows
