import logging
from datetime import date, datetime, timedelta

import duckdb

ACTIVE_STATUS = "ACTIVE"


def _day_bounds(day: date):
    day_start = datetime(day.year, day.month, day.day)
    return day_start, day_start + timedelta(days=1)


def compute_uptime(con: duckdb.DuckDBPyConnection, device_id: str, day: date) -> float:
    """
    100 * ACTIVE pulses / all pulses for one device and calendar day.
    No pulses -> 0.0 so downstream MAX/ordering never sees NULL.
    """
    day_start, day_end = _day_bounds(day)
    active, total = con.execute(
        """
        SELECT
            COUNT(*) FILTER (WHERE UPPER(status) = ?),
            COUNT(*)
        FROM device_telemetry
        WHERE device_id = ?
          AND pulse_ts >= ?
          AND pulse_ts < ?
        """,
        [ACTIVE_STATUS, device_id, day_start, day_end],
    ).fetchone()
    if not total:
        return 0.0
    return 100.0 * active / total


def build_device_uptime(
    con: duckdb.DuckDBPyConnection, logger: logging.Logger, day: date
) -> int:
    """
    Temp table device_uptime(device_id, uptime_pct) for every device that pulsed on day.
    Read fresh each run: telemetry for an open day is still arriving.
    Devices absent here have 0.0 uptime (callers COALESCE).
    """
    day_start, day_end = _day_bounds(day)
    con.execute(
        """
        CREATE OR REPLACE TEMP TABLE device_uptime (
            device_id VARCHAR PRIMARY KEY,
            active_pulses BIGINT,
            total_pulses BIGINT,
            uptime_pct DOUBLE
        );
        """
    )
    con.execute(
        """
        INSERT INTO device_uptime
        SELECT
            device_id,
            COUNT(*) FILTER (WHERE UPPER(status) = $active) AS active_pulses,
            COUNT(*) AS total_pulses,
            100.0 * COUNT(*) FILTER (WHERE UPPER(status) = $active) / COUNT(*) AS uptime_pct
        FROM device_telemetry
        WHERE pulse_ts >= CAST($day_start AS TIMESTAMP)
          AND pulse_ts < CAST($day_end AS TIMESTAMP)
        GROUP BY device_id;
        """,
        {"active": ACTIVE_STATUS, "day_start": day_start, "day_end": day_end},
    )
    devices = con.execute("SELECT COUNT(*) FROM device_uptime").fetchone()[0]
    logger.info(f"Computed uptime for {devices} devices on {day}")
    return devices
