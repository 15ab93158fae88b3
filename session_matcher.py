import logging
from datetime import datetime, timedelta

import duckdb
import pandas as pd

DEFAULT_FALLBACK_DURATION_SECONDS = 60
DEFAULT_TOLERANCE_SECONDS = 10


def resolve_creative_durations(con: duckdb.DuckDBPyConnection) -> None:
    """
    Temp view creative_durations(creative_id, duration_seconds).
    Asset duration wins; otherwise the longest rendition file; non-positive values count as unknown.
    """
    con.execute(
        """
        CREATE OR REPLACE TEMP VIEW creative_durations AS
        WITH file_durations AS (
            SELECT creative_id, MAX(duration_seconds) AS file_seconds
            FROM creative_files
            WHERE duration_seconds > 0
            GROUP BY creative_id
        )
        SELECT
            ca.creative_id,
            COALESCE(
                CASE WHEN ca.duration_seconds > 0 THEN ca.duration_seconds END,
                fd.file_seconds
            ) AS duration_seconds
        FROM creative_assets ca
        LEFT JOIN file_durations fd USING (creative_id);
        """
    )


def match_horizon_seconds(
    con: duckdb.DuckDBPyConnection,
    fallback_duration_seconds: int = DEFAULT_FALLBACK_DURATION_SECONDS,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> int:
    """Longest distance a complete can sit after its anchor, across all creatives."""
    longest = con.execute(
        "SELECT MAX(duration_seconds) FROM creative_durations"
    ).fetchone()[0]
    return max(fallback_duration_seconds, longest or 0) + tolerance_seconds


def match_sessions(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    window_start: datetime,
    window_end: datetime,
    fallback_duration_seconds: int = DEFAULT_FALLBACK_DURATION_SECONDS,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> int:
    """
    Rebuild temp table matched_sessions for anchors in [window_start, window_end).

    - Anchors: start/impression events, one per (device_id, slot_index, event_ts);
      start beats impression, identity columns break the remaining ties.
    - A complete belongs to its nearest preceding anchor on the same device/slot when it
      lands within [started_at, started_at + duration + tolerance]; each anchor keeps the
      closest complete it was given.
    - Anchors after the window take part in claiming (never emitted) so that adjacent
      windows attribute a boundary complete the same way.
    - Unmatched anchors are still sessions; play_seconds falls back to the creative's
      configured duration, or 0 when unknown.
    Returns the number of sessions.
    """
    if window_end <= window_start:
        raise ValueError(
            f"Empty matching window: [{window_start}, {window_end})"
        )

    resolve_creative_durations(con)
    horizon = match_horizon_seconds(con, fallback_duration_seconds, tolerance_seconds)
    scan_end = window_end + timedelta(seconds=horizon)
    logger.info(
        f"Matching sessions for [{window_start}, {window_end}) "
        f"(fallback={fallback_duration_seconds}s, tolerance={tolerance_seconds}s, scan_end={scan_end})"
    )

    con.execute(
        """
        CREATE OR REPLACE TEMP TABLE matched_sessions (
            device_id VARCHAR,
            slot_index INTEGER,
            campaign_id VARCHAR,
            creative_id VARCHAR,
            playlist_id VARCHAR,
            anchor_kind VARCHAR,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            configured_seconds INTEGER,
            play_seconds DOUBLE
        );
        """
    )

    con.execute(
        """
        INSERT INTO matched_sessions
        WITH anchor_candidates AS (
            SELECT
                e.device_id,
                e.slot_index,
                e.campaign_id,
                e.creative_id,
                e.playlist_id,
                e.event_kind,
                e.event_ts,
                ROW_NUMBER() OVER (
                    PARTITION BY e.device_id, e.slot_index, e.event_ts
                    ORDER BY
                        CASE e.event_kind WHEN 'start' THEN 1 ELSE 2 END,
                        e.campaign_id, e.creative_id, e.playlist_id
                ) AS rn
            FROM pop_events e
            WHERE e.event_kind IN ('start', 'impression')
              AND e.event_ts >= CAST($window_start AS TIMESTAMP)
              AND e.event_ts <= CAST($scan_end AS TIMESTAMP)
        ),
        anchors AS (
            SELECT
                a.device_id,
                a.slot_index,
                a.campaign_id,
                a.creative_id,
                a.playlist_id,
                a.event_kind AS anchor_kind,
                a.event_ts AS started_at,
                d.duration_seconds AS configured_seconds,
                a.event_ts + to_seconds(
                    CAST(COALESCE(d.duration_seconds, $fallback) + $tolerance AS BIGINT)
                ) AS match_until,
                a.event_ts < CAST($window_end AS TIMESTAMP) AS emit
            FROM anchor_candidates a
            LEFT JOIN creative_durations d ON d.creative_id = a.creative_id
            WHERE a.rn = 1
        ),
        completions AS (
            SELECT DISTINCT device_id, slot_index, event_ts AS completed_at
            FROM pop_events
            WHERE event_kind = 'complete'
              AND event_ts >= CAST($window_start AS TIMESTAMP)
              AND event_ts <= CAST($scan_end AS TIMESTAMP)
        ),
        pairs AS (
            SELECT a.device_id, a.slot_index, a.started_at, c.completed_at
            FROM anchors a
            JOIN completions c
              ON c.device_id = a.device_id
             AND c.slot_index = a.slot_index
             AND c.completed_at >= a.started_at
             AND c.completed_at <= a.match_until
        ),
        -- nearest preceding anchor owns the complete
        claimed AS (
            SELECT
                *,
                ROW_NUMBER() OVER (
                    PARTITION BY device_id, slot_index, completed_at
                    ORDER BY started_at DESC
                ) AS claim_rn
            FROM pairs
        ),
        -- closest owned complete per anchor
        best AS (
            SELECT
                device_id,
                slot_index,
                started_at,
                completed_at,
                ROW_NUMBER() OVER (
                    PARTITION BY device_id, slot_index, started_at
                    ORDER BY completed_at
                ) AS match_rn
            FROM claimed
            WHERE claim_rn = 1
        )
        SELECT
            a.device_id,
            a.slot_index,
            a.campaign_id,
            a.creative_id,
            a.playlist_id,
            a.anchor_kind,
            a.started_at,
            b.completed_at,
            a.configured_seconds,
            CASE
                WHEN b.completed_at IS NOT NULL
                THEN (epoch_ms(b.completed_at) - epoch_ms(a.started_at)) / 1000.0
                ELSE CAST(COALESCE(a.configured_seconds, 0) AS DOUBLE)
            END AS play_seconds
        FROM anchors a
        LEFT JOIN best b
          ON b.device_id = a.device_id
         AND b.slot_index = a.slot_index
         AND b.started_at = a.started_at
         AND b.match_rn = 1
        WHERE a.emit;
        """,
        {
            "window_start": window_start,
            "window_end": window_end,
            "scan_end": scan_end,
            "fallback": fallback_duration_seconds,
            "tolerance": tolerance_seconds,
        },
    )

    sessions, matched, unresolved = con.execute(
        """
        SELECT
            COUNT(*),
            COUNT(completed_at),
            COUNT(*) FILTER (WHERE configured_seconds IS NULL)
        FROM matched_sessions
        """
    ).fetchone()
    logger.info(
        f"Matched sessions: sessions={sessions}, completed={matched}, "
        f"unmatched={sessions - matched}, unresolved_duration={unresolved}"
    )
    return sessions


def fetch_matched_sessions(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    window_start: datetime,
    window_end: datetime,
    fallback_duration_seconds: int = DEFAULT_FALLBACK_DURATION_SECONDS,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> pd.DataFrame:
    """Run the matcher and hand back the sessions as a DataFrame (ops/debugging)."""
    match_sessions(
        con,
        logger,
        window_start,
        window_end,
        fallback_duration_seconds=fallback_duration_seconds,
        tolerance_seconds=tolerance_seconds,
    )
    return con.execute(
        """
        SELECT *
        FROM matched_sessions
        ORDER BY device_id, slot_index, started_at
        """
    ).df()
