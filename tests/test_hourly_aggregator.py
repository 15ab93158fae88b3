# tests/test_hourly_aggregator.py
"""
Hourly report rows: metrics, denormalized labels, data-quality degradation,
idempotent overwrite and next-period selection.
"""
import logging
from datetime import date, datetime, timedelta

import duckdb
import pandas as pd
import pytest

import setup_database as db_setup
from hourly_aggregator import next_hourly_period, run_hourly_aggregation
from setup_database import HOURLY_TABLE
from watermark import HOURLY_STAGE, advance_watermark, get_watermark

H9 = datetime(2025, 1, 1, 9, 0, 0)
LOG = logging.getLogger("test.hourly")


@pytest.fixture()
def temp_duckdb(tmp_path):
    db_path = tmp_path / "test_hourly.db"
    db_setup.setup_database(str(db_path))
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


def _evt(kind, ts, device="D1", slot=0, campaign="C1", creative="CR1", playlist="P1"):
    return {
        "device_id": device,
        "slot_index": slot,
        "campaign_id": campaign,
        "creative_id": creative,
        "playlist_id": playlist,
        "event_kind": kind,
        "event_ts": pd.Timestamp(ts),
    }


def _insert_events(con: duckdb.DuckDBPyConnection, rows: list[dict]):
    cols = ["device_id", "slot_index", "campaign_id", "creative_id", "playlist_id", "event_kind", "event_ts"]
    df = pd.DataFrame(rows, columns=cols)
    con.register("_df", df)
    con.execute(f"INSERT INTO pop_events ({', '.join(cols)}) SELECT {', '.join(cols)} FROM _df")
    con.unregister("_df")


def _insert_pulses(con, device_id, statuses, day_start):
    for i, status in enumerate(statuses):
        con.execute(
            "INSERT INTO device_telemetry (device_id, pulse_ts, status) VALUES (?, ?, ?)",
            [device_id, day_start + timedelta(minutes=10 * i), status],
        )


def _seed_dimensions(con, campaign_status="RUNNING", cost_micro=5_000_000, duration=30):
    con.execute(
        "INSERT INTO devices (device_id, device_name, venue_name, screen_width, screen_height) "
        "VALUES ('D1', 'Lobby Screen', 'Central Mall', 1920, 1080)"
    )
    con.execute(
        "INSERT INTO campaigns (campaign_id, campaign_name, advertiser_name, status, cost_micro_amount, start_date, end_date) "
        "VALUES ('C1', 'Winter Sale', 'Acme', ?, ?, DATE '2024-12-01', DATE '2025-02-01')",
        [campaign_status, cost_micro],
    )
    con.execute(
        "INSERT INTO creative_assets (creative_id, campaign_id, creative_name, creative_format, duration_seconds) "
        "VALUES ('CR1', 'C1', 'Snowflakes 30s', 'video', ?)",
        [duration],
    )


def _hourly_rows(con, stat_hour):
    return con.execute(
        f"SELECT * FROM {HOURLY_TABLE} WHERE stat_hour = ? ORDER BY device_id, slot_index, playlist_id",
        [stat_hour],
    ).df()


def _snapshot(con):
    return con.execute(f"SELECT * FROM {HOURLY_TABLE} ORDER BY ALL").fetchall()


def test_single_play_end_to_end(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_pulses(con, "D1", ["ACTIVE"] * 7 + ["INACTIVE"] * 3, H9.replace(hour=0))
    _insert_events(con, [_evt("start", H9), _evt("complete", H9 + timedelta(seconds=31))])

    rows = run_hourly_aggregation(con, LOG, H9, advance=True)
    assert rows == 1

    df = _hourly_rows(con, H9)
    assert len(df) == 1
    row = df.iloc[0]
    assert pd.Timestamp(row["stat_date"]).date() == date(2025, 1, 1)
    assert (row["device_id"], row["campaign_id"], row["creative_id"], row["playlist_id"]) == ("D1", "C1", "CR1", "P1")
    assert row["impressions"] == 1
    assert row["completes"] == 1
    assert row["play_seconds"] == pytest.approx(31.0)
    assert row["uptime_pct"] == pytest.approx(70.0)
    assert row["cost"] == pytest.approx(5.0)
    assert row["active_campaigns"] == 1
    assert row["device_name"] == "Lobby Screen"
    assert row["advertiser_name"] == "Acme"
    assert row["creative_duration_seconds"] == 30
    assert get_watermark(con, HOURLY_STAGE) == H9


def test_completes_never_exceed_impressions(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(
        con,
        [
            _evt("start", H9 + timedelta(minutes=1)),
            _evt("complete", H9 + timedelta(minutes=1, seconds=30)),
            _evt("complete", H9 + timedelta(minutes=1, seconds=31)),
            _evt("impression", H9 + timedelta(minutes=5)),
            _evt("start", H9 + timedelta(minutes=9)),
        ],
    )

    run_hourly_aggregation(con, LOG, H9)
    row = _hourly_rows(con, H9).iloc[0]
    assert row["impressions"] == 3
    assert row["completes"] == 1
    # 30s matched + two unmatched at the 30s configured duration
    assert row["play_seconds"] == pytest.approx(90.0)
    assert row["completes"] <= row["impressions"], f"completes {row['completes']} > impressions {row['impressions']}"


def test_grouping_keeps_slots_and_playlists_apart(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(
        con,
        [
            _evt("start", H9 + timedelta(minutes=1), slot=0),
            _evt("start", H9 + timedelta(minutes=2), slot=1),
            _evt("start", H9 + timedelta(minutes=3), slot=1, playlist="P2"),
        ],
    )

    assert run_hourly_aggregation(con, LOG, H9) == 3
    keys = con.execute(f"SELECT slot_index, playlist_id FROM {HOURLY_TABLE} ORDER BY ALL").fetchall()
    assert keys == [(0, "P1"), (1, "P1"), (1, "P2")]


def test_uptime_is_the_same_for_every_hour_of_the_day(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_pulses(con, "D1", ["ACTIVE", "INACTIVE", "INACTIVE", "INACTIVE"], H9.replace(hour=0))
    h14 = H9.replace(hour=14)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1)), _evt("start", h14 + timedelta(minutes=1))])

    run_hourly_aggregation(con, LOG, H9)
    run_hourly_aggregation(con, LOG, h14)
    values = con.execute(f"SELECT DISTINCT uptime_pct FROM {HOURLY_TABLE}").fetchall()
    assert values == [(25.0,)]


def test_device_without_telemetry_has_zero_uptime(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1))])

    run_hourly_aggregation(con, LOG, H9)
    assert _hourly_rows(con, H9).iloc[0]["uptime_pct"] == 0.0


def test_missing_dimensions_degrade_to_null_labels(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1), device="D-NEW", creative="CR-NEW")])

    assert run_hourly_aggregation(con, LOG, H9, run_id="run-1") == 1
    row = _hourly_rows(con, H9).iloc[0]
    assert row["impressions"] == 1, "a session with unknown dimensions must still be counted"
    assert pd.isna(row["device_name"])
    assert pd.isna(row["creative_name"])
    assert pd.isna(row["creative_duration_seconds"])
    assert row["campaign_name"] == "Winter Sale"

    issues = dict(
        con.execute(
            "SELECT issue, affected_rows FROM data_quality_events WHERE run_id = 'run-1'"
        ).fetchall()
    )
    assert issues == {
        "missing_device_dimension": 1,
        "missing_creative_dimension": 1,
        "unresolved_creative_duration": 1,
    }


def test_paused_campaign_is_not_active(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con, campaign_status="PAUSED")
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1))])

    run_hourly_aggregation(con, LOG, H9)
    assert _hourly_rows(con, H9).iloc[0]["active_campaigns"] == 0


def test_rerun_of_committed_hour_changes_nothing(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(con, [_evt("start", H9), _evt("complete", H9 + timedelta(seconds=31))])

    run_hourly_aggregation(con, LOG, H9)
    before = _snapshot(con)
    run_hourly_aggregation(con, LOG, H9)
    after = _snapshot(con)

    assert before == after
    assert len(after) == 1


def test_backfill_picks_up_late_events_without_moving_watermark(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1))])
    run_hourly_aggregation(con, LOG, H9)
    advance_watermark(con, HOURLY_STAGE, H9 + timedelta(hours=3))

    # Late arrivals for 09:00
    _insert_events(
        con,
        [
            _evt("complete", H9 + timedelta(minutes=1, seconds=20)),
            _evt("start", H9 + timedelta(minutes=30), slot=2),
        ],
    )
    rows = run_hourly_aggregation(con, LOG, H9, advance=False)

    assert rows == 2
    df = _hourly_rows(con, H9)
    assert list(df["slot_index"]) == [0, 2]
    assert df.iloc[0]["completes"] == 1
    assert df.iloc[0]["play_seconds"] == pytest.approx(20.0)
    assert get_watermark(con, HOURLY_STAGE) == H9 + timedelta(hours=3)


def test_keys_that_disappear_are_removed_on_rerun(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(
        con,
        [_evt("start", H9 + timedelta(minutes=1)), _evt("start", H9 + timedelta(minutes=2), slot=5)],
    )
    assert run_hourly_aggregation(con, LOG, H9) == 2

    con.execute("DELETE FROM pop_events WHERE slot_index = 5")
    assert run_hourly_aggregation(con, LOG, H9) == 1
    assert list(_hourly_rows(con, H9)["slot_index"]) == [0]


def test_hour_must_be_truncated(temp_duckdb):
    with pytest.raises(ValueError):
        run_hourly_aggregation(temp_duckdb, LOG, H9 + timedelta(minutes=15))


def test_next_period_starts_at_earliest_event_hour(temp_duckdb):
    con = temp_duckdb
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=42))])

    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, minutes=5)) == H9
    # Hour not over yet
    assert next_hourly_period(con, as_of=H9 + timedelta(minutes=50)) is None


def test_next_period_follows_watermark(temp_duckdb):
    con = temp_duckdb
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=42))])
    advance_watermark(con, HOURLY_STAGE, H9)

    assert next_hourly_period(con, as_of=H9 + timedelta(hours=2, minutes=5)) == H9 + timedelta(hours=1)
    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, minutes=59)) is None


def test_next_period_initial_override_and_empty_store(temp_duckdb):
    con = temp_duckdb
    assert next_hourly_period(con, as_of=H9) is None

    start = datetime(2025, 1, 1, 6, 30)
    assert next_hourly_period(con, as_of=H9, initial_period=start) == datetime(2025, 1, 1, 6, 0)


def test_hour_waits_for_the_match_horizon(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con, duration=30)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=59, seconds=50))])

    # 60s fallback dominates the 30s creative: horizon is 70s past 10:00
    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, seconds=5)) is None
    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, seconds=69)) is None
    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, seconds=70)) == H9


def test_long_creative_extends_the_horizon(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con, duration=300)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=10))])

    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, minutes=3)) is None
    assert next_hourly_period(con, as_of=H9 + timedelta(hours=1, minutes=6)) == H9
    assert next_hourly_period(
        con, as_of=H9 + timedelta(hours=1, minutes=6), tolerance_seconds=120
    ) is None


def test_rerun_replaces_data_quality_events_for_the_hour(temp_duckdb):
    con = temp_duckdb
    _seed_dimensions(con)
    _insert_events(con, [_evt("start", H9 + timedelta(minutes=1), device="D-NEW")])
    _insert_events(con, [_evt("start", H9 + timedelta(hours=1, minutes=1), device="D-NEW")])

    run_hourly_aggregation(con, LOG, H9, run_id="run-1")
    run_hourly_aggregation(con, LOG, H9 + timedelta(hours=1), run_id="run-2")
    run_hourly_aggregation(con, LOG, H9, run_id="run-3", advance=False)

    rows = con.execute(
        """
        SELECT period, issue, affected_rows, run_id
        FROM data_quality_events
        ORDER BY period, issue
        """
    ).fetchall()
    assert rows == [
        (H9, "missing_device_dimension", 1, "run-3"),
        (H9 + timedelta(hours=1), "missing_device_dimension", 1, "run-2"),
    ], f"rerun should replace, not append: {rows}"
