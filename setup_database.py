import logging

import duckdb

# --- Configuration ---
DB_FILE = "dooh_pop.db"
LOG_FILE = "setup_database.log"

HOURLY_TABLE = "dooh_report_hourly"
DAILY_TABLE = "dooh_report_daily"

# Grouping key shared by both report tables (hourly additionally keys on stat_hour)
REPORT_KEY_COLUMNS = [
    "device_id",
    "campaign_id",
    "creative_id",
    "playlist_id",
    "slot_index",
]

# Descriptive attributes captured at hourly aggregation time and carried, never
# re-joined, into the daily table.
DIMENSION_COLUMNS = [
    ("device_name", "VARCHAR"),
    ("venue_name", "VARCHAR"),
    ("campaign_name", "VARCHAR"),
    ("advertiser_name", "VARCHAR"),
    ("campaign_status", "VARCHAR"),
    ("cost_micro_amount", "BIGINT"),
    ("creative_name", "VARCHAR"),
    ("creative_format", "VARCHAR"),
    ("creative_duration_seconds", "INTEGER"),
]

# One column list for both report tables. The daily roll-up selects these
# names straight from the hourly table, so the two schemas cannot drift.
REPORT_COLUMNS = [
    ("stat_date", "DATE NOT NULL"),
    ("device_id", "VARCHAR NOT NULL"),
    ("campaign_id", "VARCHAR NOT NULL"),
    ("creative_id", "VARCHAR NOT NULL"),
    ("playlist_id", "VARCHAR NOT NULL"),
    ("slot_index", "INTEGER NOT NULL"),
    # Metrics
    ("impressions", "BIGINT NOT NULL"),
    ("completes", "BIGINT NOT NULL"),
    ("play_seconds", "DOUBLE NOT NULL"),
    ("uptime_pct", "DOUBLE NOT NULL"),
    ("cost", "DOUBLE"),
    ("active_campaigns", "INTEGER NOT NULL"),
] + DIMENSION_COLUMNS


def dimension_column_names():
    return [name for name, _ in DIMENSION_COLUMNS]


def _report_table_ddl(table_name: str, leading_columns, primary_key) -> str:
    columns = list(leading_columns) + REPORT_COLUMNS
    body = ",\n        ".join(f"{name} {col_type}" for name, col_type in columns)
    return f"""
    CREATE TABLE IF NOT EXISTS {table_name} (
        {body},
        PRIMARY KEY ({", ".join(primary_key)})
    );
    """


def create_schema(con: duckdb.DuckDBPyConnection):
    """Create source, dimension, report and pipeline-state tables if missing."""

    # Raw proof-of-play log - APPEND-ONLY (duplicates and out-of-order rows allowed)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS pop_events (
        device_id VARCHAR NOT NULL,
        slot_index INTEGER NOT NULL,
        campaign_id VARCHAR NOT NULL,
        creative_id VARCHAR NOT NULL,
        playlist_id VARCHAR NOT NULL,
        event_kind VARCHAR NOT NULL,          -- start | impression | complete
        event_ts TIMESTAMP NOT NULL,
        ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    # Every stage scan is an indexed time range, never a full-log pass
    con.execute(
        """
    CREATE INDEX IF NOT EXISTS idx_pop_event_ts ON pop_events(event_ts);
    CREATE INDEX IF NOT EXISTS idx_pop_device_slot_ts ON pop_events(device_id, slot_index, event_ts);
    """
    )
    logging.info("Table 'pop_events' is set up (append-only, duplicates allowed).")

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS device_telemetry (
        device_id VARCHAR NOT NULL,
        pulse_ts TIMESTAMP NOT NULL,
        status VARCHAR NOT NULL,              -- ACTIVE | INACTIVE | ...
        ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_telemetry_device_ts ON device_telemetry(device_id, pulse_ts);
    """
    )
    logging.info("Table 'device_telemetry' is set up.")

    # Dimension lookups (owned by master-data services, read-only here)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS devices (
        device_id VARCHAR PRIMARY KEY,
        device_name VARCHAR,
        venue_name VARCHAR,
        screen_width INTEGER,
        screen_height INTEGER
    );

    CREATE TABLE IF NOT EXISTS campaigns (
        campaign_id VARCHAR PRIMARY KEY,
        campaign_name VARCHAR,
        advertiser_name VARCHAR,
        status VARCHAR,                       -- RUNNING | PAUSED | ENDED ...
        cost_micro_amount BIGINT,             -- flat per-campaign rate, 1e-6 currency units
        start_date DATE,
        end_date DATE
    );

    CREATE TABLE IF NOT EXISTS creative_assets (
        creative_id VARCHAR PRIMARY KEY,
        campaign_id VARCHAR,
        creative_name VARCHAR,
        creative_format VARCHAR,              -- image | video | html
        duration_seconds INTEGER
    );

    CREATE TABLE IF NOT EXISTS creative_files (
        file_id VARCHAR PRIMARY KEY,
        creative_id VARCHAR NOT NULL,
        width INTEGER,
        height INTEGER,
        mime_type VARCHAR,
        duration_seconds INTEGER
    );
    CREATE INDEX IF NOT EXISTS idx_creative_files_creative ON creative_files(creative_id);
    """
    )
    logging.info("Dimension tables are set up.")

    # Report tables: hourly (pipeline-internal) and daily (reporting source)
    con.execute(
        _report_table_ddl(
            HOURLY_TABLE,
            [("stat_hour", "TIMESTAMP NOT NULL")],
            ["stat_hour"] + REPORT_KEY_COLUMNS,
        )
    )
    con.execute(
        _report_table_ddl(DAILY_TABLE, [], ["stat_date"] + REPORT_KEY_COLUMNS)
    )
    logging.info(f"Report tables '{HOURLY_TABLE}' and '{DAILY_TABLE}' are set up.")

    # Pipeline state
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS pipeline_watermarks (
        stage VARCHAR PRIMARY KEY,            -- hourly | daily
        last_completed_period TIMESTAMP NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS pipeline_leases (
        stage VARCHAR PRIMARY KEY,
        owner VARCHAR NOT NULL,
        acquired_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS pipeline_runs (
        run_id VARCHAR PRIMARY KEY,
        stage VARCHAR NOT NULL,
        period TIMESTAMP,
        status VARCHAR NOT NULL,              -- RUNNING | COMMITTED | FAILED | SKIPPED
        is_backfill BOOLEAN DEFAULT FALSE,
        owner VARCHAR,
        attempts INTEGER DEFAULT 0,
        rows_written BIGINT,
        started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        finished_at TIMESTAMP,
        error VARCHAR
    );

    CREATE TABLE IF NOT EXISTS data_quality_events (
        run_id VARCHAR,
        stage VARCHAR NOT NULL,
        period TIMESTAMP NOT NULL,
        issue VARCHAR NOT NULL,
        affected_rows BIGINT NOT NULL,
        recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """
    )
    logging.info("Pipeline state tables are set up.")


def setup_database(db_file: str = None):
    """
    Connects to the DuckDB database and creates the necessary tables
    if they don't exist.
    """
    db_file = db_file or DB_FILE
    con = duckdb.connect(db_file)
    logging.info(f"Successfully connected to DuckDB database: {db_file}")
    try:
        create_schema(con)
    finally:
        con.close()
    logging.info("Database setup complete. Connection closed.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(LOG_FILE, mode="a"), logging.StreamHandler()],
    )
    logging.info("--- Starting Database Setup ---")
    setup_database()
    logging.info("--- Database Setup Finished ---")
