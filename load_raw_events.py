"""
Load landing-zone JSONL exports into the event and telemetry stores.

Used to seed or replay pop_events / device_telemetry outside production (the
aggregation stages only ever read those tables).

    pop_*.jsonl        one playback event per line
                       {"device_id", "slot_index", "campaign_id", "creative_id",
                        "playlist_id", "event", "timestamp"}
    telemetry_*.jsonl  one device-day per line
                       {"device_id", "date", "pulses": [{"timestamp", "status"}, ...]}

Files are deduplicated by content hash in a disk cache, so a re-delivered
export is skipped instead of doubling the raw log.
"""
import glob
import hashlib
import json
import logging
import os
from typing import Dict, List, Tuple

import duckdb
import pandas as pd
from diskcache import Cache

POP_EVENT_KINDS = {"start", "impression", "complete"}

POP_COLUMNS = [
    "device_id",
    "slot_index",
    "campaign_id",
    "creative_id",
    "playlist_id",
    "event_kind",
    "event_ts",
]

TELEMETRY_COLUMNS = ["device_id", "pulse_ts", "status"]


def file_digest(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def append_dead_letters(records: List[Dict], dlq_path: str):
    if not records:
        return
    dlq_dir = os.path.dirname(dlq_path)
    if dlq_dir:
        os.makedirs(dlq_dir, exist_ok=True)
    with open(dlq_path, "a") as dlq:
        for rec in records:
            dlq.write(json.dumps(rec, default=str) + "\n")


def parse_jsonl(filepath: str) -> Tuple[List[Dict], List[Dict]]:
    """Per-line parse so one poison line doesn't sink the file."""
    parsed, dead = [], []
    with open(filepath, "r") as f:
        for i, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                parsed.append(json.loads(line))
            except json.JSONDecodeError as e:
                dead.append(
                    {
                        "stage": "parse",
                        "filepath": filepath,
                        "line_number": i,
                        "error": str(e),
                        "raw_event": line.strip(),
                    }
                )
    return parsed, dead


def to_timestamp(value):
    """ISO string or epoch milliseconds -> naive UTC pandas Timestamp (NaT if unusable)."""
    if value is None:
        return pd.NaT
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            ts = pd.to_datetime(value, unit="ms", utc=True)
        else:
            ts = pd.to_datetime(value, utc=True)
    except (ValueError, TypeError, OverflowError):
        return pd.NaT
    return ts.tz_convert(None)


def pop_records_to_df(records: List[Dict]) -> pd.DataFrame:
    rows = []
    for rec in records:
        rows.append(
            {
                "device_id": rec.get("device_id"),
                "slot_index": rec.get("slot_index"),
                "campaign_id": rec.get("campaign_id"),
                "creative_id": rec.get("creative_id"),
                "playlist_id": rec.get("playlist_id"),
                "event_kind": (rec.get("event") or rec.get("event_kind") or "").lower() or None,
                "event_ts": to_timestamp(rec.get("timestamp")),
                "raw_event": json.dumps(rec, default=str),
            }
        )
    return pd.DataFrame(rows, columns=POP_COLUMNS + ["raw_event"])


def telemetry_records_to_df(records: List[Dict]) -> pd.DataFrame:
    """Flatten one-array-per-device-day into one row per pulse."""
    rows = []
    for rec in records:
        pulses = rec.get("pulses") or []
        if not isinstance(pulses, list):
            pulses = []
        for pulse in pulses:
            pulse = pulse if isinstance(pulse, dict) else {}
            rows.append(
                {
                    "device_id": rec.get("device_id"),
                    "pulse_ts": to_timestamp(pulse.get("timestamp")),
                    "status": (pulse.get("status") or "").upper() or None,
                    "raw_event": json.dumps(pulse, default=str),
                }
            )
    return pd.DataFrame(rows, columns=TELEMETRY_COLUMNS + ["raw_event"])


def validate_pop_events(df: pd.DataFrame, logger) -> Tuple[pd.DataFrame, List[Dict]]:
    """
    Return (good_df, bad_records). bad_records contain {'stage':'validate','error':..., 'raw_event':...}
    """
    required_cols = ["device_id", "campaign_id", "creative_id", "playlist_id"]
    bad = []
    good_rows = []

    for _, row in df.iterrows():
        errors = []
        for col in required_cols:
            if pd.isna(row.get(col)) or row.get(col) == "":
                errors.append(f"missing_required:{col}")

        if row.get("event_kind") not in POP_EVENT_KINDS:
            errors.append("invalid:event_kind")

        if pd.isna(row.get("event_ts")):
            errors.append("invalid:timestamp")

        slot = row.get("slot_index")
        try:
            if pd.isna(slot) or int(slot) != float(slot) or int(slot) < 0:
                errors.append("invalid:slot_index")
        except (TypeError, ValueError):
            errors.append("invalid:slot_index")

        if errors:
            bad.append(
                {
                    "stage": "validate",
                    "error": ",".join(errors),
                    "raw_event": row.get("raw_event"),
                }
            )
        else:
            good_rows.append(row)

    good_df = (
        pd.DataFrame(good_rows, columns=df.columns)
        if good_rows
        else pd.DataFrame(columns=df.columns)
    )
    if not good_df.empty:
        good_df["slot_index"] = good_df["slot_index"].astype(int)
        good_df["event_ts"] = pd.to_datetime(good_df["event_ts"])
        for col in ["device_id", "campaign_id", "creative_id", "playlist_id"]:
            good_df[col] = good_df[col].astype(str)
    logger.info(f"POP validation result: good_rows={len(good_df)}, bad_rows={len(bad)}")
    return good_df, bad


def validate_telemetry(df: pd.DataFrame, logger) -> Tuple[pd.DataFrame, List[Dict]]:
    bad_mask = df["device_id"].isna() | df["pulse_ts"].isna() | df["status"].isna()
    bad = [
        {"stage": "validate", "error": "invalid:pulse", "raw_event": raw}
        for raw in df.loc[bad_mask, "raw_event"]
    ]
    good_df = df.loc[~bad_mask].copy()
    logger.info(
        f"Telemetry validation result: good_rows={len(good_df)}, bad_rows={len(bad)}"
    )
    return good_df, bad


def insert_frame(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    table: str,
    df: pd.DataFrame,
    columns: List[str],
    dlq_path: str,
) -> int:
    """
    Bulk insert, falling back to row-wise inserts to isolate poison rows.

    Runs inside the caller's per-file transaction. A failed statement aborts that
    transaction and DuckDB has no savepoints, so each failure rolls back, begins
    again and replays the rows kept so far.
    """
    if df.empty:
        return 0
    frame = df[columns]
    try:
        con.register("df_to_load", frame)
        con.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) SELECT {', '.join(columns)} FROM df_to_load"
        )
        logger.info(f"Bulk insert into {table} succeeded: rows={len(frame)}")
        return len(frame)
    except duckdb.Error as e:
        logger.error(f"Bulk insert into {table} failed, falling back to row-wise: {e}")
        con.rollback()
        con.begin()
    finally:
        con.unregister("df_to_load")

    kept = []
    row_dead = []
    insert_sql = f"""
        INSERT INTO {table} ({", ".join(columns)})
        VALUES ({", ".join(["?"] * len(columns))})
    """
    for _, row in df.iterrows():
        values = [row[c].to_pydatetime() if isinstance(row[c], pd.Timestamp) else row[c] for c in columns]
        try:
            con.execute(insert_sql, values)
            kept.append(values)
        except duckdb.Error as rexc:
            row_dead.append(
                {
                    "stage": "insert",
                    "error": str(rexc),
                    "raw_event": row.get("raw_event"),
                }
            )
            con.rollback()
            con.begin()
            if kept:
                con.executemany(insert_sql, kept)
    append_dead_letters(row_dead, dlq_path)
    logger.info(
        f"Row-wise insert into {table} done: inserted={len(kept)}, insert_dead={len(row_dead)}"
    )
    return len(kept)


def load_file(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    filepath: str,
    dlq_path: str,
) -> int:
    """Parse, validate and insert one landing file. Returns rows inserted."""
    name = os.path.basename(filepath)
    if name.startswith("pop_"):
        to_df, validate, table, columns = (
            pop_records_to_df,
            validate_pop_events,
            "pop_events",
            POP_COLUMNS,
        )
    elif name.startswith("telemetry_"):
        to_df, validate, table, columns = (
            telemetry_records_to_df,
            validate_telemetry,
            "device_telemetry",
            TELEMETRY_COLUMNS,
        )
    else:
        raise ValueError(f"Unrecognised landing file name: {name}")

    records, parse_dead = parse_jsonl(filepath)
    append_dead_letters(parse_dead, dlq_path)
    logger.info(
        f"Parsed {filepath}: parsed_ok={len(records)}, parse_dead={len(parse_dead)}"
    )
    if not records:
        logger.warning(f"No valid records after parsing. Skipping file {filepath}.")
        return 0

    good, validate_dead = validate(to_df(records), logger)
    append_dead_letters(validate_dead, dlq_path)
    return insert_frame(con, logger, table, good, columns, dlq_path)


def load_landing_files(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    landing_dir: str,
    loaded_dir: str,
    dead_letter_dir: str,
    cache_dir: str,
    run_ts: str,
    cache_ttl_seconds: int = 1209600,
) -> Dict[str, int]:
    """
    Load every pop_*/telemetry_* JSONL file in landing_dir, one transaction per file.
    Loaded files move to loaded_dir; files whose content was loaded before are skipped.
    Returns {filepath: rows_inserted}.
    """
    os.makedirs(loaded_dir, exist_ok=True)
    os.makedirs(cache_dir, exist_ok=True)
    dlq_path = os.path.join(dead_letter_dir, f"landing_failures_{run_ts}.jsonl")

    files = sorted(
        glob.glob(os.path.join(landing_dir, "pop_*.jsonl"))
        + glob.glob(os.path.join(landing_dir, "telemetry_*.jsonl"))
    )
    if not files:
        logger.info("No files found in landing directory. Exiting.")
        return {}

    results = {}
    with Cache(cache_dir) as seen_files:
        for filepath in files:
            digest = file_digest(filepath)
            if digest in seen_files:
                logger.info(
                    f"{filepath} matches already-loaded {seen_files.get(digest)}. Skipping."
                )
                results[filepath] = 0
                continue

            try:
                con.begin()
                inserted = load_file(con, logger, filepath, dlq_path)
                con.commit()
            except Exception as e:
                con.rollback()
                logger.error(
                    f"Load of {filepath} failed: {e}. Rolled back.", exc_info=True
                )
                raise

            # Store with TTL to prevent unbounded cache growth
            seen_files.set(digest, filepath, expire=cache_ttl_seconds)
            dest_path = os.path.join(loaded_dir, os.path.basename(filepath))
            os.replace(filepath, dest_path)
            logger.info(f"Loaded {inserted} rows from {filepath}; moved to {dest_path}")
            results[filepath] = inserted

    return results
