"""
Stage runner and command line for the proof-of-play aggregation pipeline.

USAGE:
------
# Create tables
python run_pipeline.py setup

# Load landing JSONL exports into the raw stores (local replay)
python run_pipeline.py load

# Scheduled triggers (one period per call, or everything due with --catch-up)
python run_pipeline.py hourly [--catch-up] [--as-of 2025-01-02T00:05:00]
python run_pipeline.py daily  [--catch-up] [--as-of 2025-01-02T00:30:00]

# Late data: re-aggregate an hour, then refresh its day
python run_pipeline.py backfill --stage hourly --period 2025-01-01T09:00 --rollup-day
python run_pipeline.py backfill --stage daily --period 2025-01-01

CATCH-UP PROCEDURE:
-------------------
After an outage run `hourly --catch-up` then `daily --catch-up`. Each processes
its due periods oldest first, one transaction per period, and stops at the
first period that is not yet due.
"""
import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

import duckdb
from dotenv import load_dotenv

from config_loader import load_config
from daily_rollup import check_daily_preconditions, next_daily_period, run_daily_rollup
from hourly_aggregator import (
    next_hourly_period,
    run_hourly_aggregation,
    truncate_to_hour,
)
from load_raw_events import load_landing_files
from logging_utils import attach_period_handler, configure_logging, detach_handler
from pipeline_errors import (
    InvariantViolation,
    LeaseHeldError,
    PipelineError,
    call_with_retries,
)
from setup_database import create_schema
from watermark import (
    DAILY_STAGE,
    HOURLY_STAGE,
    RunStatus,
    finish_run,
    get_watermark,
    new_owner_id,
    stage_lease,
    start_run,
)

IDLE = "IDLE"

DEFAULT_SETTINGS = {
    "fallback_duration_seconds": 60,
    "tolerance_seconds": 10,
    "cost_micro_scale": 1_000_000,
    "running_status": "RUNNING",
    "lease_ttl_seconds": 3300,
    "retry_attempts": 3,
    "retry_base_delay_seconds": 0.5,
    "initial_hourly_period": None,
}


@dataclass
class StageResult:
    stage: str
    period: Optional[datetime]
    status: str
    rows_written: int = 0
    run_id: Optional[str] = None
    is_backfill: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _merge_settings(settings: Optional[dict]) -> dict:
    merged = dict(DEFAULT_SETTINGS)
    merged.update({k: v for k, v in (settings or {}).items() if v is not None})
    return merged


def _rollback_quietly(con: duckdb.DuckDBPyConnection, logger: logging.Logger):
    try:
        con.rollback()
        logger.info("Transaction rolled back.")
    except duckdb.Error as rollback_err:
        # No open transaction (failure happened before BEGIN) is fine
        logger.debug(f"Rollback skipped: {rollback_err}")


def _execute_stage(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    stage: str,
    period: datetime,
    work: Callable[[str], int],
    settings: dict,
    owner: Optional[str],
    now: Optional[datetime],
    is_backfill: bool,
    sleep: Callable[[float], None] = time.sleep,
) -> StageResult:
    """
    Idle -> Running(period) -> Committed | Failed, under the stage lease.

    work(run_id) performs the writes; it runs between BEGIN and COMMIT and is
    retried with backoff on transient store errors. Anything else marks the run
    FAILED, leaves the watermark untouched and propagates.
    """
    owner = owner or new_owner_id(stage)
    now = now or utc_now()

    try:
        with stage_lease(
            con, logger, stage, owner, settings["lease_ttl_seconds"], now
        ):
            run_id = start_run(con, stage, period, owner=owner, is_backfill=is_backfill)
            attempts_made = [0]

            def attempt(n: int) -> int:
                attempts_made[0] = n
                con.begin()
                rows = work(run_id)
                con.commit()
                return rows

            try:
                rows = call_with_retries(
                    attempt,
                    logger,
                    attempts=settings["retry_attempts"],
                    base_delay_seconds=settings["retry_base_delay_seconds"],
                    on_failure=lambda _e: _rollback_quietly(con, logger),
                    sleep=sleep,
                )
            except Exception as e:
                finish_run(
                    con,
                    run_id,
                    RunStatus.FAILED,
                    attempts=attempts_made[0],
                    error=f"{type(e).__name__}: {e}",
                )
                logger.error(
                    f"{stage} run for {period} failed after {attempts_made[0]} attempt(s): {e}",
                    exc_info=True,
                )
                raise

            finish_run(
                con, run_id, RunStatus.COMMITTED, rows_written=rows, attempts=attempts_made[0]
            )
            logger.info(f"{stage} run for {period} committed: rows={rows}")
            return StageResult(stage, period, RunStatus.COMMITTED.value, rows, run_id, is_backfill)

    except LeaseHeldError as e:
        logger.warning(f"Skipping {stage} run for {period}: {e}")
        run_id = start_run(
            con, stage, period, owner=owner, is_backfill=is_backfill, status=RunStatus.SKIPPED
        )
        finish_run(con, run_id, RunStatus.SKIPPED, error=str(e))
        return StageResult(stage, period, RunStatus.SKIPPED.value, 0, run_id, is_backfill)


def _with_period_log(logger, log_dir, formatter, stage, period, fn):
    if not (log_dir and formatter):
        return fn()
    stamp = period.strftime("%Y%m%d%H") if isinstance(period, datetime) else str(period)
    handler = attach_period_handler(
        logger, os.path.join(log_dir, f"{stage}_{stamp}.log"), formatter
    )
    try:
        return fn()
    finally:
        detach_handler(logger, handler)


def run_hourly_stage(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    as_of: datetime,
    settings: Optional[dict] = None,
    backfill_period: Optional[datetime] = None,
    owner: Optional[str] = None,
    now: Optional[datetime] = None,
    log_dir: Optional[str] = None,
    formatter: Optional[logging.Formatter] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StageResult:
    """
    Aggregate the next due hour (scheduled) or re-aggregate backfill_period.

    Backfills only touch hours already behind the watermark and never move it;
    forward progress belongs to the scheduled run.
    """
    settings = _merge_settings(settings)
    is_backfill = backfill_period is not None

    if is_backfill:
        period = truncate_to_hour(backfill_period)
        mark = get_watermark(con, HOURLY_STAGE)
        if mark is None or period > mark:
            raise InvariantViolation(
                f"Hourly backfill of {period} is ahead of the watermark ({mark}); "
                "let the scheduled run process it"
            )
    else:
        period = next_hourly_period(
            con,
            as_of,
            settings["initial_hourly_period"],
            fallback_duration_seconds=settings["fallback_duration_seconds"],
            tolerance_seconds=settings["tolerance_seconds"],
        )
        if period is None:
            logger.info(f"No closed hour due for aggregation as of {as_of}.")
            return StageResult(HOURLY_STAGE, None, IDLE)

    def work(run_id: str) -> int:
        return run_hourly_aggregation(
            con,
            logger,
            period,
            run_id=run_id,
            advance=not is_backfill,
            fallback_duration_seconds=settings["fallback_duration_seconds"],
            tolerance_seconds=settings["tolerance_seconds"],
            cost_micro_scale=settings["cost_micro_scale"],
            running_status=settings["running_status"],
        )

    return _with_period_log(
        logger,
        log_dir,
        formatter,
        HOURLY_STAGE,
        period,
        lambda: _execute_stage(
            con, logger, HOURLY_STAGE, period, work, settings, owner, now, is_backfill, sleep
        ),
    )


def run_daily_stage(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    as_of: datetime,
    settings: Optional[dict] = None,
    backfill_day: Optional[date] = None,
    owner: Optional[str] = None,
    now: Optional[datetime] = None,
    log_dir: Optional[str] = None,
    formatter: Optional[logging.Formatter] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StageResult:
    """Roll up the next due day (scheduled) or re-roll backfill_day."""
    settings = _merge_settings(settings)
    is_backfill = backfill_day is not None

    if is_backfill:
        stat_date = backfill_day
        mark = get_watermark(con, DAILY_STAGE)
        if mark is None or stat_date > mark.date():
            raise InvariantViolation(
                f"Daily backfill of {stat_date} is ahead of the watermark ({mark}); "
                "let the scheduled run process it"
            )
    else:
        stat_date = next_daily_period(con, as_of)
        if stat_date is None:
            logger.info(
                f"No closed day due for roll-up as of {as_of} "
                f"(hourly watermark: {get_watermark(con, HOURLY_STAGE)})."
            )
            return StageResult(DAILY_STAGE, None, IDLE)

    # Fatal before any lease or write
    check_daily_preconditions(con, stat_date, as_of)
    period = datetime(stat_date.year, stat_date.month, stat_date.day)

    def work(run_id: str) -> int:
        return run_daily_rollup(
            con,
            logger,
            stat_date,
            as_of,
            advance=not is_backfill,
            cost_micro_scale=settings["cost_micro_scale"],
            running_status=settings["running_status"],
        )

    return _with_period_log(
        logger,
        log_dir,
        formatter,
        DAILY_STAGE,
        period,
        lambda: _execute_stage(
            con, logger, DAILY_STAGE, period, work, settings, owner, now, is_backfill, sleep
        ),
    )


def catch_up(
    run_stage: Callable[..., StageResult],
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    as_of: datetime,
    max_periods: Optional[int] = None,
    **kwargs,
) -> List[StageResult]:
    """Run a scheduled stage repeatedly until nothing is due (or max_periods)."""
    results = []
    while max_periods is None or len(results) < max_periods:
        result = run_stage(con, logger, as_of, **kwargs)
        if result.status == IDLE:
            break
        results.append(result)
        if result.status != RunStatus.COMMITTED.value:
            break
    logger.info(f"Catch-up processed {len(results)} period(s).")
    return results


def connect_with_retries(db_file: str, logger: logging.Logger, attempts: int = 3):
    """DuckDB connect, retrying only transient file-lock/permission errors."""
    last_err = None
    for attempt in range(attempts):
        try:
            return duckdb.connect(database=db_file, read_only=False)
        except (IOError, OSError, duckdb.IOException) as e:
            error_msg = str(e).lower()
            if "lock" in error_msg or "permission" in error_msg:
                last_err = e
                logger.warning(
                    f"DuckDB connect failed (attempt {attempt + 1}/{attempts}): {e}"
                )
                if attempt < attempts - 1:  # Don't sleep on last attempt
                    time.sleep(0.5 * (2**attempt))
            else:
                raise
    raise PipelineError(f"Failed to connect to DuckDB after retries: {last_err}")


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Incremental proof-of-play aggregation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("setup", help="Create all tables")
    sub.add_parser("load", help="Load landing JSONL files into the raw stores")

    for name in (HOURLY_STAGE, DAILY_STAGE):
        p = sub.add_parser(name, help=f"Run the scheduled {name} stage")
        p.add_argument("--as-of", type=datetime.fromisoformat, default=None,
                       help="Reference time (UTC, ISO 8601); defaults to now")
        p.add_argument("--catch-up", action="store_true",
                       help="Process every due period, oldest first")
        p.add_argument("--max-periods", type=int, default=None)

    bf = sub.add_parser("backfill", help="Reprocess an already-committed period")
    bf.add_argument("--stage", choices=[HOURLY_STAGE, DAILY_STAGE], required=True)
    bf.add_argument("--period", required=True,
                    help="Hour (2025-01-01T09:00) for hourly, day (2025-01-01) for daily")
    bf.add_argument("--rollup-day", action="store_true",
                    help="After an hourly backfill, re-roll the hour's day if already rolled up")
    bf.add_argument("--as-of", type=datetime.fromisoformat, default=None)

    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    cfg = load_config()

    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logs_dir = str(cfg.get_path("paths.logs_dir", create=True))
    logger, fmt = configure_logging(
        os.path.join(logs_dir, f"{args.command}_{run_ts}.log"),
        logger_name=f"pipeline.{args.command}",
    )
    logger.info(f"--- Starting '{args.command}' ---")

    con = connect_with_retries(cfg.get("database_path"), logger)
    settings = cfg.pipeline_settings()
    if settings.get("initial_hourly_period"):
        settings["initial_hourly_period"] = datetime.fromisoformat(
            settings["initial_hourly_period"]
        )

    try:
        if args.command == "setup":
            create_schema(con)

        elif args.command == "load":
            load_landing_files(
                con,
                logger,
                landing_dir=str(cfg.get_path("paths.landing_dir", create=True)),
                loaded_dir=str(cfg.get_path("paths.loaded_dir", create=True)),
                dead_letter_dir=str(cfg.get_path("paths.dead_letter_dir", create=True)),
                cache_dir=str(cfg.get_path("paths.cache_dir", create=True)),
                run_ts=run_ts,
                cache_ttl_seconds=cfg.get("loader.file_cache_ttl_seconds", 1209600),
            )

        elif args.command in (HOURLY_STAGE, DAILY_STAGE):
            as_of = args.as_of or utc_now()
            run_stage = run_hourly_stage if args.command == HOURLY_STAGE else run_daily_stage
            kwargs = {"settings": settings, "log_dir": logs_dir, "formatter": fmt}
            if args.catch_up:
                catch_up(run_stage, con, logger, as_of, max_periods=args.max_periods, **kwargs)
            else:
                run_stage(con, logger, as_of, **kwargs)

        elif args.command == "backfill":
            as_of = args.as_of or utc_now()
            kwargs = {"settings": settings, "log_dir": logs_dir, "formatter": fmt}
            if args.stage == HOURLY_STAGE:
                hour = truncate_to_hour(datetime.fromisoformat(args.period))
                run_hourly_stage(con, logger, as_of, backfill_period=hour, **kwargs)
                daily_mark = get_watermark(con, DAILY_STAGE)
                if args.rollup_day and daily_mark is not None and hour.date() <= daily_mark.date():
                    run_daily_stage(con, logger, as_of, backfill_day=hour.date(), **kwargs)
            else:
                day = date.fromisoformat(args.period)
                run_daily_stage(con, logger, as_of, backfill_day=day, **kwargs)

    except InvariantViolation as e:
        logger.error(f"Rejected: {e}")
        return 2
    except PipelineError as e:
        logger.error(f"Pipeline error: {e}", exc_info=True)
        return 1
    except Exception as e:
        logger.error(f"'{args.command}' failed: {type(e).__name__}: {e}", exc_info=True)
        return 1
    finally:
        con.close()
        logger.info("DuckDB connection closed.")

    logger.info(f"--- '{args.command}' finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
