"""
Error taxonomy for the aggregation stages and the retry helper used around
store I/O.

- TransientStoreError / duckdb IO and transaction conflicts: retried with
  exponential backoff, the run does not commit until one attempt succeeds.
- InvariantViolation: fatal, raised before any write.
- LeaseHeldError: another runner owns the stage; the run is a no-op.
Data-quality problems are not exceptions; they are recorded and the run
continues.
"""
import logging
import time
from typing import Callable, Tuple, Type, TypeVar

import duckdb

T = TypeVar("T")


class PipelineError(Exception):
    """Base class for pipeline errors surfaced to the scheduler/operator."""


class TransientStoreError(PipelineError):
    """Store unavailable, timed out, or otherwise worth retrying."""


class InvariantViolation(PipelineError):
    """A stage was asked to run against a period it must not touch."""


class LeaseHeldError(PipelineError):
    """Another runner holds an unexpired lease on the stage."""

    def __init__(self, stage: str, owner: str, expires_at):
        super().__init__(
            f"Stage '{stage}' is leased by {owner} until {expires_at}"
        )
        self.stage = stage
        self.owner = owner
        self.expires_at = expires_at


TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientStoreError,
    duckdb.IOException,
    duckdb.TransactionException,
)


def call_with_retries(
    fn: Callable[[int], T],
    logger: logging.Logger,
    attempts: int = 3,
    base_delay_seconds: float = 0.5,
    on_failure: Callable[[BaseException], None] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn(attempt) until it succeeds or attempts run out.

    Only TRANSIENT_ERRORS are retried; every other exception propagates on the
    first failure. on_failure runs after each failed attempt (e.g. to roll back
    the open transaction) before the backoff sleep.
    """
    last_err = None
    for attempt in range(1, attempts + 1):
        try:
            return fn(attempt)
        except TRANSIENT_ERRORS as e:
            last_err = e
            if on_failure:
                on_failure(e)
            logger.warning(
                f"Transient failure (attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
            )
            if attempt < attempts:  # Don't sleep on last attempt
                sleep(base_delay_seconds * (2 ** (attempt - 1)))
        except Exception as e:
            if on_failure:
                on_failure(e)
            raise

    raise last_err
