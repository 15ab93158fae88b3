import logging
import os
import sys


def configure_logging(run_log_path: str, logger_name: str = None, level=logging.INFO):
    """
    Configure root logging to stream to stdout and write to run_log_path.
    Returns a logger (named if provided, else root) and a formatter to reuse
    for any additional per-period handlers.
    """
    log_dir = os.path.dirname(run_log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers (avoid duplicates in reruns/tests)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(run_log_path)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)

    if logger_name:
        return logging.getLogger(logger_name), formatter
    return root_logger, formatter


def attach_period_handler(
    logger: logging.Logger, log_path: str, formatter: logging.Formatter
) -> logging.Handler:
    """
    Add a file handler scoped to one stage period (e.g. logs/hourly_2025010109_<run>.log).
    Caller removes it with detach_handler once the period is done.
    """
    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return handler


def detach_handler(logger: logging.Logger, handler: logging.Handler) -> None:
    logger.removeHandler(handler)
    handler.close()
