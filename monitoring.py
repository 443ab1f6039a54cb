"""
monitoring.py — Logging setup for the EOL Checker.
"""

import logging
import sys

from config import LOG_DIR, LOG_FILE


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Set up structured logging to both file and stdout.
    Returns the root logger for the application.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("eol_checker")
    logger.setLevel(level)

    # Prevent duplicate handlers on re-init
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = logging.FileHandler(str(LOG_FILE), mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module."""
    return logging.getLogger(f"eol_checker.{name}")


def log_transition(logger: logging.Logger, job_id: str, old_status: str, new_status: str):
    """Log a job status transition."""
    logger.info(f"[{job_id}] {old_status} → {new_status}")


def log_attempt(logger: logging.Logger, operation: str, attempt: int, max_attempts: int, cause: str):
    """Log a failed attempt of a retried operation."""
    logger.warning(f"{operation} failed on attempt {attempt}/{max_attempts}: {cause}")


def log_chain_summary(
    logger: logging.Logger,
    counter: int,
    cap: int,
    success: bool,
    duration: float,
):
    """Log the outcome of one auto-check chain link."""
    logger.info("=" * 60)
    logger.info("AUTO-CHECK TICK SUMMARY")
    logger.info(f"  Result:    {'succeeded' if success else 'failed'}")
    logger.info(f"  Progress:  {counter}/{cap} checks today")
    logger.info(f"  Duration:  {duration:.1f}s")
    logger.info("=" * 60)
