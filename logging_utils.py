import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(run_log_path, logger_name: str = None, level=logging.INFO):
    """
    Route the root logger to stdout (captured by the scheduler) and to the per-run
    log file. Handlers from a previous run in the same process are released first.
    Returns (logger, formatter); the logger is named when logger_name is given.
    """
    Path(run_log_path).parent.mkdir(parents=True, exist_ok=True)

    release_logging()
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (
        logging.StreamHandler(stream=sys.stdout),
        logging.FileHandler(str(run_log_path)),
    ):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    logger = logging.getLogger(logger_name) if logger_name else root_logger
    return logger, formatter


def release_logging() -> None:
    """Detach and close every root handler so the run log is flushed and unlocked."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
