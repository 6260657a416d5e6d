"""Timing utilities for performance logging.

Example:
    >>> from scr_dic.timing import log_execution_time, Timer
    >>>
    >>> @log_execution_time()
    ... def run_grid_search_for(subjects, baselines, probabilities, config):
    ...     ...
    >>> with Timer(logger, "tau_1=0.05"):
    ...     evaluate_slice()
"""
import time
import functools
import logging
from typing import Callable, Optional

from scr_dic.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator to log function execution time.

    Logs a performance record on success and an ERROR with the traceback on
    failure; the exception is re-raised.

    Args:
        logger: Logger instance (uses a logger named after the function's
            module if None)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            nonlocal logger
            if logger is None:
                logger = logging.getLogger(func.__module__)

            start_time = time.perf_counter()
            logger.info(f"Starting: {func.__name__}")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.error(
                    f"{func.__name__} failed after {duration:.2f}s: {str(e)}",
                    exc_info=True
                )
                raise

            duration = time.perf_counter() - start_time
            log_performance(
                logger,
                f"Completed: {func.__name__}",
                duration_sec=round(duration, 2),
                duration_min=round(duration / 60, 2)
            )
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager for timing code blocks.

    Args:
        logger: Logger instance
        description: Description of the operation being timed
        quiet: Skip the "Starting" message (useful inside tight loops)

    Example:
        >>> with Timer(logger, "DIC grid search") as timer:
        ...     grid = search()
        >>> timer.duration
        12.7
    """

    def __init__(self, logger: logging.Logger, description: str, quiet: bool = False):
        self.logger = logger
        self.description = description
        self.quiet = quiet
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        if not self.quiet:
            self.logger.info(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                duration_sec=round(self.duration, 2),
                duration_min=round(self.duration / 60, 2)
            )
        else:
            self.logger.error(
                f"{self.description} failed after {self.duration:.2f}s: {exc_val}",
                exc_info=True
            )

        # Don't suppress exception
        return False

    def elapsed(self) -> float:
        """Elapsed seconds since entering the context."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
