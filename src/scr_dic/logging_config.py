"""Logging setup for the DIC grid search.

All modules log under the "scr_dic" hierarchy (scr_dic.grid, scr_dic.sampler,
...). setup_logging attaches one console handler and a set of log files to
the root "scr_dic" logger:

    data/outputs/{run_type}/logs/
        search_{timestamp}.log       every record, with module names
        performance_{timestamp}.log  records written by log_performance
        warnings_{timestamp}.log     WARNING and above
        debug_{timestamp}.log        only when the console level is DEBUG

Example:
    >>> from scr_dic.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(run_type="sample")
    >>> log_performance(logger, "tau_1=0.05 completed", evaluated=12, min_dic=811.9)
"""
import logging
import sys
import time
import warnings
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional, Literal
from contextlib import contextmanager


RunType = Literal["sample", "production", "experiment"]

LOGGER_NAME = "scr_dic"
DETAILED_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class PerformanceFilter(logging.Filter):
    """Keep records emitted through log_performance."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


class MinLevelFilter(logging.Filter):
    """Keep records at or above a level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record):
        return record.levelno >= self.level


def _file_handler(
    path: Path,
    level: int,
    fmt: str,
    record_filter: Optional[logging.Filter] = None,
) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=DATE_FORMAT))
    if record_filter is not None:
        handler.addFilter(record_filter)
    return handler


def setup_logging(
    run_type: RunType = "sample",
    log_level: int = logging.INFO,
    console_output: bool = True,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """Configure the "scr_dic" logger for one search run.

    Calling it again replaces the handlers of the previous call, so a
    process that runs several searches gets one set of files per run.

    Args:
        run_type: Selects the default directory data/outputs/{run_type}/logs
        log_level: Console level; DEBUG also writes the debug file
        console_output: Attach a stdout handler
        log_dir: Write the log files here instead

    Returns:
        The configured "scr_dic" logger
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    directory = Path(log_dir) if log_dir is not None else Path("data/outputs") / run_type / "logs"
    directory.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # handlers do the filtering
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = False

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(log_level)
        console.setFormatter(logging.Formatter(fmt="%(levelname)-8s | %(message)s"))
        logger.addHandler(console)

    logger.addHandler(_file_handler(directory / f"search_{timestamp}.log", logging.DEBUG, DETAILED_FORMAT))
    logger.addHandler(_file_handler(
        directory / f"performance_{timestamp}.log",
        logging.INFO,
        "%(asctime)s | %(message)s",
        PerformanceFilter(),
    ))
    logger.addHandler(_file_handler(
        directory / f"warnings_{timestamp}.log",
        logging.WARNING,
        DETAILED_FORMAT,
        MinLevelFilter(logging.WARNING),
    ))
    if log_level == logging.DEBUG:
        # Per-cell acceptance rates from the sampler
        logger.addHandler(_file_handler(directory / f"debug_{timestamp}.log", logging.DEBUG, DETAILED_FORMAT))

    logger.info(f"Logging {run_type} run to {directory.absolute()}")
    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log an INFO record tagged for the performance file.

    Keyword arguments are appended as "key=value" pairs.

    Example:
        >>> log_performance(logger, "tau_1=0.05 completed", evaluated=12, failed=0)
        # "tau_1=0.05 completed | evaluated=12 | failed=0"
    """
    parts = [message] + [f"{k}={v}" for k, v in kwargs.items()]
    extra = {"is_performance": True, **kwargs}
    logger.info(" | ".join(parts), extra=extra)


class WarningCounter:
    """Forward Python warnings to a logger, counted by category.

    numerical covers numpy floating-point warnings from exp() in the
    likelihood, design covers ill-conditioned covariate subsets and data
    covers follow-up and input irregularities.
    """

    CATEGORIES: Dict[str, tuple] = {
        "numerical": ("overflow", "underflow", "invalid value", "divide by zero"),
        "design": ("singular", "rank", "ill-conditioned"),
        "data": ("follow-up", "split point", "missing values"),
    }

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.counts = {name: 0 for name in (*self.CATEGORIES, "other")}

    def categorize(self, message: str) -> str:
        text = message.lower()
        for name, keywords in self.CATEGORIES.items():
            if any(kw in text for kw in keywords):
                return name
        return "other"

    def record(self, message: str, category: Optional[str] = None):
        category = category or self.categorize(message)
        self.counts[category] += 1
        self.logger.warning(f"[{category.upper()}] {message}")

    def summary(self) -> Dict[str, int]:
        """Non-zero counts per category."""
        return {k: v for k, v in self.counts.items() if v}


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Send warnings raised inside the block to the logger.

    Yields:
        WarningCounter with the per-category counts

    Example:
        >>> with capture_warnings(logger) as counter:
        ...     grid = run_grid_search_for(subjects, baselines, probs, config)
        >>> counter.summary()
        {'numerical': 2}
    """
    counter = WarningCounter(logger)

    def show(message, category, filename, lineno, file=None, line=None):
        counter.record(str(message))

    previous = warnings.showwarning
    warnings.showwarning = show
    try:
        yield counter
    finally:
        warnings.showwarning = previous
        summary = counter.summary()
        if summary:
            logger.info("Warning summary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


class ProgressLogger:
    """Progress over a fixed number of steps, with an ETA.

    Args:
        logger: Logger instance
        total: Number of steps (tau_1 slices for the grid search)
        desc: Prefix of every progress message
        log_interval: Log every N steps; the last step is always logged

    Example:
        >>> progress = ProgressLogger(logger, total=18, desc="Grid search over tau_1")
        >>> progress.update(1, metrics={"evaluated": 12})
        # "Grid search over tau_1: 1/18 (5.6%) | eta 41s | evaluated=12"
    """

    def __init__(self, logger: logging.Logger, total: int, desc: str, log_interval: int = 1):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_interval = max(1, log_interval)
        self.current = 0
        self.started = time.perf_counter()

    def eta(self) -> Optional[float]:
        """Seconds left at the average pace so far (None before the first step)."""
        if self.current == 0:
            return None
        elapsed = time.perf_counter() - self.started
        return elapsed / self.current * max(self.total - self.current, 0)

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        self.current += n
        if self.current % self.log_interval and self.current != self.total:
            return

        pct = 100.0 * self.current / self.total if self.total else 100.0
        msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"
        eta = self.eta()
        if eta is not None and self.current < self.total:
            msg += f" | eta {eta:.0f}s"
        if metrics:
            msg += " | " + ", ".join(
                f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in metrics.items()
            )
        self.logger.info(msg)
