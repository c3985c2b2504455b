"""
Logging setup.

``setup_logging`` configures console output for the CLI. Each experiment also
gets its own file logger under ``<log_root>/<experiment_id>/``:

    experiment.log   INFO and above
    errors.log       WARNING and above
    api_calls.log    per-narrative call timing, via the ``<name>.api`` child logger

The experiment logger is created once by the orchestrator and passed down to
the components it drives.
"""

import logging
from pathlib import Path
from typing import List, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILES = {
    "main": "experiment.log",
    "errors": "errors.log",
    "api": "api_calls.log",
}
EXPERIMENT_LOGGER_PREFIX = "nvdrs_ipv.experiment"


def setup_logging(verbose: bool = False) -> None:
    """Setup console logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def experiment_log_dir(experiment_id: str, log_root: Union[str, Path]) -> Path:
    return Path(log_root) / experiment_id


def _file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def init_experiment_logger(experiment_id: str, log_root: Union[str, Path]) -> logging.Logger:
    """
    Create the per-experiment logger and its log files.

    Args:
        experiment_id: Experiment the logs belong to
        log_root: Directory under which ``<experiment_id>/`` is created

    Returns:
        Logger writing to experiment.log and errors.log; its ``.api`` child
        writes to api_calls.log
    """
    log_dir = experiment_log_dir(experiment_id, log_root)
    log_dir.mkdir(parents=True, exist_ok=True)

    experiment_logger = logging.getLogger(f"{EXPERIMENT_LOGGER_PREFIX}.{experiment_id}")
    experiment_logger.setLevel(logging.DEBUG)
    close_experiment_logger(experiment_logger)
    experiment_logger.addHandler(_file_handler(log_dir / LOG_FILES["main"], logging.INFO))
    experiment_logger.addHandler(_file_handler(log_dir / LOG_FILES["errors"], logging.WARNING))

    api_logger = experiment_logger.getChild("api")
    api_logger.setLevel(logging.DEBUG)
    api_logger.propagate = False
    api_logger.addHandler(_file_handler(log_dir / LOG_FILES["api"], logging.DEBUG))

    return experiment_logger


def close_experiment_logger(experiment_logger: logging.Logger) -> None:
    """Detach and close every handler of ``experiment_logger`` and its ``.api`` child."""
    loggers: List[logging.Logger] = [experiment_logger]
    if not experiment_logger.name.endswith(".api"):
        loggers.append(experiment_logger.getChild("api"))
    for target in loggers:
        for handler in list(target.handlers):
            target.removeHandler(handler)
            handler.close()


def read_experiment_log(experiment_id: str, log_root: Union[str, Path], log_type: str = "main") -> List[str]:
    """Lines of one of an experiment's log files."""
    if log_type not in LOG_FILES:
        raise ValueError(f"Invalid log_type {log_type!r}; expected one of {sorted(LOG_FILES)}")
    path = experiment_log_dir(experiment_id, log_root) / LOG_FILES[log_type]
    if not path.exists():
        raise FileNotFoundError(f"Log file not found: {path}")
    return path.read_text(encoding="utf-8").splitlines()
