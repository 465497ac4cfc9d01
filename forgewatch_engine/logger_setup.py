import logging
import re
import coloredlogs
from pathlib import Path
from typing import Optional, Tuple

LOGS_DIR = Path(__file__).resolve().parent.parent / "data" / "build_logs"

LOGGER_NAME = "forgewatch"


def setup_global_logger(level: str = "DEBUG"):
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own console handler on the 'forgewatch' logger.
    # Build loggers are children of it, so their lines show up here as well.
    coloredlogs.install(level=level, logger=logger, fmt='%(asctime)s %(name)s %(levelname)s %(message)s')
    return logger


def get_build_logger(job_name: str, build_id: str, logs_dir: Optional[Path] = None) -> Tuple[logging.Logger, str]:
    """Creates a logger for one build that also writes to its own log file."""
    build_log_dir = (logs_dir or LOGS_DIR) / safe_name(job_name)
    build_log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = build_log_dir / f"{build_id}.log"

    # Not registered with the logging manager, so it is freed once the build is done.
    build_logger = logging.Logger(f"{LOGGER_NAME}.build.{safe_name(job_name)}.{build_id}", logging.DEBUG)
    build_logger.parent = logging.getLogger(LOGGER_NAME)
    # Keep propagating: the global stream is the live log channel.
    build_logger.propagate = True

    fh = logging.FileHandler(log_file_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    fh.setFormatter(formatter)
    build_logger.addHandler(fh)

    return build_logger, str(log_file_path)


def close_build_logger(build_logger: logging.Logger):
    for handler in list(build_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.close()
        build_logger.removeHandler(handler)


def safe_name(name: str) -> str:
    return re.sub(r"[^a-z0-9_-]+", "-", str(name or ""), flags=re.IGNORECASE).lower() or "job"


# Initialize global logger
logger = setup_global_logger()
