import logging
from pathlib import Path
from typing import Optional

DEFAULT_LOG_PATH = Path("/tmp/convq/convq.log")

def setup_logging(log_path: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """
    Setup logging configuration for convq.

    Creates the log file's directory and attaches a file handler to the root
    logger. Returns configured logger instance.

    Args:
        log_path: Path to the log file (defaults to /tmp/convq/convq.log)
        debug: If True, enable DEBUG level logging (encoder command lines, timings)
    """
    log_file = Path(log_path) if log_path else DEFAULT_LOG_PATH
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
