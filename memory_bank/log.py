import logging
import os
from datetime import datetime


def setup_logger(log_dir: str = ".memorybank/logs") -> logging.Logger:
    """Creates a file logger. All verbose output goes here."""
    logger = logging.getLogger("memory_bank")
    logger.setLevel(logging.DEBUG)
    if any(getattr(h, "_memory_bank_file", False) for h in logger.handlers):
        return logger

    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"memorybank_{timestamp}.log")

    # File handler captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    fh._memory_bank_file = True
    logger.addHandler(fh)

    return logger
