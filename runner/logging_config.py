"""
Logging configuration for the tiltstack runner.

Console output plus a rotating log file inside the run directory.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logging(
    log_level=logging.INFO,
    log_dir: Optional[Path] = None,
    log_prefix='tiltstack',
    stream=None,
):
    """
    Configure the root logger.

    Args:
        log_level: Logging level (default: INFO)
        log_dir: Directory for the log file; console only when None
        log_prefix: Log file name prefix
        stream: Console stream (default: stderr, stdout carries the event stream)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = RotatingFileHandler(
            log_dir / f"{log_prefix}_{timestamp}.log",
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logging.getLogger('astropy').setLevel(logging.WARNING)

    return logger
