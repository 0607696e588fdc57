# signal_loader/jobs/utils/logging_config.py

import logging
import os
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE_NAME = 'loader_executions.log'


def setup_script_logging(script_name: str,
                         log_level: Union[int, str] = logging.INFO,
                         log_folder: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Configure logging for the loader

    Args:
        script_name: Name of the logger to configure (usually 'signal_loader')
        log_level: Logging level (default: INFO)
        log_folder: Directory for the execution log file; console only when None

    Returns:
        configured logger instance
    """
    logger = logging.getLogger(script_name)
    logger.setLevel(log_level)

    # Remove any existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    # Create formatter with standardized timestamp format
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    # Console Handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_folder is None:
        return logger

    # File Handler
    try:
        log_dir = Path(log_folder)
        os.makedirs(log_dir, exist_ok=True)

        log_file = log_dir / LOG_FILE_NAME
        file_handler = logging.FileHandler(str(log_file), encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging initialized for {script_name} (file: {log_file})")

    except Exception as e:
        logger.error(f"Failed to set up file logging: {e}")
        raise

    return logger


def truncate_for_log(text: Optional[str], limit: int = 200) -> str:
    """Shorten long SQL / error text before it goes into a log line"""
    if text is None:
        return ''
    if len(text) <= limit:
        return text
    return text[:limit] + '... (truncated)'
