"""
Logging helpers shared by the amplicon_tools scripts.
"""

import logging
import sys

LOGGER_NAME = 'amplicon_tools'


def setup_logger(log_file=None, log_level=logging.INFO):
    """
    Configure the package logger.

    Parameters:
    -----------
    log_file : str or Path, optional
        Path to a log file (default: log to console only)
    log_level : int
        Logging level, e.g. logging.INFO

    Returns:
    --------
    logging.Logger
        Configured logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    # Avoid duplicate handlers if called twice in one process
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name=None):
    """Return the package logger or one of its children."""
    if name is None:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f'{LOGGER_NAME}.{name}')


def log_print(message, level='info'):
    """Log a message on the package logger at the given level name."""
    logger = logging.getLogger(LOGGER_NAME)
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(message)
