"""
Logging setup for the giveaway service
Console output plus an optional rotating file, shared by every service logger
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

SERVICE_LOGGERS = ('giveaway_system', 'utils', 'core')

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)-8s [%(name)s] %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)-8s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'

# 10MB per file, 5 backups
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def resolve_level(log_level=None):
    """Level name (or None for $LOG_LEVEL) to a logging constant; unknown names mean INFO"""
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
    if isinstance(log_level, int):
        return log_level
    return getattr(logging, str(log_level).upper(), logging.INFO)


def build_handlers(level, log_file=None):
    """
    Create the console handler and, when log_file is set, a rotating file handler

    A file that cannot be opened only drops the file handler.
    """
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    handlers = [console]

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
            handlers.append(file_handler)
        except OSError as e:
            print(f"⚠️ File logging disabled, cannot open {log_file}: {e}", file=sys.stderr)

    return handlers


def setup_logging(app_name='giveaway_system', log_level=None, log_file=None, handlers=None):
    """
    Configure one named logger

    Args:
        app_name: Logger to configure (a package name catches all its module loggers)
        log_level: Level name, defaults to $LOG_LEVEL
        log_file: Optional rotating log file
        handlers: Pre-built handlers to attach instead of creating new ones

    Returns:
        logging.Logger
    """
    level = resolve_level(log_level)
    logger = logging.getLogger(app_name)
    logger.setLevel(level)
    logger.handlers.clear()
    for handler in handlers or build_handlers(level, log_file):
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def setup_service_logging(log_level=None, log_file=None):
    """Point every service logger at one set of handlers (one file handle for rotation)"""
    level = resolve_level(log_level)
    handlers = build_handlers(level, log_file)
    for name in SERVICE_LOGGERS:
        setup_logging(name, level, handlers=handlers)
    root = logging.getLogger(SERVICE_LOGGERS[0])
    if log_file and len(handlers) > 1:
        root.info(f"File logging enabled: {log_file}")
    return root
