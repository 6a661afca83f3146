"""
Logging setup for the raffle engine
Console output plus an optional rotating audit file shared by raffle_system and utils
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
import os

# Loggers that receive the raffle handlers; module loggers are their children
RAFFLE_LOGGERS = ('raffle_system', 'utils')

CONSOLE_FORMAT = logging.Formatter(
    fmt='[%(asctime)s] %(levelname)-8s %(message)s',
    datefmt='%H:%M:%S'
)

# File output is the draw audit trail: full dates and the emitting module
AUDIT_FORMAT = logging.Formatter(
    fmt='[%(asctime)s] %(levelname)-8s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _file_handler(log_file, level):
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    handler = RotatingFileHandler(
        log_file,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(AUDIT_FORMAT)
    return handler


def setup_logging(app_name='raffle_system', log_level=None, log_file=None):
    """
    Attach console (and optionally file) handlers to the raffle loggers

    LOG_LEVEL and LOG_FILE are read from the environment when the arguments
    are omitted. SQLAlchemy's statement logging stays at WARNING unless
    LOG_SQL=1, since every purchase runs several statements.

    Args:
        app_name: Logger returned to the caller; it gets the same handlers
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Path of the rotating audit file

    Returns:
        logging.Logger: The app_name logger
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
    log_file = log_file or os.getenv('LOG_FILE')

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(CONSOLE_FORMAT)
    handlers.append(console_handler)

    file_error = None
    if log_file:
        try:
            handlers.append(_file_handler(log_file, numeric_level))
        except OSError as e:
            file_error = e

    names = list(RAFFLE_LOGGERS)
    if app_name not in names:
        names.append(app_name)

    for name in names:
        configured = logging.getLogger(name)
        configured.setLevel(numeric_level)
        configured.handlers.clear()
        for handler in handlers:
            configured.addHandler(handler)
        configured.propagate = False

    sql_level = logging.INFO if os.getenv('LOG_SQL') == '1' else logging.WARNING
    logging.getLogger('sqlalchemy.engine').setLevel(sql_level)

    logger = logging.getLogger(app_name)
    if file_error:
        logger.error(f"Failed to setup file logging: {file_error}")
    elif log_file:
        logger.info(f"File logging enabled: {log_file}")

    return logger
