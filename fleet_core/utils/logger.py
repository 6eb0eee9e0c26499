import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logger(name, log_file, level=logging.INFO, add_console_handler=True):
    """Sets up a logger instance with a unique file handler for the specified log_file."""
    log_dir = os.path.dirname(log_file)
    if log_dir and not os.path.exists(log_dir):
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"CRITICAL: Could not create log directory {log_dir}. Error: {e}", file=sys.stderr)
            # Console only if the directory cannot be created
            logger = logging.getLogger(name)
            logger.setLevel(level)
            if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
                ch = logging.StreamHandler(sys.stdout)
                ch.setFormatter(logging.Formatter(LOG_FORMAT))
                logger.addHandler(ch)
            logger.error(f"Log directory {log_dir} creation failed. Logging to console only for {name}.")
            return logger

    formatter = logging.Formatter(LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Node loggers own their handlers; the root logger may be configured by a runner script.
    if name != "root":
        logger.propagate = False

    abs_log_file = os.path.abspath(log_file)

    file_handler_exists = False
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == abs_log_file:
            file_handler_exists = True
            break

    if not file_handler_exists:
        try:
            # Max 5MB per file, keep 5 backup files
            file_handler = RotatingFileHandler(abs_log_file, maxBytes=5*1024*1024, backupCount=5, encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"CRITICAL: Could not create file handler for {abs_log_file}. Error: {e}", file=sys.stderr)
            if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
                ch = logging.StreamHandler(sys.stdout)
                ch.setFormatter(formatter)
                logger.addHandler(ch)
            logger.error(f"File logging to {abs_log_file} failed for {name}. Logging to console for this logger if not already.")

    if add_console_handler:
        # RotatingFileHandler is itself a StreamHandler subclass
        console_handler_exists = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not console_handler_exists:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

    return logger


def parse_log_level(level_name, default=logging.INFO):
    """Maps a level name from config ("debug", "INFO", ...) to a logging constant."""
    if not level_name:
        return default
    level = logging.getLevelName(str(level_name).upper())
    return level if isinstance(level, int) else default
