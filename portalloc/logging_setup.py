"""Logging setup for the command-line front end."""
import logging
import sys

from . import config

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Attach stderr (and optional file) handlers to the 'portalloc' logger."""
    logger = logging.getLogger('portalloc')
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)

    if not any(getattr(h, '_portalloc', False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._portalloc = True
        logger.addHandler(handler)

        path = config.log_file()
        if path:
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            file_handler.setLevel(logging.DEBUG)
            file_handler._portalloc = True
            logger.addHandler(file_handler)

    return logger
