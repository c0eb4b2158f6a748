"""
Default logging interface
"""

import logging


_LOG_FORMATTER = logging.Formatter(
    "[%(asctime)s][%(threadName)s][%(levelname)s]:%(message)s"
)


def get_default_logger(name: str) -> logging.Logger:
    """
    Get default logger for a given name.

    :param name: The logger name.
    :return: The logger object.
    """

    # Set Null log handler to avoid "No handlers could be found for logger XXX".
    # The indexer may be embedded in a host process that configures logging itself.
    if len(logging.getLogger().handlers) == 0:
        logging.getLogger().addHandler(logging.NullHandler())

    log = logging.getLogger(name)
    log.setLevel(logging.INFO)

    # Add a handler for the log if one isn't present.
    if len(log.handlers) == 0:
        handler = logging.StreamHandler()
        handler.setFormatter(_LOG_FORMATTER)
        log.addHandler(handler)
        log.propagate = False

    return log


def set_log_level(level: int):
    """
    Set the level of all chainequity loggers created so far.
    Used by the command line entry point to honor --verbose.

    :param level: The logging level.
    """
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("chainequity") and isinstance(logger, logging.Logger):
            logger.setLevel(level)
