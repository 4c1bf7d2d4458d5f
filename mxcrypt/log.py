"""
Shared logger for mxcrypt

Components create child loggers (``mxcrypt.e2ee.decryption`` ...) so that a
single handler configured on ``mxcrypt`` controls the whole client.
"""

import logging

logger = logging.getLogger("mxcrypt")


def get_logger(name: str) -> logging.Logger:
    """Return a child logger of the package logger"""
    return logger.getChild(name)


def setup_logging(level: int = logging.INFO) -> None:
    """Attach a stream handler to the package logger (idempotent)"""
    if logger.handlers:
        logger.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname).4s] %(name)s: %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel(level)
