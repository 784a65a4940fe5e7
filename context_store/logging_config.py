"""
Logging configuration for the context store.

Quiet by default; --verbose or CONTEXT_VERBOSE=1 turns on debug output.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose output.

    Args:
        quiet: If True, only warnings and errors reach stderr.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("context_store").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    # Re-enable warnings
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("context_store").setLevel(logging.DEBUG)


OPS_LOG_NAME = "context-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3
OPS_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _ops_handler_for(store_logger: logging.Logger, log_path: Path):
    target = os.path.abspath(log_path)
    for handler in store_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
            return handler
    return None


def configure_ops_log(store_path):
    """Attach the store's rotating operations log to the package logger.

    Puts, deletes, gc and sync record themselves at INFO, whatever the
    stderr verbosity. Calling again for the same store reuses its handler.
    Returns the handler so it can be removed on close().
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    log_path = store_path / OPS_LOG_NAME
    store_logger = logging.getLogger("context_store")

    handler = _ops_handler_for(store_logger, log_path)
    if handler is None:
        handler = RotatingFileHandler(
            str(log_path), maxBytes=OPS_LOG_MAX_BYTES, backupCount=OPS_LOG_BACKUPS,
        )
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter(OPS_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        store_logger.addHandler(handler)

    # Quiet mode raises the level to WARNING; the ops log still needs INFO
    if not store_logger.isEnabledFor(logging.INFO) or store_logger.level == logging.NOTSET:
        store_logger.setLevel(logging.INFO)
    return handler
