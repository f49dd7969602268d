"""Named loggers for the dispatch components.

The engine, the runner and the gateway sessions each log under their own
name (``BulkDispatchEngine``, ``DispatchRunner``, ...). Handlers and format
are installed once by :func:`bulk_dispatch.server.configure_logging`.
"""

import logging


def get_logger(name: str = "BulkDispatch") -> logging.Logger:
    """Return the logger for a dispatch component, without adding handlers."""
    return logging.getLogger(name)
