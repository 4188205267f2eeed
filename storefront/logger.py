"""
Logging for the storefront replica.

Every module logs through a ``storefront.<module>`` child of one package
logger that writes to stdout and does not propagate to the root logger.
Entry points (the app factory and the resync command) call
``configure_logging`` with ``StorefrontConfig.log_level``; until then the
package logger runs at INFO.
"""
import logging
import sys
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LEVEL = "INFO"

package_logger = logging.getLogger("storefront")
package_logger.propagate = False


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def configure_logging(level: Union[str, int] = DEFAULT_LEVEL) -> logging.Logger:
    """
    Apply ``level`` to the package logger and its handler.

    Safe to call repeatedly; the stdout handler is installed once. An unknown
    level name falls back to INFO with a warning.
    """
    if isinstance(level, str):
        level = level.strip().upper() or DEFAULT_LEVEL
    if not package_logger.handlers:
        package_logger.addHandler(_stdout_handler())

    try:
        package_logger.setLevel(level)
    except ValueError:
        package_logger.setLevel(DEFAULT_LEVEL)
        package_logger.warning("Unknown log level %r, using %s", level, DEFAULT_LEVEL)

    for handler in package_logger.handlers:
        handler.setLevel(package_logger.level)
    return package_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """``storefront.<name>``, or the package logger when no name is given."""
    if name:
        return logging.getLogger(f"storefront.{name}")
    return package_logger


configure_logging()
