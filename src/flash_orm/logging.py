import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional, Union

# Tags every log line emitted while one eager-load pass is running
query_cycle: ContextVar[Optional[str]] = ContextVar("query_cycle", default=None)


class OrmFormatter(logging.Formatter):
    """
    Formatter that prefixes the active query cycle and enforces UTC.
    """

    def __init__(self, fmt: str | None = None, datefmt: str | None = None):
        super().__init__(fmt, datefmt)
        self.converter = time.gmtime

    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            return time.strftime(datefmt, ct)
        t = time.strftime("%Y-%m-%d %H:%M:%S", ct)
        return "%s.%03dZ" % (t, record.msecs)

    def format(self, record: logging.LogRecord) -> str:
        cycle = query_cycle.get()
        record.cycle_str = f"[{cycle}] " if cycle else ""
        return super().format(record)


def get_logger(name: str) -> logging.Logger:
    """
    Returns a standard logger instance.

    >>> logger = get_logger(__name__)
    """
    return logging.getLogger(name)


def setup_logging(
    level: Union[int, str, None] = None,
    *,
    capture_roots: bool = False,
    module_name: str = "flash_orm",
) -> logging.Logger:
    """
    Configure logging for the ORM namespace.

    Args:
        level: Logging level. Defaults to ``orm_settings.LOG_LEVEL``.
        capture_roots: If True, configures the root logger instead of
                       the ``flash_orm.*`` namespace only.
        module_name: Namespace configured when ``capture_roots`` is False.

    Returns:
        The configured logger.
    """
    from .config import orm_settings

    if level is None:
        level = orm_settings.LOG_LEVEL
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    target_logger = (
        logging.getLogger() if capture_roots else logging.getLogger(module_name)
    )
    # Reset handlers so tests can reconfigure
    target_logger.handlers.clear()
    target_logger.setLevel(level)

    formatter = OrmFormatter("%(asctime)s %(levelname)-8s %(cycle_str)s%(name)s: %(message)s")
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    target_logger.addHandler(console)

    if not capture_roots:
        target_logger.propagate = False
    return target_logger


@contextmanager
def scoped_query_cycle(value: str) -> Generator[None, None, None]:
    """
    Tag log records emitted inside the block with ``value``.

    >>> with scoped_query_cycle("users#1"):
    ...     await User.query(db).with_("posts").get()
    """
    token = query_cycle.set(value)
    try:
        yield
    finally:
        query_cycle.reset(token)
