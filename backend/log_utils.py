"""
Logging utilities for probe output.

Item names, file paths and error strings arrive from the media server and
can carry newlines or carriage returns that would forge extra log lines
(CWE-117). A custom LogRecord factory escapes them before formatting.

Call configure_logging() once at startup.
"""

import logging

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _sanitize_value(value):
    """Escape newlines and carriage returns in string values."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes record args."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install the sanitizing LogRecord factory globally."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO"):
    """
    Set up root logging for the service.

    Installs the sanitizing record factory and a stream handler with the
    service log format. Unknown level names fall back to INFO.
    """
    install_safe_logging()
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)
    # httpx logs every request at INFO; segment polling makes that noisy
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
