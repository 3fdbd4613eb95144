"""
Logging configuration for hostvol processes.

Every process logs to stdout; the agent can additionally keep a rotating
log file under its state directory. Records carry the component name and
the emitting module so agent, plugin and CLI output can be told apart when
interleaved in one journal.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, List, Optional, Union

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Third-party loggers that are too chatty at the component level
LIBRARY_LEVELS: Dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
}


def parse_level(level: Union[int, str]) -> int:
    """Accept a logging level as int or name ('debug', 'INFO', ...)"""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def default_format(component_name: str) -> str:
    return f"[%(asctime)s] [{component_name.upper()}] %(levelname)s %(name)s: %(message)s"


def build_handlers(formatter: logging.Formatter, log_file: Optional[str] = None) -> List[logging.Handler]:
    """stdout handler, plus a size-rotated file handler when log_file is given."""
    console = logging.StreamHandler(sys.stdout)
    handlers: List[logging.Handler] = [console]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    component_name: str,
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Configure logging for a hostvol component.

    Replaces whatever handlers the root logger had, so calling it twice
    (tests, reloads) does not duplicate output.

    Args:
        component_name: Component identifier (e.g., 'agent', 'plugin')
        level: Logging level as int or name
        log_file: Optional path of a rotating log file
        format_string: Record format (default: component, level, module, message)

    Returns:
        The component's logger
    """
    level = parse_level(level)
    formatter = logging.Formatter(format_string or default_format(component_name), datefmt=DATE_FORMAT)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in build_handlers(formatter, log_file):
        root.addHandler(handler)
    root.setLevel(level)

    # Library loggers open up to INFO only when the component runs at DEBUG
    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(logging.INFO if level <= logging.DEBUG else library_level)

    logger = logging.getLogger(component_name)
    target = f", file={log_file}" if log_file else ""
    logger.info(f"{component_name} logging at {logging.getLevelName(level)}{target}")
    return logger
