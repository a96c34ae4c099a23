"""
Logging setup
Structured logging through loguru

Every record carries a ``component`` (fetch_client, concurrency, sync, ...)
bound by ``get_logger``. Chatty components can be turned up or down on
their own with ``LOG_COMPONENT_LEVELS="concurrency=DEBUG,media_queue=WARNING"``.
"""
import os
import sys
from loguru import logger
from typing import Dict, Optional

DEFAULT_COMPONENT = 'app'


def parse_component_levels(value: Optional[str]) -> Dict[str, str]:
    """Parse ``name=LEVEL`` pairs separated by commas; malformed pairs are ignored"""
    levels = {}
    for pair in (value or '').split(','):
        name, sep, level = pair.partition('=')
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


def _level_filter(default_level: str, component_levels: Dict[str, str]):
    default_no = logger.level(default_level).no
    overrides = {name: logger.level(level).no for name, level in component_levels.items()}

    def accept(record) -> bool:
        component = record['extra'].get('component', DEFAULT_COMPONENT)
        return record['level'].no >= overrides.get(component, default_no)

    return accept


def setup_logger(
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    rotation: str = '10 MB',
    retention: str = '7 days',
    component_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Configure the loguru sinks

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_file: optional path of a rotating log file
        rotation: rotation size of the file sink
        retention: how long rotated files are kept
        component_levels: per-component level overrides
    """
    logger.remove()
    logger.configure(extra={'component': DEFAULT_COMPONENT})

    # LOG_LEVEL from the environment wins over the configured value
    level = os.environ.get('LOG_LEVEL', log_level).upper()
    if component_levels is None:
        component_levels = parse_component_levels(os.environ.get('LOG_COMPONENT_LEVELS'))
    # Sinks accept everything; the filter decides per component
    accept = _level_filter(level, component_levels)

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<magenta>{extra[component]: <12}</magenta> | "
        "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        format=console_format,
        level=0,
        filter=accept,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )

    if log_file:
        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{extra[component]} | "
            "{name}:{function}:{line} | "
            "{message}"
        )
        logger.add(
            log_file,
            format=file_format,
            level=0,
            filter=accept,
            rotation=rotation,
            retention=retention,
            compression='zip',
            encoding='utf-8',
        )

    logger.info(f"Logger initialized with level: {level}")
    if component_levels:
        logger.info(f"Component log levels: {component_levels}")


def get_logger(name: str = None):
    """
    Get a logger bound to a component name

    Args:
        name: component name shown in every record

    Returns:
        loguru logger
    """
    if name:
        return logger.bind(component=name)
    return logger


def log_sync_event(database_id: str, event: str, details: dict = None):
    """Log a sync run milestone, bound to the database it concerns"""
    msg = f"Sync Event: database={database_id}, event={event}"
    if details:
        msg += f", details={details}"
    get_logger('sync').bind(database_id=database_id, event=event).info(msg)


def log_error(error: Exception, context: str = None, component: str = None):
    """Log an exception with its traceback as one record"""
    message = f"Error in {context}: {error}" if context else f"Error: {error}"
    get_logger(component).opt(exception=error).error(message)
